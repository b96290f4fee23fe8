"""
CLI entry point for azp-viewer.

``layout`` works offline on a definition file; ``serve`` and ``watch``
need a service factory (``module:attribute``) returning the object that
talks to the execution service and the definition store.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any

from .config import ConfigError, Settings, load_settings
from .extractor import extract_stage_definitions
from .layout import build_connectors, layout_columns
from .service import load_factory

_STATUS_ICONS = {
    "succeeded": "✅",
    "partiallysucceeded": "⚠️",
    "succeededwithissues": "⚠️",
    "failed": "❌",
    "canceled": "⛔",
    "skipped": "⏭️",
    "inprogress": "🔄",
    "pending": "⏳",
    "notstarted": "⏳",
}


def _icon(status: str | None) -> str:
    return _STATUS_ICONS.get((status or "").lower(), "•")


class ConsoleViewer:
    """Prints each changed run snapshot."""

    def render(self, payload: dict[str, Any]) -> None:
        if payload.get("error"):
            print(f"❌ {payload['error']}", file=sys.stderr)
            return
        run = payload.get("run") or {}
        print(f"\n{_icon(run.get('result') or run.get('status'))} Run {run.get('name') or run.get('id')}: "
              f"{run.get('status')} {run.get('result') or ''}".rstrip())
        for stage in payload.get("stages", []):
            after = f" (after {', '.join(stage['depends_on'])})" if stage["depends_on"] else ""
            print(f"   {_icon(stage['status'])} {stage['name']} {stage['duration']}{after}".rstrip())
            for job in stage["jobs"]:
                progress = f" ({job['completed_tasks']}/{job['task_count']} tasks)" if job["task_count"] else ""
                print(f"      {_icon(job['status'])} {job['name']}{progress} {job['duration']}".rstrip())

    def reveal(self) -> None:
        pass


def _load_collaborator(settings: Settings, override: str | None) -> Any:
    path = override or settings.service
    if not path:
        raise ConfigError("No service factory configured (use --service or AZP_VIEWER_SERVICE)")
    return load_factory(path)()


def _print_layout(path: Path) -> int:
    if not path.exists():
        print(f"❌ Definition file not found: {path}", file=sys.stderr)
        return 1
    definitions = extract_stage_definitions(path.read_text(encoding="utf-8"))
    if not definitions:
        print("⚠️ No stages found.")
        return 0
    columns = layout_columns(definitions)
    for index, column in enumerate(columns, start=1):
        print(f"=== Column {index}: {[stage.label for stage in column.stages]} ===")
    for connector in build_connectors(columns):
        print(f"   {connector.source} → {connector.target}")
    return 0


def _watch(run_id: int, collaborator: Any, settings: Settings) -> int:
    from .sync import LiveSyncCoordinator, LoopDispatcher, SessionState

    async def _run() -> int:
        loop = asyncio.get_running_loop()
        coordinator = LiveSyncCoordinator(
            collaborator, collaborator, loop, settings=settings, dispatcher=LoopDispatcher(loop)
        )
        session = coordinator.open_run(run_id, ConsoleViewer())
        try:
            while session.is_loading or session.is_polling:
                await asyncio.sleep(0.2)
        finally:
            coordinator.shutdown()
        return 1 if session.state == SessionState.FAILED else 0

    try:
        return asyncio.run(_run())
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 130


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="azp-viewer",
        description="🔍 Live stage graphs and logs for pipeline runs",
    )
    config_help = "Settings file (default: ./azp-viewer.yaml if present)"
    parser.add_argument("--config", help=config_help)
    # Also accepted after the subcommand
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=argparse.SUPPRESS, help=config_help)
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    layout_parser = subparsers.add_parser("layout", parents=[common], help="Print the stage columns of a definition file")
    layout_parser.add_argument("file", type=Path)

    serve_parser = subparsers.add_parser("serve", parents=[common], help="Start the web API")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--service", default=None, help="Service factory, module:attribute")

    watch_parser = subparsers.add_parser("watch", parents=[common], help="Follow a run in the terminal")
    watch_parser.add_argument("run_id", type=int)
    watch_parser.add_argument("--service", default=None, help="Service factory, module:attribute")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        sys.exit(1)

    try:
        settings = load_settings(args.config)
    except ConfigError as e:
        print(f"❌ {e}", file=sys.stderr)
        sys.exit(2)

    logging.basicConfig(level=settings.log_level, format="%(levelname)s: %(name)s: %(message)s")

    if args.command == "layout":
        sys.exit(_print_layout(args.file))

    try:
        collaborator = _load_collaborator(settings, args.service)
    except ConfigError as e:
        print(f"❌ {e}", file=sys.stderr)
        sys.exit(2)

    if args.command == "watch":
        sys.exit(_watch(args.run_id, collaborator, settings))

    host = args.host or settings.host
    port = args.port or settings.port
    print(f"🌐 Starting server at http://{host}:{port}")
    print("   Press Ctrl+C to stop.\n")

    import uvicorn

    from .server import create_app

    uvicorn.run(create_app(collaborator, collaborator, settings), host=host, port=port, log_level="warning")


if __name__ == "__main__":
    main()

"""
FastAPI web server for azp-viewer.

Exposes pipeline dependency diagrams, run snapshots and run actions as
JSON, and live run / log viewers as Server-Sent Events. Every SSE client
watching the same run (or the same log) shares one registry entry, hence
one polling session.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, StreamingResponse

from .config import Settings
from .registry import log_key, status_key
from .sync import Dispatcher, LiveSyncCoordinator, LoopDispatcher, PollingSession, Scheduler

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_event(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


class BroadcastViewer:
    """Fans payloads out to the SSE clients of one registry entry."""

    def __init__(self) -> None:
        self.subscribers: list[asyncio.Queue] = []
        self.last_payload: dict[str, Any] | None = None

    def render(self, payload: dict[str, Any]) -> None:
        self.last_payload = payload
        for queue in self.subscribers:
            queue.put_nowait(payload)

    def reveal(self) -> None:
        # New subscribers get the last payload on subscribe
        pass

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        if self.last_payload is not None:
            queue.put_nowait(self.last_payload)
        self.subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> int:
        """Drop a subscriber, returning how many remain."""
        if queue in self.subscribers:
            self.subscribers.remove(queue)
        return len(self.subscribers)


async def _read_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def create_app(
    service: Any,
    store: Any,
    settings: Settings | None = None,
    scheduler: Scheduler | None = None,
    dispatcher: Dispatcher | None = None,
) -> FastAPI:
    """Build the app around the host's execution service and definition store.

    Sessions are scheduled on the server's event loop unless *scheduler*
    is given, and fetch on the loop's executor unless *dispatcher* is
    given. Routes that only talk to the service run in the threadpool.
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        loop = asyncio.get_running_loop()
        app.state.coordinator = LiveSyncCoordinator(
            service,
            store,
            scheduler or loop,
            settings=settings,
            dispatcher=dispatcher or LoopDispatcher(loop),
        )
        yield
        app.state.coordinator.shutdown()

    app = FastAPI(title="Azure Pipelines Run Viewer", version="0.1.0", lifespan=lifespan)

    def _stream(request: Request, session: PollingSession, event: str) -> StreamingResponse:
        coordinator: LiveSyncCoordinator = request.app.state.coordinator
        viewer: BroadcastViewer = session.viewer
        queue = viewer.subscribe()

        async def event_generator():
            try:
                while True:
                    if await request.is_disconnected():
                        break
                    try:
                        payload = await asyncio.wait_for(queue.get(), timeout=settings.keepalive)
                    except asyncio.TimeoutError:
                        yield ": keep-alive\n\n"
                        continue
                    yield sse_event(event, payload)
            finally:
                # Last client gone: tear the session down
                if viewer.unsubscribe(queue) == 0 and coordinator.registry.get(session.key) is session:
                    coordinator.close(session.key)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers=_SSE_HEADERS,
        )

    def _no_viewer() -> JSONResponse:
        return JSONResponse(content={"error": "No live viewer"}, status_code=404)

    @app.get("/api/pipelines/{pipeline_id}/layout", response_class=JSONResponse)
    async def get_layout(pipeline_id: int, request: Request):
        """Stages declared in the pipeline definition, laid out in columns."""
        payload = await run_in_threadpool(request.app.state.coordinator.stage_layout, pipeline_id)
        return JSONResponse(content=payload)

    @app.post("/api/pipelines/{pipeline_id}/runs")
    async def start_run(pipeline_id: int, request: Request):
        body = await _read_body(request)
        variables = body.get("variables")
        run = await run_in_threadpool(
            request.app.state.coordinator.start_run,
            pipeline_id,
            branch=body.get("branch"),
            variables=variables if isinstance(variables, dict) else None,
        )
        if run is None:
            return JSONResponse(content={"error": "Failed to start run"}, status_code=502)
        return JSONResponse(content={"run": run.to_dict()})

    @app.get("/api/runs/{run_id}", response_class=JSONResponse)
    async def get_run(run_id: int, request: Request):
        """One-shot run payload: metadata, stage tree and layout."""
        payload = await run_in_threadpool(request.app.state.coordinator.snapshot, run_id)
        status_code = 502 if payload.get("error") else 200
        return JSONResponse(content=payload, status_code=status_code)

    @app.get("/api/runs/{run_id}/watch")
    async def watch_run(run_id: int, request: Request):
        """Stream ``snapshot`` events whenever the run view changes."""
        session = request.app.state.coordinator.open_run(run_id, BroadcastViewer())
        return _stream(request, session, "snapshot")

    @app.post("/api/runs/{run_id}/refresh")
    async def refresh_run(run_id: int, request: Request):
        """Refresh the live run viewer now, restarting a stopped one."""
        coordinator: LiveSyncCoordinator = request.app.state.coordinator
        if coordinator.registry.get(status_key(run_id)) is None:
            return _no_viewer()
        return {"refreshed": coordinator.refresh_run(run_id)}

    @app.get("/api/runs/{run_id}/logs/{log_id}/watch")
    async def watch_log(run_id: int, log_id: int, request: Request):
        """Stream ``log`` events whenever the log grows."""
        session = request.app.state.coordinator.open_log(run_id, log_id, BroadcastViewer())
        return _stream(request, session, "log")

    @app.post("/api/runs/{run_id}/logs/{log_id}/refresh")
    async def refresh_log(run_id: int, log_id: int, request: Request):
        coordinator: LiveSyncCoordinator = request.app.state.coordinator
        if coordinator.registry.get(log_key(run_id, log_id)) is None:
            return _no_viewer()
        return {"refreshed": coordinator.refresh_log(run_id, log_id)}

    @app.post("/api/runs/{run_id}/logs/{log_id}/pause")
    async def pause_log(run_id: int, log_id: int, request: Request):
        coordinator: LiveSyncCoordinator = request.app.state.coordinator
        if coordinator.registry.get(log_key(run_id, log_id)) is None:
            return _no_viewer()
        return {"paused": coordinator.pause_log(run_id, log_id)}

    @app.post("/api/runs/{run_id}/logs/{log_id}/resume")
    async def resume_log(run_id: int, log_id: int, request: Request):
        coordinator: LiveSyncCoordinator = request.app.state.coordinator
        if coordinator.registry.get(log_key(run_id, log_id)) is None:
            return _no_viewer()
        return {"resumed": coordinator.resume_log(run_id, log_id)}

    @app.post("/api/runs/{run_id}/cancel")
    async def cancel_run(run_id: int, request: Request):
        coordinator: LiveSyncCoordinator = request.app.state.coordinator
        if not await run_in_threadpool(coordinator.request_cancel, run_id):
            return JSONResponse(content={"error": "Failed to cancel run"}, status_code=502)
        coordinator.refresh_run(run_id)
        return {"cancelled": True}

    @app.post("/api/runs/{run_id}/retry")
    async def retry_run(run_id: int, request: Request):
        coordinator: LiveSyncCoordinator = request.app.state.coordinator
        run = await run_in_threadpool(coordinator.request_retry, run_id)
        if run is None:
            return JSONResponse(content={"error": "Failed to retry run"}, status_code=502)
        coordinator.follow_retry(run_id, run)
        return JSONResponse(content={"run": run.to_dict()})

    @app.get("/api/viewers")
    async def list_viewers(request: Request):
        """Open viewers and the state of their sessions."""
        return {
            "viewers": [
                {
                    "key": list(key),
                    "kind": session.kind,
                    "run_id": session.run_id,
                    "state": session.state.value,
                    "polling": session.is_polling,
                }
                for key, session in request.app.state.coordinator.registry.items()
            ]
        }

    return app

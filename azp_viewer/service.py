"""
Interfaces of the external collaborators.

The execution service (runs, timelines, logs, run actions) and the
definition store (raw pipeline definition text) are supplied by the host
application; this package only consumes them.
"""

from __future__ import annotations

import importlib
from typing import Any, Callable, Protocol

from .config import ConfigError


class ServiceError(Exception):
    """Raised by collaborators when a request to the execution service fails."""


class ExecutionService(Protocol):
    def get_run(self, run_id: int) -> dict[str, Any]:
        """Run metadata (``id``, ``status``, ``result``, timestamps...)."""
        ...

    def get_timeline(self, run_id: int) -> dict[str, Any]:
        """``{"records": [...]}`` for the run."""
        ...

    def get_log_content(self, run_id: int, log_id: int) -> str:
        ...

    def start_run(
        self,
        pipeline_id: int,
        branch: str | None = None,
        variables: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        ...

    def cancel_run(self, run_id: int) -> None:
        ...

    def retry_run(self, run_id: int) -> dict[str, Any]:
        ...


class DefinitionStore(Protocol):
    def get_definition_text(self, pipeline_id: int) -> str:
        ...


def load_factory(path: str) -> Callable[[], Any]:
    """Import a ``"package.module:attribute"`` factory.

    Used by the CLI to obtain the object implementing both collaborator
    interfaces.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(f"Service factory must look like 'module:attribute', got {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"Cannot import service module {module_name!r}: {e}") from e
    target: Any = module
    for part in attr.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as e:
            raise ConfigError(f"{module_name!r} has no attribute {attr!r}") from e
    if not callable(target):
        raise ConfigError(f"Service factory {path!r} is not callable")
    return target

"""
Registry of open viewers.

At most one live entry (and therefore one polling session) exists per
key: opening an existing key reveals the entry instead of creating a
second poller. Disposing an entry cancels its session's timer.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Hashable, Iterator, Protocol

logger = logging.getLogger("azp_viewer.registry")


class Viewer(Protocol):
    """Whatever renders the payloads (webview, SSE stream, console...)."""

    def render(self, payload: dict[str, Any]) -> None:
        ...

    def reveal(self) -> None:
        ...


def status_key(run_id: Any) -> tuple[Hashable, ...]:
    """Key of a run status viewer."""
    return ("run", run_id)


def log_key(run_id: Any, log_id: Any) -> tuple[Hashable, ...]:
    """Key of a log viewer: run identity plus log identity."""
    return ("log", run_id, log_id)


class ViewerRegistry:
    """Maps viewer keys to their polling session. Starts empty."""

    def __init__(self) -> None:
        self._entries: dict[Hashable, Any] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[Hashable]:
        return iter(list(self._entries))

    def get(self, key: Hashable) -> Any | None:
        return self._entries.get(key)

    def items(self) -> list[tuple[Hashable, Any]]:
        return list(self._entries.items())

    def open(self, key: Hashable, factory: Callable[[], Any]) -> tuple[Any, bool]:
        """Return ``(session, created)``.

        An existing entry is revealed and reused; *factory* is only called
        for a new key.
        """
        existing = self._entries.get(key)
        if existing is not None:
            logger.debug("Reusing viewer %s", key)
            existing.viewer.reveal()
            return existing, False
        session = factory()
        self._entries[key] = session
        logger.info("Registered viewer %s", key)
        return session, True

    def rekey(self, old_key: Hashable, new_key: Hashable) -> bool:
        """Move an entry to a new key. Fails if *new_key* is taken."""
        if old_key == new_key:
            return old_key in self._entries
        if old_key not in self._entries or new_key in self._entries:
            return False
        session = self._entries.pop(old_key)
        session.key = new_key
        self._entries[new_key] = session
        return True

    def dispose(self, key: Hashable) -> bool:
        """Remove an entry and stop its session. False if unknown."""
        session = self._entries.pop(key, None)
        if session is None:
            return False
        session.dispose()
        logger.info("Disposed viewer %s", key)
        return True

    def dispose_all(self) -> None:
        for key in list(self._entries):
            self.dispose(key)

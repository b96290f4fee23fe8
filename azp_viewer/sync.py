"""
Live synchronization of open viewers with the execution service.

Each viewer owns one polling session: a one-shot timer re-armed after
every tick, so a slow upstream delays the next tick instead of queueing
ticks. Sessions stop on their own once the run completes (after one more
refresh a short grace delay later, to catch trailing timeline updates) or
on the first failed fetch, keeping the last good payload on screen.

Scheduling is injected: anything with ``call_later(delay, callback)``
returning a cancellable handle works, including an asyncio event loop.
Fetches go through a dispatcher: ``LoopDispatcher`` runs them on the
loop's executor and applies the results back on the loop, so a slow
upstream never blocks it.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from enum import Enum
from typing import Any, Callable, Hashable, Protocol

from .config import Settings
from .extractor import fetch_stage_definitions
from .models import RunInfo, StageDefinition
from .registry import Viewer, ViewerRegistry, log_key, status_key
from .snapshot import (
    assemble_stage_tree,
    build_run_payload,
    definition_payload,
    error_payload,
    fingerprint,
    parse_timeline,
)

logger = logging.getLogger("azp_viewer.sync")

Done = Callable[[Any, "BaseException | None"], None]


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        ...


class Dispatcher(Protocol):
    def submit(self, work: Callable[[], Any], done: Done) -> None:
        """Run *work*, then call ``done(result, error)`` on the session's thread."""
        ...


class InlineDispatcher:
    """Runs fetches synchronously in the caller."""

    def submit(self, work: Callable[[], Any], done: Done) -> None:
        try:
            result = work()
        except Exception as e:
            done(None, e)
            return
        done(result, None)


class LoopDispatcher:
    """Runs fetches in the loop's default executor, delivers results on the loop.

    ``submit`` must be called from the loop thread.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.loop = loop

    def submit(self, work: Callable[[], Any], done: Done) -> None:
        future = self.loop.run_in_executor(None, work)

        def deliver(f: asyncio.Future) -> None:
            if f.cancelled():
                return
            error = f.exception()
            done(None if error is not None else f.result(), error)

        future.add_done_callback(deliver)


class SessionState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    PAUSED = "paused"
    TERMINAL = "terminal"
    FAILED = "failed"


class PollingSession:
    """Timer-driven refresh loop for one viewer.

    ``is_active`` is the disposal flag: responses that arrive after
    disposal, after the session moved to another run, or after a newer
    response was applied, are dropped.
    """

    kind = "session"

    def __init__(
        self,
        key: Hashable,
        run_id: int,
        service: Any,
        scheduler: Scheduler,
        viewer: Viewer,
        interval: float,
        grace_delay: float,
        dispatcher: Dispatcher | None = None,
    ):
        self.key = key
        self.run_id = run_id
        self.service = service
        self.scheduler = scheduler
        self.viewer = viewer
        self.interval = interval
        self.grace_delay = grace_delay
        self.dispatcher = dispatcher or InlineDispatcher()

        self.state = SessionState.IDLE
        self.is_active = True
        self.run: RunInfo | None = None
        self.payload: dict[str, Any] | None = None
        self.last_payload_hash: str | None = None
        self.error: str | None = None
        self._handle: TimerHandle | None = None
        self._issued = 0
        self._applied = 0
        self._in_flight = 0

    # -- hooks ------------------------------------------------------------

    def _load(self, run: RunInfo) -> dict[str, Any]:
        """Payload for the initial load."""
        return self._fetch(run)

    def _fetch(self, run: RunInfo) -> dict[str, Any]:
        raise NotImplementedError

    def _digest(self, payload: dict[str, Any]) -> str:
        return fingerprint(payload)

    def _accept(self, payload: dict[str, Any]) -> None:
        """Called on a changed payload right before it is rendered."""

    def _failure_payload(self, message: str) -> dict[str, Any]:
        return error_payload(message, self.run)

    # -- lifecycle --------------------------------------------------------

    @property
    def is_polling(self) -> bool:
        return self.is_active and self.state == SessionState.POLLING

    @property
    def is_loading(self) -> bool:
        return self._in_flight > 0

    def open(self) -> None:
        """Initial load. Polling starts once it shows a live run.

        A failed load renders an error payload and never polls.
        """
        self._request(self._start, initial=True)

    def refresh(self) -> bool:
        """Refresh on demand; restarts polling for a live run that stopped."""
        if not self.is_active:
            return False
        self._request(self._after_refresh)
        return True

    def dispose(self) -> None:
        self.is_active = False
        self._cancel_timer()
        logger.info("%s: disposed", self.key)

    # -- internals --------------------------------------------------------

    def _is_current(self, run_id: int) -> bool:
        return self.is_active and run_id == self.run_id

    def _schedule(self, delay: float, callback: Callable[[], None]) -> None:
        self._cancel_timer()
        self._handle = self.scheduler.call_later(delay, callback)

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _request(self, then: Callable[[RunInfo], None], initial: bool = False) -> None:
        """Fetch run + payload through the dispatcher, then apply and call *then*."""
        run_id = self.run_id
        self._issued += 1
        seq = self._issued
        self._in_flight += 1

        def work() -> tuple[RunInfo, dict[str, Any]]:
            run = RunInfo.from_dict(self.service.get_run(run_id))
            return run, self._load(run) if initial else self._fetch(run)

        def done(result: Any, error: BaseException | None) -> None:
            self._in_flight -= 1
            if not self._is_current(run_id) or seq < self._applied:
                logger.debug("%s: discarding stale response for run %s", self.key, run_id)
                return
            self._applied = seq
            if error is not None:
                self._fail(error, initial)
                return
            run, payload = result
            self.run = run
            self.error = None
            self._publish(payload)
            then(run)

        self.dispatcher.submit(work, done)

    def _fail(self, error: BaseException, initial: bool) -> None:
        if initial:
            logger.warning("%s: initial load failed: %s", self.key, error)
        else:
            logger.warning("%s: refresh failed, polling stopped: %s", self.key, error)
        self.error = str(error)
        self.state = SessionState.FAILED
        self._cancel_timer()
        if initial:
            self.viewer.render(self._failure_payload(str(error)))

    def _publish(self, payload: dict[str, Any]) -> bool:
        digest = self._digest(payload)
        if digest == self.last_payload_hash:
            logger.debug("%s: unchanged", self.key)
            return False
        self.last_payload_hash = digest
        self._accept(payload)
        self.payload = payload
        self.viewer.render(payload)
        return True

    def _start(self, run: RunInfo) -> None:
        if run.is_live:
            self.state = SessionState.POLLING
            self._schedule(self.interval, self._on_tick)
            logger.info("%s: polling every %ss", self.key, self.interval)
        elif run.is_terminal:
            self.state = SessionState.TERMINAL
        else:
            self.state = SessionState.IDLE

    def _after_refresh(self, run: RunInfo) -> None:
        if self.state in (SessionState.IDLE, SessionState.FAILED, SessionState.TERMINAL):
            self._start(run)

    def _continue(self, run: RunInfo) -> None:
        if self.state != SessionState.POLLING:
            return
        if run.is_terminal:
            logger.info("%s: run %s completed, final refresh in %ss", self.key, run.id, self.grace_delay)
            self._schedule(self.grace_delay, self._on_grace)
        else:
            self._schedule(self.interval, self._on_tick)

    def _finish(self, run: RunInfo) -> None:
        if self.state == SessionState.POLLING:
            self.state = SessionState.TERMINAL
            logger.info("%s: polling stopped", self.key)

    def _on_tick(self) -> None:
        self._handle = None
        if not self.is_active or self.state != SessionState.POLLING:
            return
        self._request(self._continue)

    def _on_grace(self) -> None:
        self._handle = None
        if not self.is_active or self.state != SessionState.POLLING:
            return
        self._request(self._finish)


class RunStatusSession(PollingSession):
    """Keeps a run's stage tree and live layout up to date."""

    kind = "run"

    def __init__(self, *args: Any, store: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.store = store
        self.definitions: list[StageDefinition] | None = None

    def _load(self, run: RunInfo) -> dict[str, Any]:
        if self.definitions is None:
            self.definitions = fetch_stage_definitions(self.store, run.pipeline_id)
        return self._fetch(run)

    def _fetch(self, run: RunInfo) -> dict[str, Any]:
        records = parse_timeline(self.service.get_timeline(run.id))
        nodes = assemble_stage_tree(records, self.definitions or [])
        return build_run_payload(run, nodes)

    def follow(self, run_id: int) -> None:
        """Point the session at *run_id* (e.g. after a retry) and reload."""
        self._cancel_timer()
        if run_id != self.run_id:
            self.run_id = run_id
            self.run = None
            self.definitions = None
            self.last_payload_hash = None
        self.state = SessionState.IDLE
        self.open()


class LogTailSession(PollingSession):
    """Tails one log of a run. Can be paused without losing content."""

    kind = "log"

    def __init__(self, *args: Any, log_id: int, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.log_id = log_id
        self.content = ""

    def _fetch(self, run: RunInfo) -> dict[str, Any]:
        content = self.service.get_log_content(run.id, self.log_id) or ""
        return {
            "run_id": run.id,
            "log_id": self.log_id,
            "content": content,
            "line_count": len(content.splitlines()),
            "streaming": run.is_live,
        }

    def _digest(self, payload: dict[str, Any]) -> str:
        content = payload["content"]
        sha = hashlib.sha256(content.encode("utf-8")).hexdigest()
        return f"{payload['streaming']}:{len(content)}:{sha}"

    def _accept(self, payload: dict[str, Any]) -> None:
        content = payload["content"]
        if content.startswith(self.content):
            payload["appended"], payload["reset"] = content[len(self.content):], False
        else:
            payload["appended"], payload["reset"] = content, True
        self.content = content

    def _failure_payload(self, message: str) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "log_id": self.log_id,
            "content": self.content,
            "appended": "",
            "reset": False,
            "line_count": len(self.content.splitlines()),
            "streaming": False,
            "error": message,
        }

    def pause(self) -> bool:
        """Stop polling, keeping identity and fetched content."""
        if not self.is_active or self.state != SessionState.POLLING:
            return False
        self._cancel_timer()
        self.state = SessionState.PAUSED
        logger.info("%s: paused", self.key)
        return True

    def resume(self) -> bool:
        """Fetch immediately and resume polling."""
        if not self.is_active or self.state != SessionState.PAUSED:
            return False
        self.state = SessionState.POLLING
        logger.info("%s: resumed", self.key)
        self._request(self._continue)
        return True


class LiveSyncCoordinator:
    """Opens, deduplicates and tears down viewers and their sessions.

    Viewer operations touch session state and belong on the scheduler's
    thread. ``snapshot``, ``stage_layout``, ``start_run``,
    ``request_cancel`` and ``request_retry`` only talk to the service and
    may run on worker threads.
    """

    def __init__(
        self,
        service: Any,
        store: Any,
        scheduler: Scheduler,
        registry: ViewerRegistry | None = None,
        settings: Settings | None = None,
        dispatcher: Dispatcher | None = None,
    ):
        self.service = service
        self.store = store
        self.scheduler = scheduler
        self.registry = registry if registry is not None else ViewerRegistry()
        self.settings = settings or Settings()
        self.dispatcher = dispatcher or InlineDispatcher()

    # -- viewers ----------------------------------------------------------

    def open_run(self, run_id: int, viewer: Viewer) -> RunStatusSession:
        """Open (or reveal) the status viewer of a run."""

        def create() -> RunStatusSession:
            return RunStatusSession(
                status_key(run_id),
                run_id,
                self.service,
                self.scheduler,
                viewer,
                interval=self.settings.status_interval,
                grace_delay=self.settings.grace_delay,
                dispatcher=self.dispatcher,
                store=self.store,
            )

        session, created = self.registry.open(status_key(run_id), create)
        if created:
            session.open()
        return session

    def open_log(self, run_id: int, log_id: int, viewer: Viewer) -> LogTailSession:
        """Open (or reveal) the live log viewer of one log of a run."""

        def create() -> LogTailSession:
            return LogTailSession(
                log_key(run_id, log_id),
                run_id,
                self.service,
                self.scheduler,
                viewer,
                interval=self.settings.log_interval,
                grace_delay=self.settings.grace_delay,
                dispatcher=self.dispatcher,
                log_id=log_id,
            )

        session, created = self.registry.open(log_key(run_id, log_id), create)
        if created:
            session.open()
        return session

    def close(self, key: Hashable) -> bool:
        return self.registry.dispose(key)

    def close_run(self, run_id: int) -> bool:
        return self.close(status_key(run_id))

    def close_log(self, run_id: int, log_id: int) -> bool:
        return self.close(log_key(run_id, log_id))

    def refresh_run(self, run_id: int) -> bool:
        """Refresh an open status viewer now. False if none is open."""
        session = self.registry.get(status_key(run_id))
        return session.refresh() if session is not None else False

    def refresh_log(self, run_id: int, log_id: int) -> bool:
        session = self.registry.get(log_key(run_id, log_id))
        return session.refresh() if session is not None else False

    def pause_log(self, run_id: int, log_id: int) -> bool:
        session = self.registry.get(log_key(run_id, log_id))
        return session.pause() if session is not None else False

    def resume_log(self, run_id: int, log_id: int) -> bool:
        session = self.registry.get(log_key(run_id, log_id))
        return session.resume() if session is not None else False

    def shutdown(self) -> None:
        self.registry.dispose_all()

    # -- one-shot views ---------------------------------------------------

    def snapshot(self, run_id: int) -> dict[str, Any]:
        """Current payload of a run without opening a viewer.

        Failures come back as an error payload.
        """
        try:
            run = RunInfo.from_dict(self.service.get_run(run_id))
            definitions = fetch_stage_definitions(self.store, run.pipeline_id)
            records = parse_timeline(self.service.get_timeline(run.id))
        except Exception as e:
            logger.warning("Run %s: load failed: %s", run_id, e)
            return error_payload(str(e))
        return build_run_payload(run, assemble_stage_tree(records, definitions))

    def stage_layout(self, pipeline_id: int) -> dict[str, Any]:
        """Dependency diagram of a pipeline definition."""
        return definition_payload(fetch_stage_definitions(self.store, pipeline_id))

    # -- run actions ------------------------------------------------------

    def start_run(
        self,
        pipeline_id: int,
        branch: str | None = None,
        variables: dict[str, str] | None = None,
    ) -> RunInfo | None:
        try:
            return RunInfo.from_dict(self.service.start_run(pipeline_id, branch=branch, variables=variables))
        except Exception as e:
            logger.warning("Pipeline %s: start failed: %s", pipeline_id, e)
            return None

    def request_cancel(self, run_id: int) -> bool:
        try:
            self.service.cancel_run(run_id)
        except Exception as e:
            logger.warning("Run %s: cancel failed: %s", run_id, e)
            return False
        return True

    def request_retry(self, run_id: int) -> RunInfo | None:
        try:
            return RunInfo.from_dict(self.service.retry_run(run_id))
        except Exception as e:
            logger.warning("Run %s: retry failed: %s", run_id, e)
            return None

    def cancel_run(self, run_id: int) -> bool:
        """Cancel a run, then refresh its open status viewer."""
        if not self.request_cancel(run_id):
            return False
        self.refresh_run(run_id)
        return True

    def retry_run(self, run_id: int) -> RunInfo | None:
        """Retry a run; an open status viewer follows the retried run."""
        new_run = self.request_retry(run_id)
        if new_run is not None:
            self.follow_retry(run_id, new_run)
        return new_run

    def follow_retry(self, run_id: int, new_run: RunInfo) -> None:
        old_key, new_key = status_key(run_id), status_key(new_run.id)
        session = self.registry.get(old_key)
        if session is None:
            return
        if old_key != new_key and not self.registry.rekey(old_key, new_key):
            # Another viewer already shows the retried run
            self.registry.dispose(old_key)
            self.registry.get(new_key).viewer.reveal()
            return
        session.follow(new_run.id)

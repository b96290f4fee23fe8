"""
Data model for the pipeline run viewer.

Stage definitions recovered from pipeline text, timeline records supplied
by the execution service, and the derived stage/job/task tree and layout
columns handed to the presentation layer.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

# Run status values (compared case-insensitively)
STATUS_NOT_STARTED = "notStarted"
STATUS_IN_PROGRESS = "inProgress"
STATUS_CANCELLING = "cancelling"
STATUS_POSTPONED = "postponed"
STATUS_COMPLETED = "completed"

# Statuses for which opening a viewer starts polling
LIVE_STATUSES = {STATUS_IN_PROGRESS.lower(), STATUS_NOT_STARTED.lower()}
TERMINAL_STATUSES = {STATUS_COMPLETED.lower()}

RECORD_STAGE = "Stage"
RECORD_PHASE = "Phase"
RECORD_JOB = "Job"
RECORD_TASK = "Task"

RESULT_SUCCEEDED = "succeeded"

# Upstream emits up to 7 fractional digits; datetime accepts at most 6.
_RE_FRACTION = re.compile(r"\.(\d{6})\d+")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp from the service into an aware datetime.

    Returns None for missing or unparsable values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _RE_FRACTION.sub(r".\1", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class StageDefinition:
    """A stage declared in the pipeline definition text."""

    internal_name: str
    display_name: str | None = None
    depends_on: tuple[str, ...] = ()

    @property
    def key(self) -> str:
        return self.internal_name.lower()

    @property
    def label(self) -> str:
        return self.display_name or self.internal_name

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.internal_name,
            "display_name": self.display_name,
            "depends_on": list(self.depends_on),
        }


@dataclass(frozen=True)
class Issue:
    type: str
    message: str
    category: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Issue:
        return cls(
            type=str(data.get("type", "")),
            message=str(data.get("message", "")),
            category=str(data.get("category") or ""),
        )


@dataclass(frozen=True)
class TimelineRecord:
    """One entry of a run's timeline (stage, phase, job or task)."""

    id: str
    type: str
    name: str
    state: str = ""
    parent_id: str | None = None
    identifier: str | None = None
    result: str | None = None
    order: int | None = None
    start_time: datetime | None = None
    finish_time: datetime | None = None
    log_id: int | None = None
    current_operation: str | None = None
    percent_complete: int | None = None
    issues: tuple[Issue, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TimelineRecord:
        """Build a record from the service's JSON shape."""
        log = data.get("log") or {}
        log_id = log.get("id") if isinstance(log, dict) else None
        order = data.get("order")
        return cls(
            id=str(data["id"]),
            type=str(data.get("type", "")),
            name=str(data.get("name") or ""),
            state=str(data.get("state") or ""),
            parent_id=str(data["parentId"]) if data.get("parentId") else None,
            identifier=data.get("identifier") or None,
            result=data.get("result") or None,
            order=int(order) if isinstance(order, (int, float)) else None,
            start_time=parse_timestamp(data.get("startTime")),
            finish_time=parse_timestamp(data.get("finishTime")),
            log_id=int(log_id) if isinstance(log_id, (int, str)) and str(log_id).isdigit() else None,
            current_operation=data.get("currentOperation"),
            percent_complete=data.get("percentComplete"),
            issues=tuple(
                Issue.from_dict(i) for i in (data.get("issues") or []) if isinstance(i, dict)
            ),
        )

    @property
    def status(self) -> str:
        """Result once known, otherwise the current state."""
        return self.result or self.state

    @property
    def duration_seconds(self) -> float | None:
        if self.start_time is None or self.finish_time is None:
            return None
        return max((self.finish_time - self.start_time).total_seconds(), 0.0)


@dataclass(frozen=True)
class JobNode:
    record: TimelineRecord
    tasks: tuple[TimelineRecord, ...] = ()

    @property
    def completed_tasks(self) -> int:
        return sum(1 for t in self.tasks if t.result == RESULT_SUCCEEDED)


@dataclass(frozen=True)
class StageNode:
    """A Stage record with its jobs and resolved dependencies (display names).

    Rebuilt on every refresh, never mutated.
    """

    record: TimelineRecord
    jobs: tuple[JobNode, ...] = ()
    depends_on: tuple[str, ...] = ()

    @property
    def internal_name(self) -> str:
        return self.record.identifier or self.record.name

    @property
    def display_name(self) -> str:
        return self.record.name

    @property
    def label(self) -> str:
        return self.record.name or self.internal_name


@dataclass(frozen=True)
class LayoutColumn:
    """Stages sharing one computed depth, in encounter order."""

    depth: int
    stages: tuple[Any, ...] = ()


@dataclass(frozen=True)
class Connector:
    """An edge between adjacent layout columns: source -> target."""

    source: str
    target: str


@dataclass
class RunInfo:
    """Normalized run metadata as returned by the execution service."""

    id: int
    status: str = ""
    result: str | None = None
    name: str = ""
    pipeline_id: int | None = None
    pipeline_name: str | None = None
    source_branch: str | None = None
    queue_time: datetime | None = None
    start_time: datetime | None = None
    finish_time: datetime | None = None
    url: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunInfo:
        """Normalize both upstream run shapes (build and pipeline-run APIs).

        ``status`` falls back to ``state``; explicit ``startTime``/``finishTime``
        take precedence over ``createdDate``/``finishedDate``.
        """
        pipeline = data.get("definition") or data.get("pipeline") or {}
        if not isinstance(pipeline, dict):
            pipeline = {}
        pipeline_id = pipeline.get("id")
        return cls(
            id=int(data["id"]),
            status=str(data.get("status") or data.get("state") or ""),
            result=data.get("result") or None,
            name=str(data.get("buildNumber") or data.get("name") or ""),
            pipeline_id=int(pipeline_id) if pipeline_id is not None else None,
            pipeline_name=pipeline.get("name"),
            source_branch=data.get("sourceBranch"),
            queue_time=parse_timestamp(data.get("queueTime")),
            start_time=parse_timestamp(data.get("startTime") or data.get("createdDate")),
            finish_time=parse_timestamp(data.get("finishTime") or data.get("finishedDate")),
            url=data.get("url"),
            raw=dict(data),
        )

    @property
    def is_live(self) -> bool:
        return self.status.lower() in LIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status.lower() in TERMINAL_STATUSES

    @property
    def duration_seconds(self) -> float | None:
        if self.start_time is None or self.finish_time is None:
            return None
        return max((self.finish_time - self.start_time).total_seconds(), 0.0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "result": self.result,
            "pipeline_id": self.pipeline_id,
            "pipeline_name": self.pipeline_name,
            "source_branch": self.source_branch,
            "queue_time": _isoformat(self.queue_time),
            "start_time": _isoformat(self.start_time),
            "finish_time": _isoformat(self.finish_time),
            "url": self.url,
        }

"""
Run snapshot assembly.

Turns a run's flat timeline into a stage -> job -> task tree, annotates
stages with the dependencies declared in the pipeline definition, and
builds the JSON payloads pushed to viewers.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
from typing import Any, Iterable, Sequence

from .layout import StageLookup, build_connectors, layout_columns, layout_to_dict
from .models import (
    RECORD_JOB,
    RECORD_PHASE,
    RECORD_STAGE,
    RECORD_TASK,
    JobNode,
    RunInfo,
    StageDefinition,
    StageNode,
    TimelineRecord,
)

logger = logging.getLogger("azp_viewer.snapshot")


def format_duration(seconds: float | None) -> str:
    """Human readable duration: "2h 34m 12s", "45m 2s", "23s", "<1s"."""
    if seconds is None:
        return ""
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0 or hours > 0:
        parts.append(f"{minutes}m")
    parts.append("<1s" if total < 1 else f"{secs}s")
    return " ".join(parts)


def parse_timeline(payload: Any) -> list[TimelineRecord]:
    """Read records from a timeline response, skipping malformed entries."""
    if isinstance(payload, dict):
        raw_records = payload.get("records") or []
    elif isinstance(payload, list):
        raw_records = payload
    else:
        return []

    records: list[TimelineRecord] = []
    for raw in raw_records:
        if isinstance(raw, TimelineRecord):
            records.append(raw)
            continue
        if not isinstance(raw, dict) or not raw.get("id"):
            continue
        try:
            records.append(TimelineRecord.from_dict(raw))
        except (TypeError, ValueError) as e:
            logger.debug("Skipping malformed timeline record %r: %s", raw.get("id"), e)
    return records


def _ordered(records: Iterable[TimelineRecord]) -> list[TimelineRecord]:
    # sorted() is stable: records without an order keep encounter order, last
    return sorted(records, key=lambda r: r.order if r.order is not None else math.inf)


def _is(record: TimelineRecord, record_type: str) -> bool:
    return record.type.lower() == record_type.lower()


def match_definition(
    record: TimelineRecord, definitions: Sequence[StageDefinition]
) -> StageDefinition | None:
    """First definition whose internal or display name matches the stage record."""
    names = {n.lower() for n in (record.name, record.identifier) if n}
    for definition in definitions:
        if definition.internal_name.lower() in names:
            return definition
        if definition.display_name and definition.display_name.lower() in names:
            return definition
    return None


def _resolved_dependencies(
    definition: StageDefinition | None, lookup: StageLookup
) -> tuple[str, ...]:
    if definition is None:
        return ()
    resolved = []
    for ref in definition.depends_on:
        key = lookup.resolve(ref)
        resolved.append(lookup.by_name[key].label if key is not None else ref)
    return tuple(resolved)


def assemble_stage_tree(
    records: Sequence[TimelineRecord],
    definitions: Sequence[StageDefinition] = (),
) -> list[StageNode]:
    """Build the stage -> job -> task hierarchy of one run.

    A stage's jobs are those under its phases plus those parented to the
    stage directly (engines that omit the phase level).
    """
    children: dict[str, list[TimelineRecord]] = {}
    for record in records:
        if record.parent_id:
            children.setdefault(record.parent_id, []).append(record)

    def of_type(parent_id: str, record_type: str) -> list[TimelineRecord]:
        return _ordered(r for r in children.get(parent_id, []) if _is(r, record_type))

    lookup = StageLookup(definitions)
    roots = [r for r in records if _is(r, RECORD_STAGE) and r.parent_id is None]

    nodes: list[StageNode] = []
    for stage in _ordered(roots):
        jobs: list[TimelineRecord] = []
        for phase in of_type(stage.id, RECORD_PHASE):
            jobs.extend(of_type(phase.id, RECORD_JOB))
        jobs.extend(of_type(stage.id, RECORD_JOB))

        nodes.append(
            StageNode(
                record=stage,
                jobs=tuple(
                    JobNode(record=job, tasks=tuple(of_type(job.id, RECORD_TASK)))
                    for job in jobs
                ),
                depends_on=_resolved_dependencies(match_definition(stage, definitions), lookup),
            )
        )
    return nodes


def record_to_dict(record: TimelineRecord) -> dict[str, Any]:
    duration = record.duration_seconds
    return {
        "id": record.id,
        "name": record.name,
        "type": record.type,
        "state": record.state,
        "result": record.result,
        "status": record.status,
        "start_time": record.start_time.isoformat() if record.start_time else None,
        "finish_time": record.finish_time.isoformat() if record.finish_time else None,
        "duration": format_duration(duration) if duration is not None else "",
        "log_id": record.log_id,
        "current_operation": record.current_operation,
        "percent_complete": record.percent_complete,
        "issues": [
            {"type": i.type, "category": i.category, "message": i.message}
            for i in record.issues
        ],
    }


def stage_tree_to_dict(nodes: Sequence[StageNode]) -> list[dict[str, Any]]:
    stages = []
    for node in nodes:
        stage = record_to_dict(node.record)
        stage["internal_name"] = node.internal_name
        stage["depends_on"] = list(node.depends_on)
        stage["jobs"] = []
        for job in node.jobs:
            job_dict = record_to_dict(job.record)
            job_dict["tasks"] = [record_to_dict(t) for t in job.tasks]
            job_dict["completed_tasks"] = job.completed_tasks
            job_dict["task_count"] = len(job.tasks)
            stage["jobs"].append(job_dict)
        stages.append(stage)
    return stages


def build_run_payload(run: RunInfo | None, nodes: Sequence[StageNode]) -> dict[str, Any]:
    """Everything a run view renders: metadata, stage tree and live layout."""
    columns = layout_columns(nodes)
    payload: dict[str, Any] = {
        "run": run.to_dict() if run is not None else None,
        "stages": stage_tree_to_dict(nodes),
    }
    payload.update(layout_to_dict(columns, build_connectors(columns)))
    return payload


def definition_payload(definitions: Sequence[StageDefinition]) -> dict[str, Any]:
    """Dependency diagram of a pipeline definition (no run attached)."""
    columns = layout_columns(definitions)
    payload: dict[str, Any] = {"stages": [d.to_dict() for d in definitions]}
    payload.update(layout_to_dict(columns, build_connectors(columns)))
    return payload


def error_payload(message: str, run: RunInfo | None = None) -> dict[str, Any]:
    """Empty view carrying a load failure."""
    return {
        "run": run.to_dict() if run is not None else None,
        "stages": [],
        "columns": [],
        "connectors": [],
        "error": message,
    }


def fingerprint(payload: Any) -> str:
    """Stable hash of a payload, used to skip redundant re-renders."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

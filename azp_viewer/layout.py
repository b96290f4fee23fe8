"""
Stage graph layering.

Assigns every stage a depth (column) so that dependency edges only point
from a lower column to a higher one, and computes the connectors drawn
between adjacent columns.

Works on anything exposing ``internal_name``, ``display_name`` and
``depends_on`` (stage definitions or live stage nodes). Dependency
references may use either the internal or the display name, in any case.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Sequence

from .models import Connector, LayoutColumn

logger = logging.getLogger("azp_viewer.layout")


class StageLookup:
    """Case-insensitive resolution of stage references.

    Internal names win over display names; the first stage declared under
    a name wins.
    """

    def __init__(self, stages: Iterable[Any]):
        self.by_name: dict[str, Any] = {}
        self.display_to_key: dict[str, str] = {}
        for stage in stages:
            self.by_name.setdefault(stage.internal_name.lower(), stage)
        for key, stage in self.by_name.items():
            if stage.display_name:
                self.display_to_key.setdefault(stage.display_name.lower(), key)

    def resolve(self, reference: str) -> str | None:
        """Return the stage key a reference points at, or None."""
        ref = reference.strip().lower()
        if ref in self.by_name:
            return ref
        return self.display_to_key.get(ref)

    def parents(self, stage: Any) -> list[str]:
        """Resolved dependency keys of a stage, in declaration order."""
        own_key = stage.internal_name.lower()
        keys: list[str] = []
        for ref in stage.depends_on:
            key = self.resolve(ref)
            if key is None or key == own_key or key in keys:
                continue
            keys.append(key)
        return keys


def compute_depths(stages: Sequence[Any]) -> dict[str, int]:
    """Map each stage key (lower-cased internal name) to its depth.

    depth = 0 without resolvable dependencies, else 1 + the deepest parent.
    Unresolvable references are ignored. An edge that closes a cycle is
    ignored too, so the stage that closes it keeps depth 0 for that edge.

    When no stage ends up deeper than 0 and there is more than one stage,
    the dependency syntax is assumed unrecoverable and stages are laid out
    sequentially in declaration order. This is an approximation of author
    intent, not a guarantee.
    """
    lookup = StageLookup(stages)
    memo: dict[str, int] = {}

    def depth_of(key: str, path: frozenset[str]) -> int:
        if key in memo:
            return memo[key]
        inner_path = path | {key}
        parent_depths = []
        for parent in lookup.parents(lookup.by_name[key]):
            if parent in inner_path:
                logger.debug("Dependency cycle through %r ignored", parent)
                continue
            parent_depths.append(depth_of(parent, inner_path))
        depth = 1 + max(parent_depths) if parent_depths else 0
        memo[key] = depth
        return depth

    depths = {key: depth_of(key, frozenset()) for key in lookup.by_name}

    if len(depths) > 1 and all(d == 0 for d in depths.values()):
        depths = {key: index for index, key in enumerate(lookup.by_name)}

    return depths


def layout_columns(stages: Sequence[Any]) -> list[LayoutColumn]:
    """Group stages into columns ordered by increasing depth."""
    if not stages:
        return []
    depths = compute_depths(stages)
    grouped: dict[int, list[Any]] = {}
    for stage in stages:
        grouped.setdefault(depths[stage.internal_name.lower()], []).append(stage)
    return [LayoutColumn(depth=d, stages=tuple(grouped[d])) for d in sorted(grouped)]


def build_connectors(columns: Sequence[LayoutColumn]) -> list[Connector]:
    """One connector per (stage, satisfied dependency) between adjacent columns.

    A stage with no resolvable dependency attaches to every stage of the
    previous column.
    """
    lookup = StageLookup(s for column in columns for s in column.stages)
    connectors: list[Connector] = []
    for previous, column in zip(columns, columns[1:]):
        for stage in column.stages:
            parents = set(lookup.parents(stage))
            if parents:
                sources = [s for s in previous.stages if s.internal_name.lower() in parents]
            else:
                sources = list(previous.stages)
            for source in sources:
                connector = Connector(source=source.internal_name, target=stage.internal_name)
                if connector not in connectors:
                    connectors.append(connector)
    return connectors


def layout_to_dict(columns: Sequence[LayoutColumn], connectors: Sequence[Connector]) -> dict[str, Any]:
    """JSON-serializable diagram for the presentation layer."""
    return {
        "columns": [
            {
                "depth": column.depth,
                "stages": [
                    {"name": stage.internal_name, "label": stage.label}
                    for stage in column.stages
                ],
            }
            for column in columns
        ],
        "connectors": [{"source": c.source, "target": c.target} for c in connectors],
    }

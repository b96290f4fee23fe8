"""
Stage dependency extractor.

Scans pipeline definition text line by line and recovers the stage
declarations with their display names and ``dependsOn`` lists. This is a
narrow structural scan, not a YAML parser: anything it does not recognize
is skipped, and any failure yields an empty result.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from .models import StageDefinition

logger = logging.getLogger("azp_viewer.extractor")

_RE_STAGE = re.compile(r"^(\s*)-\s*stage:\s*(.*)$", re.IGNORECASE)
_RE_DISPLAY_NAME = re.compile(r"^\s*displayName:\s*(.+)$")
_RE_JOBS = re.compile(r"^\s*jobs:")
_RE_DEPENDS_INLINE = re.compile(r"^(\s*)dependsOn:\s*(.+)$")
_RE_DEPENDS_BLOCK = re.compile(r"^(\s*)dependsOn:\s*$")
_RE_LIST_ITEM = re.compile(r"^(\s*)-\s*(.+)$")

# Values meaning "no dependency"
_EMPTY_VALUES = {"", "null", "~", "[]"}


def _clean_value(raw: str) -> str:
    """Strip a trailing comment and one pair of surrounding quotes from a scalar."""
    value = re.sub(r"\s+#.*$", "", raw).strip()
    if value.startswith("#"):
        return ""
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        value = value[1:-1]
    return value.strip()


def _indent(line: str) -> int:
    return len(line) - len(line.lstrip(" \t"))


def _parse_inline_dependencies(raw: str) -> list[str]:
    value = re.sub(r"\s+#.*$", "", raw).strip()
    if value.startswith("["):
        items = value.strip("[]").split(",")
        deps = [_clean_value(item) for item in items]
        return [d for d in deps if d.lower() not in _EMPTY_VALUES]
    value = _clean_value(value)
    if value.lower() in _EMPTY_VALUES:
        return []
    return [value]


@dataclass
class _StageBuilder:
    internal_name: str
    property_indent: int
    display_name: str | None = None
    depends_on: list[str] = field(default_factory=list)
    # Flips off at the first "jobs:" line and never back on
    in_stage_properties: bool = True

    def build(self) -> StageDefinition:
        return StageDefinition(
            internal_name=self.internal_name,
            display_name=self.display_name,
            depends_on=tuple(self.depends_on),
        )


def _scan(text: str) -> list[StageDefinition]:
    stages: list[StageDefinition] = []
    current: _StageBuilder | None = None
    # Indentation of a bare "dependsOn:" key while its list is being read
    depends_block_indent: int | None = None

    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue

        stage_match = _RE_STAGE.match(line)
        if stage_match:
            if current is not None:
                stages.append(current.build())
            current = None
            depends_block_indent = None
            name = _clean_value(stage_match.group(2))
            if name:
                # Stage properties line up with the "stage" key, after "- "
                key_column = line.lower().index("stage")
                current = _StageBuilder(internal_name=name, property_indent=key_column)
            continue

        if current is None:
            continue

        indent = _indent(line)

        if depends_block_indent is not None:
            item_match = _RE_LIST_ITEM.match(line)
            if item_match and indent >= depends_block_indent:
                dep = _clean_value(item_match.group(2))
                if dep.lower() not in _EMPTY_VALUES:
                    current.depends_on.append(dep)
                continue
            if item_match or indent <= depends_block_indent:
                depends_block_indent = None
            else:
                continue

        if _RE_JOBS.match(line):
            current.in_stage_properties = False
            continue

        stage_level = current.in_stage_properties or indent == current.property_indent

        if current.in_stage_properties and current.display_name is None:
            display_match = _RE_DISPLAY_NAME.match(line)
            if display_match:
                display = _clean_value(display_match.group(1))
                if display:
                    current.display_name = display
                continue

        if not stage_level:
            continue

        block_match = _RE_DEPENDS_BLOCK.match(line)
        if block_match:
            current.depends_on = []
            depends_block_indent = len(block_match.group(1))
            continue

        inline_match = _RE_DEPENDS_INLINE.match(line)
        if inline_match:
            current.depends_on = _parse_inline_dependencies(inline_match.group(2))

    if current is not None:
        stages.append(current.build())
    return stages


def extract_stage_definitions(text: str | None) -> list[StageDefinition]:
    """Recover the ordered stage declarations from definition text.

    Never raises: absent, foreign or malformed text yields ``[]``.
    """
    if not text or not isinstance(text, str):
        return []
    try:
        return _scan(text)
    except Exception as e:  # advisory metadata only
        logger.warning("Could not extract stages from definition: %s", e)
        return []


def fetch_stage_definitions(store: Any, pipeline_id: Any) -> list[StageDefinition]:
    """Fetch a pipeline's definition text and extract its stages.

    A failing definition store yields ``[]``.
    """
    if pipeline_id is None:
        return []
    try:
        text = store.get_definition_text(pipeline_id)
    except Exception as e:
        logger.warning("Could not fetch definition for pipeline %s: %s", pipeline_id, e)
        return []
    stages = extract_stage_definitions(text)
    logger.debug("Pipeline %s: extracted %d stage(s)", pipeline_id, len(stages))
    return stages

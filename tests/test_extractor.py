"""Tests for the stage dependency extractor."""

import textwrap

from azp_viewer.extractor import extract_stage_definitions, fetch_stage_definitions
from azp_viewer.models import StageDefinition
from azp_viewer.service import ServiceError

from conftest import DEFINITION, FakeService


def _extract(text):
    return extract_stage_definitions(textwrap.dedent(text))


# ---------------------------------------------------------------------------
# Stage declarations
# ---------------------------------------------------------------------------


def test_extracts_stages_in_declaration_order():
    """Stages come back in order with display names and dependencies."""
    stages = extract_stage_definitions(DEFINITION)
    assert stages == [
        StageDefinition("Build", "Build app", ()),
        StageDefinition("Test", "Run tests", ("Build",)),
        StageDefinition("Deploy", None, ("Build", "Run tests")),
    ]


def test_quoted_and_commented_stage_names():
    """Quotes and trailing comments are stripped from names."""
    stages = _extract("""\
        stages:
        - stage: "Build"   # first
          displayName: 'Build it'
        - Stage: Test
    """)
    assert [s.internal_name for s in stages] == ["Build", "Test"]
    assert stages[0].display_name == "Build it"


def test_apostrophe_inside_quoted_name_is_kept():
    """Only one surrounding quote pair is removed; inner quotes survive."""
    stages = _extract("""\
        stages:
        - stage: Build
          displayName: "Bob's build"
        - stage: Ship
          dependsOn: "Bob's build"
        - stage: 'Say "hi"'
    """)
    assert stages[0].display_name == "Bob's build"
    assert stages[1].depends_on == ("Bob's build",)
    assert stages[2].internal_name == 'Say "hi"'


def test_stage_without_name_is_skipped():
    """A bare '- stage:' line does not produce a stage nor capture properties."""
    stages = _extract("""\
        stages:
        - stage:
          dependsOn: Nothing
        - stage: Real
    """)
    assert stages == [StageDefinition("Real")]


def test_comment_lines_are_ignored():
    """Commented-out properties do not count."""
    stages = _extract("""\
        stages:
        - stage: A
        - stage: B
          # dependsOn: A
          # displayName: Bee
    """)
    assert stages[1] == StageDefinition("B")


# ---------------------------------------------------------------------------
# dependsOn forms
# ---------------------------------------------------------------------------


def test_inline_list_dependencies():
    """dependsOn: [A, 'B'] yields both names."""
    stages = _extract("""\
        stages:
        - stage: C
          dependsOn: [A, 'B']
    """)
    assert stages[0].depends_on == ("A", "B")


def test_empty_dependency_values():
    """Empty list, null and ~ all mean no dependency."""
    for value in ("[]", "null", "~"):
        stages = _extract(f"""\
            stages:
            - stage: A
              dependsOn: {value}
        """)
        assert stages[0].depends_on == (), value


def test_block_list_dependencies_end_at_dedent():
    """A block list stops at the next key of the stage."""
    stages = _extract("""\
        stages:
        - stage: C
          dependsOn:
            - "A"
            - B  # second
          jobs:
          - job: x
    """)
    assert stages[0].depends_on == ("A", "B")


def test_block_list_items_at_key_indent():
    """List items may sit at the same indentation as the dependsOn key."""
    stages = _extract("""\
        stages:
        - stage: C
          dependsOn:
          - A
          - B
          displayName: See
    """)
    assert stages[0].depends_on == ("A", "B")
    assert stages[0].display_name == "See"


def test_job_level_dependencies_are_ignored():
    """dependsOn nested under jobs belongs to a job, not the stage."""
    stages = _extract("""\
        stages:
        - stage: A
          jobs:
          - job: x
          - job: y
            dependsOn: x
    """)
    assert stages[0].depends_on == ()


def test_stage_dependency_after_jobs():
    """A stage-level dependsOn written after the jobs block is still read."""
    stages = _extract("""\
        stages:
        - stage: A
        - stage: B
          jobs:
          - job: y
            displayName: Job Y
          dependsOn: A
    """)
    assert stages[1] == StageDefinition("B", None, ("A",))


def test_job_display_name_is_not_stage_display_name():
    """Once inside jobs, displayName lines belong to jobs."""
    stages = _extract("""\
        stages:
        - stage: A
          jobs:
          - job: x
            displayName: Compile
    """)
    assert stages[0].display_name is None


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


def test_empty_or_foreign_text():
    """Absent or unrelated text yields no stages."""
    assert extract_stage_definitions(None) == []
    assert extract_stage_definitions("") == []
    assert extract_stage_definitions(42) == []
    assert extract_stage_definitions("steps:\n- script: echo hi\n") == []


def test_fetch_uses_definition_store():
    """Definitions are fetched through the store by pipeline id."""
    service = FakeService()
    stages = fetch_stage_definitions(service, 7)
    assert [s.internal_name for s in stages] == ["Build", "Test", "Deploy"]
    assert service.calls["get_definition_text"] == 1


def test_fetch_failure_yields_empty():
    """A failing store is not an error for the caller."""
    service = FakeService()
    service.fail.add("get_definition_text")
    assert fetch_stage_definitions(service, 7) == []


def test_fetch_without_pipeline_id():
    """No pipeline id, no request."""
    service = FakeService()
    assert fetch_stage_definitions(service, None) == []
    assert service.calls["get_definition_text"] == 0


def test_service_error_is_an_exception():
    assert issubclass(ServiceError, Exception)

"""Shared fixtures: a fake execution service and a virtual-clock scheduler."""

from __future__ import annotations

import asyncio
import textwrap
import threading
from collections import Counter

import pytest

from azp_viewer.service import ServiceError


DEFINITION = textwrap.dedent("""\
    trigger:
      - main

    stages:
      - stage: Build
        displayName: Build app
        jobs:
          - job: compile
            displayName: Compile sources

      - stage: Test
        displayName: Run tests
        dependsOn: Build
        jobs:
          - job: unit

      - stage: Deploy
        dependsOn:
          - Build
          - Run tests
        jobs:
          - job: ship
""")


def make_run(run_id=1, status="inProgress", result=None, pipeline_id=7):
    return {
        "id": run_id,
        "buildNumber": f"20260101.{run_id}",
        "status": status,
        "result": result,
        "definition": {"id": pipeline_id, "name": "ci"},
        "startTime": "2026-01-01T10:00:00.1234567Z",
    }


def make_timeline(stage_state="inProgress"):
    return {
        "records": [
            {"id": "s1", "type": "Stage", "name": "Build app", "identifier": "Build",
             "state": "completed", "result": "succeeded", "order": 1,
             "startTime": "2026-01-01T10:00:00Z", "finishTime": "2026-01-01T10:01:05Z"},
            {"id": "p1", "type": "Phase", "name": "compile", "parentId": "s1", "state": "completed"},
            {"id": "j1", "type": "Job", "name": "Compile sources", "parentId": "p1",
             "state": "completed", "result": "succeeded", "log": {"id": 3}},
            {"id": "t1", "type": "Task", "name": "Checkout", "parentId": "j1",
             "state": "completed", "result": "succeeded", "order": 1},
            {"id": "s2", "type": "Stage", "name": "Run tests", "identifier": "Test",
             "state": stage_state, "order": 2},
            {"id": "j2", "type": "Job", "name": "unit", "parentId": "s2", "state": stage_state},
        ]
    }


class FakeService:
    """In-memory execution service and definition store counting its calls."""

    def __init__(self, definition=DEFINITION):
        self.calls = Counter()
        self.runs = {1: make_run()}
        self.run_sequences = {}
        self.timelines = {1: make_timeline()}
        self.logs = {}
        self.definitions = {7: definition}
        self.fail = set()
        self.retry_result = None

    def _check(self, name):
        self.calls[name] += 1
        if name in self.fail:
            raise ServiceError(f"{name} failed")

    def get_run(self, run_id):
        self._check("get_run")
        sequence = self.run_sequences.get(run_id)
        if sequence:
            self.runs[run_id] = sequence.pop(0) if len(sequence) > 1 else sequence[0]
        return dict(self.runs[run_id])

    def get_timeline(self, run_id):
        self._check("get_timeline")
        return self.timelines.get(run_id, {"records": []})

    def get_log_content(self, run_id, log_id):
        self._check("get_log_content")
        content = self.logs.get((run_id, log_id), "")
        return content.pop(0) if isinstance(content, list) and len(content) > 1 else (
            content[0] if isinstance(content, list) else content
        )

    def get_definition_text(self, pipeline_id):
        self._check("get_definition_text")
        return self.definitions[pipeline_id]

    def start_run(self, pipeline_id, branch=None, variables=None):
        self._check("start_run")
        self.started = (pipeline_id, branch, variables)
        return make_run(run_id=99, status="notStarted", pipeline_id=pipeline_id)

    def cancel_run(self, run_id):
        self._check("cancel_run")
        self.runs[run_id] = dict(self.runs[run_id], status="cancelling")

    def retry_run(self, run_id):
        self._check("retry_run")
        return self.retry_result or dict(self.runs[run_id], status="notStarted")


class Gate:
    """Holds one service method in its worker thread until released."""

    def __init__(self, service, name):
        self.entered = threading.Event()
        self.release = threading.Event()
        self.returned = False
        self._call = getattr(service, name)
        setattr(service, name, self)

    def __call__(self, *args, **kwargs):
        self.entered.set()
        self.release.wait(5)
        self.returned = True
        return self._call(*args, **kwargs)


async def wait_until(condition, timeout=5.0):
    async def poll():
        while not condition():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


class _ManualHandle:
    def __init__(self, when, seq, callback):
        self.when = when
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler:
    """Virtual clock: timers only fire when the test advances time."""

    def __init__(self):
        self.now = 0.0
        self._timers = []
        self._seq = 0

    def call_later(self, delay, callback):
        handle = _ManualHandle(self.now + delay, self._seq, callback)
        self._seq += 1
        self._timers.append(handle)
        return handle

    @property
    def pending(self):
        return [t for t in self._timers if not t.cancelled]

    def advance(self, seconds):
        target = self.now + seconds
        while True:
            due = [t for t in self.pending if t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t.when, t.seq))
            self._timers.remove(timer)
            self.now = timer.when
            timer.callback()
        self._timers = self.pending
        self.now = target


class RecordingViewer:
    def __init__(self):
        self.payloads = []
        self.reveals = 0

    def render(self, payload):
        self.payloads.append(payload)

    def reveal(self):
        self.reveals += 1


@pytest.fixture
def service():
    return FakeService()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def viewer():
    return RecordingViewer()

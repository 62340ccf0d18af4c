"""Pytest fixtures and fakes for batchctl tests"""

import threading
import time

import pytest

from batchctl.db import init_db
from batchctl.models import Job, JobInput, JobResult


class FakeService:
    """Scripted ConversionService.

    `script` maps a file name to per-attempt steps; an exception step is
    raised, anything else succeeds. The last step repeats. `gate`, when set,
    holds every call until released.
    """

    def __init__(self, script=None, delay=0.0, gate=None):
        self.script = script or {}
        self.delay = delay
        self.gate = gate
        self.calls = []
        self.running = 0
        self.max_running = 0
        self._lock = threading.Lock()

    def attempts(self, name):
        with self._lock:
            return self.calls.count(name)

    def convert(self, job_input):
        with self._lock:
            self.calls.append(job_input.name)
            n = self.calls.count(job_input.name)
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        try:
            if self.gate is not None:
                self.gate.wait(5)
            if self.delay:
                time.sleep(self.delay)
            steps = self.script.get(job_input.name)
            step = steps[min(n, len(steps)) - 1] if steps else None
            if isinstance(step, BaseException):
                raise step
            return JobResult(content=f"converted:{job_input.content}")
        finally:
            with self._lock:
                self.running -= 1


class RecordingSleep:
    """Stand-in for time.sleep that records the requested pauses."""

    def __init__(self):
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, seconds):
        with self._lock:
            self.calls.append(seconds)

    @property
    def total(self):
        with self._lock:
            return sum(self.calls)


class EventCollector:
    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def notify(self, event):
        with self._lock:
            self.events.append(event)

    def of_kind(self, kind):
        with self._lock:
            return [e for e in self.events if e.kind == kind]


def make_jobs(names, **options):
    return [Job(id=n, input=JobInput(name=n, content=f"-- {n}", options=dict(options))) for n in names]


def wait_for(predicate, timeout=3.0, interval=0.005):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def collector():
    return EventCollector()


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "batchctl.db")
    init_db(path)
    return path

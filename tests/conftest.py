"""
Shared fixtures.

Every test runs against a fixed clock and in-memory ports unless it asks
for the SQL store. Handler delays go through a recording sleep, so no test
waits on the simulated work.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

import threading  # noqa: E402
from datetime import datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402

from jobrelay.db import Base, make_engine, make_session_factory  # noqa: E402
from jobrelay.errors import QueueError, StoreError  # noqa: E402
from jobrelay.models import Job, JobStatus  # noqa: E402
from jobrelay.queue import InMemoryJobQueue  # noqa: E402
from jobrelay.store import InMemoryJobStore, SqlJobStore  # noqa: E402
from jobrelay.worker.consumer import Consumer  # noqa: E402
from jobrelay.worker.handlers import build_registry  # noqa: E402

# a Monday morning, well clear of any hour boundary
FIXED_DATETIME = datetime(2026, 10, 19, 10, 15, 0, tzinfo=timezone.utc)


class MockClock:
    """Starts at FIXED_DATETIME and only moves when told to."""

    def __init__(self, start: datetime = FIXED_DATETIME):
        self._current = start

    def now(self) -> datetime:
        return self._current

    def tick(self, seconds: float = 1) -> None:
        self._current += timedelta(seconds=seconds)

    def set(self, when: datetime) -> None:
        self._current = when


class RecordingSleep:
    def __init__(self):
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class RecordingStore(InMemoryJobStore):
    """Remembers the status of every update, in order."""

    def __init__(self):
        super().__init__()
        self.updates: list[tuple[str, JobStatus]] = []

    def update(self, job: Job) -> None:
        self.updates.append((job.id, job.status))
        super().update(job)


class FailingStore(InMemoryJobStore):
    """Raises StoreError on update() when the job is in one of `fail_on`."""

    def __init__(self, fail_on=(), fail_get: bool = False):
        super().__init__()
        self.fail_on = set(fail_on)
        self.fail_get = fail_get

    def get(self, job_id: str) -> Job:
        if self.fail_get:
            raise StoreError("connection refused")
        return super().get(job_id)

    def update(self, job: Job) -> None:
        if job.status in self.fail_on:
            raise StoreError(f"write failed for {job.status.value}")
        super().update(job)


class FlakyQueue:
    """
    Wraps an InMemoryJobQueue: the first `failures` receives raise, and the
    first empty receive afterwards sets `stop_event`.
    """

    def __init__(self, inner: InMemoryJobQueue, stop_event: threading.Event, failures: int = 0):
        self.inner = inner
        self.stop_event = stop_event
        self.failures = failures
        self.receive_calls = 0
        self.fail_delete = False

    def send(self, job_id: str) -> None:
        self.inner.send(job_id)

    def receive(self):
        self.receive_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise QueueError("connection reset by peer")
        batch = self.inner.receive()
        if not batch:
            self.stop_event.set()
        return batch

    def delete(self, receipt: str) -> None:
        if self.fail_delete:
            raise QueueError("delete timed out")
        self.inner.delete(receipt)

    def ping(self) -> None:
        return None


@pytest.fixture
def clock() -> MockClock:
    return MockClock()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def stop_event() -> threading.Event:
    return threading.Event()


@pytest.fixture
def memory_store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def memory_queue() -> InMemoryJobQueue:
    return InMemoryJobQueue()


@pytest.fixture
def sql_store():
    engine = make_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    yield SqlJobStore(make_session_factory(engine))
    engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def store(request):
    """Both store implementations, for tests of the persistence port itself."""
    if request.param == "memory":
        return InMemoryJobStore()
    return request.getfixturevalue("sql_store")


@pytest.fixture
def make_job(clock):
    """Build a job at the mock clock's time, optionally in a given state."""

    def _make(job_type: str = "data-processing", data: str = "payload", status: JobStatus = JobStatus.pending, **overrides):
        job = Job.new(job_type, data, clock.now())
        job.status = status
        for key, value in overrides.items():
            setattr(job, key, value)
        return job

    return _make


@pytest.fixture
def registry(memory_store, clock, sleeper):
    return build_registry(memory_store, clock=clock.now, sleep=sleeper, timer=lambda: 0.0)


@pytest.fixture
def consumer(memory_store, memory_queue, registry, stop_event, clock, sleeper):
    return Consumer(memory_store, memory_queue, registry, stop_event, clock=clock.now, sleep=sleeper)

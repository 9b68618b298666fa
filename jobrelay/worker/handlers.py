"""
Job-type handlers and the registry that picks one for a job.

A handler turns a job into a JobResult or raises; it never touches the
job's status. Types without a registered handler go to the registry's
default handler, so new types can be submitted without a code change.
"""

import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone, tzinfo
from datetime import time as dtime
from typing import Callable, Optional

from ..errors import JobRelayError, StoreError
from ..models import Job, JobResult, JobStatus, utcnow
from ..store import JobStore

log = logging.getLogger("worker.handlers")

CLEANUP = "cleanup"
HEALTH_REPORT = "health-report"
DATA_AGGREGATION = "data-aggregation"
BATCH_IMPORT = "batch-import"
DATA_PROCESSING = "data-processing"

Clock = Callable[[], datetime]
Sleep = Callable[[float], None]


class JobHandlerError(JobRelayError):
    """A handler could not produce a result; the text ends up in Job.error."""


class JobHandler(ABC):
    @abstractmethod
    def execute(self, job: Job) -> JobResult:
        """Run the work for `job` and return its result, or raise."""
        ...


class CleanupHandler(JobHandler):
    """Deletes completed jobs last updated more than `retention` ago."""

    def __init__(self, store: JobStore, clock: Clock = utcnow, retention: timedelta = timedelta(days=7)):
        self.store = store
        self.clock = clock
        self.retention = retention

    def execute(self, job: Job) -> JobResult:
        cutoff = self.clock() - self.retention
        try:
            deleted = self.store.delete_completed_before(cutoff)
        except StoreError as e:
            raise JobHandlerError(f"failed to cleanup old jobs: {e}") from e
        log.info(
            f"deleted {deleted} completed jobs older than {cutoff.isoformat()}",
            extra={"job_id": job.id, "event": "cleanup_done", "count": deleted},
        )
        return JobResult(
            processed_at=self.clock(),
            input_count=deleted,
            message=f"Cleaned up {deleted} old completed jobs",
        )


class HealthReportHandler(JobHandler):
    def __init__(self, store: JobStore, clock: Clock = utcnow):
        self.store = store
        self.clock = clock

    def counts(self) -> dict[str, int]:
        out = {"total": self.store.count()}
        for status in JobStatus:
            out[status.value] = self.store.count(status)
        return out

    def execute(self, job: Job) -> JobResult:
        try:
            c = self.counts()
        except StoreError as e:
            raise JobHandlerError(f"failed to build health report: {e}") from e
        log.info(
            f"health report: {c}",
            extra={"job_id": job.id, "event": "health_report", "count": c["total"]},
        )
        return JobResult(
            processed_at=self.clock(),
            input_count=c["total"],
            message=(
                f"Health report: Total={c['total']}, Pending={c['pending']}, "
                f"Processing={c['processing']}, Completed={c['completed']}, Failed={c['failed']}"
            ),
        )


def previous_day_window(now: datetime, tz: tzinfo) -> tuple[datetime, datetime]:
    """Return [yesterday 00:00, today 00:00) in `tz` for the instant `now`."""
    today = now.astimezone(tz).date()
    yesterday = today - timedelta(days=1)
    start = datetime.combine(yesterday, dtime.min, tzinfo=tz)
    end = datetime.combine(today, dtime.min, tzinfo=tz)
    return start, end


class DataAggregationHandler(JobHandler):
    """Counts jobs created, completed and failed during the previous calendar day."""

    def __init__(self, store: JobStore, clock: Clock = utcnow, tz: tzinfo = timezone.utc):
        self.store = store
        self.clock = clock
        self.tz = tz

    def execute(self, job: Job) -> JobResult:
        start, end = previous_day_window(self.clock(), self.tz)
        day = start.date().isoformat()
        try:
            created = self.store.count_created_between(start, end)
            completed = self.store.count_updated_between(JobStatus.completed, start, end)
            failed = self.store.count_updated_between(JobStatus.failed, start, end)
        except StoreError as e:
            raise JobHandlerError(f"failed to aggregate stats for {day}: {e}") from e
        log.info(
            f"daily aggregation for {day}: created={created} completed={completed} failed={failed}",
            extra={"job_id": job.id, "event": "aggregation_done", "count": created},
        )
        return JobResult(
            processed_at=self.clock(),
            input_count=created,
            message=f"Aggregated stats for {day}: Created={created}, Completed={completed}, Failed={failed}",
        )


class BatchImportHandler(JobHandler):
    # one record per 10 characters of payload, 100ms per record
    RECORD_SIZE = 10
    SECONDS_PER_RECORD = 0.1

    def __init__(self, clock: Clock = utcnow, sleep: Sleep = time.sleep):
        self.clock = clock
        self.sleep = sleep

    @classmethod
    def estimate_records(cls, data: str) -> int:
        return len(data) // cls.RECORD_SIZE

    def execute(self, job: Job) -> JobResult:
        records = self.estimate_records(job.data)
        self.sleep(self.SECONDS_PER_RECORD * records)
        return JobResult(
            processed_at=self.clock(),
            input_count=records,
            message=f"Batch import completed: {records} records processed",
        )


class DataProcessingHandler(JobHandler):
    SECONDS_PER_CHAR = 0.01

    def __init__(self, clock: Clock = utcnow, sleep: Sleep = time.sleep):
        self.clock = clock
        self.sleep = sleep

    def execute(self, job: Job) -> JobResult:
        delay = self.SECONDS_PER_CHAR * len(job.data)
        self.sleep(delay)
        return JobResult(
            processed_at=self.clock(),
            input_count=len(job.data),
            message=f"Data processed successfully in {delay:.2f}s",
        )


class GenericHandler(JobHandler):
    """Fallback for job types nobody registered: a fixed one second of work."""

    def __init__(
        self,
        clock: Clock = utcnow,
        sleep: Sleep = time.sleep,
        timer: Callable[[], float] = time.monotonic,
        delay: float = 1.0,
    ):
        self.clock = clock
        self.sleep = sleep
        self.timer = timer
        self.delay = delay

    def execute(self, job: Job) -> JobResult:
        started = self.timer()
        self.sleep(self.delay)
        elapsed = self.timer() - started
        return JobResult(
            processed_at=self.clock(),
            input_count=len(job.data),
            message=f"Job of type '{job.type}' processed in {elapsed:.3f}s",
        )


class HandlerRegistry:
    def __init__(self, default: JobHandler):
        self.default = default
        self._handlers: dict[str, JobHandler] = {}

    def register(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    def resolve(self, job_type: str) -> JobHandler:
        return self._handlers.get(job_type, self.default)

    @property
    def job_types(self) -> list[str]:
        return sorted(self._handlers)

    def execute(self, job: Job) -> JobResult:
        handler = self.resolve(job.type)
        log.info(
            f"dispatching to {type(handler).__name__}",
            extra={"job_id": job.id, "job_type": job.type, "event": "job_dispatch"},
        )
        return handler.execute(job)


def build_registry(
    store: JobStore,
    clock: Clock = utcnow,
    sleep: Sleep = time.sleep,
    tz: tzinfo = timezone.utc,
    retention_days: int = 7,
    timer: Optional[Callable[[], float]] = None,
) -> HandlerRegistry:
    registry = HandlerRegistry(default=GenericHandler(clock, sleep, timer or time.monotonic))
    registry.register(CLEANUP, CleanupHandler(store, clock, timedelta(days=retention_days)))
    registry.register(HEALTH_REPORT, HealthReportHandler(store, clock))
    registry.register(DATA_AGGREGATION, DataAggregationHandler(store, clock, tz))
    registry.register(BATCH_IMPORT, BatchImportHandler(clock, sleep))
    registry.register(DATA_PROCESSING, DataProcessingHandler(clock, sleep))
    return registry

"""
Periodic job producer.

Triggers are plain records (a name, an APScheduler trigger and an
action) evaluated against an injectable clock, so tests can step time by
hand through run_pending(). The real process calls serve(), which does the
same thing against the wall clock until the stop event is set.

Firings run on a thread pool: a slow firing never delays the other
triggers, and a trigger can fire again while its previous firing is still
running. shutdown() stops new firings and waits for the running ones.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..errors import QueueError, SchedulerConfigError, StoreError
from ..models import utcnow
from ..queue import JobQueue
from ..store import JobStore
from ..submit import submit_job
from .handlers import BATCH_IMPORT, CLEANUP, DATA_AGGREGATION, HEALTH_REPORT, Clock

log = logging.getLogger("worker.scheduler")

CLEANUP_TRIGGER = "cleanup"
HEALTH_REPORT_TRIGGER = "health-report"
AGGREGATION_TRIGGER = "data-aggregation"
BATCH_IMPORT_SCAN_TRIGGER = "batch-import-scan"

BATCH_IMPORT_SCAN_LIMIT = 10


@dataclass
class TriggerSpec:
    name: str
    trigger: BaseTrigger
    action: Callable[[], None]


@dataclass
class _Entry:
    spec: TriggerSpec
    next_fire: Optional[datetime]


class JobProducer:
    """The actions behind the default triggers."""

    def __init__(self, store: JobStore, queue: JobQueue, clock: Clock = utcnow):
        self.store = store
        self.queue = queue
        self.clock = clock

    def _submit(self, job_type: str, data: str) -> None:
        log.info(f"running {job_type} trigger", extra={"job_type": job_type, "event": "trigger_run"})
        try:
            submit_job(self.store, self.queue, job_type, data, self.clock())
        except StoreError:
            log.error(f"failed to create {job_type} job", extra={"job_type": job_type, "event": "trigger_create_error"}, exc_info=True)
        except QueueError:
            log.error(f"failed to queue {job_type} job", extra={"job_type": job_type, "event": "trigger_queue_error"}, exc_info=True)

    def enqueue_cleanup(self) -> None:
        self._submit(CLEANUP, "Remove completed jobs older than 7 days")

    def enqueue_health_report(self) -> None:
        self._submit(HEALTH_REPORT, f"Generate system health report at {self.clock().isoformat()}")

    def enqueue_aggregation(self) -> None:
        self._submit(DATA_AGGREGATION, "Aggregate daily metrics and statistics")

    def scan_batch_imports(self) -> int:
        """Count pending batch-import jobs. Only looks; never enqueues anything."""
        try:
            pending = self.store.list_pending(BATCH_IMPORT_SCAN_LIMIT)
        except StoreError:
            log.error("failed to list pending jobs", extra={"event": "batch_scan_error"}, exc_info=True)
            return 0
        count = sum(1 for job in pending if job.type == BATCH_IMPORT)
        if count > 0:
            log.info(
                f"found {count} batch import jobs to process",
                extra={"event": "batch_scan", "count": count},
            )
        return count


def default_triggers(producer: JobProducer, start: datetime, tz: str = "UTC") -> list[TriggerSpec]:
    """
    The four built-in triggers, anchored at `start`.

    Interval triggers first fire one interval after `start`; calendar
    triggers fire on the hour and daily at 02:00 in `tz`.
    """
    try:
        return [
            TriggerSpec(
                CLEANUP_TRIGGER,
                IntervalTrigger(minutes=5, start_date=start + timedelta(minutes=5), timezone=tz),
                producer.enqueue_cleanup,
            ),
            TriggerSpec(
                HEALTH_REPORT_TRIGGER,
                CronTrigger(minute=0, second=0, start_date=start, timezone=tz),
                producer.enqueue_health_report,
            ),
            TriggerSpec(
                AGGREGATION_TRIGGER,
                CronTrigger(hour=2, minute=0, second=0, start_date=start, timezone=tz),
                producer.enqueue_aggregation,
            ),
            TriggerSpec(
                BATCH_IMPORT_SCAN_TRIGGER,
                IntervalTrigger(seconds=30, start_date=start + timedelta(seconds=30), timezone=tz),
                producer.scan_batch_imports,
            ),
        ]
    except (LookupError, TypeError, ValueError) as e:
        raise SchedulerConfigError(f"invalid trigger definition: {e}") from e


class Scheduler:
    def __init__(
        self,
        stop_event: threading.Event,
        clock: Clock = utcnow,
        max_workers: int = 8,
        max_idle: float = 1.0,
    ):
        self.stop_event = stop_event
        self.clock = clock
        self.max_idle = max_idle
        self._entries: dict[str, _Entry] = {}
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="trigger")
        self._lock = threading.Lock()
        self._accepting = True

    def register(self, specs: list[TriggerSpec], now: Optional[datetime] = None) -> None:
        """Add triggers. Any bad trigger raises SchedulerConfigError and nothing is added."""
        now = now or self.clock()
        entries = {}
        for spec in specs:
            if spec.name in self._entries or spec.name in entries:
                raise SchedulerConfigError(f"duplicate trigger: {spec.name}")
            if not callable(spec.action):
                raise SchedulerConfigError(f"trigger {spec.name} has no callable action")
            try:
                first = spec.trigger.get_next_fire_time(None, now)
            except (ValueError, TypeError) as e:
                raise SchedulerConfigError(f"trigger {spec.name}: {e}") from e
            if first is None:
                raise SchedulerConfigError(f"trigger {spec.name} never fires")
            entries[spec.name] = _Entry(spec=spec, next_fire=first)
        with self._lock:
            self._entries.update(entries)
        for name, entry in entries.items():
            log.info(
                f"registered trigger {name}, first run at {entry.next_fire.isoformat()}",
                extra={"trigger": name, "event": "trigger_registered"},
            )

    def next_fire_times(self) -> dict[str, Optional[datetime]]:
        with self._lock:
            return {name: e.next_fire for name, e in self._entries.items()}

    def run_pending(self, now: Optional[datetime] = None) -> list[str]:
        """
        Start every trigger that is due at `now` and return their names.

        Firings missed while the scheduler was behind are coalesced into one.
        """
        now = now or self.clock()
        fired = []
        with self._lock:
            if not self._accepting:
                return fired
            for name, entry in list(self._entries.items()):
                if entry.next_fire is None or entry.next_fire > now:
                    continue
                self._pool.submit(self._fire, name, entry.spec.action)
                fired.append(name)
                nxt = entry.spec.trigger.get_next_fire_time(entry.next_fire, now)
                while nxt is not None and nxt <= now:
                    nxt = entry.spec.trigger.get_next_fire_time(nxt, now)
                entry.next_fire = nxt
        return fired

    def _fire(self, name: str, action: Callable[[], None]) -> None:
        try:
            action()
        except Exception:
            log.error(f"trigger {name} failed", extra={"trigger": name, "event": "trigger_error"}, exc_info=True)

    def _idle_for(self, now: datetime) -> float:
        upcoming = [t for t in self.next_fire_times().values() if t is not None]
        if not upcoming:
            return self.max_idle
        wait = (min(upcoming) - now).total_seconds()
        return max(0.0, min(wait, self.max_idle))

    def serve(self) -> None:
        """Fire triggers against the clock until the stop event is set, then shut down."""
        log.info("scheduler started", extra={"event": "scheduler_start"})
        try:
            while not self.stop_event.is_set():
                now = self.clock()
                self.run_pending(now)
                self.stop_event.wait(self._idle_for(now))
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        with self._lock:
            if not self._accepting:
                return
            self._accepting = False
        log.info("scheduler shutting down, waiting for running triggers", extra={"event": "scheduler_stop"})
        self._pool.shutdown(wait=True)
        log.info("scheduler stopped", extra={"event": "scheduler_stopped"})

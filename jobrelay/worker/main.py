import logging
import signal
import threading
from zoneinfo import ZoneInfo

from ..db import Base, SessionLocal, engine
from ..logging_utils import setup_logging
from ..queue import RedisJobQueue
from ..redis_client import get_redis
from ..settings import settings
from ..store import SqlJobStore
from .consumer import Consumer
from .handlers import build_registry
from .scheduler import JobProducer, Scheduler, default_triggers

log = logging.getLogger("worker")


def setup_signal_handlers(stop: threading.Event) -> None:
    def _handler(signum, frame):
        log.info(f"received signal {signum}, stopping", extra={"event": "worker_signal"})
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handler)


def main():
    setup_logging(settings.log_level)
    Base.metadata.create_all(bind=engine)

    stop = threading.Event()
    store = SqlJobStore(SessionLocal)
    queue = RedisJobQueue.from_settings(get_redis(), settings)
    registry = build_registry(
        store,
        tz=ZoneInfo(settings.timezone),
        retention_days=settings.cleanup_retention_days,
    )
    log.info(
        f"handlers registered for: {', '.join(registry.job_types)}",
        extra={"event": "handlers_registered", "count": len(registry.job_types)},
    )

    consumer = Consumer(
        store,
        queue,
        registry,
        stop,
        receive_backoff=settings.receive_backoff_seconds,
    )
    scheduler = Scheduler(stop, max_workers=settings.scheduler_max_workers)
    producer = JobProducer(store, queue)
    # a bad trigger is a configuration defect: let it take the process down
    scheduler.register(default_triggers(producer, scheduler.clock(), settings.timezone))

    setup_signal_handlers(stop)

    t = threading.Thread(target=consumer.run, name="consumer", daemon=True)
    t.start()
    try:
        scheduler.serve()
    finally:
        stop.set()
        # waits out the current long poll and any job still running
        t.join()
        log.info("worker exited", extra={"event": "worker_exit"})


if __name__ == "__main__":
    main()

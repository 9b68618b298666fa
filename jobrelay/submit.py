import logging
from datetime import datetime
from typing import Optional

from .models import Job
from .queue import JobQueue
from .store import JobStore

log = logging.getLogger("submit")


def create_job(store: JobStore, job_type: str, data: str, now: Optional[datetime] = None) -> Job:
    job = Job.new(job_type, data, now)
    store.create(job)
    log.info("job created", extra={"job_id": job.id, "job_type": job.type, "event": "job_created"})
    return job


def enqueue_job(queue: JobQueue, job_id: str) -> None:
    queue.send(job_id)
    log.info("job queued", extra={"job_id": job_id, "event": "job_queued"})


def submit_job(
    store: JobStore,
    queue: JobQueue,
    job_type: str,
    data: str,
    now: Optional[datetime] = None,
) -> Job:
    """
    Create a pending job and put its id on the queue.

    A failed send leaves the job pending in the store; the QueueError is
    raised to the caller.
    """
    job = create_job(store, job_type, data, now)
    enqueue_job(queue, job.id)
    return job

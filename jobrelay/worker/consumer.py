import logging
import threading
from typing import Callable, Optional

from ..errors import JobNotFoundError, MalformedMessageError, QueueError, StoreError
from ..models import Job, JobStatus, utcnow
from ..queue import JobQueue, QueueMessage, decode_envelope
from ..store import JobStore
from .handlers import Clock, HandlerRegistry

log = logging.getLogger("worker.consumer")

DEFAULT_RECEIVE_BACKOFF = 5.0


class Consumer:
    """
    Pulls job ids off the queue and runs each job to a terminal state.

    A message is deleted only after the terminal state is saved. Anything
    that goes wrong before that leaves the message on the queue, and it comes
    back once its visibility timeout runs out. Handler errors are not
    transport errors: the job is saved as failed and the message is deleted.
    """

    def __init__(
        self,
        store: JobStore,
        queue: JobQueue,
        registry: HandlerRegistry,
        stop_event: threading.Event,
        receive_backoff: float = DEFAULT_RECEIVE_BACKOFF,
        clock: Clock = utcnow,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.store = store
        self.queue = queue
        self.registry = registry
        self.stop_event = stop_event
        self.receive_backoff = receive_backoff
        self.clock = clock
        # waiting on the stop event lets a shutdown cut the backoff short
        self.sleep = sleep or stop_event.wait

    def run(self) -> None:
        log.info("worker started", extra={"event": "worker_start"})
        while not self.stop_event.is_set():
            try:
                self.poll_once()
            except QueueError:
                log.error(
                    f"failed to receive messages, retrying in {self.receive_backoff}s",
                    extra={"event": "queue_receive_error"},
                    exc_info=True,
                )
                self.sleep(self.receive_backoff)
            except Exception:
                # messages left unacked come back after their visibility timeout
                log.error("worker loop error", extra={"event": "worker_loop_error"}, exc_info=True)
                self.sleep(self.receive_backoff)
        log.info("worker stopped", extra={"event": "worker_stop"})

    def poll_once(self) -> int:
        """Receive one batch and process it in delivery order. Raises QueueError on receive failure."""
        messages = self.queue.receive()
        for msg in messages:
            self.handle_message(msg)
        return len(messages)

    def handle_message(self, msg: QueueMessage) -> Optional[Job]:
        """
        Process one message. Returns the job as saved in its terminal state,
        or None when the message was left on the queue.
        """
        try:
            job_id = decode_envelope(msg.body)
        except MalformedMessageError as e:
            log.error(f"skipping malformed message, leaving it queued: {e}", extra={"event": "message_malformed"})
            return None

        try:
            job = self.store.get(job_id)
        except JobNotFoundError:
            log.warning("job not found in store", extra={"job_id": job_id, "event": "job_missing_db"})
            return None
        except StoreError:
            log.error("failed to load job", extra={"job_id": job_id, "event": "job_load_error"}, exc_info=True)
            return None

        previous = job.begin_processing(self.clock())
        if previous is not JobStatus.pending:
            log.warning(
                f"job redelivered while {previous.value}, processing again",
                extra={"job_id": job.id, "status": previous.value, "event": "job_redelivered"},
            )
        try:
            self.store.update(job)
        except StoreError:
            log.error(
                "failed to mark job processing",
                extra={"job_id": job.id, "event": "job_persist_error"},
                exc_info=True,
            )
            return None
        log.info(
            "processing job",
            extra={"job_id": job.id, "job_type": job.type, "status": job.status.value, "event": "job_processing"},
        )

        try:
            result = self.registry.execute(job)
        except Exception as e:
            job.fail(str(e) or type(e).__name__, self.clock())
            log.warning(
                f"job failed: {e}",
                extra={"job_id": job.id, "job_type": job.type, "event": "job_failed"},
                exc_info=True,
            )
        else:
            job.complete(result, self.clock())

        try:
            self.store.update(job)
        except StoreError:
            log.error(
                f"failed to save {job.status.value} job, leaving message for redelivery",
                extra={"job_id": job.id, "status": job.status.value, "event": "job_persist_error"},
                exc_info=True,
            )
            return None

        try:
            self.queue.delete(msg.receipt)
        except QueueError:
            log.error(
                "failed to delete message",
                extra={"job_id": job.id, "event": "message_delete_error"},
                exc_info=True,
            )

        log.info(
            "job processed",
            extra={"job_id": job.id, "job_type": job.type, "status": job.status.value, "event": "job_processed"},
        )
        return job

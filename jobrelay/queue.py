"""
Job queue: the queue port and its implementations.

A message never carries the job payload, only the envelope
{"job_id": "<uuid>"}; the store stays the single source of truth.

RedisJobQueue is a reliable queue on plain Redis structures:

    job_queue                 LIST   envelopes waiting for a consumer
    job_processing:<receipt>  LIST   the envelope claimed under <receipt>
    job_inflight              ZSET   receipt -> visibility deadline (unix ts)

receive() reserves a receipt in job_inflight first and only then claims an
envelope into that receipt's own list with BRPOPLPUSH/RPOPLPUSH. A claimed
envelope is therefore always reachable from job_inflight, whatever fails
afterwards. delete(receipt) acks the claim. A receipt whose deadline passes
has its envelope moved back onto job_queue at the start of the next
receive(), which is how unacked messages get redelivered.
"""

import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Optional, Protocol

import redis
from pydantic import BaseModel, ValidationError

from .errors import InvalidJobIdError, MalformedMessageError, QueueError
from .models import parse_job_id

log = logging.getLogger("queue")

DEFAULT_WAIT_SECONDS = 20
DEFAULT_BATCH_SIZE = 10
DEFAULT_VISIBILITY_TIMEOUT = 30
RESTORE_BATCH = 100


class JobEnvelope(BaseModel):
    job_id: str


def encode_envelope(job_id: str) -> str:
    return JobEnvelope(job_id=str(job_id)).model_dump_json()


def decode_envelope(body: Optional[str]) -> str:
    """Return the job id carried by a message body, or raise MalformedMessageError."""
    if body is None:
        raise MalformedMessageError("message body is missing")
    try:
        envelope = JobEnvelope.model_validate_json(body)
    except ValidationError as e:
        raise MalformedMessageError(f"failed to decode message: {e}") from e
    try:
        return parse_job_id(envelope.job_id)
    except InvalidJobIdError as e:
        raise MalformedMessageError(str(e)) from e


@dataclass(frozen=True)
class QueueMessage:
    body: Optional[str]
    receipt: str


class JobQueue(Protocol):
    def send(self, job_id: str) -> None: ...

    def receive(self) -> list[QueueMessage]: ...

    def delete(self, receipt: str) -> None: ...

    def ping(self) -> None: ...


class RedisJobQueue:
    def __init__(
        self,
        r: redis.Redis,
        queue_key: str = "job_queue",
        processing_key: str = "job_processing",
        inflight_key: str = "job_inflight",
        wait_seconds: int = DEFAULT_WAIT_SECONDS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        visibility_timeout: int = DEFAULT_VISIBILITY_TIMEOUT,
    ):
        self.r = r
        self.queue_key = queue_key
        self.processing_key = processing_key
        self.inflight_key = inflight_key
        self.wait_seconds = wait_seconds
        self.batch_size = batch_size
        self.visibility_timeout = visibility_timeout

    @classmethod
    def from_settings(cls, r: redis.Redis, settings) -> "RedisJobQueue":
        return cls(
            r,
            queue_key=settings.job_queue,
            processing_key=settings.job_processing,
            inflight_key=settings.job_inflight,
            wait_seconds=settings.queue_wait_seconds,
            batch_size=settings.queue_batch_size,
            visibility_timeout=settings.visibility_timeout_seconds,
        )

    def claim_key(self, receipt: str) -> str:
        return f"{self.processing_key}:{receipt}"

    def send(self, job_id: str) -> None:
        body = encode_envelope(job_id)
        try:
            self.r.lpush(self.queue_key, body)
        except redis.RedisError as e:
            raise QueueError(f"failed to send job {job_id}: {e}") from e

    def receive(self) -> list[QueueMessage]:
        try:
            restored = self.restore_expired()
            if restored:
                log.info(f"redelivering {restored} expired messages", extra={"event": "queue_redeliver", "count": restored})

            messages = []
            while len(messages) < self.batch_size:
                receipt = uuid.uuid4().hex
                # the reservation outlives the long poll so nobody restores it mid-claim
                reserved_until = time.time() + self.wait_seconds + self.visibility_timeout
                self.r.zadd(self.inflight_key, {receipt: reserved_until})
                if messages:
                    body = self.r.rpoplpush(self.queue_key, self.claim_key(receipt))
                else:
                    body = self.r.brpoplpush(self.queue_key, self.claim_key(receipt), timeout=self.wait_seconds)
                if body is None:
                    self.r.zrem(self.inflight_key, receipt)
                    break
                messages.append(QueueMessage(body=body, receipt=receipt))

            if messages:
                deadline = time.time() + self.visibility_timeout
                pipe = self.r.pipeline()
                for m in messages:
                    pipe.zadd(self.inflight_key, {m.receipt: deadline})
                pipe.execute()
            return messages
        except redis.RedisError as e:
            raise QueueError(f"failed to receive messages: {e}") from e

    def delete(self, receipt: str) -> None:
        try:
            pipe = self.r.pipeline()
            pipe.delete(self.claim_key(receipt))
            pipe.zrem(self.inflight_key, receipt)
            removed, _ = pipe.execute()
        except redis.RedisError as e:
            raise QueueError(f"failed to delete message: {e}") from e
        if not removed:
            raise QueueError(f"unknown or expired receipt: {receipt}")

    def restore_expired(self, now: Optional[float] = None) -> int:
        """Move envelopes whose visibility deadline has passed back onto the queue."""
        now = time.time() if now is None else now
        expired = self.r.zrangebyscore(self.inflight_key, 0, now, start=0, num=RESTORE_BATCH)
        restored = 0
        for receipt in expired:
            # one atomic move per envelope; the receipt goes only once its list is empty
            while self.r.rpoplpush(self.claim_key(receipt), self.queue_key) is not None:
                restored += 1
            self.r.zrem(self.inflight_key, receipt)
        return restored

    def ping(self) -> None:
        try:
            self.r.ping()
        except redis.RedisError as e:
            raise QueueError(f"queue unreachable: {e}") from e


class InMemoryJobQueue:
    """
    Queue double with the same claim/ack/redelivery behaviour as RedisJobQueue.

    receive() does not block; an empty queue returns an empty batch at once.
    """

    def __init__(
        self,
        batch_size: int = DEFAULT_BATCH_SIZE,
        visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT,
        clock=time.monotonic,
    ):
        self.batch_size = batch_size
        self.visibility_timeout = visibility_timeout
        self._clock = clock
        self._ready: deque[Optional[str]] = deque()
        self._inflight: dict[str, tuple[Optional[str], float]] = {}
        self._lock = threading.Lock()

    def send(self, job_id: str) -> None:
        self.send_raw(encode_envelope(job_id))

    def send_raw(self, body: Optional[str]) -> None:
        with self._lock:
            self._ready.append(body)

    def receive(self) -> list[QueueMessage]:
        with self._lock:
            now = self._clock()
            for receipt, (body, deadline) in list(self._inflight.items()):
                if deadline <= now:
                    del self._inflight[receipt]
                    self._ready.append(body)
            messages = []
            while self._ready and len(messages) < self.batch_size:
                body = self._ready.popleft()
                receipt = uuid.uuid4().hex
                self._inflight[receipt] = (body, now + self.visibility_timeout)
                messages.append(QueueMessage(body=body, receipt=receipt))
            return messages

    def delete(self, receipt: str) -> None:
        with self._lock:
            if self._inflight.pop(receipt, None) is None:
                raise QueueError(f"unknown or expired receipt: {receipt}")

    def ping(self) -> None:
        return None

    @property
    def ready_count(self) -> int:
        with self._lock:
            return len(self._ready)

    @property
    def inflight_count(self) -> int:
        with self._lock:
            return len(self._inflight)

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .errors import InvalidJobIdError, InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.completed, JobStatus.failed)


ALLOWED_TRANSITIONS = {
    JobStatus.pending: frozenset({JobStatus.processing}),
    JobStatus.processing: frozenset({JobStatus.completed, JobStatus.failed}),
    JobStatus.completed: frozenset(),
    JobStatus.failed: frozenset(),
}


def parse_job_id(value) -> str:
    """Return the canonical string form of a job id, or raise InvalidJobIdError."""
    if isinstance(value, uuid.UUID):
        return str(value)
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError, AttributeError):
        raise InvalidJobIdError(str(value)) from None


@dataclass
class JobResult:
    processed_at: datetime
    input_count: int
    message: str

    def to_dict(self) -> dict:
        return {
            "processed_at": self.processed_at.isoformat(),
            "input_count": self.input_count,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "JobResult":
        processed_at = raw["processed_at"]
        if isinstance(processed_at, str):
            processed_at = datetime.fromisoformat(processed_at)
        return cls(
            processed_at=processed_at,
            input_count=int(raw["input_count"]),
            message=raw["message"],
        )


@dataclass
class Job:
    """
    A unit of asynchronous work.

    Status moves pending -> processing -> completed | failed. `result` is
    set only on the move into completed and `error` only on the move into
    failed. The store does not check any of this; the consumer drives every
    transition through the methods below.
    """

    id: str
    type: str
    data: str
    status: JobStatus = JobStatus.pending
    result: Optional[JobResult] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, job_type: str, data: str, now: Optional[datetime] = None) -> "Job":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            type=job_type,
            data=data,
            status=JobStatus.pending,
            created_at=now,
            updated_at=now,
        )

    def _move(self, target: JobStatus, now: datetime) -> None:
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.id, self.status.value, target.value)
        self.status = target
        self.updated_at = now

    def begin_processing(self, now: Optional[datetime] = None) -> JobStatus:
        """
        Move the job into processing and return the status it had before.

        A redelivered message can point at a job that is already processing
        or terminal. That job is processed again: the previous outcome is
        dropped so result/error stay exclusive, and the caller gets the old
        status back to report the redelivery.
        """
        now = now or utcnow()
        previous = self.status
        if previous is JobStatus.pending:
            self._move(JobStatus.processing, now)
        else:
            self.status = JobStatus.processing
            self.result = None
            self.error = None
            self.updated_at = now
        return previous

    def complete(self, result: JobResult, now: Optional[datetime] = None) -> None:
        self._move(JobStatus.completed, now or utcnow())
        self.result = result
        self.error = None

    def fail(self, error: str, now: Optional[datetime] = None) -> None:
        self._move(JobStatus.failed, now or utcnow())
        self.error = error
        self.result = None

"""Exceptions raised by the job store, the queue and the worker."""


class JobRelayError(Exception):
    """Base exception for all jobrelay errors."""


class StoreError(JobRelayError):
    """The job store could not complete an operation."""


class JobNotFoundError(StoreError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"job not found: {job_id}")


class InvalidJobIdError(StoreError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"invalid job id: {job_id!r}")


class QueueError(JobRelayError):
    """The queue could not send, receive or delete a message."""


class MalformedMessageError(JobRelayError):
    """A queue message has no body, cannot be decoded, or names an invalid job id."""


class InvalidTransitionError(JobRelayError):
    def __init__(self, job_id: str, current: str, target: str):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"job {job_id}: illegal transition {current} -> {target}")


class SchedulerConfigError(JobRelayError):
    """A scheduler trigger could not be registered."""

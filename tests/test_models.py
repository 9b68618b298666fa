import uuid
from datetime import timedelta

import pytest

from jobrelay.errors import InvalidJobIdError, InvalidTransitionError
from jobrelay.models import ALLOWED_TRANSITIONS, Job, JobResult, JobStatus, parse_job_id


def _result(clock):
    return JobResult(processed_at=clock.now(), input_count=3, message="ok")


class TestJobLifecycle:
    def test_new_job_is_pending_with_matching_timestamps(self, clock):
        job = Job.new("cleanup", "x", clock.now())
        assert job.status is JobStatus.pending
        assert uuid.UUID(job.id)
        assert job.created_at == job.updated_at == clock.now()
        assert job.result is None and job.error is None

    def test_pending_processing_completed(self, clock):
        job = Job.new("cleanup", "x", clock.now())
        clock.tick(1)
        assert job.begin_processing(clock.now()) is JobStatus.pending
        assert job.status is JobStatus.processing
        assert job.updated_at == clock.now()

        clock.tick(1)
        job.complete(_result(clock), clock.now())
        assert job.status is JobStatus.completed
        assert job.result.input_count == 3
        assert job.error is None
        assert job.updated_at == clock.now()
        assert job.created_at == clock.now() - timedelta(seconds=2)

    def test_pending_processing_failed(self, clock):
        job = Job.new("cleanup", "x", clock.now())
        job.begin_processing(clock.now())
        job.fail("boom", clock.now())
        assert job.status is JobStatus.failed
        assert job.error == "boom"
        assert job.result is None

    def test_cannot_complete_pending_job(self, clock):
        job = Job.new("cleanup", "x", clock.now())
        with pytest.raises(InvalidTransitionError):
            job.complete(_result(clock), clock.now())
        assert job.status is JobStatus.pending

    def test_cannot_fail_a_terminal_job(self, clock):
        job = Job.new("cleanup", "x", clock.now())
        job.begin_processing(clock.now())
        job.complete(_result(clock), clock.now())
        with pytest.raises(InvalidTransitionError):
            job.fail("late", clock.now())
        assert job.error is None

    def test_terminal_states_have_no_outgoing_edges(self):
        assert ALLOWED_TRANSITIONS[JobStatus.completed] == frozenset()
        assert ALLOWED_TRANSITIONS[JobStatus.failed] == frozenset()
        assert JobStatus.completed.is_terminal and JobStatus.failed.is_terminal
        assert not JobStatus.pending.is_terminal

    @pytest.mark.parametrize("status", [JobStatus.completed, JobStatus.failed, JobStatus.processing])
    def test_redelivered_job_is_reprocessed_from_scratch(self, clock, status):
        job = Job.new("cleanup", "x", clock.now())
        job.status = status
        job.result = _result(clock) if status is JobStatus.completed else None
        job.error = "old" if status is JobStatus.failed else None

        assert job.begin_processing(clock.now()) is status
        assert job.status is JobStatus.processing
        assert job.result is None and job.error is None


def test_result_round_trips_through_dict(clock):
    result = _result(clock)
    assert JobResult.from_dict(result.to_dict()) == result


class TestParseJobId:
    def test_canonicalises(self):
        raw = uuid.uuid4()
        assert parse_job_id(str(raw).upper()) == str(raw)
        assert parse_job_id(raw) == str(raw)

    @pytest.mark.parametrize("bad", ["", "not-a-uuid", "1234", None])
    def test_rejects_malformed(self, bad):
        with pytest.raises(InvalidJobIdError):
            parse_job_id(bad)

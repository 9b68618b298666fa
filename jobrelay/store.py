"""
Job store: the persistence port and its implementations.

SqlJobStore keeps jobs in the `jobs` table through SQLAlchemy.
InMemoryJobStore keeps them in a dict and is used by the tests and for
local runs without a database. Both hand out copies, so a Job only changes
in the store when someone calls update().
"""

from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Optional, Protocol, Union

from sqlalchemy import delete, func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .db import JobRow
from .errors import JobNotFoundError, StoreError
from .models import Job, JobResult, JobStatus, parse_job_id


DEFAULT_LIST_LIMIT = 100

StatusFilter = Optional[Union[JobStatus, str]]


def _status_filter(status: StatusFilter) -> Optional[JobStatus]:
    if status is None or status == "":
        return None
    return JobStatus(status)


def _limit(limit: int) -> int:
    return limit if limit > 0 else DEFAULT_LIST_LIMIT


class JobStore(Protocol):
    def create(self, job: Job) -> None: ...

    def get(self, job_id: str) -> Job: ...

    def update(self, job: Job) -> None: ...

    def list(self, status: StatusFilter = None, limit: int = DEFAULT_LIST_LIMIT) -> list[Job]: ...

    def list_pending(self, limit: int = DEFAULT_LIST_LIMIT) -> list[Job]: ...

    def count(self, status: StatusFilter = None) -> int: ...

    def delete_completed_before(self, cutoff: datetime) -> int: ...

    def count_created_between(self, start: datetime, end: datetime) -> int: ...

    def count_updated_between(self, status: JobStatus, start: datetime, end: datetime) -> int: ...

    def ping(self) -> None: ...


def _row_to_job(row: JobRow) -> Job:
    return Job(
        id=row.id,
        type=row.type,
        data=row.data,
        status=row.status,
        result=JobResult.from_dict(row.result) if row.result else None,
        error=row.error,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _apply(row: JobRow, job: Job) -> None:
    row.status = job.status
    row.type = job.type
    row.data = job.data
    row.result = job.result.to_dict() if job.result is not None else None
    row.error = job.error
    row.created_at = job.created_at
    row.updated_at = job.updated_at


class SqlJobStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def create(self, job: Job) -> None:
        row = JobRow(id=parse_job_id(job.id))
        _apply(row, job)
        try:
            with self._session_factory() as db:
                db.add(row)
                db.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"failed to create job {job.id}: {e}") from e

    def get(self, job_id: str) -> Job:
        job_id = parse_job_id(job_id)
        try:
            with self._session_factory() as db:
                row = db.get(JobRow, job_id)
                if row is None:
                    raise JobNotFoundError(job_id)
                return _row_to_job(row)
        except SQLAlchemyError as e:
            raise StoreError(f"failed to load job {job_id}: {e}") from e

    def update(self, job: Job) -> None:
        # Saves whatever state it is given, inserting the row when missing.
        job_id = parse_job_id(job.id)
        try:
            with self._session_factory() as db:
                row = db.get(JobRow, job_id)
                if row is None:
                    row = JobRow(id=job_id)
                    db.add(row)
                _apply(row, job)
                db.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"failed to update job {job_id}: {e}") from e

    def list(self, status: StatusFilter = None, limit: int = DEFAULT_LIST_LIMIT) -> list[Job]:
        wanted = _status_filter(status)
        stmt = select(JobRow).order_by(JobRow.created_at.desc()).limit(_limit(limit))
        if wanted is not None:
            stmt = stmt.where(JobRow.status == wanted)
        try:
            with self._session_factory() as db:
                return [_row_to_job(row) for row in db.scalars(stmt)]
        except SQLAlchemyError as e:
            raise StoreError(f"failed to list jobs: {e}") from e

    def list_pending(self, limit: int = DEFAULT_LIST_LIMIT) -> list[Job]:
        return self.list(JobStatus.pending, limit)

    def count(self, status: StatusFilter = None) -> int:
        wanted = _status_filter(status)
        stmt = select(func.count()).select_from(JobRow)
        if wanted is not None:
            stmt = stmt.where(JobRow.status == wanted)
        return self._scalar(stmt)

    def delete_completed_before(self, cutoff: datetime) -> int:
        stmt = delete(JobRow).where(
            JobRow.status == JobStatus.completed,
            JobRow.updated_at < cutoff,
        )
        try:
            with self._session_factory() as db:
                res = db.execute(stmt)
                db.commit()
                return res.rowcount or 0
        except SQLAlchemyError as e:
            raise StoreError(f"failed to delete old jobs: {e}") from e

    def count_created_between(self, start: datetime, end: datetime) -> int:
        stmt = (
            select(func.count())
            .select_from(JobRow)
            .where(JobRow.created_at >= start, JobRow.created_at < end)
        )
        return self._scalar(stmt)

    def count_updated_between(self, status: JobStatus, start: datetime, end: datetime) -> int:
        stmt = (
            select(func.count())
            .select_from(JobRow)
            .where(
                JobRow.status == status,
                JobRow.updated_at >= start,
                JobRow.updated_at < end,
            )
        )
        return self._scalar(stmt)

    def ping(self) -> None:
        try:
            with self._session_factory() as db:
                db.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            raise StoreError(f"store unreachable: {e}") from e

    def _scalar(self, stmt) -> int:
        try:
            with self._session_factory() as db:
                return int(db.scalar(stmt) or 0)
        except SQLAlchemyError as e:
            raise StoreError(f"failed to count jobs: {e}") from e


class InMemoryJobStore:
    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()

    def create(self, job: Job) -> None:
        job_id = parse_job_id(job.id)
        with self._lock:
            if job_id in self._jobs:
                raise StoreError(f"job already exists: {job_id}")
            self._jobs[job_id] = copy.deepcopy(job)

    def get(self, job_id: str) -> Job:
        job_id = parse_job_id(job_id)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return copy.deepcopy(job)

    def update(self, job: Job) -> None:
        job_id = parse_job_id(job.id)
        with self._lock:
            self._jobs[job_id] = copy.deepcopy(job)

    def list(self, status: StatusFilter = None, limit: int = DEFAULT_LIST_LIMIT) -> list[Job]:
        wanted = _status_filter(status)
        with self._lock:
            jobs = [j for j in self._jobs.values() if wanted is None or j.status is wanted]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [copy.deepcopy(j) for j in jobs[: _limit(limit)]]

    def list_pending(self, limit: int = DEFAULT_LIST_LIMIT) -> list[Job]:
        return self.list(JobStatus.pending, limit)

    def count(self, status: StatusFilter = None) -> int:
        wanted = _status_filter(status)
        with self._lock:
            return sum(1 for j in self._jobs.values() if wanted is None or j.status is wanted)

    def delete_completed_before(self, cutoff: datetime) -> int:
        with self._lock:
            doomed = [
                job_id
                for job_id, j in self._jobs.items()
                if j.status is JobStatus.completed and j.updated_at < cutoff
            ]
            for job_id in doomed:
                del self._jobs[job_id]
        return len(doomed)

    def count_created_between(self, start: datetime, end: datetime) -> int:
        with self._lock:
            return sum(1 for j in self._jobs.values() if start <= j.created_at < end)

    def count_updated_between(self, status: JobStatus, start: datetime, end: datetime) -> int:
        with self._lock:
            return sum(
                1
                for j in self._jobs.values()
                if j.status is status and start <= j.updated_at < end
            )

    def ping(self) -> None:
        return None

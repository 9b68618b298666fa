from datetime import datetime

from pydantic import BaseModel, Field

from ..models import Job

class JobCreate(BaseModel):
    type: str = Field(min_length=1, max_length=100)
    data: str = Field(min_length=1, max_length=10_000)

class JobResultOut(BaseModel):
    processed_at: datetime
    input_count: int
    message: str

class JobOut(BaseModel):
    id: str
    status: str
    type: str
    data: str
    result: JobResultOut | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job: Job) -> "JobOut":
        result = None
        if job.result is not None:
            result = JobResultOut(
                processed_at=job.result.processed_at,
                input_count=job.result.input_count,
                message=job.result.message,
            )
        return cls(
            id=job.id,
            status=job.status.value,
            type=job.type,
            data=job.data,
            result=result,
            error=job.error,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )

class JobList(BaseModel):
    jobs: list[JobOut]
    count: int

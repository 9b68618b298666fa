import uuid
import logging
from typing import Optional

import uvicorn
from fastapi import BackgroundTasks, FastAPI, Depends, HTTPException, Query, Request, Response

from ..db import Base, engine, SessionLocal
from ..errors import InvalidJobIdError, JobNotFoundError, QueueError, StoreError
from ..models import JobStatus
from ..queue import JobQueue, RedisJobQueue
from ..redis_client import get_redis
from ..settings import settings
from ..store import JobStore, SqlJobStore
from ..submit import create_job, enqueue_job
from ..logging_utils import setup_logging
from .schemas import JobCreate, JobList, JobOut

setup_logging(settings.log_level)
log = logging.getLogger("api")

app = FastAPI(title="jobrelay API", version="0.1.0")

Base.metadata.create_all(bind=engine)

_store = SqlJobStore(SessionLocal)

def get_store() -> JobStore:
    return _store

def get_queue() -> JobQueue:
    return RedisJobQueue.from_settings(get_redis(), settings)

def enqueue_in_background(queue: JobQueue, job_id: str, request_id: str) -> None:
    try:
        enqueue_job(queue, job_id)
    except QueueError:
        # the job stays pending; resubmission is up to the caller
        log.error(
            "failed to queue job",
            extra={"request_id": request_id, "job_id": job_id, "event": "job_queue_error"},
            exc_info=True,
        )

@app.middleware("http")
async def request_id_mw(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    response: Response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

@app.get("/healthz")
def healthz(request: Request):
    log.info("health ok", extra={"request_id": request.state.request_id, "event": "healthz"})
    return {"status": "healthy", "service": "api"}

@app.get("/readyz")
def readyz(
    request: Request,
    store: JobStore = Depends(get_store),
    queue: JobQueue = Depends(get_queue),
):
    try:
        store.ping()
        queue.ping()
    except (StoreError, QueueError) as e:
        log.error("not ready", extra={"request_id": request.state.request_id, "event": "readyz_fail"})
        raise HTTPException(status_code=503, detail=str(e))
    log.info("ready ok", extra={"request_id": request.state.request_id, "event": "readyz"})
    return {"ready": True}

@app.post("/jobs", response_model=JobOut, status_code=201)
def submit(
    req: JobCreate,
    request: Request,
    background_tasks: BackgroundTasks,
    store: JobStore = Depends(get_store),
    queue: JobQueue = Depends(get_queue),
):
    try:
        job = create_job(store, req.type, req.data)
    except StoreError:
        log.error("failed to create job", extra={"request_id": request.state.request_id, "event": "job_create_error"}, exc_info=True)
        raise HTTPException(status_code=500, detail="failed to create job")

    background_tasks.add_task(enqueue_in_background, queue, job.id, request.state.request_id)
    log.info(
        "job submitted",
        extra={"request_id": request.state.request_id, "job_id": job.id, "job_type": job.type, "event": "job_submitted"},
    )
    return JobOut.from_job(job)

@app.get("/jobs/{job_id}", response_model=JobOut)
def get_job(job_id: str, request: Request, store: JobStore = Depends(get_store)):
    try:
        job = store.get(job_id)
    except InvalidJobIdError:
        raise HTTPException(status_code=400, detail="invalid job ID")
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="job not found")
    except StoreError:
        log.error("failed to get job", extra={"request_id": request.state.request_id, "job_id": job_id, "event": "job_get_error"}, exc_info=True)
        raise HTTPException(status_code=500, detail="failed to get job")
    log.info(
        "job fetched",
        extra={"request_id": request.state.request_id, "job_id": job_id, "event": "job_get"},
    )
    return JobOut.from_job(job)

@app.get("/jobs", response_model=JobList)
def list_jobs(
    request: Request,
    status: Optional[JobStatus] = None,
    limit: int = Query(default=100, le=1000),
    store: JobStore = Depends(get_store),
):
    try:
        jobs = store.list(status, limit)
    except StoreError:
        log.error("failed to list jobs", extra={"request_id": request.state.request_id, "event": "job_list_error"}, exc_info=True)
        raise HTTPException(status_code=500, detail="failed to list jobs")
    return JobList(jobs=[JobOut.from_job(j) for j in jobs], count=len(jobs))

def run():
    uvicorn.run("jobrelay.api.main:app", host=settings.api_host, port=settings.api_port)

import uuid

import pytest
from fastapi.testclient import TestClient

from jobrelay.api.main import app, get_queue, get_store
from jobrelay.errors import QueueError, StoreError
from jobrelay.models import JobResult, JobStatus


class BrokenQueue:
    def send(self, job_id):
        raise QueueError("queue is down")

    def receive(self):
        return []

    def delete(self, receipt):
        return None

    def ping(self):
        raise QueueError("queue is down")


class DownStore:
    def ping(self):
        raise StoreError("database is down")

    def get(self, job_id):
        raise StoreError("database is down")


@pytest.fixture
def client(memory_store, memory_queue):
    app.dependency_overrides[get_store] = lambda: memory_store
    app.dependency_overrides[get_queue] = lambda: memory_queue
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_healthz(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy", "service": "api"}


def test_request_id_is_echoed(client):
    r = client.get("/healthz", headers={"X-Request-ID": "abc-123"})
    assert r.headers["X-Request-ID"] == "abc-123"
    assert client.get("/healthz").headers["X-Request-ID"]


class TestSubmit:
    def test_creates_pending_job_and_queues_it(self, client, memory_store, memory_queue):
        r = client.post("/jobs", json={"type": "data-processing", "data": "hello"})

        assert r.status_code == 201
        body = r.json()
        assert body["status"] == "pending"
        assert body["type"] == "data-processing"
        assert body["result"] is None and body["error"] is None
        assert memory_store.get(body["id"]).status is JobStatus.pending
        assert memory_queue.ready_count == 1

    @pytest.mark.parametrize(
        "payload",
        [
            {"type": "", "data": "x"},
            {"type": "cleanup"},
            {"type": "cleanup", "data": ""},
            {"type": "x" * 101, "data": "x"},
            {"type": "cleanup", "data": "x" * 10_001},
        ],
    )
    def test_rejects_invalid_payload(self, client, memory_store, payload):
        r = client.post("/jobs", json=payload)
        assert r.status_code == 422
        assert memory_store.count() == 0

    def test_queue_failure_still_accepts_job(self, client, memory_store):
        app.dependency_overrides[get_queue] = lambda: BrokenQueue()

        r = client.post("/jobs", json={"type": "cleanup", "data": "now"})

        assert r.status_code == 201
        assert memory_store.get(r.json()["id"]).status is JobStatus.pending


class TestGet:
    def test_returns_job_with_result(self, client, memory_store, make_job, clock):
        job = make_job("batch-import", "x" * 20)
        job.begin_processing(clock.now())
        job.complete(JobResult(clock.now(), 2, "Batch import completed: 2 records processed"), clock.now())
        memory_store.create(job)

        r = client.get(f"/jobs/{job.id}")

        assert r.status_code == 200
        body = r.json()
        assert body["status"] == "completed"
        assert body["result"]["input_count"] == 2
        assert body["result"]["message"] == "Batch import completed: 2 records processed"

    def test_invalid_id(self, client):
        assert client.get("/jobs/not-a-uuid").status_code == 400

    def test_unknown_id(self, client):
        assert client.get(f"/jobs/{uuid.uuid4()}").status_code == 404

    def test_store_failure(self, client):
        app.dependency_overrides[get_store] = lambda: DownStore()
        assert client.get(f"/jobs/{uuid.uuid4()}").status_code == 500


class TestList:
    def test_filters_by_status(self, client, memory_store, make_job):
        memory_store.create(make_job(status=JobStatus.failed, error="boom"))
        memory_store.create(make_job())
        memory_store.create(make_job())

        r = client.get("/jobs", params={"status": "pending"})

        assert r.status_code == 200
        assert r.json()["count"] == 2
        assert {j["status"] for j in r.json()["jobs"]} == {"pending"}

    def test_limit(self, client, memory_store, make_job):
        for _ in range(5):
            memory_store.create(make_job())
        assert client.get("/jobs", params={"limit": 3}).json()["count"] == 3

    def test_unknown_status(self, client):
        assert client.get("/jobs", params={"status": "lost"}).status_code == 422


class TestReadyz:
    def test_ready(self, client):
        r = client.get("/readyz")
        assert r.status_code == 200
        assert r.json() == {"ready": True}

    def test_queue_down(self, client):
        app.dependency_overrides[get_queue] = lambda: BrokenQueue()
        assert client.get("/readyz").status_code == 503

    def test_store_down(self, client):
        app.dependency_overrides[get_store] = lambda: DownStore()
        assert client.get("/readyz").status_code == 503

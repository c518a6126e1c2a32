"""HTTP surface: job creation, reads, operator actions and error mapping."""

import asyncio

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from jobengine.api.v1 import health as health_api
from jobengine.api.v1 import jobs as jobs_api
from jobengine.api.v1.router import v1_router
from jobengine.jobs.models import JobStatus, JobType


async def noop(inv):
    await inv.jobs.finish(inv.job.id)


@pytest.fixture
def registry(make_registry):
    return make_registry({JobType.REPOSE_BATCH: noop, JobType.ORGANIZE_ITEMS: noop})


@pytest.fixture
def client(jobs, registry):
    app = FastAPI()
    app.include_router(v1_router)
    jobs_api.set_jobs(jobs)
    jobs_api.set_registry(registry)
    health_api.set_registry(registry)
    yield TestClient(app)
    jobs_api.set_jobs(None)
    jobs_api.set_registry(None)
    health_api.set_registry(None)


def create(client, job_type="REPOSE_BATCH", context=None, **extra):
    body = {"type": job_type, "context": context or {"batch_id": "b1"}}
    body.update(extra)
    return client.post("/api/v1/jobs", json=body)


# ============================================================================
# TestCreateAndRead
# ============================================================================

class TestCreateAndRead:

    def test_create_starts_job(self, client, dispatcher):
        response = create(client)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "RUNNING"
        assert dispatcher.submitted == [data["job_id"]]

    def test_create_without_start(self, client, dispatcher):
        response = create(client, start=False, title="Batch b1")

        assert response.json()["status"] == "PENDING"
        assert dispatcher.submitted == []
        job = client.get(f"/api/v1/jobs/{response.json()['job_id']}").json()
        assert job["title"] == "Batch b1"
        assert job["context"]["batch_id"] == "b1"
        assert job["context"]["processed_ids"] == []

    def test_list_filters_by_status(self, client):
        create(client)
        create(client, start=False)

        assert len(client.get("/api/v1/jobs").json()) == 2
        pending = client.get("/api/v1/jobs", params={"status": "PENDING"}).json()
        assert [j["status"] for j in pending] == ["PENDING"]

    def test_unknown_job_is_404(self, client):
        assert client.get("/api/v1/jobs/missing").status_code == 404
        assert client.post("/api/v1/jobs/missing/resume").status_code == 404

    def test_invalid_context_is_422(self, client):
        assert create(client, context={"model": "x"}).status_code == 422

    def test_unknown_type_is_422(self, client):
        assert create(client, job_type="NOPE").status_code == 422

    def test_type_without_handler_is_400(self, client):
        response = create(client, job_type="CLASSIFY_IDENTITIES", context={"run_id": "r1"})
        assert response.status_code == 400
        assert "CLASSIFY_IDENTITIES" in response.json()["detail"]

    def test_events(self, client):
        job_id = create(client).json()["job_id"]

        events = client.get(f"/api/v1/jobs/{job_id}/events").json()

        assert [e["message"] for e in events] == ["Resume requested"]
        assert events[0]["metadata"]["previous_status"] == "PENDING"


# ============================================================================
# TestOperatorActions
# ============================================================================

class TestOperatorActions:

    def test_pause_then_resume(self, client, dispatcher):
        job_id = create(client).json()["job_id"]

        paused = client.post(f"/api/v1/jobs/{job_id}/pause")
        assert paused.json()["status"] == "PAUSED"

        resumed = client.post(f"/api/v1/jobs/{job_id}/resume")
        assert resumed.status_code == 200
        assert resumed.json()["accepted"] is True
        assert resumed.json()["type"] == "REPOSE_BATCH"
        assert dispatcher.submitted == [job_id, job_id]

    def test_cancel(self, client):
        job_id = create(client).json()["job_id"]
        assert client.post(f"/api/v1/jobs/{job_id}/cancel").json()["status"] == "CANCELED"

    def test_terminal_job_conflicts(self, client, jobs):
        job_id = create(client, start=False).json()["job_id"]
        asyncio.run(jobs._write(job_id, {"status": JobStatus.COMPLETED.value}))

        assert client.post(f"/api/v1/jobs/{job_id}/resume").status_code == 409
        assert client.post(f"/api/v1/jobs/{job_id}/pause").status_code == 409
        assert client.post(f"/api/v1/jobs/{job_id}/cancel").status_code == 409

    def test_requeue_failed(self, client):
        context = {"batch_id": "b1", "processed_ids": ["o0", "o1"], "failed_ids": ["o1"]}
        job_id = create(client, context=context, start=False).json()["job_id"]

        response = client.post(f"/api/v1/jobs/{job_id}/requeue-failed")

        assert response.status_code == 200
        job = client.get(f"/api/v1/jobs/{job_id}").json()
        assert job["status"] == "RUNNING"
        assert job["context"]["processed_ids"] == ["o0"]
        assert job["context"]["failed_ids"] == []

    def test_restart_creates_new_job(self, client):
        job_id = create(client).json()["job_id"]
        client.post(f"/api/v1/jobs/{job_id}/cancel")

        fresh = client.post(f"/api/v1/jobs/{job_id}/restart").json()

        assert fresh["id"] != job_id
        assert fresh["source_job_id"] == job_id
        assert fresh["status"] == "RUNNING"
        assert fresh["context"]["batch_id"] == "b1"


# ============================================================================
# TestWiring
# ============================================================================

class TestWiring:

    def test_not_initialized_is_503(self, client):
        jobs_api.set_jobs(None)
        assert client.get("/api/v1/jobs").status_code == 503

    def test_health_lists_job_types(self, client):
        data = client.get("/api/v1/health").json()

        assert data["status"] == "healthy"
        assert data["job_types"] == ["REPOSE_BATCH", "ORGANIZE_ITEMS"]
        assert data["watchdog_enabled"] is False

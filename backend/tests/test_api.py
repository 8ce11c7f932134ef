"""Test the HTTP API."""
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock
from fastapi.testclient import TestClient

from mutual_graph.api import create_app
from mutual_graph.errors import AuthenticationError
from mutual_graph.models import Job, JobStatus
from mutual_graph.runtime import build_runtime


@pytest.fixture
def runtime(config, engine):
    return build_runtime(config, engine, client=AsyncMock())


@pytest.fixture
def api(runtime):
    app = create_app(lambda: runtime, start_worker=False)
    with TestClient(app) as client:
        yield client


def test_health(api):
    response = api.get("/")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestAnalyze:

    def test_creates_job(self, api, runtime):
        response = api.post("/network/analyze/alice")

        assert response.status_code == 202
        body = response.json()
        assert body["message"] == "Network analysis job started"
        assert body["status"] == JobStatus.PENDING
        assert runtime.jobs.get(int(body["jobId"])).handle == "alice.bsky.social"

    def test_repeat_request_reuses_job(self, api):
        first = api.post("/network/analyze/alice.test").json()
        second = api.post("/network/analyze/alice.test").json()

        assert first["jobId"] == second["jobId"]

    def test_force_sets_priority(self, api, runtime):
        body = api.post("/network/analyze/alice.test", json={"force": True}).json()

        job = runtime.jobs.get(int(body["jobId"]))
        assert job.priority == 1
        assert job.payload == {"force": True}

    def test_quota_exceeded(self, api, runtime):
        now = datetime.now(timezone.utc)
        with runtime.session_factory() as db:
            db.add(Job(
                handle="alice.test",
                status=JobStatus.COMPLETED,
                refresh_count=5,
                last_refresh_date=now,
                completed_at=now,
            ))
            db.commit()

        response = api.post("/network/analyze/alice.test")

        assert response.status_code == 429
        body = response.json()
        assert body["status"] == JobStatus.RATE_LIMITED
        assert "Daily refresh limit exceeded" in body["error"]


class TestAnalysis:

    def test_unknown_handle(self, api):
        response = api.get("/network/analysis/nobody.test")

        assert response.status_code == 404
        assert response.json() == {"error": "No job found for this handle"}

    def test_active_job_status(self, api):
        job_id = api.post("/network/analyze/alice.test").json()["jobId"]

        body = api.get("/network/analysis/alice.test").json()

        assert body["jobId"] == job_id
        assert body["status"] == JobStatus.PENDING
        assert body["progress"]["stage"] == "initializing"
        assert body["progress"]["total"] == 4

    def test_cached_analysis(self, api, runtime):
        runtime.cache.store_analysis({
            "subjectId": "did:plc:alice",
            "handle": "alice.test",
            "stats": {"followers": 1, "following": 1, "mutuals": 1},
            "communities": [],
        })

        body = api.get("/network/analysis/alice.test").json()

        assert body["subjectId"] == "did:plc:alice"
        assert body["stats"]["mutuals"] == 1

    def test_falls_back_to_completed_result(self, api, runtime):
        job = runtime.jobs.create_job("alice.test")
        runtime.jobs.get_next_job()
        runtime.jobs.complete(job.id, {"subjectId": "did:plc:alice", "communities": []})

        body = api.get("/network/analysis/alice.test").json()

        assert body == {"subjectId": "did:plc:alice", "communities": []}


class TestJobs:

    def test_missing_job(self, api):
        assert api.get("/jobs/999").status_code == 404

    def test_completed_job_includes_result(self, api, runtime):
        job = runtime.jobs.create_job("alice.test")
        runtime.jobs.get_next_job()
        runtime.jobs.complete(job.id, {"ok": True})

        body = api.get(f"/jobs/{job.id}").json()

        assert body["status"] == JobStatus.COMPLETED
        assert body["result"] == {"ok": True}

    def test_events_for_finished_job(self, api, runtime):
        job = runtime.jobs.create_job("alice.test")
        runtime.jobs.get_next_job()
        runtime.jobs.fail_or_retry(job.id, "bad password", retryable=False)

        with api.stream("GET", f"/jobs/{job.id}/events") as response:
            assert response.status_code == 200
            assert response.headers["content-type"].startswith("text/event-stream")
            body = "".join(response.iter_text())

        assert body.startswith("event: status\n")
        assert '"status": "failed"' in body
        assert runtime.broker.subscriber_count(str(job.id)) == 0

    def test_events_for_missing_job(self, api):
        assert api.get("/jobs/999/events").status_code == 404


class TestMaintenance:

    def test_clear_cache(self, api, runtime):
        runtime.cache.set("profile:alice.test", {"did": "did:plc:alice"}, "short")
        runtime.cache.set("profile:bob.test", {"did": "did:plc:bob"}, "short")

        body = api.post("/network/clear-cache/alice.test").json()

        assert body["removed"] == 1
        assert runtime.cache.get("profile:alice.test", "short") is None
        assert runtime.cache.get("profile:bob.test", "short") is not None

    def test_stats(self, api):
        api.post("/network/analyze/alice.test")
        api.post("/network/analyze/bob.test")

        body = api.get("/stats").json()

        assert body == {"jobs": {"pending": 2}, "in_flight": 0}


def test_provider_auth_error_maps_to_401(runtime):
    app = create_app(lambda: runtime, start_worker=False)
    runtime.cache.clear_handle = MagicMock(
        side_effect=AuthenticationError(401, "Invalid identifier or password")
    )

    with TestClient(app) as client:
        response = client.post("/network/clear-cache/alice.test")

    assert response.status_code == 401
    assert "Invalid identifier or password" in response.json()["error"]

"""Tests for the scraper control API."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from catalog_scraper.config import Settings
from catalog_scraper.core.exceptions import (
    ConfigurationError,
    JobAlreadyRunningError,
    JobStoreError,
)
from catalog_scraper.main import app
from catalog_scraper.services.scraper_types import HealthSnapshot, Job

ITEMS = ["B0001", "B0002", "B0003"]


def make_job(**overrides) -> Job:
    values = {
        "id": "job-1",
        "total_items": 3,
        "batch_size": 5,
        "max_attempts": 2,
        "total_batches": 1,
        "status": "running",
    }
    values.update(overrides)
    return Job(**values)


@pytest.fixture
def mock_orchestrator(client, monkeypatch):
    """AsyncMock orchestrator installed on the running app."""
    orchestrator = AsyncMock()
    orchestrator.active = None
    orchestrator.worker_id = "mock-worker"
    monkeypatch.setattr(app.state, "orchestrator", orchestrator)
    return orchestrator


class TestStartJob:
    """POST /api/scraper/jobs"""

    def test_start_returns_created_job(self, client, mock_orchestrator):
        mock_orchestrator.start.return_value = SimpleNamespace(job=make_job(status="pending"))

        response = client.post("/api/scraper/jobs", json={"identifiers": ITEMS})

        assert response.status_code == 201
        data = response.json()
        assert data["id"] == "job-1"
        assert data["status"] == "pending"
        assert data["total_batches"] == 1
        mock_orchestrator.start.assert_awaited_once_with(ITEMS)

    def test_empty_identifiers_rejected(self, client, mock_orchestrator):
        response = client.post("/api/scraper/jobs", json={"identifiers": []})
        assert response.status_code == 422
        mock_orchestrator.start.assert_not_called()

    def test_configuration_error(self, client, mock_orchestrator):
        mock_orchestrator.start.side_effect = ConfigurationError(
            "Invalid scraper configuration: max_per_hour must be >= 1"
        )

        response = client.post("/api/scraper/jobs", json={"identifiers": ITEMS})

        assert response.status_code == 400
        assert response.json()["error_code"] == "CONFIGURATION_ERROR"

    def test_already_running(self, client, mock_orchestrator):
        mock_orchestrator.start.side_effect = JobAlreadyRunningError(
            "Job job-0 is already running", context={"job_id": "job-0"}
        )

        response = client.post("/api/scraper/jobs", json={"identifiers": ITEMS})

        assert response.status_code == 409
        data = response.json()
        assert data["error_code"] == "JOB_ALREADY_RUNNING"
        assert data["job_id"] == "job-0"


class TestJobQueries:
    """GET job state and progress."""

    def test_get_job_from_store(self, client, api_orchestrator, store):
        created = store.create_job(ITEMS, batch_size=5, max_attempts=2)
        store.record_outcome(created.id, "B0001", "success", 120)
        store.record_outcome(created.id, "B0002", "skipped", 80, "not available")

        response = client.get(f"/api/scraper/jobs/{created.id}")

        assert response.status_code == 200
        data = response.json()
        assert data["processed"] == 2
        assert data["succeeded"] == 1
        assert data["skipped"] == 1
        assert data["status"] == "pending"

    def test_get_missing_job(self, client, api_orchestrator):
        response = client.get("/api/scraper/jobs/missing")
        assert response.status_code == 404
        assert response.json()["error_code"] == "JOB_NOT_FOUND"

    def test_progress_filtered_by_status(self, client, api_orchestrator, store):
        created = store.create_job(ITEMS, batch_size=5, max_attempts=2)
        store.record_outcome(created.id, "B0002", "success", 120)

        response = client.get(f"/api/scraper/jobs/{created.id}/progress?status=pending")

        assert response.status_code == 200
        data = response.json()
        assert [item["identifier"] for item in data["items"]] == ["B0001", "B0003"]
        assert data["limit"] == 100

    def test_progress_for_missing_job(self, client, api_orchestrator):
        response = client.get("/api/scraper/jobs/missing/progress")
        assert response.status_code == 404


class TestJobControl:
    """Pause, resume and stop without a live run."""

    def test_stop_pending_job(self, client, api_orchestrator, store):
        created = store.create_job(ITEMS, batch_size=5, max_attempts=2)

        response = client.post(f"/api/scraper/jobs/{created.id}/stop")

        assert response.status_code == 200
        assert response.json()["status"] == "stopped"
        assert store.load_job(created.id).status == "stopped"

    def test_pause_pending_job_is_invalid(self, client, api_orchestrator, store):
        created = store.create_job(ITEMS, batch_size=5, max_attempts=2)

        response = client.post(f"/api/scraper/jobs/{created.id}/pause")

        assert response.status_code == 409
        assert response.json()["error_code"] == "INVALID_JOB_STATE"

    def test_resume_completed_job_is_invalid(self, client, api_orchestrator, store):
        created = store.create_job(ITEMS, batch_size=5, max_attempts=2)
        store.set_status(created.id, "completed")

        response = client.post(f"/api/scraper/jobs/{created.id}/resume")

        assert response.status_code == 409

    def test_resume_missing_job(self, client, api_orchestrator):
        response = client.post("/api/scraper/jobs/missing/resume")
        assert response.status_code == 404


class TestStatus:
    """GET /api/scraper/status"""

    def test_no_job_reports_stopped(self, client, api_orchestrator):
        response = client.get("/api/scraper/status")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "stopped"
        assert data["job_id"] is None

    def test_paused_job_reports_degraded(self, client, api_orchestrator, store):
        created = store.create_job(ITEMS, batch_size=5, max_attempts=2)
        store.set_status(created.id, "paused", pause_reason="daily_quota")

        response = client.get(f"/api/scraper/status?job_id={created.id}")

        data = response.json()
        assert data["status"] == "degraded"
        assert data["job_status"] == "paused"
        assert data["warnings"]

    def test_store_unavailable_returns_503(self, client, mock_orchestrator):
        mock_orchestrator.status.side_effect = JobStoreError("disk I/O error")

        response = client.get("/api/scraper/status")

        assert response.status_code == 503
        assert response.json()["error_code"] == "STORE_UNAVAILABLE"

    def test_snapshot_fields(self, client, mock_orchestrator):
        from datetime import UTC, datetime

        mock_orchestrator.status.return_value = HealthSnapshot(
            status="healthy",
            checked_at=datetime(2024, 3, 4, 15, 0, tzinfo=UTC),
            job_id="job-1",
            job_status="running",
            estimated_seconds_remaining=560.0,
            estimated_time_remaining="9m 20s",
        )

        data = client.get("/api/scraper/status").json()

        assert data["estimated_time_remaining"] == "9m 20s"
        assert data["breaker_state"] == "closed"


class TestCronPass:
    """POST /api/scraper/cron"""

    def test_pass_processes_resumable_job(self, client, api_orchestrator, store):
        created = store.create_job(ITEMS, batch_size=5, max_attempts=2)

        response = client.post("/api/scraper/cron")

        assert response.status_code == 200
        data = response.json()
        assert data["ran"] is True
        assert data["job"]["id"] == created.id
        assert data["job"]["status"] == "completed"
        assert data["job"]["processed"] == 3

    def test_pass_without_job(self, client, api_orchestrator):
        data = client.post("/api/scraper/cron").json()
        assert data["ran"] is False
        assert data["job"] is None

    def test_pass_skipped_when_running(self, client, mock_orchestrator):
        mock_orchestrator.run_pass.side_effect = JobAlreadyRunningError("Job job-1 is already running")

        data = client.post("/api/scraper/cron").json()

        assert data["ran"] is False
        assert "already running" in data["message"]

    def test_cron_secret_required(self, client, mock_orchestrator, monkeypatch):
        monkeypatch.setattr(app.state, "settings", Settings(scraper_cron_secret="s3cret"))
        mock_orchestrator.run_pass.return_value = None

        assert client.post("/api/scraper/cron").status_code == 401
        bad = client.post("/api/scraper/cron", headers={"Authorization": "Bearer nope"})
        assert bad.status_code == 401

        good = client.post("/api/scraper/cron", headers={"Authorization": "Bearer s3cret"})
        assert good.status_code == 200
        assert good.json()["ran"] is False


class TestHealthEndpoint:
    """GET /api/health"""

    def test_health_reports_scraper(self, client, api_orchestrator):
        with patch("catalog_scraper.api.health.is_redis_available", AsyncMock(return_value=False)):
            response = client.get("/api/health")

        assert response.status_code == 200
        data = response.json()
        assert data["database"] == "connected"
        assert data["redis"] == "unavailable"
        assert data["scraper"]["worker_id"] == "test-worker"
        assert data["scraper"]["active_job_id"] is None

    def test_version(self, client):
        data = client.get("/api/version").json()
        assert data["name"] == "Catalog Scraper"

    def test_orchestrator_not_initialized(self, client, monkeypatch):
        monkeypatch.setattr(app.state, "orchestrator", None)
        response = client.get("/api/scraper/status")
        assert response.status_code == 503

"""Tests for SqlJobStore persistence, claims, outcomes and leases."""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from catalog_scraper.core.exceptions import ConfigurationError, JobNotFoundError, JobStoreError
from catalog_scraper.db.models import ScraperJob, ScraperProgress
from catalog_scraper.services.job_store import SqlJobStore

ITEMS = [f"B{i:04d}" for i in range(1, 13)]


class TestCreateJob:
    """Job creation persists the job and one progress row per item."""

    def test_creates_rows(self, store, db):
        job = store.create_job(ITEMS, batch_size=5, max_attempts=2, config={"batch_size": 5})

        assert job.status == "pending"
        assert job.total_items == 12
        assert job.total_batches == 3
        assert job.processed == 0
        assert job.config == {"batch_size": 5}

        rows = db.scalars(
            select(ScraperProgress)
            .where(ScraperProgress.job_id == job.id)
            .order_by(ScraperProgress.sort_order)
        ).all()
        assert [row.identifier for row in rows] == ITEMS
        assert {row.status for row in rows} == {"pending"}
        assert [row.batch_number for row in rows] == [0] * 5 + [1] * 5 + [2] * 2

    def test_duplicates_and_blanks_dropped(self, store):
        job = store.create_job(["A", "A", " ", "B"], batch_size=5, max_attempts=2)
        assert job.total_items == 2

    def test_empty_identifiers_rejected(self, store, db):
        with pytest.raises(ConfigurationError):
            store.create_job(["", "  "], batch_size=5, max_attempts=2)
        assert db.scalars(select(ScraperJob)).all() == []


class TestClaims:
    """Batch claiming in submission order."""

    def test_batches_of_five_five_two(self, store):
        job = store.create_job(ITEMS, batch_size=5, max_attempts=2)
        first = store.claim_next_batch(job.id, 5)
        second = store.claim_next_batch(job.id, 5)
        third = store.claim_next_batch(job.id, 5)

        assert first == ITEMS[:5]
        assert second == ITEMS[5:10]
        assert third == ITEMS[10:]
        assert store.claim_next_batch(job.id, 5) == []

    def test_release_makes_items_claimable(self, store):
        job = store.create_job(ITEMS[:3], batch_size=5, max_attempts=2)
        assert store.claim_next_batch(job.id, 5) == ITEMS[:3]
        assert store.release_claims(job.id) == 3
        assert store.claim_next_batch(job.id, 5) == ITEMS[:3]

    def test_release_specific_identifiers(self, store):
        job = store.create_job(ITEMS[:3], batch_size=5, max_attempts=2)
        store.claim_next_batch(job.id, 5)
        assert store.release_claims(job.id, [ITEMS[1]]) == 1
        assert store.claim_next_batch(job.id, 5) == [ITEMS[1]]

    def test_stale_claims_reclaimed(self, store, db):
        job = store.create_job(ITEMS[:2], batch_size=5, max_attempts=2)
        store.claim_next_batch(job.id, 5)
        db.execute(
            update(ScraperProgress)
            .where(ScraperProgress.job_id == job.id)
            .values(claimed_at=datetime.utcnow() - timedelta(hours=1))
        )
        db.commit()
        assert store.claim_next_batch(job.id, 5) == ITEMS[:2]

    def test_retries_claimed_after_fresh_items(self, store):
        job = store.create_job(ITEMS[:3], batch_size=5, max_attempts=2)
        store.claim_next_batch(job.id, 5)
        store.record_outcome(job.id, ITEMS[0], "failed", 10, "network: reset")
        store.release_claims(job.id)

        assert store.claim_next_batch(job.id, 5) == [ITEMS[1], ITEMS[2], ITEMS[0]]

    def test_claim_unknown_job(self, store):
        with pytest.raises(JobNotFoundError):
            store.claim_next_batch("missing", 5)


class TestRecordOutcome:
    """Outcome writes are atomic per item."""

    def test_success(self, store):
        job = store.create_job(ITEMS[:2], batch_size=5, max_attempts=2)
        record = store.record_outcome(job.id, ITEMS[0], "success", 120)
        assert record.status == "success"
        assert record.attempts == 1
        assert record.processing_ms == 120
        assert record.completed_at is not None
        assert record.completed_at.tzinfo is not None

    def test_failure_below_max_attempts_stays_pending(self, store):
        job = store.create_job(ITEMS[:1], batch_size=5, max_attempts=2)
        record = store.record_outcome(job.id, ITEMS[0], "failed", 50, "timeout: slow")
        assert record.status == "pending"
        assert record.attempts == 1
        assert record.last_error == "timeout: slow"
        assert record.completed_at is None

    def test_failure_at_max_attempts_is_final(self, store):
        job = store.create_job(ITEMS[:1], batch_size=5, max_attempts=2)
        store.record_outcome(job.id, ITEMS[0], "failed", 50, "timeout: slow")
        record = store.record_outcome(job.id, ITEMS[0], "failed", 50, "timeout: slower")
        assert record.status == "failed"
        assert record.attempts == 2
        assert record.completed_at is not None

        # Exhausted items are never claimed again
        assert store.claim_next_batch(job.id, 5) == []

    def test_skipped(self, store):
        job = store.create_job(ITEMS[:1], batch_size=5, max_attempts=2)
        record = store.record_outcome(job.id, ITEMS[0], "skipped", 30, "not available")
        assert record.status == "skipped"

    def test_finished_item_cannot_be_recorded_twice(self, store):
        job = store.create_job(ITEMS[:1], batch_size=5, max_attempts=2)
        store.record_outcome(job.id, ITEMS[0], "success", 10)
        with pytest.raises(JobStoreError):
            store.record_outcome(job.id, ITEMS[0], "success", 10)

    def test_unknown_status_rejected(self, store):
        job = store.create_job(ITEMS[:1], batch_size=5, max_attempts=2)
        with pytest.raises(ValueError):
            store.record_outcome(job.id, ITEMS[0], "pending", 10)


class TestJobRows:
    """Counters, status and lookups."""

    def test_load_reconciles_counters_from_progress(self, store):
        job = store.create_job(ITEMS[:4], batch_size=5, max_attempts=1)
        store.record_outcome(job.id, ITEMS[0], "success", 10)
        store.record_outcome(job.id, ITEMS[1], "failed", 10, "network: reset")
        store.record_outcome(job.id, ITEMS[2], "skipped", 10)

        # Job row counters were never checkpointed, as after a crash
        loaded = store.load_job(job.id)
        assert loaded.succeeded == 1
        assert loaded.failed == 1
        assert loaded.skipped == 1
        assert loaded.processed == 3

    def test_update_job_counters_persists_checkpoint(self, store, clock):
        job = store.create_job(ITEMS[:4], batch_size=5, max_attempts=2)
        job.status = "running"
        job.started_at = clock.now()
        job.hour_count = 3
        job.day_count = 7
        job.day_reset_at = clock.now()
        job.breaker_state = "open"
        job.breaker_opened_at = clock.now()
        job.recent_errors = ["B0001: network: reset"]
        store.update_job_counters(job)

        loaded = store.load_job(job.id)
        assert loaded.status == "running"
        assert loaded.started_at == clock.now()
        assert loaded.hour_count == 3
        assert loaded.day_count == 7
        assert loaded.day_reset_at == clock.now()
        assert loaded.breaker_state == "open"
        assert loaded.breaker_opened_at == clock.now()
        assert loaded.recent_errors == ["B0001: network: reset"]

    def test_update_unknown_job(self, store):
        job = store.create_job(ITEMS[:1], batch_size=5, max_attempts=2)
        job.id = "missing"
        with pytest.raises(JobNotFoundError):
            store.update_job_counters(job)

    def test_set_status(self, store, clock):
        job = store.create_job(ITEMS[:1], batch_size=5, max_attempts=2)
        updated = store.set_status(job.id, "paused", pause_reason="operator", paused_at=clock.now())
        assert updated.status == "paused"
        assert updated.pause_reason == "operator"
        assert updated.paused_at == clock.now()

    def test_load_missing_returns_none(self, store):
        assert store.load_job("missing") is None

    def test_find_resumable_job(self, store):
        job = store.create_job(ITEMS[:1], batch_size=5, max_attempts=2)
        assert store.find_resumable_job().id == job.id

        store.set_status(job.id, "paused", pause_reason="daily_quota")
        assert store.find_resumable_job().id == job.id

        store.set_status(job.id, "paused", pause_reason="operator")
        assert store.find_resumable_job() is None

        store.set_status(job.id, "completed")
        assert store.find_resumable_job() is None
        assert store.latest_job().id == job.id


class TestLeases:
    """Single-runner lease on the job row."""

    def test_lease_excludes_other_workers(self, store):
        job = store.create_job(ITEMS[:1], batch_size=5, max_attempts=2)
        assert store.acquire_lease(job.id, "worker-a", 10)
        assert not store.acquire_lease(job.id, "worker-b", 10)
        assert store.acquire_lease(job.id, "worker-a", 10)

    def test_released_lease_can_be_taken(self, store):
        job = store.create_job(ITEMS[:1], batch_size=5, max_attempts=2)
        store.acquire_lease(job.id, "worker-a", 10)
        store.release_lease(job.id, "worker-a")
        assert store.acquire_lease(job.id, "worker-b", 10)

    def test_expired_lease_can_be_taken(self, store, db):
        job = store.create_job(ITEMS[:1], batch_size=5, max_attempts=2)
        store.acquire_lease(job.id, "worker-a", 10)
        db.execute(
            update(ScraperJob)
            .where(ScraperJob.id == job.id)
            .values(lease_expires_at=datetime.utcnow() - timedelta(minutes=1))
        )
        db.commit()
        assert store.acquire_lease(job.id, "worker-b", 10)

    def test_release_by_other_worker_is_noop(self, store):
        job = store.create_job(ITEMS[:1], batch_size=5, max_attempts=2)
        store.acquire_lease(job.id, "worker-a", 10)
        store.release_lease(job.id, "worker-b")
        assert not store.acquire_lease(job.id, "worker-b", 10)

    def test_renew_reports_takeover(self, store, db):
        job = store.create_job(ITEMS[:1], batch_size=5, max_attempts=2)
        store.acquire_lease(job.id, "worker-a", 10)
        assert store.renew_lease(job.id, "worker-a", 10)

        db.execute(
            update(ScraperJob)
            .where(ScraperJob.id == job.id)
            .values(lease_expires_at=datetime.utcnow() - timedelta(minutes=1))
        )
        db.commit()
        assert store.acquire_lease(job.id, "worker-b", 10)

        assert not store.renew_lease(job.id, "worker-a", 10)
        assert store.lease_holder(job.id) == "worker-b"

    def test_lease_holder_ignores_expired_lease(self, store, db):
        job = store.create_job(ITEMS[:1], batch_size=5, max_attempts=2)
        assert store.lease_holder(job.id) is None
        store.acquire_lease(job.id, "worker-a", 10)
        assert store.lease_holder(job.id) == "worker-a"

        db.execute(
            update(ScraperJob)
            .where(ScraperJob.id == job.id)
            .values(lease_expires_at=datetime.utcnow() - timedelta(minutes=1))
        )
        db.commit()
        assert store.lease_holder(job.id) is None


class TestControlRequests:
    """Control requests left for a run in another process."""

    def test_request_is_taken_once(self, store):
        job = store.create_job(ITEMS[:1], batch_size=5, max_attempts=2)
        store.request_action(job.id, "stop")

        assert store.take_requested_action(job.id) == "stop"
        assert store.take_requested_action(job.id) is None

    def test_checkpoint_does_not_clear_request(self, store):
        job = store.create_job(ITEMS[:1], batch_size=5, max_attempts=2)
        store.request_action(job.id, "pause")

        job.status = "running"
        store.update_job_counters(job)

        assert store.take_requested_action(job.id) == "pause"

    def test_set_status_clears_request(self, store):
        job = store.create_job(ITEMS[:1], batch_size=5, max_attempts=2)
        store.request_action(job.id, "pause")
        store.set_status(job.id, "stopped", requested_action=None)
        assert store.take_requested_action(job.id) is None

    def test_unknown_action_rejected(self, store):
        job = store.create_job(ITEMS[:1], batch_size=5, max_attempts=2)
        with pytest.raises(ValueError):
            store.request_action(job.id, "restart")

    def test_missing_job(self, store):
        with pytest.raises(JobNotFoundError):
            store.request_action("missing", "stop")


class TestListProgress:
    def test_filter_and_paginate(self, store):
        job = store.create_job(ITEMS, batch_size=5, max_attempts=2)
        store.record_outcome(job.id, ITEMS[0], "success", 10)
        store.record_outcome(job.id, ITEMS[1], "success", 10)

        succeeded = store.list_progress(job.id, status="success")
        assert [record.identifier for record in succeeded] == ITEMS[:2]

        page = store.list_progress(job.id, limit=3, offset=3)
        assert [record.identifier for record in page] == ITEMS[3:6]


class TestStoreErrors:
    """Database failures surface as JobStoreError."""

    def test_operational_error_wrapped(self):
        session = MagicMock()
        session.execute.side_effect = OperationalError("UPDATE", {}, Exception("disk I/O error"))
        store = SqlJobStore(lambda: session)

        with pytest.raises(JobStoreError):
            store.release_claims("job-1")

        session.rollback.assert_called_once()
        session.close.assert_called_once()

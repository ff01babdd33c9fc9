"""SQLAlchemy-backed job store.

Each operation runs in its own short session and commits before returning,
so progress recorded before a crash is never lost. Database failures surface
as JobStoreError. Timestamps are stored as naive UTC and returned aware.
"""

import json
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import DateTime, case, literal, null, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from catalog_scraper.core.exceptions import ConfigurationError, JobNotFoundError, JobStoreError
from catalog_scraper.db.models import ScraperJob, ScraperProgress, generate_uuid
from catalog_scraper.db.repositories import ScraperJobRepository, ScraperProgressRepository
from catalog_scraper.db.repositories.scraper import claimable_filter
from catalog_scraper.services.scraper_types import (
    CONTROL_ACTIONS,
    Job,
    ProgressRecord,
    normalize_identifiers,
    total_batches_for,
)

logger = logging.getLogger(__name__)

OUTCOME_STATUSES = frozenset({"success", "failed", "skipped"})

_DATETIME_FIELDS = frozenset(
    {
        "started_at",
        "completed_at",
        "paused_at",
        "last_activity_at",
        "breaker_opened_at",
        "hour_reset_at",
        "day_reset_at",
    }
)


def to_db_time(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def from_db_time(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _load_json(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"[SCRAPE] Ignoring malformed JSON column: {raw[:80]!r}")
        return default


def _job_values(fields: dict[str, Any]) -> dict[str, Any]:
    """Convert Job field values into column values."""
    values = {}
    for key, value in fields.items():
        if key in _DATETIME_FIELDS:
            value = to_db_time(value)
        elif key == "recent_errors":
            value = json.dumps(list(value or []))
        elif key == "config":
            value = json.dumps(value or {})
        values[key] = value
    return values


def job_from_row(row: ScraperJob, counts: dict[str, int] | None = None) -> Job:
    """Build a Job from its row, optionally reconciling counters from progress counts."""
    job = Job(
        id=row.id,
        total_items=row.total_items,
        batch_size=row.batch_size,
        max_attempts=row.max_attempts,
        total_batches=row.total_batches,
        status=row.status,
        pause_reason=row.pause_reason,
        processed=row.processed,
        succeeded=row.succeeded,
        failed=row.failed,
        skipped=row.skipped,
        current_batch=row.current_batch,
        started_at=from_db_time(row.started_at),
        completed_at=from_db_time(row.completed_at),
        paused_at=from_db_time(row.paused_at),
        last_activity_at=from_db_time(row.last_activity_at),
        avg_processing_ms=row.avg_processing_ms or 0.0,
        recent_errors=_load_json(row.recent_errors, []),
        consecutive_failures=row.consecutive_failures,
        breaker_state=row.breaker_state or "closed",
        breaker_opened_at=from_db_time(row.breaker_opened_at),
        hour_count=row.hour_count,
        hour_reset_at=from_db_time(row.hour_reset_at),
        day_count=row.day_count,
        day_reset_at=from_db_time(row.day_reset_at),
        error_message=row.error_message,
        config=_load_json(row.config, {}),
        created_at=from_db_time(row.created_at),
    )
    if counts is not None:
        job.succeeded = counts.get("success", 0)
        job.failed = counts.get("failed", 0)
        job.skipped = counts.get("skipped", 0)
        job.processed = job.succeeded + job.failed + job.skipped
    return job


def progress_from_row(row: ScraperProgress) -> ProgressRecord:
    return ProgressRecord(
        job_id=row.job_id,
        identifier=row.identifier,
        status=row.status,
        attempts=row.attempts,
        last_error=row.last_error,
        processing_ms=row.processing_ms,
        completed_at=from_db_time(row.completed_at),
        sort_order=row.sort_order,
        batch_number=row.batch_number,
    )


class SqlJobStore:
    """JobStore over the scraper_jobs / scraper_progress tables."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        claim_timeout_minutes: int = 10,
    ) -> None:
        self.session_factory = session_factory
        self.claim_timeout_minutes = claim_timeout_minutes

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"[SCRAPE] Job store error: {e}")
            raise JobStoreError(str(e)) from e
        finally:
            db.close()

    def _max_attempts(self, db: Session, job_id: str) -> int:
        max_attempts = db.scalar(select(ScraperJob.max_attempts).where(ScraperJob.id == job_id))
        if max_attempts is None:
            raise JobNotFoundError(f"Scraper job {job_id} not found", context={"job_id": job_id})
        return max_attempts

    # --- Creation ---

    def create_job(
        self,
        identifiers: list[str],
        batch_size: int,
        max_attempts: int,
        config: dict[str, Any] | None = None,
    ) -> Job:
        items = normalize_identifiers(identifiers)
        if not items:
            raise ConfigurationError("At least one item identifier is required")

        with self._session() as db:
            row = ScraperJob(
                id=generate_uuid(),
                status="pending",
                total_items=len(items),
                total_batches=total_batches_for(len(items), batch_size),
                batch_size=batch_size,
                max_attempts=max_attempts,
                recent_errors="[]",
                config=json.dumps(config or {}),
            )
            ScraperJobRepository(db).add(row)
            ScraperProgressRepository(db).add_all(
                ScraperProgress(
                    job_id=row.id,
                    identifier=identifier,
                    status="pending",
                    sort_order=position,
                    batch_number=position // batch_size,
                )
                for position, identifier in enumerate(items)
            )
            db.commit()
            db.refresh(row)
            logger.info(f"[SCRAPE] Created job {row.id} with {len(items)} items")
            return job_from_row(row)

    # --- Claims ---

    def claim_next_batch(self, job_id: str, size: int) -> list[str]:
        with self._session() as db:
            max_attempts = self._max_attempts(db, job_id)
            now = datetime.utcnow()
            stale_before = now - timedelta(minutes=self.claim_timeout_minutes)
            ids = ScraperProgressRepository(db).claimable_ids(
                job_id, max_attempts, size, stale_before
            )
            if not ids:
                return []

            token = uuid4().hex
            db.execute(
                update(ScraperProgress)
                .where(
                    ScraperProgress.id.in_(ids),
                    claimable_filter(job_id, max_attempts, stale_before),
                )
                .values(claim_token=token, claimed_at=now, updated_at=now)
            )
            db.commit()
            return ScraperProgressRepository(db).claimed_identifiers(token)

    def release_claims(self, job_id: str, identifiers: list[str] | None = None) -> int:
        with self._session() as db:
            stmt = update(ScraperProgress).where(
                ScraperProgress.job_id == job_id,
                ScraperProgress.status == "pending",
                ScraperProgress.claim_token.is_not(None),
            )
            if identifiers is not None:
                if not identifiers:
                    return 0
                stmt = stmt.where(ScraperProgress.identifier.in_(identifiers))
            result = db.execute(stmt.values(claim_token=None, claimed_at=None))
            db.commit()
            return result.rowcount

    # --- Outcomes ---

    def record_outcome(
        self,
        job_id: str,
        identifier: str,
        status: str,
        duration_ms: int,
        error: str | None = None,
    ) -> ProgressRecord:
        if status not in OUTCOME_STATUSES:
            raise ValueError(f"Unknown outcome status: {status}")

        with self._session() as db:
            max_attempts = self._max_attempts(db, job_id)
            now = datetime.utcnow()
            if status == "failed":
                retry = ScraperProgress.attempts + 1 < max_attempts
                new_status = case((retry, "pending"), else_="failed")
                completed_at = case((retry, null()), else_=literal(now, DateTime()))
            else:
                new_status = status
                completed_at = now

            result = db.execute(
                update(ScraperProgress)
                .where(
                    ScraperProgress.job_id == job_id,
                    ScraperProgress.identifier == identifier,
                    ScraperProgress.status == "pending",
                )
                .values(
                    attempts=ScraperProgress.attempts + 1,
                    status=new_status,
                    last_error=error[:1000] if error else None,
                    processing_ms=duration_ms,
                    completed_at=completed_at,
                    claim_token=None,
                    claimed_at=None,
                    updated_at=now,
                )
            )
            if result.rowcount == 0:
                db.rollback()
                raise JobStoreError(f"No pending progress row for {identifier} in job {job_id}")
            db.commit()

            row = ScraperProgressRepository(db).get_item(job_id, identifier)
            return progress_from_row(row)

    # --- Job rows ---

    def update_job_counters(self, job: Job) -> None:
        with self._session() as db:
            values = _job_values(job.checkpoint_fields())
            values["updated_at"] = datetime.utcnow()
            result = db.execute(update(ScraperJob).where(ScraperJob.id == job.id).values(**values))
            if result.rowcount == 0:
                db.rollback()
                raise JobNotFoundError(f"Scraper job {job.id} not found", context={"job_id": job.id})
            db.commit()

    def load_job(self, job_id: str) -> Job | None:
        with self._session() as db:
            row = ScraperJobRepository(db).get(job_id)
            if row is None:
                return None
            counts = ScraperProgressRepository(db).status_counts(job_id)
            return job_from_row(row, counts)

    def set_status(self, job_id: str, status: str, **fields: Any) -> Job:
        """Write a status (and any extra Job fields) without touching counters."""
        with self._session() as db:
            values = _job_values({"status": status, **fields})
            values["updated_at"] = datetime.utcnow()
            result = db.execute(update(ScraperJob).where(ScraperJob.id == job_id).values(**values))
            if result.rowcount == 0:
                db.rollback()
                raise JobNotFoundError(f"Scraper job {job_id} not found", context={"job_id": job_id})
            db.commit()
            row = ScraperJobRepository(db).get(job_id)
            return job_from_row(row, ScraperProgressRepository(db).status_counts(job_id))

    def find_resumable_job(self) -> Job | None:
        with self._session() as db:
            row = ScraperJobRepository(db).latest_resumable()
            if row is None:
                return None
            return job_from_row(row, ScraperProgressRepository(db).status_counts(row.id))

    def latest_job(self) -> Job | None:
        """Most recently created job regardless of status."""
        with self._session() as db:
            row = ScraperJobRepository(db).newest()
            if row is None:
                return None
            return job_from_row(row, ScraperProgressRepository(db).status_counts(row.id))

    # --- Lease ---

    def acquire_lease(self, job_id: str, worker_id: str, minutes: int) -> bool:
        """Take the job lease if free, expired, or already ours."""
        with self._session() as db:
            now = datetime.utcnow()
            result = db.execute(
                update(ScraperJob)
                .where(
                    ScraperJob.id == job_id,
                    (
                        ScraperJob.worker_id.is_(None)
                        | (ScraperJob.worker_id == worker_id)
                        | ScraperJob.lease_expires_at.is_(None)
                        | (ScraperJob.lease_expires_at < now)
                    ),
                )
                .values(
                    worker_id=worker_id,
                    lease_expires_at=now + timedelta(minutes=minutes),
                    updated_at=now,
                )
            )
            db.commit()
            return result.rowcount > 0

    def renew_lease(self, job_id: str, worker_id: str, minutes: int) -> bool:
        """Extend our lease. False means another worker has taken the job over."""
        with self._session() as db:
            now = datetime.utcnow()
            result = db.execute(
                update(ScraperJob)
                .where(ScraperJob.id == job_id, ScraperJob.worker_id == worker_id)
                .values(lease_expires_at=now + timedelta(minutes=minutes))
            )
            db.commit()
            return result.rowcount > 0

    def release_lease(self, job_id: str, worker_id: str) -> None:
        with self._session() as db:
            db.execute(
                update(ScraperJob)
                .where(ScraperJob.id == job_id, ScraperJob.worker_id == worker_id)
                .values(worker_id=None, lease_expires_at=None)
            )
            db.commit()

    def lease_holder(self, job_id: str) -> str | None:
        """Worker holding a live lease on the job, if any."""
        with self._session() as db:
            return db.scalar(
                select(ScraperJob.worker_id).where(
                    ScraperJob.id == job_id,
                    ScraperJob.lease_expires_at >= datetime.utcnow(),
                )
            )

    # --- Control requests ---

    def request_action(self, job_id: str, action: str | None) -> None:
        """Leave a control request for the run holding the lease (None clears it)."""
        if action is not None and action not in CONTROL_ACTIONS:
            raise ValueError(f"Unknown control action: {action}")
        with self._session() as db:
            result = db.execute(
                update(ScraperJob).where(ScraperJob.id == job_id).values(requested_action=action)
            )
            if result.rowcount == 0:
                db.rollback()
                raise JobNotFoundError(f"Scraper job {job_id} not found", context={"job_id": job_id})
            db.commit()

    def take_requested_action(self, job_id: str) -> str | None:
        """Read and clear the pending control request."""
        with self._session() as db:
            action = db.scalar(
                select(ScraperJob.requested_action).where(ScraperJob.id == job_id)
            )
            if action is None:
                return None
            db.execute(
                update(ScraperJob)
                .where(ScraperJob.id == job_id, ScraperJob.requested_action == action)
                .values(requested_action=None)
            )
            db.commit()
            return action

    # --- Progress listing ---

    def list_progress(
        self,
        job_id: str,
        status: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ProgressRecord]:
        with self._session() as db:
            rows = ScraperProgressRepository(db).list_for_job(job_id, status, limit, offset)
            return [progress_from_row(row) for row in rows]

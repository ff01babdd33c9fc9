"""Periodic retention service for finished scraper jobs."""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from catalog_scraper.config import Settings, get_settings
from catalog_scraper.db.models import ScraperJob, ScraperProgress
from catalog_scraper.db.repositories import ScraperJobRepository, ScraperProgressRepository

logger = logging.getLogger(__name__)


class ScraperRetentionService:
    """Async background service that deletes old finished jobs.

    Cleanup operations:
    1. Delete completed jobs older than scraper_completed_retention_days
    2. Delete failed/stopped jobs older than scraper_failed_retention_days

    Progress rows are deleted with their job. Running, pending and paused
    jobs are never touched.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        session_factory: Callable[[], Session] | None = None,
    ):
        self.settings = settings or get_settings()
        if session_factory is None:
            from catalog_scraper.db.database import SessionLocal

            session_factory = SessionLocal
        self.session_factory = session_factory
        self._task: asyncio.Task | None = None
        self._shutdown = asyncio.Event()

    async def start(self) -> None:
        """Start retention service as asyncio task."""
        self._shutdown.clear()
        self._task = asyncio.create_task(self._cleanup_loop())
        logger.info("ScraperRetentionService started")

    async def stop(self) -> None:
        """Graceful shutdown."""
        self._shutdown.set()
        if self._task:
            self._task.cancel()
            try:
                await asyncio.wait_for(self._task, timeout=10)
            except (TimeoutError, asyncio.CancelledError):
                pass
        logger.info("ScraperRetentionService stopped")

    async def _cleanup_loop(self) -> None:
        """Run cleanup every scraper_cleanup_interval_hours."""
        interval_seconds = self.settings.scraper_cleanup_interval_hours * 3600

        while not self._shutdown.is_set():
            try:
                self.run_cleanup()
            except Exception as e:
                logger.error(f"Retention cleanup error: {e}")

            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=interval_seconds)
                break
            except TimeoutError:
                pass

    def run_cleanup(self, now: datetime | None = None) -> tuple[int, int]:
        """Delete expired jobs. Returns (completed_deleted, failed_or_stopped_deleted)."""
        now = now or datetime.utcnow()
        db = self.session_factory()
        try:
            completed = self._delete_jobs(
                db,
                ["completed"],
                now - timedelta(days=self.settings.scraper_completed_retention_days),
            )
            failed = self._delete_jobs(
                db,
                ["failed", "stopped"],
                now - timedelta(days=self.settings.scraper_failed_retention_days),
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        if completed or failed:
            logger.info(
                f"Retention: deleted {completed} completed, {failed} failed/stopped scraper jobs"
            )
        return completed, failed

    def _delete_jobs(self, db: Session, statuses: list[str], cutoff: datetime) -> int:
        jobs = ScraperJobRepository(db)
        ids = [job.id for job in jobs.finished_before(statuses, cutoff)]
        if not ids:
            return 0
        ScraperProgressRepository(db).delete_where(ScraperProgress.job_id.in_(ids))
        return jobs.delete_where(ScraperJob.id.in_(ids))

"""Repositories for scraper jobs and per-item progress."""

from datetime import datetime

from sqlalchemy import func, or_, select

from catalog_scraper.db.models import ScraperJob, ScraperProgress
from catalog_scraper.db.repositories.base import BaseRepository

# Statuses a cron pass may pick up without operator action
AUTO_RESUMABLE_PAUSE_REASONS = ("window", "daily_quota")


class ScraperJobRepository(BaseRepository[ScraperJob]):
    model = ScraperJob

    def latest_resumable(self) -> ScraperJob | None:
        """Most recent job that should keep making progress on its own.

        Running/pending jobs, plus jobs paused by a gate (window, quota)
        rather than by an operator.
        """
        stmt = (
            select(ScraperJob)
            .where(
                or_(
                    ScraperJob.status.in_(["running", "pending"]),
                    (ScraperJob.status == "paused")
                    & ScraperJob.pause_reason.in_(AUTO_RESUMABLE_PAUSE_REASONS),
                )
            )
            .order_by(ScraperJob.created_at.desc())
            .limit(1)
        )
        return self.db.scalar(stmt)

    def finished_before(self, statuses: list[str], cutoff: datetime) -> list[ScraperJob]:
        """Jobs in a final status whose completion (or last activity) predates cutoff."""
        finished_at = func.coalesce(ScraperJob.completed_at, ScraperJob.last_activity_at)
        stmt = select(ScraperJob).where(ScraperJob.status.in_(statuses), finished_at < cutoff)
        return list(self.db.scalars(stmt).all())


class ScraperProgressRepository(BaseRepository[ScraperProgress]):
    model = ScraperProgress

    def get_item(self, job_id: str, identifier: str) -> ScraperProgress | None:
        stmt = select(ScraperProgress).where(
            ScraperProgress.job_id == job_id,
            ScraperProgress.identifier == identifier,
        )
        return self.db.scalar(stmt)

    def status_counts(self, job_id: str) -> dict[str, int]:
        """Count progress rows per status for a job."""
        stmt = (
            select(ScraperProgress.status, func.count())
            .where(ScraperProgress.job_id == job_id)
            .group_by(ScraperProgress.status)
        )
        return {status: count for status, count in self.db.execute(stmt).all()}

    def claimable_ids(
        self,
        job_id: str,
        max_attempts: int,
        limit: int,
        stale_before: datetime,
    ) -> list[str]:
        """IDs of pending rows eligible for claiming, fresh items before retries."""
        stmt = (
            select(ScraperProgress.id)
            .where(claimable_filter(job_id, max_attempts, stale_before))
            .order_by(ScraperProgress.attempts.asc(), ScraperProgress.sort_order.asc())
            .limit(limit)
        )
        return list(self.db.scalars(stmt).all())

    def claimed_identifiers(self, claim_token: str) -> list[str]:
        stmt = (
            select(ScraperProgress.identifier)
            .where(ScraperProgress.claim_token == claim_token)
            .order_by(ScraperProgress.attempts.asc(), ScraperProgress.sort_order.asc())
        )
        return list(self.db.scalars(stmt).all())

    def list_for_job(
        self,
        job_id: str,
        status: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ScraperProgress]:
        stmt = select(ScraperProgress).where(ScraperProgress.job_id == job_id)
        if status:
            stmt = stmt.where(ScraperProgress.status == status)
        stmt = stmt.order_by(ScraperProgress.sort_order.asc()).limit(limit).offset(offset)
        return list(self.db.scalars(stmt).all())


def claimable_filter(job_id: str, max_attempts: int, stale_before: datetime):
    """Pending, under the attempt limit, and not held by a live claim."""
    return (
        (ScraperProgress.job_id == job_id)
        & (ScraperProgress.status == "pending")
        & (ScraperProgress.attempts < max_attempts)
        & or_(
            ScraperProgress.claim_token.is_(None),
            ScraperProgress.claimed_at < stale_before,
        )
    )

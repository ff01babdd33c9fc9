"""Periodic health snapshots for external dashboards and alerting."""

import asyncio
import json
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from catalog_scraper.db.models import ScraperHealth
from catalog_scraper.services.clock import SystemClock
from catalog_scraper.services.job_store import to_db_time
from catalog_scraper.services.protocols import ClockProtocol, HealthSinkProtocol
from catalog_scraper.services.rate_limiter import RateLimiter
from catalog_scraper.services.scraper_types import HealthSnapshot, Job

logger = logging.getLogger(__name__)

# Success-rate checks only apply once enough items have been processed
MIN_PROCESSED_FOR_RATE = 10


def format_eta(seconds: float) -> str:
    """Render a duration as "Xh Ym", "Xm Ys" or "Xs"."""
    total = int(max(seconds, 0))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class HealthReporter:
    """Builds HealthSnapshots from the live Job and publishes them to sinks.

    Classification:
        stopped   - no job, or the job was stopped
        critical  - breaker open or job failed
        degraded  - job paused, or success rate below the critical threshold
        healthy   - otherwise
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        sinks: list[HealthSinkProtocol] | None = None,
        interval_seconds: float = 30.0,
        success_rate_warning: float = 90.0,
        success_rate_critical: float = 70.0,
        clock: ClockProtocol | None = None,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.sinks = list(sinks or [])
        self.interval_seconds = interval_seconds
        self.success_rate_warning = success_rate_warning
        self.success_rate_critical = success_rate_critical
        self.clock = clock or SystemClock()
        self._task: asyncio.Task | None = None
        self._shutdown = asyncio.Event()
        self._job_provider: Callable[[], Job | None] | None = None

    def snapshot(self, job: Job | None, now: datetime) -> HealthSnapshot:
        if job is None:
            return HealthSnapshot(status="stopped", checked_at=now)

        warnings: list[str] = []
        errors: list[str] = []
        status = "healthy"

        if job.status == "stopped":
            status = "stopped"
        elif job.breaker_state == "open":
            status = "critical"
            errors.append("Circuit breaker open - too many consecutive failures")
        elif job.status == "failed":
            status = "critical"
            errors.append(f"Job failed: {job.error_message}" if job.error_message else "Job failed")
        elif job.status == "paused":
            status = "degraded"
            if job.pause_reason == "window":
                warnings.append("Job is paused until the allowed window opens")
            elif job.pause_reason == "daily_quota":
                warnings.append("Job is paused until the daily quota resets")
            else:
                warnings.append("Job is paused")

        if job.breaker_state == "half_open":
            warnings.append("Circuit breaker half-open - probing with a single item")

        if not self.rate_limiter.is_within_window(now):
            limits = self.rate_limiter.limits
            warnings.append(
                f"Outside allowed window ({limits.window_start_hour}:00-"
                f"{limits.window_end_hour}:00 {limits.timezone})"
            )

        success_rate = job.succeeded / job.processed * 100 if job.processed > 0 else 100.0
        if job.processed > MIN_PROCESSED_FOR_RATE and success_rate < self.success_rate_warning:
            warnings.append(f"Low success rate: {success_rate:.1f}%")
            if success_rate < self.success_rate_critical and status == "healthy":
                status = "degraded"

        requests_hour, requests_today = self.rate_limiter.current_counts(job, now)
        if requests_today >= self.rate_limiter.limits.max_per_day:
            warnings.append("Daily request quota reached")
        elif requests_hour >= self.rate_limiter.limits.max_per_hour:
            warnings.append("Hourly request quota reached")

        eta_seconds = None
        if job.status == "running" and job.avg_processing_ms > 0:
            per_item = job.avg_processing_ms / 1000 + self.rate_limiter.mean_delay
            eta_seconds = job.remaining * per_item

        return HealthSnapshot(
            status=status,
            checked_at=now,
            job_id=job.id,
            job_status=job.status,
            success_rate=round(success_rate, 1),
            avg_latency_ms=round(job.avg_processing_ms, 1),
            requests_last_hour=requests_hour,
            requests_today=requests_today,
            estimated_seconds_remaining=eta_seconds,
            estimated_time_remaining=format_eta(eta_seconds) if eta_seconds is not None else None,
            breaker_state=job.breaker_state,
            processed=job.processed,
            total_items=job.total_items,
            warnings=warnings,
            errors=errors,
        )

    def publish(self, snapshot: HealthSnapshot) -> None:
        """Send a snapshot to every sink; a failing sink never stops the job."""
        for sink in self.sinks:
            try:
                sink.publish(snapshot)
            except Exception as e:
                logger.warning(f"[SCRAPE] Health sink {type(sink).__name__} failed: {e}")

    def report(self, job: Job | None) -> HealthSnapshot:
        snapshot = self.snapshot(job, self.clock.now())
        self.publish(snapshot)
        return snapshot

    # --- Background loop ---

    async def start(self, job_provider: Callable[[], Job | None]) -> None:
        """Start periodic reporting for the job returned by ``job_provider``."""
        await self.stop()
        self._job_provider = job_provider
        self._shutdown.clear()
        self._task = asyncio.create_task(self._report_loop())

    async def stop(self) -> None:
        """Stop the loop and publish one final snapshot."""
        if self._task is None:
            return
        self._shutdown.set()
        self._task.cancel()
        try:
            await asyncio.wait_for(self._task, timeout=5)
        except (TimeoutError, asyncio.CancelledError):
            pass
        self._task = None
        if self._job_provider is not None:
            self.report(self._job_provider())

    async def _report_loop(self) -> None:
        while not self._shutdown.is_set():
            self.report(self._job_provider())
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self.interval_seconds)
                break
            except TimeoutError:
                pass


class DatabaseHealthSink:
    """Upserts the single ``scraper_health`` row polled by dashboards."""

    ROW_ID = "current"

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def publish(self, snapshot: HealthSnapshot) -> None:
        db = self.session_factory()
        try:
            db.merge(
                ScraperHealth(
                    id=self.ROW_ID,
                    status=snapshot.status,
                    job_id=snapshot.job_id,
                    payload=json.dumps(snapshot.to_dict()),
                    checked_at=to_db_time(snapshot.checked_at),
                )
            )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def latest(self) -> dict[str, Any] | None:
        db = self.session_factory()
        try:
            row = db.get(ScraperHealth, self.ROW_ID)
            return json.loads(row.payload) if row else None
        finally:
            db.close()


class LoggingHealthSink:
    """Logs each snapshot; warnings and errors are logged at WARNING."""

    def publish(self, snapshot: HealthSnapshot) -> None:
        level = logging.INFO if snapshot.status in ("healthy", "stopped") else logging.WARNING
        logger.log(
            level,
            f"[SCRAPE] Health {snapshot.status}: {snapshot.processed}/{snapshot.total_items} "
            f"processed, success {snapshot.success_rate}%",
            extra={
                "job_id": snapshot.job_id,
                "health_status": snapshot.status,
                "warnings": snapshot.warnings,
                "errors": snapshot.errors,
            },
        )

"""Scraper job, per-item progress, and health snapshot models."""

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)

from catalog_scraper.db.database import Base
from catalog_scraper.db.models.base import generate_uuid


class ScraperJob(Base):
    """A batch scrape job over a list of item identifiers.

    Aggregate counters are checkpointed periodically by the orchestrator;
    the per-item ScraperProgress rows are the source of truth for them.
    Quota counters and breaker state live here so they survive restarts.
    """

    __tablename__ = "scraper_jobs"
    __table_args__ = (
        Index("idx_scraper_jobs_status", "status", "created_at"),
        Index("idx_scraper_jobs_lease", "lease_expires_at"),
        Index("idx_scraper_jobs_cleanup", "status", "completed_at"),
    )

    id = Column(String, primary_key=True, default=generate_uuid)
    status = Column(String, nullable=False, default="pending")
    pause_reason = Column(String, nullable=True)  # "operator" | "window" | "daily_quota"
    total_items = Column(Integer, nullable=False)
    processed = Column(Integer, nullable=False, default=0)
    succeeded = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    skipped = Column(Integer, nullable=False, default=0)
    current_batch = Column(Integer, nullable=False, default=0)
    total_batches = Column(Integer, nullable=False)
    batch_size = Column(Integer, nullable=False)
    max_attempts = Column(Integer, nullable=False)
    avg_processing_ms = Column(Float, nullable=False, default=0.0)
    recent_errors = Column(Text, nullable=True)  # JSON list, newest first
    consecutive_failures = Column(Integer, nullable=False, default=0)
    breaker_state = Column(String, nullable=False, default="closed")
    breaker_opened_at = Column(DateTime, nullable=True)
    hour_count = Column(Integer, nullable=False, default=0)
    hour_reset_at = Column(DateTime, nullable=True)
    day_count = Column(Integer, nullable=False, default=0)
    day_reset_at = Column(DateTime, nullable=True)
    config = Column(Text, nullable=True)  # JSON snapshot of limits at creation
    error_message = Column(Text, nullable=True)
    worker_id = Column(String, nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)
    requested_action = Column(String, nullable=True)  # "stop" | "pause" | "resume" from another process
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    paused_at = Column(DateTime, nullable=True)
    last_activity_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class ScraperProgress(Base):
    """Outcome tracking for one item identifier within a job.

    sort_order preserves submission order; claim_token marks rows handed
    out by claim_next_batch until their outcome is recorded.
    """

    __tablename__ = "scraper_progress"
    __table_args__ = (
        UniqueConstraint("job_id", "identifier", name="uq_scraper_progress_job_identifier"),
        Index("idx_scraper_progress_job", "job_id", "status"),
        Index(
            "idx_scraper_progress_pending",
            "job_id",
            "attempts",
            "sort_order",
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id = Column(String, primary_key=True, default=generate_uuid)
    job_id = Column(
        String,
        ForeignKey("scraper_jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    identifier = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending")
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    processing_ms = Column(Integer, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)
    batch_number = Column(Integer, nullable=False, default=0)
    claim_token = Column(String, nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class ScraperHealth(Base):
    """Latest published health snapshot, polled by external dashboards.

    Single row keyed "current".
    """

    __tablename__ = "scraper_health"

    id = Column(String, primary_key=True, default="current")
    status = Column(String, nullable=False)
    job_id = Column(String, nullable=True)
    payload = Column(Text, nullable=False)  # JSON encoded HealthSnapshot
    checked_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

"""Scraper API schemas."""

from datetime import datetime

from pydantic import BaseModel, Field


class JobStartRequest(BaseModel):
    """Request to start a scrape job."""

    identifiers: list[str] = Field(..., min_length=1, max_length=100_000)


class JobResponse(BaseModel):
    """Scraper job state."""

    id: str
    status: str
    pause_reason: str | None = None
    total_items: int
    processed: int
    succeeded: int
    failed: int
    skipped: int
    current_batch: int
    total_batches: int
    batch_size: int
    max_attempts: int
    avg_processing_ms: float
    consecutive_failures: int
    breaker_state: str
    hour_count: int
    day_count: int
    recent_errors: list[str] = []
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    paused_at: datetime | None = None
    last_activity_at: datetime | None = None
    created_at: datetime | None = None

    class Config:
        from_attributes = True


class ProgressResponse(BaseModel):
    """Per-item progress row."""

    identifier: str
    status: str
    attempts: int
    last_error: str | None = None
    processing_ms: int | None = None
    batch_number: int
    completed_at: datetime | None = None

    class Config:
        from_attributes = True


class ProgressListResponse(BaseModel):
    job_id: str
    items: list[ProgressResponse]
    limit: int
    offset: int


class HealthSnapshotResponse(BaseModel):
    """Point-in-time scraper health."""

    status: str
    checked_at: datetime
    job_id: str | None = None
    job_status: str | None = None
    success_rate: float
    avg_latency_ms: float
    requests_last_hour: int
    requests_today: int
    estimated_seconds_remaining: float | None = None
    estimated_time_remaining: str | None = None
    breaker_state: str
    processed: int
    total_items: int
    warnings: list[str] = []
    errors: list[str] = []

    class Config:
        from_attributes = True


class PassResponse(BaseModel):
    """Result of one cron-triggered processing pass."""

    ran: bool
    message: str
    job: JobResponse | None = None

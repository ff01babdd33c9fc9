"""Domain types shared by the scraper orchestrator and its collaborators."""

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from catalog_scraper.core.exceptions import ConfigurationError, InvalidJobStateError

JOB_STATUSES = ("pending", "running", "paused", "completed", "failed", "stopped")
ITEM_STATUSES = ("pending", "success", "failed", "skipped")
TERMINAL_STATUSES = frozenset({"completed", "failed", "stopped"})
# Control requests a process without the lease leaves for the running loop
CONTROL_ACTIONS = frozenset({"stop", "pause", "resume"})

# Stopped and failed jobs may start a new run via resume; completed never reopens.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running", "stopped"}),
    "running": frozenset({"paused", "completed", "stopped", "failed"}),
    "paused": frozenset({"running", "stopped", "failed"}),
    "stopped": frozenset({"running"}),
    "failed": frozenset({"running"}),
    "completed": frozenset(),
}

MAX_RECENT_ERRORS = 10


def total_batches_for(total_items: int, batch_size: int) -> int:
    return math.ceil(total_items / batch_size) if total_items else 0


def normalize_identifiers(identifiers: list[str]) -> list[str]:
    """Strip whitespace, drop blanks and duplicates, keep first-seen order."""
    seen: set[str] = set()
    result = []
    for raw in identifiers:
        identifier = str(raw).strip()
        if identifier and identifier not in seen:
            seen.add(identifier)
            result.append(identifier)
    return result


@dataclass
class ScraperLimits:
    """Throughput and retry limits for one orchestrator."""

    min_delay_seconds: float = 5.0
    max_delay_seconds: float = 8.0
    batch_size: int = 5
    max_per_hour: int = 60
    max_per_day: int = 500
    max_attempts: int = 2
    breaker_threshold: int = 5
    breaker_cooldown_seconds: float = 300.0
    breaker_half_open_probe: bool = False
    enforce_window: bool = False
    window_start_hour: int = 0
    window_end_hour: int = 24
    timezone: str = "America/New_York"
    checkpoint_every: int = 10
    pause_poll_seconds: float = 5.0
    lease_duration_minutes: int = 10

    @classmethod
    def from_settings(cls, settings: Any) -> "ScraperLimits":
        return cls(
            min_delay_seconds=settings.scraper_min_delay_seconds,
            max_delay_seconds=settings.scraper_max_delay_seconds,
            batch_size=settings.scraper_batch_size,
            max_per_hour=settings.scraper_max_per_hour,
            max_per_day=settings.scraper_max_per_day,
            max_attempts=settings.scraper_max_attempts,
            breaker_threshold=settings.scraper_breaker_threshold,
            breaker_cooldown_seconds=settings.scraper_breaker_cooldown_seconds,
            breaker_half_open_probe=settings.scraper_breaker_half_open_probe,
            enforce_window=settings.scraper_enforce_window,
            window_start_hour=settings.scraper_window_start_hour,
            window_end_hour=settings.scraper_window_end_hour,
            timezone=settings.scraper_timezone,
            checkpoint_every=settings.scraper_checkpoint_every,
            pause_poll_seconds=settings.scraper_pause_poll_seconds,
            lease_duration_minutes=settings.scraper_lease_duration_minutes,
        )

    def validate(self) -> None:
        """Raise ConfigurationError describing every inconsistent limit."""
        problems = []
        if self.min_delay_seconds < 0:
            problems.append("min_delay_seconds must be >= 0")
        if self.max_delay_seconds < self.min_delay_seconds:
            problems.append("max_delay_seconds must be >= min_delay_seconds")
        for name in (
            "batch_size",
            "max_per_hour",
            "max_per_day",
            "max_attempts",
            "breaker_threshold",
            "checkpoint_every",
            "lease_duration_minutes",
        ):
            if getattr(self, name) < 1:
                problems.append(f"{name} must be >= 1")
        if self.breaker_cooldown_seconds < 0:
            problems.append("breaker_cooldown_seconds must be >= 0")
        if self.pause_poll_seconds <= 0:
            problems.append("pause_poll_seconds must be > 0")
        if not 0 <= self.window_start_hour <= 23:
            problems.append("window_start_hour must be in 0..23")
        if not 1 <= self.window_end_hour <= 24:
            problems.append("window_end_hour must be in 1..24")
        if self.enforce_window and self.window_start_hour == self.window_end_hour:
            problems.append("window_start_hour and window_end_hour must differ")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            problems.append(f"unknown timezone {self.timezone!r}")

        if problems:
            raise ConfigurationError(
                "Invalid scraper configuration: " + "; ".join(problems),
                context={"problems": problems},
            )

    def to_config(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Job:
    """In-memory view of a scraper job, mutated only by the orchestrator."""

    id: str
    total_items: int
    batch_size: int
    max_attempts: int
    total_batches: int
    status: str = "pending"
    pause_reason: str | None = None
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    current_batch: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    paused_at: datetime | None = None
    last_activity_at: datetime | None = None
    avg_processing_ms: float = 0.0
    recent_errors: list[str] = field(default_factory=list)
    consecutive_failures: int = 0
    breaker_state: str = "closed"
    breaker_opened_at: datetime | None = None
    hour_count: int = 0
    hour_reset_at: datetime | None = None
    day_count: int = 0
    day_reset_at: datetime | None = None
    error_message: str | None = None
    config: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    @property
    def breaker_open(self) -> bool:
        return self.breaker_state == "open"

    @property
    def remaining(self) -> int:
        return max(self.total_items - self.processed, 0)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status: str) -> None:
        """Move to ``status`` along an allowed edge."""
        if status not in ALLOWED_TRANSITIONS.get(self.status, frozenset()):
            raise InvalidJobStateError(
                f"Cannot move job {self.id} from {self.status} to {status}",
                context={"job_id": self.id, "status": self.status},
            )
        self.status = status

    def apply_outcome(self, item_status: str) -> None:
        """Count a recorded item outcome; pending (retry scheduled) counts nothing."""
        if item_status == "success":
            self.succeeded += 1
        elif item_status == "failed":
            self.failed += 1
        elif item_status == "skipped":
            self.skipped += 1
        else:
            return
        self.processed += 1

    def push_error(self, message: str) -> None:
        self.recent_errors = [message[:500], *self.recent_errors[: MAX_RECENT_ERRORS - 1]]

    def checkpoint_fields(self) -> dict[str, Any]:
        """Fields written by update_job_counters."""
        return {
            "status": self.status,
            "pause_reason": self.pause_reason,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "current_batch": self.current_batch,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "paused_at": self.paused_at,
            "last_activity_at": self.last_activity_at,
            "avg_processing_ms": self.avg_processing_ms,
            "recent_errors": list(self.recent_errors),
            "consecutive_failures": self.consecutive_failures,
            "breaker_state": self.breaker_state,
            "breaker_opened_at": self.breaker_opened_at,
            "hour_count": self.hour_count,
            "hour_reset_at": self.hour_reset_at,
            "day_count": self.day_count,
            "day_reset_at": self.day_reset_at,
            "error_message": self.error_message,
        }


@dataclass
class ProgressRecord:
    job_id: str
    identifier: str
    status: str = "pending"
    attempts: int = 0
    last_error: str | None = None
    processing_ms: int | None = None
    completed_at: datetime | None = None
    sort_order: int = 0
    batch_number: int = 0


@dataclass
class FetchResult:
    """Outcome of one successful request.

    ``available`` is False when the source answered but the item cannot be
    used (e.g. out of stock); such items are skipped rather than failed.
    """

    identifier: str
    record: dict[str, Any] | None = None
    available: bool = True
    reason: str | None = None


@dataclass(frozen=True)
class Identity:
    """Outbound request identity (user agent plus extra headers)."""

    user_agent: str
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class HealthSnapshot:
    status: str
    checked_at: datetime
    job_id: str | None = None
    job_status: str | None = None
    success_rate: float = 100.0
    avg_latency_ms: float = 0.0
    requests_last_hour: int = 0
    requests_today: int = 0
    estimated_seconds_remaining: float | None = None
    estimated_time_remaining: str | None = None
    breaker_state: str = "closed"
    processed: int = 0
    total_items: int = 0
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["checked_at"] = self.checked_at.isoformat()
        return data

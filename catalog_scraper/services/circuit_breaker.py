"""Consecutive-failure circuit breaker for the active scraper job."""

import logging
from datetime import UTC, datetime

from catalog_scraper.services.scraper_types import Job

logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


class CircuitBreaker:
    """Trips to open after ``threshold`` consecutive failures.

    After the cooldown the orchestrator either closes the breaker outright
    or, with ``half_open_probe``, lets a single trial item decide: success
    closes it, failure reopens it immediately.

    State is copied to and from the Job so it survives restarts.
    """

    def __init__(
        self,
        threshold: int,
        cooldown_seconds: float,
        half_open_probe: bool = False,
    ) -> None:
        self.threshold = threshold
        self.cooldown_seconds = cooldown_seconds
        self.half_open_probe = half_open_probe
        self.state = CLOSED
        self.consecutive_failures = 0
        self.opened_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.state == OPEN

    @property
    def is_half_open(self) -> bool:
        return self.state == HALF_OPEN

    def record_success(self) -> None:
        self.consecutive_failures = 0
        if self.state == HALF_OPEN:
            logger.info("[SCRAPE] Circuit breaker probe succeeded, closing")
            self.state = CLOSED
            self.opened_at = None

    def record_failure(self, now: datetime) -> bool:
        """Count a failure. Returns True only on the call that trips the breaker."""
        self.consecutive_failures += 1
        if self.state == HALF_OPEN or (
            self.state == CLOSED and self.consecutive_failures >= self.threshold
        ):
            self.state = OPEN
            self.opened_at = now
            return True
        return False

    def record_outcome(self, success: bool, now: datetime) -> bool:
        if success:
            self.record_success()
            return False
        return self.record_failure(now)

    def remaining_cooldown(self, now: datetime) -> float:
        if self.state != OPEN or self.opened_at is None:
            return 0.0
        elapsed = (now.astimezone(UTC) - self.opened_at.astimezone(UTC)).total_seconds()
        return max(self.cooldown_seconds - elapsed, 0.0)

    def should_wait(self, now: datetime) -> bool:
        return self.state == OPEN and self.remaining_cooldown(now) > 0

    def close(self) -> None:
        self.state = CLOSED
        self.consecutive_failures = 0
        self.opened_at = None

    def half_open(self) -> None:
        self.state = HALF_OPEN
        self.consecutive_failures = 0
        self.opened_at = None

    def after_cooldown(self) -> None:
        """Leave the open state once the cooldown has elapsed."""
        if self.half_open_probe:
            self.half_open()
        else:
            self.close()

    # --- Job mapping ---

    @classmethod
    def from_job(
        cls,
        job: Job,
        threshold: int,
        cooldown_seconds: float,
        half_open_probe: bool = False,
        now: datetime | None = None,
    ) -> "CircuitBreaker":
        breaker = cls(threshold, cooldown_seconds, half_open_probe)
        breaker.state = job.breaker_state or CLOSED
        breaker.consecutive_failures = job.consecutive_failures
        breaker.opened_at = job.breaker_opened_at
        if breaker.state == OPEN and breaker.opened_at is None:
            # Open without a timestamp cannot time out; restart the cooldown.
            breaker.opened_at = now or datetime.now(UTC)
        return breaker

    def to_job(self, job: Job) -> None:
        job.breaker_state = self.state
        job.consecutive_failures = self.consecutive_failures
        job.breaker_opened_at = self.opened_at

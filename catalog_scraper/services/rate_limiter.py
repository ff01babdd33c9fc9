"""Request pacing, hourly/daily quotas and the safe-hours window.

Quota counters live on the Job so they survive restarts. A counter is reset
by comparing the start of the boundary period containing ``now`` with the
stored reset timestamp, never by a running timer, so each boundary crossing
resets it exactly once no matter how long the process was down.
"""

import random
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

from catalog_scraper.services.scraper_types import Job, ScraperLimits

JITTER_RATIO = 0.1


def _utc(value: datetime) -> datetime:
    return value.astimezone(UTC)


class RateLimiter:
    """Computes inter-request delays and enforces request quotas.

    Hour and day boundaries, and the optional window, are evaluated in the
    configured IANA time zone so daylight-saving shifts are honoured.
    """

    def __init__(self, limits: ScraperLimits, rng: random.Random | None = None) -> None:
        self.limits = limits
        self.tz = ZoneInfo(limits.timezone)
        self._rng = rng or random.Random()

    # --- Delays ---

    def next_delay(self) -> float:
        """Uniform sample from [min_delay, max_delay] seconds."""
        return self._rng.uniform(self.limits.min_delay_seconds, self.limits.max_delay_seconds)

    def jittered(self, delay: float) -> float:
        """Apply +/-10% jitter, never going below min_delay."""
        factor = 1 + self._rng.uniform(-JITTER_RATIO, JITTER_RATIO)
        return max(self.limits.min_delay_seconds, delay * factor)

    @property
    def mean_delay(self) -> float:
        return (self.limits.min_delay_seconds + self.limits.max_delay_seconds) / 2

    # --- Window ---

    def is_within_window(self, now: datetime) -> bool:
        if not self.limits.enforce_window:
            return True
        hour = now.astimezone(self.tz).hour
        start, end = self.limits.window_start_hour, self.limits.window_end_hour
        if start < end:
            return start <= hour < end
        # Window spans midnight, e.g. 22 -> 6
        return hour >= start or hour < end

    def time_until_window_opens(self, now: datetime) -> float:
        """Seconds until the window next opens (0 when already inside)."""
        if self.is_within_window(now):
            return 0.0
        local = now.astimezone(self.tz)
        opens = local.replace(
            hour=self.limits.window_start_hour, minute=0, second=0, microsecond=0
        )
        if opens <= local:
            opens += timedelta(days=1)
        return max((_utc(opens) - _utc(now)).total_seconds(), 0.0)

    # --- Boundaries ---

    def hour_start(self, now: datetime) -> datetime:
        local = now.astimezone(self.tz)
        return _utc(local.replace(minute=0, second=0, microsecond=0))

    def day_start(self, now: datetime) -> datetime:
        local = now.astimezone(self.tz)
        return _utc(local.replace(hour=0, minute=0, second=0, microsecond=0))

    def next_day_start(self, now: datetime) -> datetime:
        local = now.astimezone(self.tz)
        midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
        return _utc(midnight + timedelta(days=1))

    def seconds_until_hour_reset(self, now: datetime) -> float:
        boundary = self.hour_start(now) + timedelta(hours=1)
        return max((boundary - _utc(now)).total_seconds(), 0.0)

    def seconds_until_day_reset(self, now: datetime) -> float:
        return max((self.next_day_start(now) - _utc(now)).total_seconds(), 0.0)

    # --- Quotas ---

    def roll_counters(self, job: Job, now: datetime) -> tuple[bool, bool]:
        """Reset hour/day counters whose period has ended.

        Returns (hour_reset, day_reset).
        """
        hour_start = self.hour_start(now)
        day_start = self.day_start(now)
        hour_reset = job.hour_reset_at is None or _utc(job.hour_reset_at) < hour_start
        day_reset = job.day_reset_at is None or _utc(job.day_reset_at) < day_start
        if hour_reset:
            job.hour_count = 0
            job.hour_reset_at = hour_start
        if day_reset:
            job.day_count = 0
            job.day_reset_at = day_start
        return hour_reset, day_reset

    def record_request(self, job: Job) -> None:
        job.hour_count += 1
        job.day_count += 1

    def hourly_exhausted(self, job: Job) -> bool:
        return job.hour_count >= self.limits.max_per_hour

    def daily_exhausted(self, job: Job) -> bool:
        return job.day_count >= self.limits.max_per_day

    def current_counts(self, job: Job, now: datetime) -> tuple[int, int]:
        """(requests this hour, requests today) without mutating the job."""
        hour = job.hour_count
        day = job.day_count
        if job.hour_reset_at is None or _utc(job.hour_reset_at) < self.hour_start(now):
            hour = 0
        if job.day_reset_at is None or _utc(job.day_reset_at) < self.day_start(now):
            day = 0
        return hour, day

"""Configuration management using Pydantic settings."""

from functools import lru_cache
from typing import Any, Literal

from pydantic_settings import BaseSettings

# Profile defaults for long-running worker and serverless (cron) deployments
PROFILE_DEFAULTS: dict[str, dict[str, Any]] = {
    "worker": {
        # Database pool - one orchestrator plus API requests
        "db_pool_size": 5,
        "db_pool_max_overflow": 10,
        "db_pool_timeout": 30,
        # Resume interrupted jobs on startup
        "scraper_auto_resume": True,
        # Passes are only used by the cron endpoint
        "scraper_pass_budget_seconds": 50.0,
    },
    "serverless": {
        "db_pool_size": 2,
        "db_pool_max_overflow": 3,
        "db_pool_timeout": 10,
        # Host kills the process between invocations; cron drives progress
        "scraper_auto_resume": False,
        # Stay well under a 60 second function timeout
        "scraper_pass_budget_seconds": 50.0,
    },
}

DEFAULT_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
]


class Settings(BaseSettings):
    # Application
    app_name: str = "Catalog Scraper"
    app_version: str = "0.3.0"
    debug: bool = False
    log_level: str = "INFO"
    log_format: str = "json"  # "json" for production, "console" for dev

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Profile Selection
    env_profile: Literal["worker", "serverless"] = "worker"

    # Database
    database_url: str = "sqlite:///./data/catalog_scraper.db"
    db_pool_size: int | None = None  # None = use profile default
    db_pool_max_overflow: int | None = None  # None = use profile default
    db_pool_timeout: int | None = None  # None = use profile default

    # Redis / ARQ Task Queue
    redis_url: str = "redis://localhost:6379"
    arq_job_timeout: int = 120
    arq_max_jobs: int = 1  # One scraper pass at a time
    arq_health_check_interval: int = 60

    # Scraper - Timing
    scraper_min_delay_seconds: float = 5.0  # Minimum gap between requests
    scraper_max_delay_seconds: float = 8.0  # Randomized up to this
    scraper_batch_size: int = 5

    # Scraper - Quotas
    scraper_max_per_hour: int = 60  # ~1 per minute average
    scraper_max_per_day: int = 500

    # Scraper - Retry
    scraper_max_attempts: int = 2

    # Scraper - Circuit breaker
    scraper_breaker_threshold: int = 5  # Consecutive failures before opening
    scraper_breaker_cooldown_seconds: float = 300.0
    scraper_breaker_half_open_probe: bool = False  # Trial request before closing

    # Scraper - Safe hours window
    scraper_enforce_window: bool = False
    scraper_window_start_hour: int = 0
    scraper_window_end_hour: int = 24
    scraper_timezone: str = "America/New_York"

    # Scraper - Loop
    scraper_checkpoint_every: int = 10  # Items between counter checkpoints
    scraper_pause_poll_seconds: float = 5.0
    scraper_health_interval_seconds: float = 30.0
    scraper_lease_duration_minutes: int = 10
    scraper_worker_id: str | None = None  # Stable ID lets a restarted process reclaim its lease
    scraper_auto_resume: bool | None = None  # None = use profile default

    # Scraper - Serverless passes
    scraper_pass_budget_seconds: float | None = None  # None = use profile default
    scraper_cron_minutes: int = 5
    scraper_cron_secret: str | None = None

    # Scraper - Health thresholds (percent)
    scraper_success_rate_warning: float = 90.0
    scraper_success_rate_critical: float = 70.0

    # Scraper - Fetching
    scraper_url_template: str = "https://www.amazon.com/dp/{identifier}"
    scraper_fetch_timeout_seconds: float = 20.0
    scraper_user_agents: list[str] = DEFAULT_USER_AGENTS

    # Scraper - Retention
    scraper_completed_retention_days: int = 7
    scraper_failed_retention_days: int = 30
    scraper_cleanup_interval_hours: int = 6

    def model_post_init(self, __context: Any) -> None:
        """Apply profile defaults after Pydantic initialization."""
        profile = PROFILE_DEFAULTS.get(self.env_profile, PROFILE_DEFAULTS["worker"])

        # Apply profile defaults for settings that are None
        for key, default_value in profile.items():
            current = getattr(self, key, None)
            if current is None:
                object.__setattr__(self, key, default_value)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    return Settings()

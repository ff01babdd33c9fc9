# Services package

from catalog_scraper.services.circuit_breaker import CircuitBreaker
from catalog_scraper.services.clock import SystemClock
from catalog_scraper.services.content_fetcher import HttpContentFetcher
from catalog_scraper.services.health_reporter import (
    DatabaseHealthSink,
    HealthReporter,
    LoggingHealthSink,
    format_eta,
)
from catalog_scraper.services.identity import RotatingIdentityProvider
from catalog_scraper.services.job_store import SqlJobStore
from catalog_scraper.services.orchestrator import JobHandle, JobOrchestrator
from catalog_scraper.services.rate_limiter import RateLimiter
from catalog_scraper.services.scraper_types import (
    FetchResult,
    HealthSnapshot,
    Identity,
    Job,
    ProgressRecord,
    ScraperLimits,
)

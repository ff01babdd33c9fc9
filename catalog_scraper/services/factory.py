"""Service factories wiring the scraper from settings."""

import logging
from collections.abc import Callable

from sqlalchemy.orm import Session

from catalog_scraper.config import Settings
from catalog_scraper.services.content_fetcher import HttpContentFetcher
from catalog_scraper.services.health_reporter import DatabaseHealthSink, LoggingHealthSink
from catalog_scraper.services.identity import RotatingIdentityProvider
from catalog_scraper.services.job_store import SqlJobStore
from catalog_scraper.services.orchestrator import JobOrchestrator
from catalog_scraper.services.protocols import (
    ClockProtocol,
    ContentFetcherProtocol,
    RecordSinkProtocol,
)
from catalog_scraper.services.scraper_types import ScraperLimits

logger = logging.getLogger(__name__)


def get_content_fetcher(settings: Settings) -> HttpContentFetcher:
    logger.info(f"Creating HttpContentFetcher: {settings.scraper_url_template}")
    return HttpContentFetcher(
        url_template=settings.scraper_url_template,
        timeout=settings.scraper_fetch_timeout_seconds,
    )


def build_orchestrator(
    settings: Settings,
    session_factory: Callable[[], Session] | None = None,
    fetcher: ContentFetcherProtocol | None = None,
    record_sink: RecordSinkProtocol | None = None,
    clock: ClockProtocol | None = None,
    worker_id: str | None = None,
) -> JobOrchestrator:
    """Assemble a JobOrchestrator backed by the application database.

    Limits are validated lazily, so a misconfigured deployment still starts
    and reports ConfigurationError on the first control call.
    """
    if session_factory is None:
        from catalog_scraper.db.database import SessionLocal

        session_factory = SessionLocal

    store = SqlJobStore(
        session_factory,
        claim_timeout_minutes=settings.scraper_lease_duration_minutes,
    )
    return JobOrchestrator(
        store=store,
        fetcher=fetcher or get_content_fetcher(settings),
        identities=RotatingIdentityProvider(settings.scraper_user_agents),
        limits=ScraperLimits.from_settings(settings),
        health_sinks=[DatabaseHealthSink(session_factory), LoggingHealthSink()],
        health_interval_seconds=settings.scraper_health_interval_seconds,
        success_rate_warning=settings.scraper_success_rate_warning,
        success_rate_critical=settings.scraper_success_rate_critical,
        record_sink=record_sink,
        clock=clock,
        worker_id=worker_id or settings.scraper_worker_id,
    )

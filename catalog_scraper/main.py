"""FastAPI application entry point."""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from catalog_scraper.api import health, scraper
from catalog_scraper.config import get_settings
from catalog_scraper.core.error_handlers import register_error_handlers
from catalog_scraper.core.exceptions import AppError
from catalog_scraper.core.logging import configure_logging
from catalog_scraper.core.redis import close_redis_pool
from catalog_scraper.db.database import init_db
from catalog_scraper.middleware.request_logging import RequestLoggingMiddleware
from catalog_scraper.services.factory import build_orchestrator
from catalog_scraper.workers.retention import ScraperRetentionService

settings = get_settings()
configure_logging(settings.log_level, settings.log_format)
logger = logging.getLogger(__name__)


async def auto_resume(orchestrator) -> None:
    """Resume the job an earlier process left unfinished, if any."""
    job = orchestrator.store.find_resumable_job()
    if job is None:
        return
    try:
        await orchestrator.resume(job.id)
        logger.info(f"[SCRAPE] Auto-resumed job {job.id} ({job.processed}/{job.total_items})")
    except AppError as e:
        logger.warning(f"[SCRAPE] Could not auto-resume job {job.id}: {e.detail}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: initialize and cleanup services."""
    logger.info(
        f"Starting {settings.app_name} v{settings.app_version} ({settings.env_profile}): "
        f"batch {settings.scraper_batch_size}, "
        f"{settings.scraper_max_per_hour}/hour, {settings.scraper_max_per_day}/day, "
        f"auto resume {settings.scraper_auto_resume}"
    )

    app.state.start_time = time.time()
    app.state.settings = settings

    init_db()

    orchestrator = build_orchestrator(settings)
    app.state.orchestrator = orchestrator

    if settings.scraper_auto_resume:
        await auto_resume(orchestrator)

    retention = ScraperRetentionService(settings)
    await retention.start()

    yield

    await retention.stop()

    # Cancelled runs checkpoint their progress and are resumed on next start
    orchestrator = app.state.orchestrator
    await orchestrator.shutdown()
    aclose = getattr(orchestrator.fetcher, "aclose", None)
    if aclose is not None:
        await aclose()
    logger.info("Scraper orchestrator stopped")

    await close_redis_pool()
    logger.info(f"{settings.app_name} shut down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Resumable, rate-limited batch scraper for catalog item identifiers",
    docs_url="/api/docs" if settings.debug else None,
    redoc_url="/api/redoc" if settings.debug else None,
    lifespan=lifespan,
)

# Register global error handlers (AppError → JSON responses)
register_error_handlers(app)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request logging middleware (adds X-Request-ID, logs method/path/latency)
app.add_middleware(RequestLoggingMiddleware)

# API Routes
app.include_router(health.router, prefix="/api", tags=["Health"])
app.include_router(scraper.router, prefix="/api/scraper", tags=["Scraper"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "catalog_scraper.main:app", host=settings.host, port=settings.port, reload=settings.debug
    )

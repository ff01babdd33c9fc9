"""ARQ worker settings.

Start the worker with:
    arq catalog_scraper.workers.settings.WorkerSettings
"""

import logging

from arq import cron
from arq.connections import RedisSettings

from catalog_scraper.config import get_settings
from catalog_scraper.workers.tasks import scraper_tick

logger = logging.getLogger(__name__)


def cron_minutes(every: int) -> set[int]:
    """Minutes of the hour on which a job every ``every`` minutes fires."""
    every = max(1, min(every, 60))
    return set(range(0, 60, every))


async def on_startup(ctx: dict) -> None:
    """ARQ worker startup: initialize shared resources."""
    from catalog_scraper.core.logging import configure_logging
    from catalog_scraper.db.database import init_db
    from catalog_scraper.services.factory import build_orchestrator

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    init_db()

    ctx["settings"] = settings
    ctx["orchestrator"] = build_orchestrator(settings)
    logger.info(
        f"ARQ worker started - scraper pass every {settings.scraper_cron_minutes} minutes"
    )


async def on_shutdown(ctx: dict) -> None:
    """ARQ worker shutdown: clean up resources."""
    orchestrator = ctx.get("orchestrator")
    if orchestrator is not None:
        await orchestrator.shutdown()
        aclose = getattr(orchestrator.fetcher, "aclose", None)
        if aclose is not None:
            await aclose()
    logger.info("ARQ worker shutting down")


class WorkerSettings:
    """ARQ WorkerSettings for `arq catalog_scraper.workers.settings.WorkerSettings`."""

    settings = get_settings()

    functions = [scraper_tick]
    cron_jobs = [
        cron(
            scraper_tick,
            minute=cron_minutes(settings.scraper_cron_minutes),
            run_at_startup=True,
            timeout=settings.arq_job_timeout,
        )
    ]
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    max_jobs = settings.arq_max_jobs
    job_timeout = settings.arq_job_timeout
    health_check_interval = settings.arq_health_check_interval
    on_startup = on_startup
    on_shutdown = on_shutdown

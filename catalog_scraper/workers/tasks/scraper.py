"""Scheduled scraper pass ARQ task.

Each tick processes the resumable job for at most the configured pass
budget, so progress continues on hosts that kill idle processes.
"""

import logging

from catalog_scraper.config import get_settings
from catalog_scraper.core.exceptions import AppError

logger = logging.getLogger(__name__)


async def scraper_tick(ctx: dict, job_id: str | None = None) -> dict:
    """ARQ task: run one time-boxed processing pass.

    Args:
        ctx: ARQ context dict (contains settings, orchestrator from on_startup)
        job_id: Specific job to process; defaults to the latest resumable job

    Returns:
        Dict with pass result (ran, job_id, status, processed, total)
    """
    settings = ctx.get("settings") or get_settings()
    orchestrator = ctx.get("orchestrator")
    if orchestrator is None:
        from catalog_scraper.services.factory import build_orchestrator

        orchestrator = build_orchestrator(settings)
        ctx["orchestrator"] = orchestrator

    try:
        job = await orchestrator.run_pass(
            job_id=job_id,
            budget_seconds=settings.scraper_pass_budget_seconds,
        )
    except AppError as e:
        logger.info(f"[ARQ] Scraper pass skipped: {e.detail}")
        return {"ran": False, "error": e.error_code, "detail": e.detail}

    if job is None:
        logger.debug("[ARQ] Scraper pass found no job")
        return {"ran": False, "job_id": None}

    logger.info(
        f"[ARQ] Scraper pass finished: job {job.id} {job.status}, "
        f"{job.processed}/{job.total_items} processed"
    )
    return {
        "ran": True,
        "job_id": job.id,
        "status": job.status,
        "processed": job.processed,
        "total": job.total_items,
    }

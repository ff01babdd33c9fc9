"""Scraper job control endpoints.

Domain errors (JobNotFoundError, JobAlreadyRunningError, ConfigurationError,
InvalidJobStateError) are mapped to JSON responses by the global handlers.
"""

import logging

from fastapi import APIRouter, Depends, Query, status

from catalog_scraper.config import Settings
from catalog_scraper.core.dependencies import (
    get_app_settings,
    get_orchestrator,
    require_cron_secret,
)
from catalog_scraper.core.exceptions import JobAlreadyRunningError, JobNotFoundError
from catalog_scraper.schemas.scraper import (
    HealthSnapshotResponse,
    JobResponse,
    JobStartRequest,
    PassResponse,
    ProgressListResponse,
    ProgressResponse,
)
from catalog_scraper.services.orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/jobs", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
async def start_job(
    request: JobStartRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobResponse:
    """Create a job for the given identifiers and start processing it."""
    handle = await orchestrator.start(request.identifiers)
    return JobResponse.model_validate(handle.job)


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobResponse:
    """Current job state (live counters when the job runs in this process)."""
    active = orchestrator.active
    if active is not None and active.job_id == job_id:
        return JobResponse.model_validate(active.job)
    job = orchestrator.store.load_job(job_id)
    if job is None:
        raise JobNotFoundError(f"Scraper job {job_id} not found", context={"job_id": job_id})
    return JobResponse.model_validate(job)


@router.get("/jobs/{job_id}/progress", response_model=ProgressListResponse)
async def list_job_progress(
    job_id: str,
    item_status: str | None = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> ProgressListResponse:
    """Per-item progress rows in submission order."""
    if orchestrator.store.load_job(job_id) is None:
        raise JobNotFoundError(f"Scraper job {job_id} not found", context={"job_id": job_id})
    records = orchestrator.store.list_progress(job_id, item_status, limit, offset)
    return ProgressListResponse(
        job_id=job_id,
        items=[ProgressResponse.model_validate(record) for record in records],
        limit=limit,
        offset=offset,
    )


@router.post("/jobs/{job_id}/pause", response_model=JobResponse)
async def pause_job(
    job_id: str,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobResponse:
    """Request a pause; a running loop pauses at its next check."""
    job = await orchestrator.pause(job_id)
    return JobResponse.model_validate(job)


@router.post("/jobs/{job_id}/resume", response_model=JobResponse)
async def resume_job(
    job_id: str,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobResponse:
    """Resume a paused, stopped or failed job from its remaining pending items."""
    handle = await orchestrator.resume(job_id)
    return JobResponse.model_validate(handle.job)


@router.post("/jobs/{job_id}/stop", response_model=JobResponse)
async def stop_job(
    job_id: str,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobResponse:
    """Request termination; the job ends as stopped, not completed."""
    job = await orchestrator.stop(job_id)
    return JobResponse.model_validate(job)


@router.get("/status", response_model=HealthSnapshotResponse)
async def scraper_status(
    job_id: str | None = None,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> HealthSnapshotResponse:
    """Health snapshot; reports "stopped" when no job is active."""
    snapshot = await orchestrator.status(job_id)
    return HealthSnapshotResponse.model_validate(snapshot)


@router.post("/cron", response_model=PassResponse, dependencies=[Depends(require_cron_secret)])
async def cron_pass(
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_app_settings),
) -> PassResponse:
    """Run one time-boxed processing pass (scheduled trigger)."""
    try:
        job = await orchestrator.run_pass(budget_seconds=settings.scraper_pass_budget_seconds)
    except JobAlreadyRunningError as e:
        logger.info(f"[SCRAPE] Cron pass skipped: {e.detail}")
        return PassResponse(ran=False, message=e.detail)

    if job is None:
        return PassResponse(ran=False, message="No job to process")
    return PassResponse(
        ran=True,
        message=f"Job {job.id} is {job.status}: {job.processed}/{job.total_items} processed",
        job=JobResponse.model_validate(job),
    )

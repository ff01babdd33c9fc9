"""Health check endpoints."""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from catalog_scraper.config import get_settings
from catalog_scraper.core.redis import is_redis_available
from catalog_scraper.db.database import get_db
from catalog_scraper.db.models import ScraperHealth

logger = logging.getLogger(__name__)
router = APIRouter()
settings = get_settings()


def _check_database(db: Session) -> bool:
    try:
        db.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.warning(f"Database health check failed: {e}")
        return False


@router.get("/health")
async def health_check(request: Request, db: Session = Depends(get_db)):
    """Health check endpoint."""
    database_ok = _check_database(db)
    redis_ok = await is_redis_available()

    orchestrator = getattr(request.app.state, "orchestrator", None)
    active = orchestrator.active if orchestrator else None

    scraper_status = None
    if database_ok:
        row = db.get(ScraperHealth, "current")
        scraper_status = row.status if row else None

    return {
        "status": "healthy" if database_ok else "degraded",
        "version": settings.app_version,
        "profile": settings.env_profile,
        "database": "connected" if database_ok else "unavailable",
        "redis": "connected" if redis_ok else "unavailable",
        "scraper": {
            "active_job_id": active.job_id if active else None,
            "last_reported_status": scraper_status,
            "worker_id": orchestrator.worker_id if orchestrator else None,
        },
    }


@router.get("/version")
async def version():
    """Get version info."""
    return {"name": settings.app_name, "version": settings.app_version}

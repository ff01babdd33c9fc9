"""FastAPI dependencies for the scraper control surface."""

import secrets

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from catalog_scraper.config import Settings, get_settings
from catalog_scraper.services.orchestrator import JobOrchestrator

security = HTTPBearer(auto_error=False)


def get_app_settings(request: Request) -> Settings:
    """Settings stored on app.state by the lifespan, falling back to the cached instance."""
    return getattr(request.app.state, "settings", None) or get_settings()


def get_orchestrator(request: Request) -> JobOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Scraper orchestrator is not initialized",
        )
    return orchestrator


async def require_cron_secret(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    settings: Settings = Depends(get_app_settings),
) -> None:
    """Check the cron bearer token when scraper_cron_secret is configured."""
    expected = settings.scraper_cron_secret
    if not expected:
        return
    token = credentials.credentials if credentials else ""
    if not secrets.compare_digest(token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron secret",
            headers={"WWW-Authenticate": "Bearer"},
        )

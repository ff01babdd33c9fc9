"""Global error handlers for FastAPI."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from catalog_scraper.core.exceptions import AppError, JobStoreError

logger = logging.getLogger(__name__)


def register_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the FastAPI app.

    AppError subclasses become ``{"detail", "error_code", **context}`` with
    their own status code. JobStoreError (database unreachable or failing)
    becomes a 503 so callers can retry the control operation.
    """

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        content: dict = {"detail": exc.detail, "error_code": exc.error_code}
        if exc.context:
            content.update(exc.context)
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(JobStoreError)
    async def job_store_error_handler(request: Request, exc: JobStoreError) -> JSONResponse:
        logger.error(f"Job store unavailable during {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=503,
            content={"detail": "Job store unavailable", "error_code": "STORE_UNAVAILABLE"},
        )

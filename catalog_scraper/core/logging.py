"""Structured logging with structlog over the stdlib logging tree.

Every record (stdlib ``logging.getLogger(__name__)`` or structlog) is rendered
as JSON in production or colored console lines in dev, and carries the
request id of the HTTP call and the scraper job id of the running task when
those are set.
"""

import logging
import sys
from contextvars import ContextVar

import structlog

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
job_id_var: ContextVar[str | None] = ContextVar("job_id", default=None)

# Chatty per-request loggers from the HTTP client, server and worker
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "arq.worker")


def _context_injector(key: str, var: ContextVar[str | None]):
    def inject(logger, method_name, event_dict):
        value = var.get()
        if value:
            event_dict.setdefault(key, value)
        return event_dict

    inject.__name__ = f"_add_{key}"
    return inject


_add_request_id = _context_injector("request_id", request_id_var)
_add_job_id = _context_injector("job_id", job_id_var)


def _renderer(log_format: str):
    if log_format == "console":
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Route stdlib and structlog records through one stdout handler.

    Args:
        log_level: Root level name (DEBUG, INFO, WARNING, ERROR)
        log_format: "json" or "console"
    """
    pre_chain: list = [
        structlog.contextvars.merge_contextvars,
        _add_request_id,
        _add_job_id,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(log_format),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(logging.getLevelNamesMapping().get(log_level.upper(), logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

"""Custom exceptions for the catalog scraper."""


# -----------------------------------------------------------------------------
# Application Base Error
# -----------------------------------------------------------------------------


class AppError(Exception):
    """Base application error with HTTP semantics.

    All domain exceptions that should map to HTTP responses inherit from this.
    The global error handler in error_handlers.py catches these and returns
    a consistent JSON response.
    """

    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(self, detail: str = "An unexpected error occurred", context: dict | None = None):
        self.detail = detail
        self.context = context
        super().__init__(self.detail)


class EntityNotFound(AppError):
    """Entity not found by primary key (404)."""

    status_code = 404
    error_code = "NOT_FOUND"


class ValidationError(AppError):
    """Generic validation error (400)."""

    status_code = 400
    error_code = "VALIDATION_ERROR"


# -----------------------------------------------------------------------------
# Job Control Exceptions
# -----------------------------------------------------------------------------


class JobNotFoundError(EntityNotFound):
    """No scraper job with the given ID (404)."""

    error_code = "JOB_NOT_FOUND"


class ConfigurationError(AppError):
    """Scraper limits are missing or inconsistent (400).

    Raised before any job state is persisted.
    """

    status_code = 400
    error_code = "CONFIGURATION_ERROR"


class JobAlreadyRunningError(AppError):
    """A job is already processing on this orchestrator or holds the lease (409)."""

    status_code = 409
    error_code = "JOB_ALREADY_RUNNING"


class InvalidJobStateError(AppError):
    """Requested status change is not an allowed transition (409)."""

    status_code = 409
    error_code = "INVALID_JOB_STATE"


# -----------------------------------------------------------------------------
# Persistence Exceptions
# -----------------------------------------------------------------------------


class JobStoreError(Exception):
    """Durable job state could not be read or written.

    Fatal to the current run: the orchestrator marks the job failed.
    Progress committed before the error is kept, so a later resume
    continues from the remaining pending items.
    """

    pass


# -----------------------------------------------------------------------------
# Fetch Exceptions
# -----------------------------------------------------------------------------


class FetchError(Exception):
    """Base exception for a single item fetch.

    ``kind`` classifies the failure for progress records and logs.
    ``retryable`` errors leave the item pending until max attempts;
    every FetchError except ItemNotFoundError counts toward the circuit breaker.
    """

    kind: str = "unknown"
    retryable: bool = True

    def __init__(self, message: str = "", status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message or self.kind)


class NetworkFetchError(FetchError):
    """Transport failure or unexpected HTTP status (retryable).

    Causes:
        - DNS / connection refused / reset
        - 5xx other than 503
    """

    kind = "network"


class FetchTimeoutError(FetchError):
    """Request timed out (retryable)."""

    kind = "timeout"


class RateLimitedError(FetchError):
    """Source answered 429/503 (throttle signal).

    Indicates the fetch strategy, not the item, is the problem.
    """

    kind = "rate_limited"


class ChallengeDetectedError(FetchError):
    """Anti-automation challenge page returned instead of content."""

    kind = "challenge"


class ItemNotFoundError(FetchError):
    """Item does not exist at the source (non-retryable, skipped)."""

    kind = "not_found"
    retryable = False

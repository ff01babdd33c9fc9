"""Service protocols (interfaces) for the scraper's collaborators.

Uses typing.Protocol for structural subtyping (duck typing with type safety).
Implementations don't need to inherit - they just need to have matching methods.
"""

from datetime import datetime
from typing import Any, Protocol

from catalog_scraper.services.scraper_types import (
    FetchResult,
    HealthSnapshot,
    Identity,
    Job,
    ProgressRecord,
)


class ContentFetcherProtocol(Protocol):
    """Fetches and extracts one item from the external source."""

    async def fetch(self, identifier: str, identity: Identity) -> FetchResult:
        """Fetch one item.

        Args:
            identifier: Item identifier (e.g. product code)
            identity: Outbound identity to present

        Returns:
            FetchResult; ``available=False`` when the item exists but is unusable

        Raises:
            FetchError: Subclass whose ``kind`` classifies the failure
        """
        ...


class IdentityProviderProtocol(Protocol):
    """Supplies the identity for the next outbound request."""

    def next_identity(self) -> Identity: ...


class HealthSinkProtocol(Protocol):
    """Receives published health snapshots."""

    def publish(self, snapshot: HealthSnapshot) -> None: ...


class RecordSinkProtocol(Protocol):
    """Receives records for successfully fetched items."""

    async def save(self, record: dict[str, Any]) -> None: ...


class JobStoreProtocol(Protocol):
    """Durable job state and per-item progress.

    All methods raise JobStoreError when the backing store fails.
    """

    def create_job(
        self,
        identifiers: list[str],
        batch_size: int,
        max_attempts: int,
        config: dict[str, Any] | None = None,
    ) -> Job:
        """Persist a pending job and one pending progress row per identifier.

        Atomic: either every row is written or none is.

        Raises:
            ConfigurationError: If no identifiers remain after normalization
        """
        ...

    def claim_next_batch(self, job_id: str, size: int) -> list[str]:
        """Claim up to ``size`` pending identifiers, fresh items before retries."""
        ...

    def release_claims(self, job_id: str, identifiers: list[str] | None = None) -> int:
        """Drop claims on pending rows so they can be claimed again."""
        ...

    def record_outcome(
        self,
        job_id: str,
        identifier: str,
        status: str,
        duration_ms: int,
        error: str | None = None,
    ) -> ProgressRecord:
        """Record one attempt and return the resulting progress row.

        A "failed" outcome below max attempts leaves the row pending.
        """
        ...

    def update_job_counters(self, job: Job) -> None: ...

    def load_job(self, job_id: str) -> Job | None: ...

    def set_status(self, job_id: str, status: str, **fields: Any) -> Job: ...

    def find_resumable_job(self) -> Job | None: ...

    def latest_job(self) -> Job | None: ...

    def acquire_lease(self, job_id: str, worker_id: str, minutes: int) -> bool: ...

    def renew_lease(self, job_id: str, worker_id: str, minutes: int) -> bool: ...

    def release_lease(self, job_id: str, worker_id: str) -> None: ...

    def lease_holder(self, job_id: str) -> str | None: ...

    def request_action(self, job_id: str, action: str | None) -> None: ...

    def take_requested_action(self, job_id: str) -> str | None: ...

    def list_progress(
        self,
        job_id: str,
        status: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ProgressRecord]: ...


class ClockProtocol(Protocol):
    """Time source with an interruptible wait."""

    def now(self) -> datetime: ...

    def monotonic(self) -> float: ...

    async def wait(self, seconds: float, event: Any) -> bool: ...

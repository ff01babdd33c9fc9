"""HTTP content fetcher with failure classification.

Field extraction is delegated to an injected extractor so the fetcher only
decides *whether* a page is usable content, a throttle signal, or an error.
"""

import logging
from collections.abc import Callable
from typing import Any

import httpx

from catalog_scraper.core.exceptions import (
    ChallengeDetectedError,
    FetchTimeoutError,
    ItemNotFoundError,
    NetworkFetchError,
    RateLimitedError,
)
from catalog_scraper.services.scraper_types import FetchResult, Identity

logger = logging.getLogger(__name__)

Extractor = Callable[[str, str], dict[str, Any] | None]

RATE_LIMIT_STATUSES = frozenset({429, 503})
NOT_FOUND_STATUSES = frozenset({404, 410})
CHALLENGE_MARKERS = ("captcha", "robot check")


def raw_document_extractor(identifier: str, text: str) -> dict[str, Any] | None:
    """Default extractor: keep the raw document for downstream parsing."""
    return {"identifier": identifier, "document": text}


class HttpContentFetcher:
    """Fetches ``url_template.format(identifier=...)`` with httpx.

    Classification:
        429/503            -> RateLimitedError
        404/410            -> ItemNotFoundError
        other non-2xx      -> NetworkFetchError
        challenge markers  -> ChallengeDetectedError
        timeout            -> FetchTimeoutError
        transport failure  -> NetworkFetchError

    An extractor returning None marks the item as not available.
    """

    def __init__(
        self,
        url_template: str,
        timeout: float = 20.0,
        extractor: Extractor | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url_template = url_template
        self.timeout = timeout
        self.extractor = extractor or raw_document_extractor
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch(self, identifier: str, identity: Identity) -> FetchResult:
        url = self.url_template.format(identifier=identifier)
        headers = {**identity.headers, "User-Agent": identity.user_agent}

        try:
            response = await self._get_client().get(url, headers=headers)
        except httpx.TimeoutException as e:
            raise FetchTimeoutError(f"Timeout fetching {identifier}") from e
        except httpx.TransportError as e:
            raise NetworkFetchError(f"Transport error fetching {identifier}: {e}") from e

        status = response.status_code
        if status in RATE_LIMIT_STATUSES:
            raise RateLimitedError(f"Rate limited ({status})", status_code=status)
        if status in NOT_FOUND_STATUSES:
            raise ItemNotFoundError(f"Item {identifier} not found ({status})", status_code=status)
        if not response.is_success:
            raise NetworkFetchError(f"HTTP {status}", status_code=status)

        text = response.text
        lowered = text.lower()
        if any(marker in lowered for marker in CHALLENGE_MARKERS):
            raise ChallengeDetectedError("CAPTCHA detected", status_code=status)

        record = self.extractor(identifier, text)
        if record is None:
            logger.debug(f"[SCRAPE] {identifier} fetched but not available")
            return FetchResult(identifier=identifier, available=False, reason="not available")
        return FetchResult(identifier=identifier, record=record)

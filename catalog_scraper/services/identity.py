"""Outbound request identities."""

import random

from catalog_scraper.services.scraper_types import Identity

# Browser-like headers sent with every request
BASE_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "Accept-Encoding": "gzip, deflate",
    "Connection": "keep-alive",
    "Upgrade-Insecure-Requests": "1",
    "Cache-Control": "max-age=0",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
}


class RotatingIdentityProvider:
    """Picks a random user agent from a configured list for each request."""

    def __init__(
        self,
        user_agents: list[str],
        headers: dict[str, str] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if not user_agents:
            raise ValueError("At least one user agent is required")
        self.user_agents = list(user_agents)
        self.headers = dict(BASE_HEADERS if headers is None else headers)
        self._rng = rng or random.Random()

    def next_identity(self) -> Identity:
        return Identity(user_agent=self._rng.choice(self.user_agents), headers=dict(self.headers))

"""Time source and cancellable waiting for the scraper loop."""

import asyncio
import time
from datetime import UTC, datetime


class SystemClock:
    """Wall clock in UTC plus interruptible sleeps.

    ``wait`` is the only suspension primitive the orchestrator uses, so a
    stop or pause signal (setting ``event``) cuts multi-hour waits short.
    """

    def now(self) -> datetime:
        return datetime.now(UTC)

    def monotonic(self) -> float:
        return time.monotonic()

    async def wait(self, seconds: float, event: asyncio.Event) -> bool:
        """Wait up to ``seconds``. Returns True if ``event`` was set first."""
        if event.is_set():
            return True
        if seconds <= 0:
            return False
        try:
            await asyncio.wait_for(event.wait(), timeout=seconds)
            return True
        except TimeoutError:
            return False

"""Pytest configuration and fixtures."""

import asyncio
import os
import random
from datetime import UTC, datetime, timedelta

# Settings are cached on first import; keep tests off the real database and
# stop the app from resuming jobs on startup.
os.environ.setdefault("DATABASE_URL", "sqlite:///./data/test_catalog_scraper.db")
os.environ.setdefault("SCRAPER_AUTO_RESUME", "false")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine, delete  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from catalog_scraper.db.database import Base, get_db  # noqa: E402
from catalog_scraper.db.models import ScraperHealth, ScraperJob, ScraperProgress  # noqa: E402
from catalog_scraper.main import app  # noqa: E402
from catalog_scraper.services.identity import RotatingIdentityProvider  # noqa: E402
from catalog_scraper.services.job_store import SqlJobStore  # noqa: E402
from catalog_scraper.services.orchestrator import JobOrchestrator  # noqa: E402
from catalog_scraper.services.scraper_types import FetchResult, ScraperLimits  # noqa: E402

# Test database - in-memory SQLite with StaticPool for connection sharing
TEST_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Monday 10:00 in New York
START_TIME = datetime(2024, 3, 4, 15, 0, tzinfo=UTC)

FAST_LIMITS = {
    "min_delay_seconds": 1.0,
    "max_delay_seconds": 2.0,
    "batch_size": 5,
    "max_per_hour": 1000,
    "max_per_day": 10000,
    "max_attempts": 2,
    "breaker_threshold": 5,
    "breaker_cooldown_seconds": 300.0,
    "checkpoint_every": 10,
    "pause_poll_seconds": 5.0,
    "timezone": "America/New_York",
    # Long enough that a slice of a gate wait can exceed hold_over
    "lease_duration_minutes": 240,
}


class FakeClock:
    """Deterministic clock: waits advance time instantly.

    Waits of ``hold_over`` seconds or more block until the event fires, so a
    test can signal pause/stop in the middle of a long wait.
    """

    def __init__(self, start: datetime = START_TIME, hold_over: float | None = None):
        self.current = start
        self.mono = 0.0
        self.hold_over = hold_over
        self.waits: list[float] = []

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.mono

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)
        self.mono += seconds

    async def wait(self, seconds: float, event: asyncio.Event) -> bool:
        self.waits.append(seconds)
        if event.is_set():
            return True
        if self.hold_over is not None and seconds >= self.hold_over:
            await event.wait()
            return True
        await asyncio.sleep(0)
        if event.is_set():
            return True
        self.advance(max(seconds, 0.0))
        return False


class ScriptedFetcher:
    """Fetcher returning scripted outcomes per identifier and attempt.

    An outcome is "ok", "unavailable", an exception instance, or an
    exception class. Identifiers without a script (or past its end) succeed.
    """

    def __init__(self, clock: FakeClock, outcomes: dict | None = None, latency: float = 0.2):
        self.clock = clock
        self.outcomes = {key: list(value) for key, value in (outcomes or {}).items()}
        self.latency = latency
        self.calls: list[tuple[str, datetime]] = []
        self.identities = []
        self.on_fetch = None

    @property
    def dispatched(self) -> list[str]:
        return [identifier for identifier, _ in self.calls]

    async def fetch(self, identifier, identity):
        self.calls.append((identifier, self.clock.now()))
        self.identities.append(identity)
        self.clock.advance(self.latency)
        if self.on_fetch is not None:
            self.on_fetch(identifier)

        queue = self.outcomes.get(identifier)
        outcome = queue.pop(0) if queue else "ok"
        if isinstance(outcome, type) and issubclass(outcome, Exception):
            raise outcome(f"scripted failure for {identifier}")
        if isinstance(outcome, Exception):
            raise outcome
        if outcome == "unavailable":
            return FetchResult(identifier=identifier, available=False, reason="out of stock")
        return FetchResult(identifier=identifier, record={"identifier": identifier})


class CollectingSink:
    def __init__(self):
        self.snapshots = []

    def publish(self, snapshot):
        self.snapshots.append(snapshot)


@pytest.fixture(scope="session", autouse=True)
def setup_database():
    """Create tables once for entire test session."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clean_tables(setup_database):
    """The job store commits in its own sessions, so wipe rows between tests."""
    yield
    with TestingSessionLocal() as session:
        session.execute(delete(ScraperProgress))
        session.execute(delete(ScraperJob))
        session.execute(delete(ScraperHealth))
        session.commit()


@pytest.fixture(scope="function")
def db(setup_database):
    """Provide a database session on the test engine."""
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def store() -> SqlJobStore:
    return SqlJobStore(TestingSessionLocal)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_orchestrator(store):
    """Factory for orchestrators with fast limits, a fake clock and scripted fetcher."""

    def _make(fetcher=None, clock=None, sinks=None, worker_id="test-worker", **limit_overrides):
        clock = clock or FakeClock()
        limits = ScraperLimits(**{**FAST_LIMITS, **limit_overrides})
        return JobOrchestrator(
            store=store,
            fetcher=fetcher or ScriptedFetcher(clock),
            identities=RotatingIdentityProvider(["test-agent/1.0"]),
            limits=limits,
            health_sinks=sinks or [],
            clock=clock,
            worker_id=worker_id,
            rng=random.Random(7),
        )

    return _make


@pytest.fixture(scope="function")
def client(db):
    """Create test client with database override."""

    def override_get_db():
        try:
            yield db
        finally:
            pass  # Do not close - managed by db fixture

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def api_orchestrator(client, make_orchestrator):
    """Orchestrator on the test database, installed on the running app."""
    clock = FakeClock()
    orchestrator = make_orchestrator(fetcher=ScriptedFetcher(clock), clock=clock)
    app.state.orchestrator = orchestrator
    return orchestrator

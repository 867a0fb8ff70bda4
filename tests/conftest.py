"""
Pytest configuration and fixtures for the voting service tests.

This module provides:
- In-memory catalog and voting store (no database needed)
- A controllable clock for expiry tests
- Session manager and submission coordinator wired to the above
- FastAPI async test client with dependency overrides
- Authentication headers for a test voter
"""

import os

os.environ["ENVIRONMENT"] = "test"

from datetime import UTC, datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from app.api.deps import get_catalog_source, get_clock, get_voting_store
from app.core.config import Settings, get_settings
from app.core.security import create_access_token
from app.main import app
from app.models.voting import Candidate, Election, ElectionStatus, Position
from app.services.catalog import InMemoryCatalogSource
from app.services.submission import SubmissionCoordinator
from app.services.voting_sessions import SessionManager
from app.services.voting_store import InMemoryVotingStore

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

ELECTION_ID = "6f1c2d3e-4a5b-4c6d-8e7f-9a0b1c2d3e4f"
PRESIDENT = "pos-president"
SENATE = "pos-senate"
PRESIDENT_CANDIDATES = ["cand-ama", "cand-kofi", "cand-yaw"]
SENATE_CANDIDATES = ["cand-abena", "cand-esi", "cand-kwame"]
VOTER_ID = "voter-0001"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def build_election(
    election_id: str = ELECTION_ID,
    status: ElectionStatus = ElectionStatus.ACTIVE,
    start_date: datetime = T0 - timedelta(hours=1),
    end_date: datetime = T0 + timedelta(days=7),
    positions: tuple[Position, ...] | None = None,
    allow_abstain: bool = True,
) -> Election:
    """Student union election: one president seat, two senate seats."""
    if positions is None:
        positions = (
            Position(id=PRESIDENT, name="President", max_selections=1, display_order=1),
            Position(id=SENATE, name="Senate", max_selections=2, display_order=2),
        )
    return Election(
        id=election_id,
        title="Student Union Election 2026",
        status=status,
        start_date=start_date,
        end_date=end_date,
        positions=positions,
        allow_abstain=allow_abstain,
    )


def build_candidates() -> list[Candidate]:
    candidates = []
    for order, cid in enumerate(PRESIDENT_CANDIDATES, start=1):
        candidates.append(Candidate(id=cid, position_id=PRESIDENT, name=cid, display_order=order))
    for order, cid in enumerate(SENATE_CANDIDATES, start=1):
        candidates.append(Candidate(id=cid, position_id=SENATE, name=cid, display_order=order))
    return candidates


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        ENVIRONMENT="test",
        SECRET_KEY="test_secret_key_for_testing_only",
        BALLOT_INTEGRITY_KEY="test_integrity_key",
        VOTING_SESSION_TTL_MINUTES=30,
        VOTING_SESSION_MAX_EXTENSION_MINUTES=15,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(T0)


@pytest.fixture
def catalog_source() -> InMemoryCatalogSource:
    source = InMemoryCatalogSource()
    source.add_election(build_election())
    for candidate in build_candidates():
        source.add_candidate(candidate)
    return source


@pytest.fixture
def store() -> InMemoryVotingStore:
    return InMemoryVotingStore()


@pytest.fixture
def session_manager(store, catalog_source, test_settings, clock) -> SessionManager:
    return SessionManager(store, catalog_source, settings=test_settings, clock=clock)


@pytest.fixture
def coordinator(session_manager, store, catalog_source, test_settings) -> SubmissionCoordinator:
    return SubmissionCoordinator(session_manager, store, catalog_source, settings=test_settings)


@pytest.fixture
async def async_client(store, catalog_source, test_settings, clock):
    """FastAPI async test client backed by the in-memory store."""
    app.dependency_overrides[get_voting_store] = lambda: store
    app.dependency_overrides[get_catalog_source] = lambda: catalog_source
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_clock] = lambda: clock

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> dict[str, str]:
    """Authentication headers for the test voter."""
    token = create_access_token({"sub": VOTER_ID})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def other_voter_headers() -> dict[str, str]:
    token = create_access_token({"sub": "voter-0002"})
    return {"Authorization": f"Bearer {token}"}

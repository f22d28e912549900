"""Shared fixtures for session engine tests.

All components take an injectable clock; tests use a manually advanced
clock so timestamps, backoff and timeouts are deterministic.
"""

from datetime import UTC, datetime, timedelta

import pytest

from cvsession.models.sync import ResolutionStrategy
from cvsession.services.persistence import InMemorySessionPersistence
from cvsession.services.session_store import SessionStore

_START = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = _START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def persistence() -> InMemorySessionPersistence:
    return InMemorySessionPersistence()


@pytest.fixture
def store(persistence: InMemorySessionPersistence, clock: FakeClock) -> SessionStore:
    """Store with auto-sync on and the default merge strategy."""
    return SessionStore(
        persistence,
        strategy=ResolutionStrategy.MERGE,
        auto_sync=True,
        clock=clock,
    )

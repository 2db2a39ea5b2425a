"""
Shared test fixtures for AlertHub.

Provides:
    • Environment pinned to an in-memory SQLite store, no Redis
    • FakeClock for retention-window tests
    • Store / sequencer / broadcaster / service built on a fresh database
    • A FastAPI TestClient running the full lifespan
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone

# Must be set before any alerthub import so Settings picks them up.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ.pop("REDIS_URL", None)
os.environ["RESYNC_HELLO_TIMEOUT"] = "0.5"
os.environ["ENVIRONMENT"] = "development"

import pytest  # noqa: E402
from sqlalchemy.exc import OperationalError  # noqa: E402

from alerthub.app.alerts.broadcaster import Broadcaster  # noqa: E402
from alerthub.app.alerts.sequencer import EventSequencer  # noqa: E402
from alerthub.app.alerts.service import AlertService  # noqa: E402
from alerthub.app.alerts.store import AlertStore  # noqa: E402
from alerthub.app.core.database import (  # noqa: E402
    build_engine,
    build_session_factory,
    close_db,
    init_db,
)


class FakeClock:
    """Controllable UTC clock injected into the store."""

    def __init__(self, start: datetime = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class DownSession:
    """Session factory stand-in whose connection attempt always fails."""

    async def __aenter__(self):
        raise OperationalError("SELECT 1", {}, ConnectionRefusedError("connection refused"))

    async def __aexit__(self, *exc):
        return False


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sequencer() -> EventSequencer:
    return EventSequencer()


@pytest.fixture
async def engine():
    eng = build_engine("sqlite+aiosqlite://")
    await init_db(eng)
    yield eng
    await close_db(eng)


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def store(session_factory, sequencer, clock) -> AlertStore:
    return AlertStore(session_factory, sequencer, clock=clock)


@pytest.fixture
def down_store(sequencer, clock) -> AlertStore:
    """Store whose every operation fails with StoreUnavailable."""
    return AlertStore(DownSession, sequencer, clock=clock)


@pytest.fixture
def broadcaster() -> Broadcaster:
    return Broadcaster(queue_size=8)


@pytest.fixture
def service(store, sequencer, broadcaster) -> AlertService:
    return AlertService(store, sequencer, broadcaster)


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from alerthub.app.main import app

    with TestClient(app) as c:
        yield c

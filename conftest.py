"""
Shared fixtures for the CaseRouter unit tests.

Every test gets a fresh in-memory database, a fresh real-time hub and a
controllable clock, so no server process or on-disk state is needed.
"""
from datetime import datetime, timedelta, timezone

import aiosqlite
import pytest
import pytest_asyncio

from caserouter import realtime
from caserouter.db import crud
from caserouter.db.database import init_schema
from caserouter.db.models import Actor
from caserouter.policy import set_policy

T0 = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Stands in for `crud.utcnow`; every module reads time through it."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock(monkeypatch):
    c = FakeClock()
    monkeypatch.setattr(crud, "utcnow", c)
    return c


@pytest.fixture(autouse=True)
def hub(monkeypatch):
    h = realtime.ConnectionHub()
    monkeypatch.setattr(realtime, "hub", h)
    return h


@pytest.fixture(autouse=True)
def default_policy():
    set_policy(None)
    yield
    set_policy(None)


@pytest_asyncio.fixture
async def db():
    conn = await aiosqlite.connect(":memory:")
    conn.row_factory = aiosqlite.Row
    await init_schema(conn)
    yield conn
    await conn.close()


def actor(agent_id: str, role: str = "Agent", tenant_id: str = "t1") -> Actor:
    return Actor(id=agent_id, role=role, tenant_id=tenant_id)


def drain(conn: realtime.Connection) -> list[realtime.Event]:
    """Everything queued on a connection so far."""
    events = []
    while not conn.queue.empty():
        events.append(conn.queue.get_nowait())
    return events

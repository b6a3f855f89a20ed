"""
Unit tests for the expiry sweeper and its background loop.
"""
import asyncio
from datetime import timedelta

import pytest

import caserouter.sweeper as sweeper_mod
from caserouter import lifecycle, presence, transfer
from caserouter.db import crud
from caserouter.errors import InvalidTransition
from caserouter.sweeper import ExpirySweeper, sweep_expired
from conftest import T0, actor, drain

CUSTOMER = actor("cust-1", role="Customer")


async def _open_query(db, tenant_id="t1"):
    return await lifecycle.create_query(db, tenant_id, "cust-1", "Dana", "Where is my parcel")


async def _status(db, case_id):
    return (await lifecycle.get_query(db, case_id, "t1")).status


@pytest.mark.asyncio
async def test_idle_pending_query_expires_after_24h(db, clock):
    q = await _open_query(db)

    clock.advance(hours=23, minutes=59)
    assert await sweep_expired(db) == []

    clock.advance(minutes=2)
    assert await sweep_expired(db) == [q.case_id]
    assert await _status(db, q.case_id) == "Expired"


@pytest.mark.asyncio
async def test_message_slides_the_deadline(db, clock):
    q = await _open_query(db)
    clock.advance(hours=23)
    await lifecycle.record_message(db, q.case_id, CUSTOMER, "Hello?")

    clock.now = T0 + timedelta(hours=24, minutes=1)
    assert await sweep_expired(db) == []
    assert await _status(db, q.case_id) == "Pending"

    clock.now = T0 + timedelta(hours=46, minutes=59)
    assert await sweep_expired(db) == []

    clock.now = T0 + timedelta(hours=47, minutes=1)
    assert await sweep_expired(db) == [q.case_id]


@pytest.mark.asyncio
async def test_sweep_clears_handler_and_frees_agent(db, clock, hub):
    await presence.login(db, "a1", "t1", "Alice", "Agent")
    q = await _open_query(db)
    await lifecycle.accept(db, q.case_id, actor("a1"))
    watcher = hub.connect("a1", "t1", "Agent")
    clock.advance(hours=25)

    await sweep_expired(db)

    expired = await lifecycle.get_query(db, q.case_id, "t1")
    assert (expired.status, expired.assigned_handler) == ("Expired", None)
    assert (await crud.agent_get(db, "a1")).work_status == "Active"
    events = [e.event_type for e in drain(watcher)]
    assert "query-expired" in events
    assert "work-status-changed" in events


@pytest.mark.asyncio
async def test_sweep_is_idempotent(db, clock):
    q = await _open_query(db)
    clock.advance(hours=30)

    first = await sweep_expired(db)
    version = (await lifecycle.get_query(db, q.case_id, "t1")).version
    second = await sweep_expired(db)

    assert first == [q.case_id]
    assert second == []
    assert (await lifecycle.get_query(db, q.case_id, "t1")).version == version


@pytest.mark.asyncio
async def test_transferred_and_resolved_queries_are_not_swept(db, clock):
    for agent_id in ("a", "b"):
        await presence.login(db, agent_id, "t1", agent_id.upper(), "Agent")
    moving = await _open_query(db)
    done = await _open_query(db)
    await lifecycle.accept(db, moving.case_id, actor("a"))
    await lifecycle.accept(db, done.case_id, actor("b"))
    await lifecycle.resolve(db, done.case_id, actor("b"))
    await transfer.request_transfer(db, moving.case_id, actor("a"), "b")
    clock.advance(hours=48)

    assert await sweep_expired(db) == []
    assert await _status(db, moving.case_id) == "Transferred"
    assert await _status(db, done.case_id) == "Resolved"


@pytest.mark.asyncio
async def test_reopen_after_expiry_closes_latent_request(db, clock):
    for agent_id in ("a", "b"):
        await presence.login(db, agent_id, "t1", agent_id.upper(), "Agent")
    q = await _open_query(db)
    await lifecycle.accept(db, q.case_id, actor("a"))
    await transfer.request_transfer(db, q.case_id, actor("a"), "b")
    # Put the query into Expired while the request is still open
    fresh = await lifecycle.get_query(db, q.case_id, "t1")
    assert await crud.query_cas_update(db, fresh, ["Transferred"], {"status": "Expired"})

    reopened = await lifecycle.reopen(db, q.case_id, CUSTOMER)

    assert reopened.status == "Pending"
    assert reopened.pending_transfer is None
    assert reopened.latest_transfer.status == "Rejected"
    with pytest.raises(InvalidTransition):
        await transfer.accept_transfer(db, q.case_id, actor("b"))


@pytest.mark.asyncio
async def test_sweeper_loop_survives_a_failed_tick(monkeypatch):
    calls = []

    async def _flaky_tick(self):
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("database is locked")
        return []

    monkeypatch.setattr(ExpirySweeper, "tick", _flaky_tick)
    sweeper = ExpirySweeper(interval=0.01)

    sweeper.start()
    assert sweeper.running
    for _ in range(100):
        if len(calls) >= 3:
            break
        await asyncio.sleep(0.01)
    await sweeper.stop()

    assert sweeper.failures == 1
    assert sweeper.ticks >= 3
    assert not sweeper.running


@pytest.mark.asyncio
async def test_tick_runs_transfer_timeout_when_enabled(db, clock, monkeypatch):
    async def _get_db():
        return db

    seen = []

    async def _expire(conn, older_than):
        seen.append(older_than)
        return []

    monkeypatch.setattr(sweeper_mod, "get_db", _get_db)
    monkeypatch.setattr(sweeper_mod, "TRANSFER_TIMEOUT_ENABLED", True)
    monkeypatch.setattr(sweeper_mod, "TRANSFER_TIMEOUT_MINUTES", 15)
    monkeypatch.setattr(transfer, "expire_stale_transfer_requests", _expire)
    q = await _open_query(db)
    clock.advance(days=2)

    expired = await ExpirySweeper().tick()

    assert expired == [q.case_id]
    assert seen == [timedelta(minutes=15)]

"""
Unit tests for the presence tracker: work status, productive-time accounting,
breaks and self-healing against the query store.
"""
import pytest

from caserouter import lifecycle, presence
from caserouter.db import crud
from caserouter.errors import Forbidden, InvalidTransition, NotFound
from conftest import actor


async def _open_query(db, tenant_id="t1"):
    return await lifecycle.create_query(db, tenant_id, "cust-1", "Dana", "Order never arrived")


@pytest.mark.asyncio
async def test_login_starts_active_session_with_zero_minutes(db, clock):
    agent = await presence.login(db, "a1", "t1", "Alice", "Agent", department="Billing")

    assert agent.work_status == "Active"
    assert agent.accumulated_active_minutes == 0
    assert agent.login_at == clock.now
    assert agent.department == "Billing"


@pytest.mark.asyncio
async def test_time_is_flushed_only_from_active_or_busy(db, clock):
    await presence.login(db, "a1", "t1", "Alice", "Agent")

    clock.advance(minutes=30)
    agent = await presence.set_busy(db, "a1")
    assert agent.accumulated_active_minutes == pytest.approx(30)

    clock.advance(minutes=15)
    agent = await presence.start_break(db, "a1")
    assert agent.work_status == "Break"
    assert agent.accumulated_active_minutes == pytest.approx(45)

    clock.advance(minutes=20)
    agent = await presence.end_break(db, "a1")
    # Break time never counts
    assert agent.accumulated_active_minutes == pytest.approx(45)

    clock.advance(minutes=10)
    assert await presence.current_active_minutes(db, "a1") == pytest.approx(55)


@pytest.mark.asyncio
async def test_current_minutes_frozen_while_on_break(db, clock):
    await presence.login(db, "a1", "t1", "Alice", "Agent")
    clock.advance(minutes=12)
    await presence.start_break(db, "a1")
    clock.advance(minutes=40)

    assert await presence.current_active_minutes(db, "a1") == pytest.approx(12)


@pytest.mark.asyncio
async def test_end_break_writes_break_log(db, clock):
    await presence.login(db, "a1", "t1", "Alice", "Agent")
    started = clock.advance(minutes=5)
    await presence.start_break(db, "a1")
    clock.advance(minutes=15)
    await presence.end_break(db, "a1")

    logs = await presence.break_history(db, "a1")
    assert len(logs) == 1
    assert logs[0].started_at == started
    assert logs[0].duration_minutes == 15


@pytest.mark.asyncio
async def test_logout_flushes_and_closes_open_break(db, clock):
    await presence.login(db, "a1", "t1", "Alice", "Agent")
    clock.advance(minutes=20)
    await presence.start_break(db, "a1")
    clock.advance(minutes=7)

    agent = await presence.logout(db, "a1")

    assert agent.work_status == "Offline"
    assert agent.accumulated_active_minutes == pytest.approx(20)
    assert agent.break_started_at is None
    logs = await presence.break_history(db, "a1")
    assert [b.duration_minutes for b in logs] == [7]


@pytest.mark.asyncio
async def test_new_login_resets_counter(db, clock):
    await presence.login(db, "a1", "t1", "Alice", "Agent")
    clock.advance(minutes=90)
    await presence.logout(db, "a1")

    clock.advance(hours=12)
    agent = await presence.login(db, "a1", "t1", "Alice", "Agent")

    assert agent.accumulated_active_minutes == 0
    assert await presence.current_active_minutes(db, "a1") == 0


@pytest.mark.asyncio
async def test_break_only_from_active_or_busy(db, clock):
    await presence.login(db, "a1", "t1", "Alice", "Agent")
    await presence.logout(db, "a1")

    with pytest.raises(InvalidTransition):
        await presence.start_break(db, "a1")
    with pytest.raises(InvalidTransition):
        await presence.end_break(db, "a1")


@pytest.mark.asyncio
async def test_stuck_busy_is_self_healed_on_read(db, clock):
    await presence.login(db, "a1", "t1", "Alice", "Agent")
    await presence.set_busy(db, "a1")  # no query behind it

    agent = await presence.get_presence(db, "a1")

    assert agent.work_status == "Active"
    stored = await crud.agent_get(db, "a1")
    assert stored.work_status == "Active"


@pytest.mark.asyncio
async def test_active_holding_work_is_raised_to_busy_on_read(db, clock):
    await presence.login(db, "a1", "t1", "Alice", "Agent")
    q = await _open_query(db)
    await lifecycle.accept(db, q.case_id, actor("a1"))
    # Simulate a lost presence write
    agent = await crud.agent_get(db, "a1")
    agent.work_status = "Active"
    await crud.agent_save_status(db, agent)

    assert (await presence.get_presence(db, "a1")).work_status == "Busy"


@pytest.mark.asyncio
async def test_clear_busy_rechecks_remaining_work(db, clock):
    await presence.login(db, "a1", "t1", "Alice", "Agent")
    q1 = await _open_query(db)
    q2 = await _open_query(db)
    await lifecycle.accept(db, q1.case_id, actor("a1"))
    await lifecycle.accept(db, q2.case_id, actor("a1"))

    await lifecycle.resolve(db, q1.case_id, actor("a1"))
    assert (await crud.agent_get(db, "a1")).work_status == "Busy"

    await lifecycle.resolve(db, q2.case_id, actor("a1"))
    assert (await crud.agent_get(db, "a1")).work_status == "Active"


@pytest.mark.asyncio
async def test_clear_if_idle_is_the_same_operation(db, clock):
    await presence.login(db, "a1", "t1", "Alice", "Agent")
    await presence.set_busy(db, "a1")

    agent = await presence.clear_if_idle(db, "a1")

    assert agent.work_status == "Active"


@pytest.mark.asyncio
async def test_login_with_held_work_comes_back_busy(db, clock):
    await presence.login(db, "a1", "t1", "Alice", "Agent")
    q = await _open_query(db)
    await lifecycle.accept(db, q.case_id, actor("a1"))
    await presence.logout(db, "a1")

    agent = await presence.login(db, "a1", "t1", "Alice", "Agent")

    assert agent.work_status == "Busy"


@pytest.mark.asyncio
async def test_list_presence_is_tenant_scoped(db, clock):
    await presence.login(db, "a1", "t1", "Alice", "Agent")
    await presence.login(db, "b1", "t2", "Bob", "Agent")

    agents = await presence.list_presence(db, "t1")

    assert [a.agent_id for a in agents] == ["a1"]


@pytest.mark.asyncio
async def test_unknown_agent_is_not_found(db, clock):
    with pytest.raises(NotFound):
        await presence.get_presence(db, "ghost")
    with pytest.raises(NotFound):
        await presence.get_presence(db, "a1", tenant_id="t1")


@pytest.mark.asyncio
async def test_accepting_during_break_closes_the_break(db, clock):
    await presence.login(db, "a1", "t1", "Alice", "Agent")
    q = await _open_query(db)
    await presence.start_break(db, "a1")
    clock.advance(minutes=10)

    await lifecycle.accept(db, q.case_id, actor("a1"))

    agent = await crud.agent_get(db, "a1")
    assert (agent.work_status, agent.break_started_at) == ("Busy", None)
    assert [b.duration_minutes for b in await presence.break_history(db, "a1")] == [10]


@pytest.mark.asyncio
async def test_login_under_another_tenant_is_refused(db, clock):
    await presence.login(db, "a1", "t1", "Alice", "Agent")

    with pytest.raises(Forbidden):
        await presence.login(db, "a1", "t2", "Alice", "Agent")

    assert (await crud.agent_get(db, "a1")).tenant_id == "t1"
    assert await presence.list_presence(db, "t2") == []

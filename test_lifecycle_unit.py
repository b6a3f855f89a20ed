"""
Unit tests for the query state machine: intake, accept races, messages,
resolve, reopen and feedback.
"""
import asyncio
import re
from datetime import timedelta

import pytest

from caserouter import lifecycle, presence
from caserouter.db import crud
from caserouter.errors import AlreadyAssigned, Forbidden, InvalidTransition, NotFound
from conftest import actor, drain

CUSTOMER = actor("cust-1", role="Customer")


async def _agents(db, *ids, tenant_id="t1", role="Agent"):
    for agent_id in ids:
        await presence.login(db, agent_id, tenant_id, agent_id.upper(), role)


async def _open_query(db, tenant_id="t1", **kwargs):
    return await lifecycle.create_query(db, tenant_id, "cust-1", "Dana", "Refund not received", **kwargs)


# ─────────────────────────────────────────────
# Intake
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_query_is_pending_with_sliding_deadline(db, clock):
    q = await _open_query(db, category="Billing", priority="High", initial_message="Hi, I need help")

    assert q.status == "Pending"
    assert q.assigned_handler is None
    assert q.expires_at == clock.now + timedelta(hours=24)
    assert re.fullmatch(r"QRY-\d{8}-[0-9A-F]{8}", q.case_id)
    assert (q.category, q.priority) == ("Billing", "High")

    msgs = await crud.msg_list(db, q.case_id)
    assert [m.is_system for m in msgs] == [True, False]
    assert msgs[1].body == "Hi, I need help"
    assert msgs[1].sender_role == "Customer"


@pytest.mark.asyncio
async def test_create_query_validates_input(db, clock):
    with pytest.raises(ValueError):
        await _open_query(db, priority="Whenever")
    with pytest.raises(ValueError):
        await lifecycle.create_query(db, "t1", "cust-1", "Dana", "   ")


@pytest.mark.asyncio
async def test_create_query_survives_broadcast_failure(db, clock, monkeypatch):
    from caserouter import broadcast

    async def _boom(*args, **kwargs):
        raise RuntimeError("transport down")

    monkeypatch.setattr(broadcast, "compute_targets", _boom)

    q = await _open_query(db)

    assert (await lifecycle.get_query(db, q.case_id, "t1")).status == "Pending"


# ─────────────────────────────────────────────
# Accept
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_accept_assigns_handler_and_marks_busy(db, clock, hub):
    await _agents(db, "a1", "a2")
    watcher = hub.connect("a2", "t1", "Agent")
    q = await _open_query(db)
    clock.advance(minutes=10)

    accepted = await lifecycle.accept(db, q.case_id, actor("a1"))

    assert accepted.status == "Accepted"
    assert accepted.assigned_handler == "a1"
    assert accepted.assigned_at == clock.now
    assert accepted.expires_at == clock.now + timedelta(hours=24)
    assert accepted.version == q.version + 1
    assert (await crud.agent_get(db, "a1")).work_status == "Busy"
    events = [e.event_type for e in drain(watcher)]
    assert "query-accepted" in events
    notes = [m.body for m in await crud.msg_list(db, q.case_id) if m.is_system]
    assert notes[-1] == "Query accepted by A1"


@pytest.mark.asyncio
async def test_concurrent_accepts_have_exactly_one_winner(db, clock):
    agent_ids = [f"a{i}" for i in range(6)]
    await _agents(db, *agent_ids)
    q = await _open_query(db)

    results = await asyncio.gather(
        *(lifecycle.accept(db, q.case_id, actor(a)) for a in agent_ids),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == len(agent_ids) - 1
    assert all(isinstance(e, AlreadyAssigned) for e in losers)
    assert all(e.handler == winners[0].assigned_handler for e in losers)

    stored = await lifecycle.get_query(db, q.case_id, "t1")
    assert stored.assigned_handler == winners[0].assigned_handler
    busy = [a for a in agent_ids if (await crud.agent_get(db, a)).work_status == "Busy"]
    assert busy == [winners[0].assigned_handler]


@pytest.mark.asyncio
async def test_accept_rejects_customers_and_unknown_agents(db, clock):
    q = await _open_query(db)

    with pytest.raises(Forbidden):
        await lifecycle.accept(db, q.case_id, CUSTOMER)
    with pytest.raises(NotFound):
        await lifecycle.accept(db, q.case_id, actor("never-logged-in"))


@pytest.mark.asyncio
async def test_accept_is_tenant_scoped(db, clock):
    await _agents(db, "x1", tenant_id="t2")
    q = await _open_query(db, tenant_id="t1")

    with pytest.raises(NotFound):
        await lifecycle.accept(db, q.case_id, actor("x1", tenant_id="t2"))
    with pytest.raises(NotFound):
        await lifecycle.get_query(db, q.case_id, "t2")


# ─────────────────────────────────────────────
# Messages
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_first_message_moves_accepted_to_in_progress(db, clock, hub):
    await _agents(db, "a1")
    q = await _open_query(db)
    await lifecycle.accept(db, q.case_id, actor("a1"))
    customer_conn = hub.connect("cust-1", "t1", "Customer")
    hub.join_case_channel(customer_conn, q.case_id)

    updated, msg = await lifecycle.record_message(db, q.case_id, actor("a1"), "Hello Dana!")

    assert updated.status == "InProgress"
    assert msg.sender_id == "a1"
    events = drain(customer_conn)
    assert events[-1].event_type == "new-query-message"
    assert events[-1].payload["body"] == "Hello Dana!"

    again, _ = await lifecycle.record_message(db, q.case_id, CUSTOMER, "Thanks")
    assert again.status == "InProgress"


@pytest.mark.asyncio
async def test_customer_message_on_pending_slides_expiry_only(db, clock):
    q = await _open_query(db)
    clock.advance(hours=5)

    updated, _ = await lifecycle.record_message(db, q.case_id, CUSTOMER, "Anyone there?")

    assert updated.status == "Pending"
    assert updated.expires_at == clock.now + timedelta(hours=24)


@pytest.mark.asyncio
async def test_message_permissions_and_validation(db, clock):
    await _agents(db, "a1", "a2")
    q = await _open_query(db)
    await lifecycle.accept(db, q.case_id, actor("a1"))

    with pytest.raises(Forbidden):
        await lifecycle.record_message(db, q.case_id, actor("a2"), "Let me butt in")
    with pytest.raises(Forbidden):
        await lifecycle.record_message(db, q.case_id, actor("cust-2", role="Customer"), "Hi")
    with pytest.raises(ValueError):
        await lifecycle.record_message(db, q.case_id, actor("a1"), "  ")

    await lifecycle.resolve(db, q.case_id, actor("a1"))
    with pytest.raises(InvalidTransition):
        await lifecycle.record_message(db, q.case_id, CUSTOMER, "One more thing")


# ─────────────────────────────────────────────
# Resolve
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_resolve_clears_handler_and_frees_agent(db, clock):
    await _agents(db, "a1")
    q = await _open_query(db)
    await lifecycle.accept(db, q.case_id, actor("a1"))
    clock.advance(minutes=25)

    resolved = await lifecycle.resolve(db, q.case_id, actor("a1"))

    assert resolved.status == "Resolved"
    assert resolved.assigned_handler is None
    assert resolved.resolved_by == "a1"
    assert resolved.resolved_at == clock.now
    assert (await crud.agent_get(db, "a1")).work_status == "Active"


@pytest.mark.asyncio
async def test_only_handler_may_resolve(db, clock):
    await _agents(db, "a1", "a2")
    q = await _open_query(db)
    await lifecycle.accept(db, q.case_id, actor("a1"))

    with pytest.raises(Forbidden):
        await lifecycle.resolve(db, q.case_id, actor("a2"))
    assert (await lifecycle.get_query(db, q.case_id, "t1")).status == "Accepted"


@pytest.mark.asyncio
async def test_illegal_edges_leave_state_unchanged(db, clock):
    await _agents(db, "a1")
    q = await _open_query(db)

    with pytest.raises(InvalidTransition):
        await lifecycle.resolve(db, q.case_id, actor("a1"))
    with pytest.raises(InvalidTransition):
        await lifecycle.reopen(db, q.case_id, CUSTOMER)
    unchanged = await lifecycle.get_query(db, q.case_id, "t1")
    assert (unchanged.status, unchanged.version) == ("Pending", q.version)

    await lifecycle.accept(db, q.case_id, actor("a1"))
    await lifecycle.resolve(db, q.case_id, actor("a1"))
    resolved = await lifecycle.get_query(db, q.case_id, "t1")

    with pytest.raises(InvalidTransition):
        await lifecycle.accept(db, q.case_id, actor("a1"))
    with pytest.raises(InvalidTransition):
        await lifecycle.resolve(db, q.case_id, actor("a1"))
    assert (await lifecycle.get_query(db, q.case_id, "t1")).version == resolved.version


# ─────────────────────────────────────────────
# Reopen and feedback
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reopen_returns_to_pending_and_reoffers(db, clock, hub):
    await _agents(db, "a1", "a2")
    q = await _open_query(db)
    await lifecycle.accept(db, q.case_id, actor("a1"))
    await lifecycle.resolve(db, q.case_id, actor("a1"))
    conn = hub.connect("a2", "t1", "Agent")
    clock.advance(hours=3)

    reopened = await lifecycle.reopen(db, q.case_id, CUSTOMER, message="Still broken")

    assert reopened.status == "Pending"
    assert reopened.assigned_handler is None
    assert reopened.resolved_at is None
    assert reopened.expires_at == clock.now + timedelta(hours=24)
    offers = [e for e in drain(conn) if e.event_type == "new-pending-query"]
    assert [e.payload["case_id"] for e in offers] == [q.case_id]
    last = (await crud.msg_list(db, q.case_id))[-1]
    assert (last.body, last.sender_role) == ("Still broken", "Customer")


@pytest.mark.asyncio
async def test_only_owning_customer_may_reopen(db, clock):
    await _agents(db, "a1")
    q = await _open_query(db)
    await lifecycle.accept(db, q.case_id, actor("a1"))
    await lifecycle.resolve(db, q.case_id, actor("a1"))

    with pytest.raises(Forbidden):
        await lifecycle.reopen(db, q.case_id, actor("a1"))
    with pytest.raises(Forbidden):
        await lifecycle.reopen(db, q.case_id, actor("cust-2", role="Customer"))


@pytest.mark.asyncio
async def test_feedback_once_on_resolved_query(db, clock):
    await _agents(db, "a1")
    q = await _open_query(db)
    await lifecycle.accept(db, q.case_id, actor("a1"))

    with pytest.raises(InvalidTransition):
        await lifecycle.submit_feedback(db, q.case_id, CUSTOMER, 5)

    await lifecycle.resolve(db, q.case_id, actor("a1"))
    with pytest.raises(ValueError):
        await lifecycle.submit_feedback(db, q.case_id, CUSTOMER, 6)

    rated = await lifecycle.submit_feedback(db, q.case_id, CUSTOMER, 4, "Quick and friendly")
    assert rated.feedback["rating"] == 4
    assert rated.feedback["comment"] == "Quick and friendly"

    with pytest.raises(InvalidTransition):
        await lifecycle.submit_feedback(db, q.case_id, CUSTOMER, 1)


# ─────────────────────────────────────────────
# Listing
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_queries_filters(db, clock):
    await _agents(db, "a1")
    q1 = await _open_query(db)
    clock.advance(minutes=1)
    q2 = await _open_query(db)
    await _open_query(db, tenant_id="t2")
    await lifecycle.accept(db, q1.case_id, actor("a1"))

    pending = await lifecycle.list_queries(db, "t1", status="Pending")
    mine = await lifecycle.list_queries(db, "t1", assigned_to="a1")
    everything = await lifecycle.list_queries(db, "t1")

    assert [q.case_id for q in pending] == [q2.case_id]
    assert [q.case_id for q in mine] == [q1.case_id]
    assert [q.case_id for q in everything] == [q2.case_id, q1.case_id]
    assert len(await lifecycle.list_queries(db, "t1", limit=1, offset=1)) == 1

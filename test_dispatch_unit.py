"""
Unit tests for the MCP tool dispatch layer.
"""
import json

import pytest

from caserouter.mcp_server import list_tools
from caserouter.tools.dispatch import TOOLS_DISPATCH, dispatch_tool


async def _call(db, name, /, **arguments):
    result = await dispatch_tool(db, name, arguments)
    assert len(result) == 1
    assert result[0].type == "text"
    return json.loads(result[0].text)


def _as(agent_id, role="Agent"):
    return {"actor_id": agent_id, "actor_role": role, "tenant_id": "t1"}


@pytest.mark.asyncio
async def test_accept_and_transfer_through_tools(db, clock):
    for agent_id in ("a1", "a2"):
        await _call(db, "agent_login", agent_id=agent_id, tenant_id="t1", name=agent_id.upper())
    q = await _call(db, "query_create", tenant_id="t1", customer_id="cust-1",
                    customer_name="Dana", subject="Refund", priority="Low")
    case_id = q["case_id"]

    accepted = await _call(db, "query_accept", case_id=case_id, **_as("a1"))
    assert accepted["status"] == "Accepted"

    moved = await _call(db, "transfer_request", case_id=case_id, to_agent_id="a2", reason="Billing", **_as("a1"))
    assert moved["status"] == "Transferred"
    assert moved["transfer_history"][-1]["status"] == "Requested"

    taken = await _call(db, "transfer_accept", case_id=case_id, **_as("a2"))
    assert (taken["status"], taken["assigned_handler"]) == ("InProgress", "a2")

    chain = await _call(db, "escalation_chain", case_id=case_id, **_as("a2"))
    assert [s["step"] for s in chain["steps"]] == [1]


@pytest.mark.asyncio
async def test_routing_error_comes_back_as_error_body(db, clock):
    await _call(db, "agent_login", agent_id="a1", tenant_id="t1", name="A1")
    await _call(db, "agent_login", agent_id="a2", tenant_id="t1", name="A2")
    q = await _call(db, "query_create", tenant_id="t1", customer_id="cust-1", customer_name="Dana", subject="x")
    await _call(db, "query_accept", case_id=q["case_id"], **_as("a1"))

    body = await _call(db, "query_accept", case_id=q["case_id"], **_as("a2"))

    assert body["ok"] is False
    assert body["error"] == "AlreadyAssigned"
    assert body["case_id"] == q["case_id"]


@pytest.mark.asyncio
async def test_missing_query_is_not_found(db, clock):
    body = await _call(db, "query_get", case_id="QRY-NOPE", tenant_id="t1")
    assert body["error"] == "NotFound"


@pytest.mark.asyncio
async def test_validation_errors(db, clock):
    body = await _call(db, "query_create", tenant_id="t1", customer_id="c", customer_name="Dana", subject="  ")
    assert body["error"] == "ValidationError"

    body = await _call(db, "query_accept", case_id="QRY-1")
    assert body["error"] == "ValidationError"
    assert "actor_id" in body["message"]

    body = await _call(db, "transfer_expire_stale", older_than_minutes=0)
    assert body["error"] == "ValidationError"


@pytest.mark.asyncio
async def test_unknown_tool(db):
    body = await _call(db, "bus_connect")
    assert body == {"ok": False, "error": "UnknownTool", "message": "Unknown tool: bus_connect"}


@pytest.mark.asyncio
async def test_presence_tools(db, clock):
    await _call(db, "agent_login", agent_id="a1", tenant_id="t1", name="A1", department="Billing")
    clock.advance(minutes=20)

    on_break = await _call(db, "agent_break", agent_id="a1")
    assert on_break["work_status"] == "Break"
    clock.advance(minutes=5)
    back = await _call(db, "agent_break", agent_id="a1", on_break=False)
    assert back["work_status"] == "Active"

    info = await _call(db, "agent_presence", agent_id="a1", tenant_id="t1")
    assert info["active_minutes"] == 20

    listing = await _call(db, "agent_list", tenant_id="t1")
    assert [a["agent_id"] for a in listing] == ["a1"]

    out = await _call(db, "agent_logout", agent_id="a1")
    assert out["work_status"] == "Offline"


@pytest.mark.asyncio
async def test_config_tool_reports_policy(db):
    body = await _call(db, "router_get_config")
    assert body["query_ttl_hours"] == 24
    assert "Admin" in body["transfer_policy"]["supervisors"]


@pytest.mark.asyncio
async def test_every_declared_tool_has_a_handler():
    tools = await list_tools()
    assert {t.name for t in tools} == set(TOOLS_DISPATCH)

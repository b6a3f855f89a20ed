"""
MCP Server for CaseRouter.

Registers the routing operations as Tools plus a few read-only Resources.
Mounted onto the FastAPI app via SSE transport, or run over stdio by
`caserouter.stdio_main`.
"""
import json
import logging
from typing import Any

import mcp.types as types
from mcp.server import Server

from caserouter import lifecycle, presence
from caserouter.config import get_config_dict
from caserouter.db.database import get_db
from caserouter.policy import get_policy
from caserouter.tools.dispatch import dispatch_tool

logger = logging.getLogger(__name__)

# Create the MCP server instance
server = Server("CaseRouter")

# Every mutating tool is called on behalf of an identified actor
_ACTOR_PROPS = {
    "actor_id":   {"type": "string", "description": "Id of the agent or customer making the call."},
    "actor_role": {"type": "string", "enum": ["Agent", "QA", "TL", "Admin", "Customer"]},
    "tenant_id":  {"type": "string"},
}
_ACTOR_REQUIRED = ["actor_id", "actor_role", "tenant_id"]


def _case_tool(name: str, description: str, extra: dict | None = None, required: list[str] | None = None) -> types.Tool:
    return types.Tool(
        name=name,
        description=description,
        inputSchema={
            "type": "object",
            "properties": {"case_id": {"type": "string"}, **_ACTOR_PROPS, **(extra or {})},
            "required": ["case_id", *_ACTOR_REQUIRED, *(required or [])],
        },
    )


# ═════════════════════════════════════════════
# TOOLS
# ═════════════════════════════════════════════

@server.list_tools()
async def list_tools() -> list[types.Tool]:
    return [
        # ── Queries ────────────────────────────
        types.Tool(
            name="query_create",
            description=(
                "Open a new customer query in Pending state. Every Active, idle agent in the tenant "
                "receives a 'new-pending-query' event."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "tenant_id":     {"type": "string"},
                    "customer_id":   {"type": "string"},
                    "customer_name": {"type": "string"},
                    "subject":       {"type": "string"},
                    "category":      {"type": "string", "description": "Free-text category, also matched against agent departments."},
                    "priority":      {"type": "string", "enum": ["Low", "Medium", "High", "Urgent"], "default": "Medium"},
                    "message":       {"type": "string", "description": "Optional opening message from the customer."},
                },
                "required": ["tenant_id", "customer_id", "customer_name", "subject"],
            },
        ),
        _case_tool(
            "query_accept",
            "Claim a Pending query, or a Transferred query addressed to you. "
            "Fails with AlreadyAssigned if another agent got there first.",
        ),
        _case_tool(
            "query_send_message",
            "Post a message as the customer or the current handler. The first message on an "
            "Accepted query moves it to InProgress; every message extends the 24h expiry.",
            {"body": {"type": "string"}}, ["body"],
        ),
        _case_tool("query_resolve", "Resolve a query you are handling."),
        _case_tool(
            "query_reopen",
            "Customer only: reopen a Resolved or Expired query back to Pending.",
            {"message": {"type": "string"}},
        ),
        _case_tool(
            "query_feedback",
            "Customer only: rate a Resolved query from 1 to 5.",
            {"rating": {"type": "integer", "minimum": 1, "maximum": 5}, "comment": {"type": "string"}},
            ["rating"],
        ),
        types.Tool(
            name="query_get",
            description="Get the full projection of one query.",
            inputSchema={
                "type": "object",
                "properties": {"case_id": {"type": "string"}, "tenant_id": {"type": "string"}},
                "required": ["case_id", "tenant_id"],
            },
        ),
        types.Tool(
            name="query_list",
            description="List queries in a tenant, newest first.",
            inputSchema={
                "type": "object",
                "properties": {
                    "tenant_id":       {"type": "string"},
                    "status":          {"type": "string", "enum": ["Pending", "Accepted", "InProgress",
                                                                    "Transferred", "Resolved", "Expired"]},
                    "assigned_to":     {"type": "string"},
                    "transfer_target": {"type": "string", "description": "Only queries with a pending transfer to this agent."},
                    "limit":           {"type": "integer", "default": 100},
                    "offset":          {"type": "integer", "default": 0},
                },
                "required": ["tenant_id"],
            },
        ),
        types.Tool(
            name="query_messages",
            description="Fetch conversation messages and system notes after a seq cursor.",
            inputSchema={
                "type": "object",
                "properties": {
                    "case_id":   {"type": "string"},
                    "tenant_id": {"type": "string"},
                    "after_seq": {"type": "integer", "default": 0},
                    "limit":     {"type": "integer", "default": 100},
                },
                "required": ["case_id", "tenant_id"],
            },
        ),

        # ── Transfers ──────────────────────────
        _case_tool(
            "transfer_request",
            "Hand a query you are handling to another available agent. The query becomes "
            "Transferred with no handler until the recipient accepts or rejects.",
            {"to_agent_id": {"type": "string"}, "reason": {"type": "string"}},
            ["to_agent_id"],
        ),
        _case_tool("transfer_accept", "Accept a transfer addressed to you."),
        _case_tool("transfer_reject", "Reject a transfer addressed to you.", {"reason": {"type": "string"}}),
        types.Tool(
            name="transfer_recipients",
            description="List agents a query can be transferred to right now (Active and not handling a query).",
            inputSchema={
                "type": "object",
                "properties": {**_ACTOR_PROPS, "category": {"type": "string"}},
                "required": ["tenant_id"],
            },
        ),
        types.Tool(
            name="transfer_expire_stale",
            description="Reject transfer requests left unanswered for longer than the given minutes.",
            inputSchema={
                "type": "object",
                "properties": {"older_than_minutes": {"type": "integer"}},
            },
        ),
        _case_tool("escalation_chain", "Numbered transfer history of a query (handler or supervisors only)."),
        types.Tool(
            name="escalation_recent",
            description="Most recently escalated queries in the tenant (supervisors only).",
            inputSchema={
                "type": "object",
                "properties": {**_ACTOR_PROPS, "limit": {"type": "integer", "default": 20}},
                "required": _ACTOR_REQUIRED,
            },
        ),

        # ── Presence ───────────────────────────
        types.Tool(
            name="agent_login",
            description="Start an agent session: Active, productive-time counter reset to zero.",
            inputSchema={
                "type": "object",
                "properties": {
                    "agent_id":   {"type": "string"},
                    "tenant_id":  {"type": "string"},
                    "name":       {"type": "string"},
                    "role":       {"type": "string", "enum": ["Agent", "QA", "TL", "Admin"], "default": "Agent"},
                    "department": {"type": "string"},
                },
                "required": ["agent_id", "tenant_id", "name"],
            },
        ),
        types.Tool(
            name="agent_logout",
            description="End an agent session (Offline).",
            inputSchema={"type": "object", "properties": {"agent_id": {"type": "string"}}, "required": ["agent_id"]},
        ),
        types.Tool(
            name="agent_break",
            description="Start (on_break=true) or end (on_break=false) a break.",
            inputSchema={
                "type": "object",
                "properties": {"agent_id": {"type": "string"}, "on_break": {"type": "boolean", "default": True}},
                "required": ["agent_id"],
            },
        ),
        types.Tool(
            name="agent_presence",
            description="Current work status and productive minutes of one agent.",
            inputSchema={
                "type": "object",
                "properties": {"agent_id": {"type": "string"}, "tenant_id": {"type": "string"}},
                "required": ["agent_id"],
            },
        ),
        types.Tool(
            name="agent_list",
            description="All agents of a tenant with their work status.",
            inputSchema={"type": "object", "properties": {"tenant_id": {"type": "string"}}, "required": ["tenant_id"]},
        ),

        # ── Router config ──────────────────────
        types.Tool(
            name="router_get_config",
            description="Router version, expiry window and the active transfer policy.",
            inputSchema={"type": "object", "properties": {}},
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[types.Content]:
    db = await get_db()
    return await dispatch_tool(db, name, arguments or {})


# ═════════════════════════════════════════════
# RESOURCES
# ═════════════════════════════════════════════

@server.list_resources()
async def list_resources() -> list[types.Resource]:
    return [
        types.Resource(
            uri="router://config",
            name="Router Configuration",
            description="Server settings and the active transfer policy.",
            mimeType="application/json",
        ),
    ]


@server.list_resource_templates()
async def list_resource_templates() -> list[types.ResourceTemplate]:
    return [
        types.ResourceTemplate(
            uriTemplate="router://tenants/{tenant_id}/agents",
            name="Tenant agents",
            description="Presence of every agent in a tenant.",
            mimeType="application/json",
        ),
        types.ResourceTemplate(
            uriTemplate="router://tenants/{tenant_id}/pending",
            name="Pending queries",
            description="Pending queries of a tenant, for agents who reconnect.",
            mimeType="application/json",
        ),
        types.ResourceTemplate(
            uriTemplate="router://tenants/{tenant_id}/queries/{case_id}",
            name="Query",
            description="Full projection of one query.",
            mimeType="application/json",
        ),
    ]


@server.read_resource()
async def read_resource(uri: types.AnyUrl) -> str:
    db = await get_db()
    uri_str = str(uri)

    if uri_str == "router://config":
        return json.dumps({**get_config_dict(), "transfer_policy": get_policy().as_dict()}, indent=2)

    if uri_str.startswith("router://tenants/"):
        parts = uri_str[len("router://tenants/"):].split("/")
        tenant_id = parts[0]
        if parts[1:] == ["agents"]:
            agents = await presence.list_presence(db, tenant_id)
            return json.dumps([a.as_dict() for a in agents], indent=2)
        if parts[1:] == ["pending"]:
            queries = await lifecycle.list_queries(db, tenant_id, status="Pending")
            return json.dumps([q.as_dict() for q in queries], indent=2)
        if len(parts) == 3 and parts[1] == "queries":
            q = await lifecycle.get_query(db, parts[2], tenant_id)
            return json.dumps(q.as_dict(), indent=2)

    raise ValueError(f"Unknown resource URI: {uri_str}")

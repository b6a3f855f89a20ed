"""
Tool dispatch layer for CaseRouter.

Every handler takes the shared db connection plus the raw tool arguments and
returns a single JSON TextContent block. Routing failures come back as the
same error body the HTTP API uses: {"ok": false, "error": <kind>, "message": ...}.
"""
import json
import logging
from datetime import timedelta
from typing import Any

import mcp.types as types

from caserouter import broadcast, lifecycle, presence, transfer
from caserouter.config import ROUTER_VERSION, QUERY_TTL_HOURS, TRANSFER_TIMEOUT_MINUTES
from caserouter.db.models import Actor
from caserouter.errors import RoutingError
from caserouter.policy import get_policy

logger = logging.getLogger(__name__)


def _text(payload: Any) -> list[types.TextContent]:
    return [types.TextContent(type="text", text=json.dumps(payload))]


def _actor(arguments: dict[str, Any]) -> Actor:
    return Actor(id=arguments["actor_id"], role=arguments["actor_role"], tenant_id=arguments["tenant_id"])


# ── Queries ─────────────────────────────────────────────────────

async def handle_query_create(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    q = await lifecycle.create_query(
        db,
        tenant_id=arguments["tenant_id"],
        customer_id=arguments["customer_id"],
        customer_name=arguments["customer_name"],
        subject=arguments["subject"],
        category=arguments.get("category"),
        priority=arguments.get("priority"),
        initial_message=arguments.get("message"),
    )
    return _text(q.as_dict())


async def handle_query_accept(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    q = await lifecycle.accept(db, arguments["case_id"], _actor(arguments))
    return _text(q.as_dict())


async def handle_query_send_message(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    q, m = await lifecycle.record_message(db, arguments["case_id"], _actor(arguments), arguments["body"])
    return _text({"query": q.as_dict(), "seq": m.seq, "message_id": m.id})


async def handle_query_resolve(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    q = await lifecycle.resolve(db, arguments["case_id"], _actor(arguments))
    return _text(q.as_dict())


async def handle_query_reopen(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    q = await lifecycle.reopen(db, arguments["case_id"], _actor(arguments), arguments.get("message"))
    return _text(q.as_dict())


async def handle_query_feedback(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    q = await lifecycle.submit_feedback(
        db, arguments["case_id"], _actor(arguments), arguments["rating"], arguments.get("comment")
    )
    return _text(q.as_dict())


async def handle_query_get(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    q = await lifecycle.get_query(db, arguments["case_id"], arguments["tenant_id"])
    return _text(q.as_dict())


async def handle_query_list(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    queries = await lifecycle.list_queries(
        db,
        arguments["tenant_id"],
        status=arguments.get("status"),
        assigned_to=arguments.get("assigned_to"),
        transfer_target=arguments.get("transfer_target"),
        limit=arguments.get("limit", 100),
        offset=arguments.get("offset", 0),
    )
    return _text([q.as_dict() for q in queries])


async def handle_query_messages(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    msgs = await lifecycle.list_messages(
        db, arguments["case_id"], arguments["tenant_id"],
        after_seq=arguments.get("after_seq", 0), limit=arguments.get("limit", 100),
    )
    return _text([
        {"id": m.id, "seq": m.seq, "sender_id": m.sender_id, "sender_role": m.sender_role,
         "body": m.body, "is_system": m.is_system, "created_at": m.created_at.isoformat()}
        for m in msgs
    ])


# ── Transfers ───────────────────────────────────────────────────

async def handle_transfer_request(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    q = await transfer.request_transfer(
        db, arguments["case_id"], _actor(arguments), arguments["to_agent_id"], arguments.get("reason")
    )
    return _text(q.as_dict())


async def handle_transfer_accept(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    q = await transfer.accept_transfer(db, arguments["case_id"], _actor(arguments))
    return _text(q.as_dict())


async def handle_transfer_reject(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    q = await transfer.reject_transfer(db, arguments["case_id"], _actor(arguments), arguments.get("reason"))
    return _text(q.as_dict())


async def handle_transfer_recipients(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    agents = await broadcast.list_eligible_recipients(
        db, arguments["tenant_id"], category=arguments.get("category"), exclude=arguments.get("actor_id")
    )
    return _text([a.as_dict() for a in agents])


async def handle_escalation_chain(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    return _text(await transfer.get_escalation_chain(db, arguments["case_id"], _actor(arguments)))


async def handle_escalation_recent(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    actor = _actor(arguments)
    return _text(await transfer.recent_escalations(db, actor.tenant_id, actor, arguments.get("limit", 20)))


async def handle_transfer_expire_stale(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    minutes = arguments.get("older_than_minutes", TRANSFER_TIMEOUT_MINUTES)
    if not minutes:
        return _text({"ok": False, "error": "ValidationError", "message": "older_than_minutes must be > 0"})
    expired = await transfer.expire_stale_transfer_requests(db, timedelta(minutes=minutes))
    return _text({"ok": True, "expired": expired})


# ── Presence ────────────────────────────────────────────────────

async def handle_agent_login(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    agent = await presence.login(
        db, arguments["agent_id"], arguments["tenant_id"], arguments["name"],
        arguments.get("role", "Agent"), arguments.get("department"),
    )
    return _text(agent.as_dict())


async def handle_agent_logout(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    return _text((await presence.logout(db, arguments["agent_id"])).as_dict())


async def handle_agent_break(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    if arguments.get("on_break", True):
        agent = await presence.start_break(db, arguments["agent_id"])
    else:
        agent = await presence.end_break(db, arguments["agent_id"])
    return _text(agent.as_dict())


async def handle_agent_presence(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    agent = await presence.get_presence(db, arguments["agent_id"], arguments.get("tenant_id"))
    data = agent.as_dict()
    data["active_minutes"] = round(await presence.current_active_minutes(db, agent.agent_id), 2)
    return _text(data)


async def handle_agent_list(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    return _text([a.as_dict() for a in await presence.list_presence(db, arguments["tenant_id"])])


async def handle_router_get_config(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    return _text({
        "router_version": ROUTER_VERSION,
        "query_ttl_hours": QUERY_TTL_HOURS,
        "transfer_timeout_minutes": TRANSFER_TIMEOUT_MINUTES,
        "transfer_policy": get_policy().as_dict(),
    })


TOOLS_DISPATCH = {
    "router_get_config": handle_router_get_config,
    "query_create": handle_query_create,
    "query_accept": handle_query_accept,
    "query_send_message": handle_query_send_message,
    "query_resolve": handle_query_resolve,
    "query_reopen": handle_query_reopen,
    "query_feedback": handle_query_feedback,
    "query_get": handle_query_get,
    "query_list": handle_query_list,
    "query_messages": handle_query_messages,
    "transfer_request": handle_transfer_request,
    "transfer_accept": handle_transfer_accept,
    "transfer_reject": handle_transfer_reject,
    "transfer_recipients": handle_transfer_recipients,
    "transfer_expire_stale": handle_transfer_expire_stale,
    "escalation_chain": handle_escalation_chain,
    "escalation_recent": handle_escalation_recent,
    "agent_login": handle_agent_login,
    "agent_logout": handle_agent_logout,
    "agent_break": handle_agent_break,
    "agent_presence": handle_agent_presence,
    "agent_list": handle_agent_list,
}


async def dispatch_tool(db, name: str, arguments: dict[str, Any]) -> list[types.Content]:
    handler = TOOLS_DISPATCH.get(name)
    if handler is None:
        return _text({"ok": False, "error": "UnknownTool", "message": f"Unknown tool: {name}"})
    try:
        return await handler(db, arguments)
    except RoutingError as e:
        logger.info(f"[{name}] {e.kind}: {e.message}")
        return _text(e.to_dict())
    except ValueError as e:
        return _text({"ok": False, "error": "ValidationError", "message": str(e)})
    except KeyError as e:
        return _text({"ok": False, "error": "ValidationError", "message": f"Missing argument: {e.args[0]}"})

"""
CaseRouter main entry point.

Starts a FastAPI HTTP server that:
  1. Exposes the routing operations as a REST API under /api
  2. Streams real-time routing events to agents and customers at /api/stream (SSE)
  3. Mounts the MCP Server (SSE + JSON-RPC) at /mcp
  4. Runs the expiry sweeper for the lifetime of the app
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, Query as QueryParam, Request
from fastapi.responses import JSONResponse, StreamingResponse
from mcp.server.sse import SseServerTransport
from pydantic import BaseModel, Field

from caserouter import broadcast, lifecycle, presence, realtime, transfer
from caserouter.config import HOST, PORT, ROUTER_VERSION, SWEEP_ENABLED, get_config_dict, save_config_dict
from caserouter.db.database import get_db, close_db
from caserouter.db.models import Actor, ROLE_AGENT
from caserouter.errors import RoutingError
from caserouter.mcp_server import server as mcp_server
from caserouter.sweeper import ExpirySweeper

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("caserouter")

# Seconds between SSE keep-alive comments on an idle stream
SSE_KEEPALIVE = 15.0

sweeper = ExpirySweeper()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: initialize DB, start the sweeper
    await get_db()
    if SWEEP_ENABLED:
        sweeper.start()
    logger.info(f"CaseRouter running at http://{HOST}:{PORT}")
    yield
    # Shutdown
    await sweeper.stop()
    await close_db()


app = FastAPI(
    title="CaseRouter",
    description="Customer-support query routing and escalation engine.",
    version=ROUTER_VERSION,
    lifespan=lifespan,
)


@app.exception_handler(RoutingError)
async def routing_error_handler(request: Request, exc: RoutingError):
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=422, content={"ok": False, "error": "ValidationError", "message": str(exc)})


def get_actor(
    x_actor_id: str = Header(...),
    x_actor_role: str = Header(...),
    x_tenant_id: str = Header(...),
) -> Actor:
    """Caller identity, as forwarded by the authenticating gateway."""
    return Actor(id=x_actor_id, role=x_actor_role, tenant_id=x_tenant_id)


# ─────────────────────────────────────────────
# MCP SSE Transport (mounted at /mcp)
# ─────────────────────────────────────────────

sse_transport = SseServerTransport("/mcp/messages/")


class _SseCompletedResponse:
    """
    Sentinel returned from mcp_sse_endpoint after connect_sse() exits.

    The SSE transport has already sent the whole HTTP response through
    request._send; returning a real Response would start a second one.
    """
    async def __call__(self, scope, receive, send):
        pass


@app.get("/mcp/sse")
async def mcp_sse_endpoint(request: Request):
    """MCP SSE endpoint consumed by MCP clients."""
    try:
        async with sse_transport.connect_sse(
            request.scope, request.receive, request._send
        ) as streams:
            await mcp_server.run(
                streams[0], streams[1],
                mcp_server.create_initialization_options(),
            )
    except Exception as exc:
        # Normal disconnects surface here as transport errors
        logger.debug("MCP SSE session ended: %s: %s", type(exc).__name__, exc)
    return _SseCompletedResponse()


app.mount("/mcp/messages/", app=sse_transport.handle_post_message)


# ── Suppress leftover ASGI RuntimeErrors caused by client disconnects ──────────
class _AsgiDisconnectFilter(logging.Filter):
    """
    Filters uvicorn 'Exception in ASGI application' records that are caused
    by normal SSE client disconnects.
    """
    _NOISE = (
        "Unexpected ASGI message 'http.response.start'",
        "Expected ASGI message 'http.response.body'",
    )

    def filter(self, record: logging.LogRecord) -> bool:
        return not any(n in record.getMessage() for n in self._NOISE)


for _ln in ("uvicorn.error", "uvicorn"):
    logging.getLogger(_ln).addFilter(_AsgiDisconnectFilter())


# ─────────────────────────────────────────────
# Real-time event stream
# ─────────────────────────────────────────────

def _sse(event: realtime.Event) -> str:
    return f"id: {event.id}\nevent: {event.event_type}\ndata: {json.dumps(event.payload)}\n\n"


@app.get("/api/stream")
async def event_stream(
    request: Request,
    agent_id: str,
    tenant_id: str,
    role: str = ROLE_AGENT,
    case_id: list[str] = QueryParam(default=[]),
):
    """
    Per-connection SSE stream. The connection joins its tenant channel, its
    user channel and any `case_id` channels given; more cases can be joined
    later via POST /api/stream/{conn_id}/cases/{case_id}.
    """
    conn = realtime.hub.connect(agent_id, tenant_id, role)
    for cid in case_id:
        realtime.hub.join_case_channel(conn, cid)

    async def event_generator():
        try:
            yield f"event: connected\ndata: {json.dumps({'conn_id': conn.conn_id})}\n\n"
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(conn.queue.get(), timeout=SSE_KEEPALIVE)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield _sse(event)
        finally:
            realtime.hub.disconnect(conn)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@app.post("/api/stream/{conn_id}/cases/{case_id}")
async def api_join_case(conn_id: int, case_id: str, actor: Actor = Depends(get_actor)):
    db = await get_db()
    await lifecycle.get_query(db, case_id, actor.tenant_id)
    conn = realtime.hub.get(conn_id)
    if conn is None or conn.agent_id != actor.id:
        return JSONResponse(status_code=404, content={"ok": False, "error": "NotFound",
                                                      "message": f"Connection {conn_id} not found"})
    realtime.hub.join_case_channel(conn, case_id)
    return {"ok": True}


# ─────────────────────────────────────────────
# Queries
# ─────────────────────────────────────────────

class QueryCreate(BaseModel):
    customer_name: str
    subject: str
    customer_id: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[str] = None
    message: Optional[str] = None


class MessageCreate(BaseModel):
    body: str


class ReopenBody(BaseModel):
    message: Optional[str] = None


class FeedbackBody(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None


@app.post("/api/queries", status_code=201)
async def api_create_query(body: QueryCreate, actor: Actor = Depends(get_actor)):
    db = await get_db()
    q = await lifecycle.create_query(
        db, actor.tenant_id, body.customer_id or actor.id, body.customer_name, body.subject,
        category=body.category, priority=body.priority, initial_message=body.message,
    )
    return q.as_dict()


@app.get("/api/queries")
async def api_list_queries(
    status: Optional[str] = None,
    assigned_to: Optional[str] = None,
    transfer_target: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    actor: Actor = Depends(get_actor),
):
    db = await get_db()
    queries = await lifecycle.list_queries(
        db, actor.tenant_id, status=status, assigned_to=assigned_to,
        transfer_target=transfer_target, limit=limit, offset=offset,
    )
    return [q.as_dict() for q in queries]


@app.get("/api/queries/{case_id}")
async def api_get_query(case_id: str, actor: Actor = Depends(get_actor)):
    db = await get_db()
    return (await lifecycle.get_query(db, case_id, actor.tenant_id)).as_dict()


@app.get("/api/queries/{case_id}/messages")
async def api_list_messages(case_id: str, after_seq: int = 0, limit: int = 100, actor: Actor = Depends(get_actor)):
    db = await get_db()
    msgs = await lifecycle.list_messages(db, case_id, actor.tenant_id, after_seq=after_seq, limit=limit)
    return [{"id": m.id, "seq": m.seq, "sender_id": m.sender_id, "sender_role": m.sender_role,
             "body": m.body, "is_system": m.is_system, "created_at": m.created_at.isoformat()} for m in msgs]


@app.post("/api/queries/{case_id}/messages", status_code=201)
async def api_send_message(case_id: str, body: MessageCreate, actor: Actor = Depends(get_actor)):
    db = await get_db()
    q, m = await lifecycle.record_message(db, case_id, actor, body.body)
    return {"query": q.as_dict(), "id": m.id, "seq": m.seq}


@app.post("/api/queries/{case_id}/accept")
async def api_accept(case_id: str, actor: Actor = Depends(get_actor)):
    db = await get_db()
    return (await lifecycle.accept(db, case_id, actor)).as_dict()


@app.post("/api/queries/{case_id}/resolve")
async def api_resolve(case_id: str, actor: Actor = Depends(get_actor)):
    db = await get_db()
    return (await lifecycle.resolve(db, case_id, actor)).as_dict()


@app.post("/api/queries/{case_id}/reopen")
async def api_reopen(case_id: str, body: Optional[ReopenBody] = None, actor: Actor = Depends(get_actor)):
    db = await get_db()
    q = await lifecycle.reopen(db, case_id, actor, body.message if body else None)
    return q.as_dict()


@app.post("/api/queries/{case_id}/feedback")
async def api_feedback(case_id: str, body: FeedbackBody, actor: Actor = Depends(get_actor)):
    db = await get_db()
    return (await lifecycle.submit_feedback(db, case_id, actor, body.rating, body.comment)).as_dict()


# ─────────────────────────────────────────────
# Transfers and escalation
# ─────────────────────────────────────────────

class TransferCreate(BaseModel):
    to_agent_id: str
    reason: Optional[str] = None


class TransferReject(BaseModel):
    reason: Optional[str] = None


@app.post("/api/queries/{case_id}/transfer")
async def api_request_transfer(case_id: str, body: TransferCreate, actor: Actor = Depends(get_actor)):
    db = await get_db()
    q = await transfer.request_transfer(db, case_id, actor, body.to_agent_id, body.reason)
    return q.as_dict()


@app.post("/api/queries/{case_id}/transfer/accept")
async def api_accept_transfer(case_id: str, actor: Actor = Depends(get_actor)):
    db = await get_db()
    return (await transfer.accept_transfer(db, case_id, actor)).as_dict()


@app.post("/api/queries/{case_id}/transfer/reject")
async def api_reject_transfer(
    case_id: str, body: Optional[TransferReject] = None, actor: Actor = Depends(get_actor)
):
    db = await get_db()
    q = await transfer.reject_transfer(db, case_id, actor, body.reason if body else None)
    return q.as_dict()


@app.get("/api/queries/{case_id}/escalation-chain")
async def api_escalation_chain(case_id: str, actor: Actor = Depends(get_actor)):
    db = await get_db()
    return await transfer.get_escalation_chain(db, case_id, actor)


@app.get("/api/escalations/recent")
async def api_recent_escalations(limit: int = 20, actor: Actor = Depends(get_actor)):
    db = await get_db()
    return await transfer.recent_escalations(db, actor.tenant_id, actor, limit)


@app.get("/api/recipients")
async def api_eligible_recipients(category: Optional[str] = None, actor: Actor = Depends(get_actor)):
    db = await get_db()
    agents = await broadcast.list_eligible_recipients(db, actor.tenant_id, category=category, exclude=actor.id)
    return [a.as_dict() for a in agents]


# ─────────────────────────────────────────────
# Agent presence
# ─────────────────────────────────────────────

class AgentLogin(BaseModel):
    name: str
    department: Optional[str] = None


@app.post("/api/agents/login")
async def api_agent_login(body: AgentLogin, actor: Actor = Depends(get_actor)):
    db = await get_db()
    agent = await presence.login(db, actor.id, actor.tenant_id, body.name, actor.role, body.department)
    lifecycle.announce_presence(agent)
    return agent.as_dict()


@app.post("/api/agents/logout")
async def api_agent_logout(actor: Actor = Depends(get_actor)):
    db = await get_db()
    agent = await presence.logout(db, actor.id)
    lifecycle.announce_presence(agent)
    return agent.as_dict()


@app.post("/api/agents/break/start")
async def api_break_start(actor: Actor = Depends(get_actor)):
    db = await get_db()
    agent = await presence.start_break(db, actor.id)
    lifecycle.announce_presence(agent)
    return agent.as_dict()


@app.post("/api/agents/break/end")
async def api_break_end(actor: Actor = Depends(get_actor)):
    db = await get_db()
    agent = await presence.end_break(db, actor.id)
    lifecycle.announce_presence(agent)
    return agent.as_dict()


@app.get("/api/agents")
async def api_agents(actor: Actor = Depends(get_actor)):
    db = await get_db()
    return [a.as_dict() for a in await presence.list_presence(db, actor.tenant_id)]


@app.get("/api/agents/{agent_id}/presence")
async def api_agent_presence(agent_id: str, actor: Actor = Depends(get_actor)):
    db = await get_db()
    agent = await presence.get_presence(db, agent_id, actor.tenant_id)
    data = agent.as_dict()
    data["active_minutes"] = round(await presence.current_active_minutes(db, agent_id), 2)
    return data


@app.get("/api/agents/{agent_id}/breaks")
async def api_agent_breaks(agent_id: str, limit: int = 50, actor: Actor = Depends(get_actor)):
    db = await get_db()
    await presence.get_presence(db, agent_id, actor.tenant_id)
    logs = await presence.break_history(db, agent_id, limit)
    return [{"started_at": b.started_at.isoformat(), "ended_at": b.ended_at.isoformat(),
             "duration_minutes": b.duration_minutes} for b in logs]


# ─────────────────────────────────────────────
# Settings and health
# ─────────────────────────────────────────────

class ConfigUpdate(BaseModel):
    HOST: Optional[str] = None
    PORT: Optional[int] = None
    QUERY_TTL_HOURS: Optional[int] = None
    SWEEP_INTERVAL: Optional[int] = None
    TRANSFER_TIMEOUT_MINUTES: Optional[int] = None
    POLICY_FILE: Optional[str] = None


@app.get("/api/config")
async def api_get_config():
    return get_config_dict()


@app.put("/api/config")
async def api_put_config(body: ConfigUpdate):
    updates = body.model_dump(exclude_none=True)
    save_config_dict(updates)
    return {"ok": True, "saved": sorted(updates), "message": "Settings saved. Restart the server to apply."}


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "service": "CaseRouter",
        "version": ROUTER_VERSION,
        "connections": realtime.hub.connection_count,
        "sweeper_running": sweeper.running,
    }


# ─────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run("caserouter.main:app", host=HOST, port=PORT, reload=True)

"""
Query State Machine.

Owns every status change of a query:

    Pending     -> Accepted      accept
    Transferred -> InProgress    accept by the named transfer recipient
    Accepted    -> InProgress    first message by customer or handler
    Accepted | InProgress -> Transferred   request transfer  (transfer.py)
    Accepted | InProgress -> Resolved      resolve
    Pending | Accepted | InProgress -> Expired   sweep        (sweeper.py)
    Resolved | Expired -> Pending          reopen by the customer

Each write is a compare-and-swap on the query's `version` and expected status
set (see `crud.query_cas_update`). A writer that loses re-reads the row and
re-validates against the state the winner left, so a losing `accept` fails
with AlreadyAssigned instead of overwriting the winner.
"""
import logging
from dataclasses import replace
from typing import Any, Callable, Iterable, Optional

import aiosqlite

from caserouter import broadcast, presence, realtime
from caserouter.config import CAS_RETRIES
from caserouter.db import crud
from caserouter.db.models import (
    Actor, AgentPresence, Message, Query,
    PENDING, ACCEPTED, IN_PROGRESS, TRANSFERRED, RESOLVED, EXPIRED,
    ACTIVE_STATUSES, REOPENABLE_STATUSES, PRIORITIES,
    TRANSFER_ACCEPTED, TRANSFER_REJECTED,
    ROLE_CUSTOMER, STAFF_ROLES,
)
from caserouter.errors import (
    RoutingError, NotFound, InvalidTransition, AlreadyAssigned, NotIntendedRecipient, Forbidden,
)

logger = logging.getLogger(__name__)

# A plan inspects the freshly read query and returns (expected statuses, column changes),
# or raises the typed error that the current state calls for.
Plan = Callable[[Query], tuple[Iterable[str], dict[str, Any]]]


async def require_query(db: aiosqlite.Connection, case_id: str, tenant_id: Optional[str]) -> Query:
    query = await crud.query_get(db, case_id, tenant_id)
    if query is None:
        raise NotFound(f"Query '{case_id}' not found", case_id=case_id)
    return query


async def apply_transition(
    db: aiosqlite.Connection, case_id: str, tenant_id: Optional[str], plan: Plan
) -> tuple[Query, Query]:
    """Read, plan and conditionally write until the write lands or the plan raises.

    Returns (state the plan was built from, state after the write).
    """
    for attempt in range(CAS_RETRIES):
        before = await require_query(db, case_id, tenant_id)
        expected, changes = plan(before)
        if await crud.query_cas_update(db, before, expected, changes):
            after = await require_query(db, case_id, tenant_id)
            return before, after
        logger.debug(f"Retrying transition on {case_id} (attempt {attempt + 1})")
    raise RoutingError(f"Query '{case_id}' is under heavy contention, try again", case_id=case_id)


def announce_presence(agent: AgentPresence) -> None:
    realtime.hub.emit_to_channel(
        realtime.user_channel(agent.agent_id),
        "work-status-changed",
        {"agent_id": agent.agent_id, "work_status": agent.work_status,
         "timestamp": crud.utcnow().isoformat()},
    )


def _sliding(now) -> dict[str, Any]:
    return {"last_activity_at": now, "expires_at": crud.expiry_from(now)}


def _require_staff(actor: Actor) -> None:
    if actor.role not in STAFF_ROLES:
        raise Forbidden(f"Role '{actor.role}' cannot handle queries")


def _require_customer(query: Query, actor: Actor) -> None:
    if actor.role != ROLE_CUSTOMER or actor.id != query.customer_id:
        raise Forbidden("Only the customer who raised this query may do that", case_id=query.case_id)


# ─────────────────────────────────────────────
# Intake
# ─────────────────────────────────────────────

async def create_query(
    db: aiosqlite.Connection,
    tenant_id: str,
    customer_id: str,
    customer_name: str,
    subject: str,
    category: Optional[str] = None,
    priority: Optional[str] = None,
    initial_message: Optional[str] = None,
) -> Query:
    """Open a Pending query and offer it to every eligible agent in the tenant."""
    if not subject or not subject.strip():
        raise ValueError("subject must not be empty")
    priority = priority or "Medium"
    if priority not in PRIORITIES:
        raise ValueError(f"priority must be one of {', '.join(PRIORITIES)}")
    query = await crud.query_insert(
        db, tenant_id, customer_id, customer_name, subject.strip(),
        category=category or "Other", priority=priority,
    )
    await crud.system_note(db, query.case_id, f"Query opened by {customer_name}")
    if initial_message and initial_message.strip():
        await crud.msg_append(db, query.case_id, initial_message.strip(),
                              sender_id=customer_id, sender_role=ROLE_CUSTOMER)

    # A missed notification must never fail intake; the query stays listable.
    try:
        await broadcast.broadcast_new_query(db, query)
    except Exception:
        logger.exception(f"New-work broadcast failed for {query.case_id}")
    return query


# ─────────────────────────────────────────────
# Accept
# ─────────────────────────────────────────────

def _plan_accept(actor: Actor, transfer_only: bool = False) -> Plan:
    def plan(query: Query):
        now = crud.utcnow()
        if query.status in ACTIVE_STATUSES:
            raise AlreadyAssigned(
                f"Query '{query.case_id}' was already accepted",
                case_id=query.case_id, handler=query.assigned_handler,
            )
        if query.status == PENDING and transfer_only:
            raise InvalidTransition(
                f"Query '{query.case_id}' is not being transferred", case_id=query.case_id, status=query.status
            )
        if query.status == PENDING:
            return (PENDING,), {
                "status": ACCEPTED, "assigned_handler": actor.id, "assigned_at": now, **_sliding(now),
            }
        if query.status == TRANSFERRED:
            pending = query.pending_transfer
            if pending is None:
                raise InvalidTransition(
                    f"Query '{query.case_id}' has no transfer awaiting acceptance",
                    case_id=query.case_id, status=query.status,
                )
            if pending.to_agent != actor.id:
                raise NotIntendedRecipient(
                    f"Transfer of '{query.case_id}' is addressed to another agent", case_id=query.case_id
                )
            history = list(query.transfer_history)
            history[-1] = replace(pending, status=TRANSFER_ACCEPTED, accepted_at=now)
            return (TRANSFERRED,), {
                "status": IN_PROGRESS, "assigned_handler": actor.id, "assigned_at": now,
                "transfer_history": history, **_sliding(now),
            }
        raise InvalidTransition(
            f"Cannot accept a {query.status} query", case_id=query.case_id, status=query.status
        )
    return plan


async def accept(db: aiosqlite.Connection, case_id: str, actor: Actor, transfer_only: bool = False) -> Query:
    """Claim a Pending query, or take over a Transferred one addressed to the actor.

    Exactly one concurrent caller wins; the rest see the winner's state and
    raise AlreadyAssigned. With `transfer_only`, a Pending query is refused.
    """
    _require_staff(actor)
    agent = await crud.agent_get(db, actor.id, actor.tenant_id)
    if agent is None:
        raise NotFound(f"Agent '{actor.id}' not found", case_id=case_id)

    before, query = await apply_transition(
        db, case_id, actor.tenant_id, _plan_accept(actor, transfer_only)
    )
    was_transfer = before.status == TRANSFERRED
    logger.info(f"Query {case_id} accepted by {actor.id} ({before.status} -> {query.status})")

    if was_transfer:
        record = query.latest_transfer
        await crud.system_note(db, case_id, f"Transfer accepted by {agent.name}")
        realtime.hub.emit_to_channel(
            realtime.user_channel(record.from_agent), "transfer-accepted",
            {"case_id": case_id, "accepted_by": actor.id, "accepted_by_name": agent.name},
        )
    else:
        await crud.system_note(db, case_id, f"Query accepted by {agent.name}")

    announce_presence(await presence.set_busy(db, actor.id))
    realtime.hub.emit_to_channel(
        realtime.tenant_channel(query.tenant_id), "query-accepted",
        {"case_id": case_id, "assigned_handler": actor.id, "handler_name": agent.name,
         "status": query.status},
    )
    return query


# ─────────────────────────────────────────────
# Conversation activity
# ─────────────────────────────────────────────

async def record_message(db: aiosqlite.Connection, case_id: str, actor: Actor, body: str) -> tuple[Query, Message]:
    """Post a customer or handler message; slides expiry and drives Accepted -> InProgress."""
    if not body or not body.strip():
        raise ValueError("message body must not be empty")

    def plan(query: Query):
        if query.status in (RESOLVED, EXPIRED):
            raise InvalidTransition(
                f"Cannot post to a {query.status} query", case_id=query.case_id, status=query.status
            )
        is_customer = actor.role == ROLE_CUSTOMER and actor.id == query.customer_id
        if not is_customer and actor.id != query.assigned_handler:
            raise Forbidden("Only the customer or the current handler may post", case_id=query.case_id)
        now = crud.utcnow()
        changes = _sliding(now)
        if query.status == ACCEPTED:
            changes["status"] = IN_PROGRESS
        return (query.status,), changes

    before, query = await apply_transition(db, case_id, actor.tenant_id, plan)
    message = await crud.msg_append(db, case_id, body.strip(), sender_id=actor.id, sender_role=actor.role)
    if before.status != query.status:
        logger.info(f"Query {case_id} conversation started ({before.status} -> {query.status})")
    realtime.hub.emit_to_channel(
        realtime.case_channel(case_id), "new-query-message",
        {"case_id": case_id, "seq": message.seq, "sender_id": actor.id, "sender_role": actor.role,
         "body": message.body, "status": query.status, "timestamp": message.created_at.isoformat()},
    )
    return query, message


# ─────────────────────────────────────────────
# Resolve / reopen / feedback
# ─────────────────────────────────────────────

async def resolve(db: aiosqlite.Connection, case_id: str, actor: Actor) -> Query:
    def plan(query: Query):
        if query.status not in ACTIVE_STATUSES:
            raise InvalidTransition(
                f"Cannot resolve a {query.status} query", case_id=query.case_id, status=query.status
            )
        if query.assigned_handler != actor.id:
            raise Forbidden("Only the current handler may resolve this query", case_id=query.case_id)
        now = crud.utcnow()
        return ACTIVE_STATUSES, {
            "status": RESOLVED, "assigned_handler": None, "resolved_at": now, "resolved_by": actor.id,
            **_sliding(now),
        }

    _, query = await apply_transition(db, case_id, actor.tenant_id, plan)
    logger.info(f"Query {case_id} resolved by {actor.id}")
    await crud.system_note(db, case_id, f"Query resolved by {actor.id}")
    # Re-check rather than decrement: the agent may hold other active queries
    announce_presence(await presence.clear_busy_if_no_active_work(db, actor.id))
    realtime.hub.emit_to_channel(
        realtime.case_channel(case_id), "query-resolved",
        {"case_id": case_id, "resolved_by": actor.id, "resolved_at": query.resolved_at.isoformat()},
    )
    return query


async def reopen(db: aiosqlite.Connection, case_id: str, actor: Actor, message: Optional[str] = None) -> Query:
    """Customer re-entry point: Resolved/Expired back to Pending, re-offered as new work."""
    def plan(query: Query):
        _require_customer(query, actor)
        if query.status not in REOPENABLE_STATUSES:
            raise InvalidTransition(
                f"Cannot reopen a {query.status} query", case_id=query.case_id, status=query.status
            )
        now = crud.utcnow()
        changes: dict[str, Any] = {
            "status": PENDING, "assigned_handler": None, "assigned_at": None,
            "resolved_at": None, "resolved_by": None, **_sliding(now),
        }
        latent = query.pending_transfer
        if latent is not None:
            history = list(query.transfer_history)
            history[-1] = replace(latent, status=TRANSFER_REJECTED, rejected_at=now,
                                  rejection_reason="Query closed before the transfer was answered")
            changes["transfer_history"] = history
        return REOPENABLE_STATUSES, changes

    before, query = await apply_transition(db, case_id, actor.tenant_id, plan)
    logger.info(f"Query {case_id} reopened by customer ({before.status} -> {PENDING})")
    await crud.system_note(db, case_id, "Query reopened by customer")
    if message and message.strip():
        await crud.msg_append(db, case_id, message.strip(), sender_id=actor.id, sender_role=ROLE_CUSTOMER)
    try:
        await broadcast.broadcast_new_query(db, query)
    except Exception:
        logger.exception(f"New-work broadcast failed for reopened {case_id}")
    return query


async def submit_feedback(
    db: aiosqlite.Connection, case_id: str, actor: Actor, rating: int, comment: Optional[str] = None
) -> Query:
    if not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValueError("rating must be an integer from 1 to 5")

    def plan(query: Query):
        _require_customer(query, actor)
        if query.status != RESOLVED:
            raise InvalidTransition(
                "Feedback can only be left on a resolved query", case_id=query.case_id, status=query.status
            )
        if query.feedback:
            raise InvalidTransition("Feedback was already submitted", case_id=query.case_id, status=query.status)
        return (RESOLVED,), {
            "feedback": {"rating": rating, "comment": comment, "submitted_at": crud.utcnow().isoformat()},
        }

    _, query = await apply_transition(db, case_id, actor.tenant_id, plan)
    logger.info(f"Feedback on {case_id}: rating={rating}")
    return query


# ─────────────────────────────────────────────
# Reads
# ─────────────────────────────────────────────

async def get_query(db: aiosqlite.Connection, case_id: str, tenant_id: str) -> Query:
    return await require_query(db, case_id, tenant_id)


async def list_queries(
    db: aiosqlite.Connection,
    tenant_id: str,
    status: Optional[str] = None,
    assigned_to: Optional[str] = None,
    transfer_target: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Query]:
    return await crud.query_list(db, tenant_id, status=status, assigned_to=assigned_to,
                                 transfer_target=transfer_target, limit=limit, offset=offset)


async def list_messages(
    db: aiosqlite.Connection, case_id: str, tenant_id: str, after_seq: int = 0, limit: int = 100
) -> list[Message]:
    await require_query(db, case_id, tenant_id)
    return await crud.msg_list(db, case_id, after_seq=after_seq, limit=limit)

"""
Transfer Handshake Protocol.

Phase 1: the handler requests a transfer. A Requested record is appended, the
query moves to Transferred and the handler is cleared, so nobody owns it but
only the named recipient can claim it.

Phase 2: the recipient accepts (record Accepted, query InProgress under the
recipient) or rejects (record Rejected, query stays Transferred with no
handler until a supervisor re-routes it).

At most one Requested record exists per query, and only as the last entry.
"""
import logging
from dataclasses import replace
from datetime import timedelta
from typing import Optional

import aiosqlite

from caserouter import lifecycle, presence, realtime
from caserouter.db import crud
from caserouter.db.models import (
    Actor, Query, TransferRecord,
    ACTIVE_STATUSES, TRANSFERRED,
    TRANSFER_REQUESTED, TRANSFER_REJECTED,
    WORK_ACTIVE,
)
from caserouter.errors import (
    RoutingError, NotFound, InvalidTransition, NotIntendedRecipient,
    TransferAlreadyPending, RecipientUnavailable, Forbidden,
)
from caserouter.policy import get_policy

logger = logging.getLogger(__name__)


async def _check_recipient(db: aiosqlite.Connection, actor: Actor, to_agent_id: str, case_id: str):
    if to_agent_id == actor.id:
        raise InvalidTransition("Cannot transfer a query to yourself", case_id=case_id)
    recipient = await crud.agent_get(db, to_agent_id, actor.tenant_id)
    if recipient is None:
        raise NotFound(f"Agent '{to_agent_id}' not found", case_id=case_id)
    if not get_policy().can_receive(recipient.role):
        raise Forbidden(f"Role '{recipient.role}' may not receive transfers", case_id=case_id)

    # Self-heals a stuck Busy before judging availability
    recipient = await presence.get_presence(db, to_agent_id, actor.tenant_id)
    if recipient.work_status != WORK_ACTIVE:
        raise RecipientUnavailable(
            f"{recipient.name} is {recipient.work_status}", case_id=case_id, work_status=recipient.work_status
        )
    if to_agent_id in await crud.busy_handlers(db, actor.tenant_id):
        raise RecipientUnavailable(
            f"{recipient.name} is handling another query", case_id=case_id, work_status=recipient.work_status
        )
    return recipient


async def request_transfer(
    db: aiosqlite.Connection,
    case_id: str,
    actor: Actor,
    to_agent_id: str,
    reason: Optional[str] = None,
) -> Query:
    """Phase 1: hand the query to `to_agent_id`, pending their acceptance."""
    policy = get_policy()
    is_supervisor = policy.can_supervise(actor.role)
    if not (policy.can_initiate(actor.role) or is_supervisor):
        raise Forbidden(f"Role '{actor.role}' may not transfer queries", case_id=case_id)

    current = await lifecycle.require_query(db, case_id, actor.tenant_id)
    if current.pending_transfer is not None:
        raise TransferAlreadyPending(
            f"Transfer to {current.pending_transfer.to_agent} is still awaiting an answer", case_id=case_id
        )
    sender = await crud.agent_get(db, actor.id, actor.tenant_id)
    recipient = await _check_recipient(db, actor, to_agent_id, case_id)

    def plan(query: Query):
        if query.pending_transfer is not None:
            raise TransferAlreadyPending(
                f"Transfer to {query.pending_transfer.to_agent} is still awaiting an answer",
                case_id=query.case_id,
            )
        if query.status in ACTIVE_STATUSES:
            if query.assigned_handler != actor.id:
                raise Forbidden("Only the current handler may transfer this query", case_id=query.case_id)
            if not policy.can_initiate(actor.role):
                raise Forbidden(f"Role '{actor.role}' may not transfer queries", case_id=query.case_id)
            expected = ACTIVE_STATUSES
        elif query.status == TRANSFERRED:
            # Previous request was rejected; only a supervisor may re-route
            if not is_supervisor:
                raise Forbidden("Only a supervisor may re-route a rejected transfer", case_id=query.case_id)
            expected = (TRANSFERRED,)
        else:
            raise InvalidTransition(
                f"Cannot transfer a {query.status} query", case_id=query.case_id, status=query.status
            )
        now = crud.utcnow()
        record = TransferRecord(
            from_agent=actor.id,
            from_agent_name=sender.name if sender else None,
            to_agent=recipient.agent_id,
            to_agent_name=recipient.name,
            reason=reason,
            status=TRANSFER_REQUESTED,
            requested_at=now,
        )
        return expected, {
            "status": TRANSFERRED,
            "assigned_handler": None,
            "assigned_at": None,
            "transfer_history": [*query.transfer_history, record],
            "last_activity_at": now,
            "expires_at": crud.expiry_from(now),
        }

    before, query = await lifecycle.apply_transition(db, case_id, actor.tenant_id, plan)
    record = query.latest_transfer
    logger.info(f"Transfer requested on {case_id}: {actor.id} -> {to_agent_id} ({before.status} -> {TRANSFERRED})")
    note = f"Transfer requested from {record.from_agent_name or actor.id} to {recipient.name}"
    if reason:
        note += f": {reason}"
    await crud.system_note(db, case_id, note)

    if before.assigned_handler:
        # They may still be Busy with other queries
        lifecycle.announce_presence(await presence.clear_busy_if_no_active_work(db, before.assigned_handler))

    realtime.hub.emit_to_channel(
        realtime.user_channel(to_agent_id), "transfer-request",
        {"case_id": case_id, "from_agent": actor.id, "from_agent_name": record.from_agent_name,
         "reason": reason, "customer_name": query.customer_name, "subject": query.subject,
         "priority": query.priority, "requested_at": record.requested_at.isoformat()},
    )
    realtime.hub.emit_to_channel(
        realtime.tenant_channel(query.tenant_id), "query-transfer-requested",
        {"case_id": case_id, "from_agent": actor.id, "to_agent": to_agent_id},
    )
    return query


async def accept_transfer(db: aiosqlite.Connection, case_id: str, actor: Actor) -> Query:
    """Phase 2 (accept): only the named recipient may take over."""
    return await lifecycle.accept(db, case_id, actor, transfer_only=True)


async def reject_transfer(
    db: aiosqlite.Connection, case_id: str, actor: Actor, reason: Optional[str] = None
) -> Query:
    """Phase 2 (reject): the query stays Transferred with no handler."""
    def plan(query: Query):
        pending = query.pending_transfer
        if query.status != TRANSFERRED or pending is None:
            raise InvalidTransition(
                f"Query '{query.case_id}' has no transfer awaiting an answer",
                case_id=query.case_id, status=query.status,
            )
        if pending.to_agent != actor.id:
            raise NotIntendedRecipient(
                f"Transfer of '{query.case_id}' is addressed to another agent", case_id=query.case_id
            )
        history = list(query.transfer_history)
        history[-1] = replace(pending, status=TRANSFER_REJECTED, rejected_at=crud.utcnow(),
                              rejection_reason=reason)
        return (TRANSFERRED,), {"transfer_history": history}

    _, query = await lifecycle.apply_transition(db, case_id, actor.tenant_id, plan)
    record = query.latest_transfer
    logger.info(f"Transfer of {case_id} rejected by {actor.id}")
    await crud.system_note(
        db, case_id, f"Transfer rejected by {record.to_agent_name or actor.id}" + (f": {reason}" if reason else "")
    )
    realtime.hub.emit_to_channel(
        realtime.user_channel(record.from_agent), "transfer-rejected",
        {"case_id": case_id, "rejected_by": actor.id, "rejected_by_name": record.to_agent_name,
         "reason": reason},
    )
    return query


async def get_escalation_chain(db: aiosqlite.Connection, case_id: str, actor: Actor) -> dict:
    query = await lifecycle.require_query(db, case_id, actor.tenant_id)
    if actor.id != query.assigned_handler and not get_policy().can_supervise(actor.role):
        raise Forbidden("Not allowed to view this escalation chain", case_id=case_id)
    return {
        "case_id": query.case_id,
        "status": query.status,
        "current_assignee": query.assigned_handler,
        "steps": [{"step": i, **record.as_dict()} for i, record in enumerate(query.transfer_history, start=1)],
    }


async def recent_escalations(db: aiosqlite.Connection, tenant_id: str, actor: Actor, limit: int = 20) -> list[dict]:
    if not get_policy().can_supervise(actor.role):
        raise Forbidden("Only supervisors may review escalations")
    return [
        {
            "case_id": q.case_id,
            "subject": q.subject,
            "status": q.status,
            "current_assignee": q.assigned_handler,
            "transfer_count": len(q.transfer_history),
            "latest_transfer": q.latest_transfer.as_dict(),
        }
        for q in await crud.query_list_escalated(db, tenant_id, limit)
    ]


async def expire_stale_transfer_requests(db: aiosqlite.Connection, older_than: timedelta) -> list[str]:
    """Reject every Requested record older than `older_than`. Returns the affected case ids."""
    cutoff = crud.utcnow() - older_than
    expired = []
    for query in await crud.query_list_pending_transfers(db):
        record = query.pending_transfer
        if record.requested_at >= cutoff:
            continue

        def plan(current: Query, requested_at=record.requested_at):
            pending = current.pending_transfer
            if current.status != TRANSFERRED or pending is None or pending.requested_at != requested_at:
                raise InvalidTransition("Transfer was answered meanwhile", case_id=current.case_id)
            history = list(current.transfer_history)
            history[-1] = replace(pending, status=TRANSFER_REJECTED, rejected_at=crud.utcnow(),
                                  rejection_reason="Transfer request timed out")
            return (TRANSFERRED,), {"transfer_history": history}

        try:
            await lifecycle.apply_transition(db, query.case_id, None, plan)
        except RoutingError as e:
            logger.info(f"Skipping transfer timeout on {query.case_id}: {e.message}")
            continue
        await crud.system_note(db, query.case_id, f"Transfer to {record.to_agent_name or record.to_agent} timed out")
        realtime.hub.emit_to_channel(
            realtime.user_channel(record.from_agent), "transfer-rejected",
            {"case_id": query.case_id, "rejected_by": None, "reason": "timeout"},
        )
        expired.append(query.case_id)
    if expired:
        logger.info(f"Timed out {len(expired)} transfer request(s)")
    return expired

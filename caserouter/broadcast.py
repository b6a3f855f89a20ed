"""
Eligibility & Broadcast Resolver.

New work is offered in two steps:

1. `compute_targets` takes a snapshot: Active front-line agents in the tenant,
   read through the presence tracker (which self-heals a stuck Busy flag),
   minus every agent currently handling an Accepted/InProgress query.
2. `deliver_new_work` walks the live connections in the tenant channel and,
   for each one belonging to a target, re-checks the store for active work
   before emitting. An agent who picked up something else since the snapshot
   is skipped.

Delivery is best-effort and at most once per connection.
"""
import logging
from collections.abc import Iterable
from typing import Optional

import aiosqlite

from caserouter import presence, realtime
from caserouter.db import crud
from caserouter.db.models import AgentPresence, Query, ROLE_AGENT, WORK_ACTIVE
from caserouter.policy import get_policy

logger = logging.getLogger(__name__)

NEW_WORK_EVENT = "new-pending-query"


def new_work_payload(query: Query) -> dict:
    return {
        "case_id": query.case_id,
        "customer_name": query.customer_name,
        "subject": query.subject,
        "category": query.category,
        "priority": query.priority,
        "tenant_id": query.tenant_id,
        "timestamp": crud.utcnow().isoformat(),
    }


async def _available(
    db: aiosqlite.Connection, tenant_id: str, roles: Iterable[str], department: Optional[str] = None
) -> list[AgentPresence]:
    """Active agents in `roles`, read through the presence tracker so stuck Busy flags self-heal."""
    roles = set(roles)
    return [
        a for a in await presence.list_presence(db, tenant_id)
        if a.role in roles and a.work_status == WORK_ACTIVE and (not department or a.department == department)
    ]


async def compute_targets(db: aiosqlite.Connection, tenant_id: str) -> set[str]:
    candidates = await _available(db, tenant_id, [ROLE_AGENT])
    busy = await crud.busy_handlers(db, tenant_id)
    targets = {a.agent_id for a in candidates} - busy
    logger.debug(
        f"Broadcast targets for {tenant_id}: {len(candidates)} candidates, "
        f"{len(busy)} busy, {len(targets)} targets"
    )
    return targets


async def deliver_new_work(db: aiosqlite.Connection, query: Query, targets: Iterable[str]) -> int:
    """Emit the new-work event to each target's live connections. Returns the delivered count."""
    targets = set(targets)
    payload = new_work_payload(query)
    delivered = 0
    # Per-agent re-check, shared by that agent's connections
    rechecked: dict[str, bool] = {}
    for conn in realtime.hub.connections_in(realtime.tenant_channel(query.tenant_id)):
        if conn.agent_id not in targets:
            continue
        if conn.agent_id not in rechecked:
            rechecked[conn.agent_id] = not await crud.has_active_assignment(db, conn.agent_id)
        if not rechecked[conn.agent_id]:
            logger.info(f"Skipping new-work offer of {query.case_id} to {conn.agent_id}: now handling a query")
            continue
        if realtime.hub.emit_to_connection(conn, NEW_WORK_EVENT, payload):
            delivered += 1
    return delivered


async def broadcast_new_query(db: aiosqlite.Connection, query: Query) -> int:
    targets = await compute_targets(db, query.tenant_id)
    delivered = await deliver_new_work(db, query, targets)
    logger.info(f"New work {query.case_id} offered on {delivered} connection(s) ({len(targets)} eligible agents)")
    return delivered


async def list_eligible_recipients(
    db: aiosqlite.Connection,
    tenant_id: str,
    category: Optional[str] = None,
    exclude: Optional[str] = None,
) -> list[AgentPresence]:
    """Agents a query could be transferred to right now, optionally matched to a department."""
    policy = get_policy()
    agents = await _available(db, tenant_id, policy.recipients, department=category)
    busy = await crud.busy_handlers(db, tenant_id)
    return [a for a in agents if a.agent_id not in busy and a.agent_id != exclude]

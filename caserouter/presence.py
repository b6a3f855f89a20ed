"""
Presence Tracker: the single arbitration point for agent availability.

Holds each agent's work status (Active | Busy | Break | Offline) and the
session-scoped productive-time counter. Time is flushed into
`accumulated_active_minutes` on every status change, and only when the prior
status was Active or Busy.

Presence is reconciled lazily against the query store rather than updated in
the same write as a query. A Busy agent with no Accepted/InProgress work (a
crash, an abandoned transfer) is reset to Active the next time it is read.
"""
import logging
from datetime import datetime
from typing import Optional

import aiosqlite

from caserouter.db import crud
from caserouter.db.models import (
    AgentPresence, BreakLog,
    WORK_ACTIVE, WORK_BUSY, WORK_BREAK, WORK_OFFLINE, PRODUCTIVE_STATUSES,
)
from caserouter.errors import Forbidden, NotFound, InvalidTransition

logger = logging.getLogger(__name__)


def _minutes_between(start: datetime, end: datetime) -> float:
    return max(0.0, (end - start).total_seconds() / 60.0)


def _flush(agent: AgentPresence, now: datetime) -> None:
    """Move elapsed productive time into the accumulator and restart the clock."""
    if agent.work_status in PRODUCTIVE_STATUSES and agent.last_status_change_at:
        agent.accumulated_active_minutes += _minutes_between(agent.last_status_change_at, now)
    agent.last_status_change_at = now


async def _change_status(db: aiosqlite.Connection, agent: AgentPresence, new_status: str) -> AgentPresence:
    now = crud.utcnow()
    previous = agent.work_status
    _flush(agent, now)
    agent.work_status = new_status
    await crud.agent_save_status(db, agent)
    if previous != new_status:
        logger.info(f"Presence {agent.agent_id}: {previous} -> {new_status}")
    return agent


async def _load(db: aiosqlite.Connection, agent_id: str, tenant_id: Optional[str] = None) -> AgentPresence:
    agent = await crud.agent_get(db, agent_id, tenant_id)
    if agent is None:
        raise NotFound(f"Agent '{agent_id}' not found")
    return agent


def active_minutes_at(agent: AgentPresence, now: datetime) -> float:
    """Productive minutes for the current session, computed on read."""
    total = agent.accumulated_active_minutes
    if agent.work_status in PRODUCTIVE_STATUSES and agent.last_status_change_at:
        total += _minutes_between(agent.last_status_change_at, now)
    return total


# ─────────────────────────────────────────────
# Session lifecycle
# ─────────────────────────────────────────────

async def login(
    db: aiosqlite.Connection,
    agent_id: str,
    tenant_id: str,
    name: str,
    role: str,
    department: Optional[str] = None,
) -> AgentPresence:
    """Start a new session: Active, counter reset to zero.

    An agent id belongs to one tenant; a login under another tenant is refused.
    """
    existing = await crud.agent_get(db, agent_id)
    if existing is not None and existing.tenant_id != tenant_id:
        raise Forbidden(f"Agent '{agent_id}' belongs to another tenant")
    agent = await crud.agent_upsert(
        db, agent_id, tenant_id, name, role, department, WORK_ACTIVE, crud.utcnow()
    )
    logger.info(f"Agent logged in: {agent_id} '{name}' ({role}) tenant={tenant_id}")
    # Work held from a previous session keeps the agent Busy
    return await reconcile(db, agent)


async def logout(db: aiosqlite.Connection, agent_id: str) -> AgentPresence:
    agent = await _load(db, agent_id)
    if agent.work_status == WORK_BREAK:
        await _close_break(db, agent, crud.utcnow())
    agent.break_started_at = None
    agent = await _change_status(db, agent, WORK_OFFLINE)
    logger.info(
        f"Agent logged out: {agent_id} productive={agent.accumulated_active_minutes:.1f}min"
    )
    return agent


# ─────────────────────────────────────────────
# Busy / idle arbitration
# ─────────────────────────────────────────────

async def set_busy(db: aiosqlite.Connection, agent_id: str) -> AgentPresence:
    """Mark the agent Busy, flushing any Active time first."""
    agent = await _load(db, agent_id)
    if agent.work_status == WORK_BREAK:
        await _close_break(db, agent, crud.utcnow())
        agent.break_started_at = None
    return await _change_status(db, agent, WORK_BUSY)


async def clear_busy_if_no_active_work(
    db: aiosqlite.Connection, agent_id: str, exclude_case_id: Optional[str] = None
) -> AgentPresence:
    """Downgrade Busy to Active only if the store shows no remaining Accepted/InProgress work.

    This is a fresh re-check, not a decrement: transfers and resolutions race.
    """
    agent = await crud.agent_get(db, agent_id)
    if agent is None:
        raise NotFound(f"Agent '{agent_id}' not found")
    if agent.work_status != WORK_BUSY:
        return agent
    remaining = await crud.active_assignment_count(db, agent_id, exclude_case_id=exclude_case_id)
    if remaining > 0:
        logger.info(f"Agent {agent_id} remains Busy ({remaining} active queries)")
        return agent
    return await _change_status(db, agent, WORK_ACTIVE)


clear_if_idle = clear_busy_if_no_active_work


async def reconcile(db: aiosqlite.Connection, agent: AgentPresence) -> AgentPresence:
    """Self-heal Busy/Active against the actual assignment count."""
    if agent.work_status not in PRODUCTIVE_STATUSES:
        return agent
    holding = await crud.has_active_assignment(db, agent.agent_id)
    if agent.work_status == WORK_BUSY and not holding:
        logger.warning(f"Auto-correcting stuck Busy status for {agent.agent_id} (no active queries)")
        return await _change_status(db, agent, WORK_ACTIVE)
    if agent.work_status == WORK_ACTIVE and holding:
        logger.warning(f"Agent {agent.agent_id} holds active work while Active, raising to Busy")
        return await _change_status(db, agent, WORK_BUSY)
    return agent


async def get_presence(
    db: aiosqlite.Connection, agent_id: str, tenant_id: Optional[str] = None
) -> AgentPresence:
    agent = await _load(db, agent_id, tenant_id)
    return await reconcile(db, agent)


async def list_presence(db: aiosqlite.Connection, tenant_id: str) -> list[AgentPresence]:
    return [await reconcile(db, a) for a in await crud.agent_list(db, tenant_id)]


async def current_active_minutes(db: aiosqlite.Connection, agent_id: str) -> float:
    agent = await _load(db, agent_id)
    return active_minutes_at(agent, crud.utcnow())


# ─────────────────────────────────────────────
# Breaks
# ─────────────────────────────────────────────

async def start_break(db: aiosqlite.Connection, agent_id: str) -> AgentPresence:
    agent = await _load(db, agent_id)
    if agent.work_status not in PRODUCTIVE_STATUSES:
        raise InvalidTransition(
            f"Cannot start a break while {agent.work_status}", status=agent.work_status
        )
    agent.break_started_at = crud.utcnow()
    return await _change_status(db, agent, WORK_BREAK)


async def _close_break(db: aiosqlite.Connection, agent: AgentPresence, now: datetime) -> int:
    started = agent.break_started_at or agent.last_status_change_at or now
    duration = int(round(_minutes_between(started, now)))
    await crud.break_log_insert(db, agent.agent_id, started, now, duration)
    return duration


async def end_break(db: aiosqlite.Connection, agent_id: str) -> AgentPresence:
    agent = await _load(db, agent_id)
    if agent.work_status != WORK_BREAK:
        raise InvalidTransition(
            f"Cannot end a break while {agent.work_status}", status=agent.work_status
        )
    duration = await _close_break(db, agent, crud.utcnow())
    agent.break_started_at = None
    agent = await _change_status(db, agent, WORK_ACTIVE)
    logger.info(f"Break ended for {agent_id} after {duration} minute(s)")
    return await reconcile(db, agent)


async def break_history(db: aiosqlite.Connection, agent_id: str, limit: int = 50) -> list[BreakLog]:
    await _load(db, agent_id)
    return await crud.break_log_list(db, agent_id, limit)

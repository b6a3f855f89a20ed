"""
CRUD operations for CaseRouter.
All functions are async and receive the aiosqlite connection from the caller.

Query rows are only ever changed through `query_cas_update` (single-row
compare-and-swap on `version` + expected status set) or `query_expire_stale`
(bulk conditional update used by the sweeper).
"""
import json
import uuid
import logging
from datetime import datetime, timezone, timedelta
from typing import Any, Iterable, Optional

import aiosqlite

from caserouter.config import QUERY_TTL_HOURS
from caserouter.db.models import (
    Query, TransferRecord, AgentPresence, BreakLog, Message,
    PENDING, EXPIRED, TRANSFERRED, ACTIVE_STATUSES, SWEEPABLE_STATUSES,
    WORK_OFFLINE,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat(timespec="microseconds")


def _parse_dt(s: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(s) if s else None


def expiry_from(last_activity: datetime) -> datetime:
    """Sliding inactivity deadline for a query whose last activity was `last_activity`."""
    return last_activity + timedelta(hours=QUERY_TTL_HOURS)


def generate_case_id(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"QRY-{now:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


def _placeholders(values: Iterable[Any]) -> str:
    return ", ".join("?" for _ in values)


# ─────────────────────────────────────────────
# Sequence counter (global, store-wide)
# ─────────────────────────────────────────────

async def next_seq(db: aiosqlite.Connection) -> int:
    """Atomically increment and return the next global sequence number."""
    async with db.execute(
        "UPDATE seq_counter SET val = val + 1 WHERE id = 1 RETURNING val"
    ) as cur:
        row = await cur.fetchone()
    await db.commit()
    return row["val"]


# ─────────────────────────────────────────────
# Query documents
# ─────────────────────────────────────────────

_QUERY_MUTABLE_COLUMNS = {
    "status", "assigned_handler", "assigned_at", "resolved_at", "resolved_by",
    "last_activity_at", "expires_at", "transfer_history", "feedback",
}


def _to_column(value: Any) -> Any:
    if isinstance(value, datetime):
        return _iso(value)
    if isinstance(value, list):
        return json.dumps([v.as_dict() if isinstance(v, TransferRecord) else v for v in value])
    if isinstance(value, dict):
        return json.dumps(value)
    return value


async def query_insert(
    db: aiosqlite.Connection,
    tenant_id: str,
    customer_id: str,
    customer_name: str,
    subject: str,
    category: str = "Other",
    priority: str = "Medium",
) -> Query:
    now = utcnow()
    case_id = generate_case_id(now)
    expires = expiry_from(now)
    await db.execute(
        "INSERT INTO queries (case_id, tenant_id, customer_id, customer_name, subject, category, priority, "
        "status, last_activity_at, expires_at, created_at, updated_at, version, transfer_history) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, '[]')",
        (case_id, tenant_id, customer_id, customer_name, subject, category, priority,
         PENDING, _iso(now), _iso(expires), _iso(now), _iso(now)),
    )
    await db.commit()
    logger.info(f"Query created: {case_id} tenant={tenant_id} category={category}")
    return Query(
        case_id=case_id, tenant_id=tenant_id, customer_id=customer_id, customer_name=customer_name,
        subject=subject, category=category, priority=priority, status=PENDING,
        assigned_handler=None, assigned_at=None, resolved_at=None, resolved_by=None,
        last_activity_at=now, expires_at=expires, created_at=now, updated_at=now, version=1,
    )


async def query_get(db: aiosqlite.Connection, case_id: str, tenant_id: Optional[str] = None) -> Optional[Query]:
    if tenant_id is None:
        async with db.execute("SELECT * FROM queries WHERE case_id = ?", (case_id,)) as cur:
            row = await cur.fetchone()
    else:
        async with db.execute(
            "SELECT * FROM queries WHERE case_id = ? AND tenant_id = ?", (case_id, tenant_id)
        ) as cur:
            row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_query(row)


async def query_cas_update(
    db: aiosqlite.Connection,
    query: Query,
    expected_statuses: Iterable[str],
    changes: dict[str, Any],
) -> bool:
    """Apply `changes` only if the row is still at `query.version` and in one of `expected_statuses`.

    Returns False when another writer got there first; the caller must re-read.
    """
    unknown = set(changes) - _QUERY_MUTABLE_COLUMNS
    if unknown:
        raise ValueError(f"Not a mutable query column: {sorted(unknown)}")
    expected = list(expected_statuses)
    now = utcnow()
    assignments = ", ".join(f"{col} = ?" for col in changes)
    params = [_to_column(v) for v in changes.values()]
    sql = (
        f"UPDATE queries SET {assignments}, updated_at = ?, version = version + 1 "
        f"WHERE case_id = ? AND version = ? AND status IN ({_placeholders(expected)})"
    )
    async with db.execute(sql, (*params, _iso(now), query.case_id, query.version, *expected)) as cur:
        updated = cur.rowcount
    await db.commit()
    if updated == 0:
        logger.debug(f"CAS miss on {query.case_id} at version {query.version}")
        return False
    return True


async def query_list(
    db: aiosqlite.Connection,
    tenant_id: str,
    status: Optional[str] = None,
    assigned_to: Optional[str] = None,
    transfer_target: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Query]:
    clauses = ["tenant_id = ?"]
    params: list[Any] = [tenant_id]
    if status:
        clauses.append("status = ?")
        params.append(status)
    if assigned_to:
        clauses.append("assigned_handler = ?")
        params.append(assigned_to)
    if transfer_target:
        clauses.append("status = ?")
        params.append(TRANSFERRED)
    sql = f"SELECT * FROM queries WHERE {' AND '.join(clauses)} ORDER BY created_at DESC"
    if not transfer_target:
        sql += " LIMIT ? OFFSET ?"
        params.extend([limit, offset])
    async with db.execute(sql, params) as cur:
        rows = await cur.fetchall()
    queries = [_row_to_query(r) for r in rows]
    if transfer_target:
        # Filter on the pending record after decoding transfer_history
        queries = [
            q for q in queries
            if q.pending_transfer is not None and q.pending_transfer.to_agent == transfer_target
        ]
        queries = queries[offset:offset + limit]
    return queries


async def query_list_escalated(db: aiosqlite.Connection, tenant_id: str, limit: int = 20) -> list[Query]:
    async with db.execute(
        "SELECT * FROM queries WHERE tenant_id = ? AND transfer_history != '[]' "
        "ORDER BY updated_at DESC LIMIT ?",
        (tenant_id, limit),
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_query(r) for r in rows]


async def query_list_pending_transfers(db: aiosqlite.Connection) -> list[Query]:
    async with db.execute("SELECT * FROM queries WHERE status = ?", (TRANSFERRED,)) as cur:
        rows = await cur.fetchall()
    return [q for q in (_row_to_query(r) for r in rows) if q.pending_transfer is not None]


async def busy_handlers(db: aiosqlite.Connection, tenant_id: str) -> set[str]:
    """Distinct handlers of Accepted/InProgress queries in the tenant."""
    async with db.execute(
        f"SELECT DISTINCT assigned_handler FROM queries "
        f"WHERE tenant_id = ? AND status IN ({_placeholders(ACTIVE_STATUSES)}) AND assigned_handler IS NOT NULL",
        (tenant_id, *ACTIVE_STATUSES),
    ) as cur:
        rows = await cur.fetchall()
    return {r["assigned_handler"] for r in rows}


async def active_assignment_count(
    db: aiosqlite.Connection, agent_id: str, exclude_case_id: Optional[str] = None
) -> int:
    sql = (
        f"SELECT COUNT(*) AS cnt FROM queries "
        f"WHERE assigned_handler = ? AND status IN ({_placeholders(ACTIVE_STATUSES)})"
    )
    params: list[Any] = [agent_id, *ACTIVE_STATUSES]
    if exclude_case_id:
        sql += " AND case_id != ?"
        params.append(exclude_case_id)
    async with db.execute(sql, params) as cur:
        row = await cur.fetchone()
    return row["cnt"]


async def first_active_assignment(db: aiosqlite.Connection, agent_id: str) -> Optional[str]:
    async with db.execute(
        f"SELECT case_id FROM queries WHERE assigned_handler = ? "
        f"AND status IN ({_placeholders(ACTIVE_STATUSES)}) LIMIT 1",
        (agent_id, *ACTIVE_STATUSES),
    ) as cur:
        row = await cur.fetchone()
    return row["case_id"] if row else None


async def has_active_assignment(db: aiosqlite.Connection, agent_id: str) -> bool:
    return await first_active_assignment(db, agent_id) is not None


async def query_expire_stale(
    db: aiosqlite.Connection, now: Optional[datetime] = None
) -> tuple[list[tuple[str, str]], set[str]]:
    """Bulk-transition every stale Pending/Accepted/InProgress query to Expired.

    Returns ([(case_id, tenant_id), ...], handlers that may need a presence re-check).
    The handler set is read before the update and may over-approximate; presence
    re-checks are idempotent.
    """
    now = now or utcnow()
    cutoff = _iso(now)
    async with db.execute(
        f"SELECT DISTINCT assigned_handler FROM queries "
        f"WHERE status IN ({_placeholders(SWEEPABLE_STATUSES)}) AND expires_at < ? AND assigned_handler IS NOT NULL",
        (*SWEEPABLE_STATUSES, cutoff),
    ) as cur:
        handlers = {r["assigned_handler"] for r in await cur.fetchall()}
    async with db.execute(
        f"UPDATE queries SET status = ?, assigned_handler = NULL, updated_at = ?, version = version + 1 "
        f"WHERE status IN ({_placeholders(SWEEPABLE_STATUSES)}) AND expires_at < ? "
        f"RETURNING case_id, tenant_id",
        (EXPIRED, cutoff, *SWEEPABLE_STATUSES, cutoff),
    ) as cur:
        rows = await cur.fetchall()
    await db.commit()
    return [(r["case_id"], r["tenant_id"]) for r in rows], handlers


def _row_to_query(row: aiosqlite.Row) -> Query:
    history = json.loads(row["transfer_history"] or "[]")
    feedback = row["feedback"] if "feedback" in row.keys() else None
    return Query(
        case_id=row["case_id"],
        tenant_id=row["tenant_id"],
        customer_id=row["customer_id"],
        customer_name=row["customer_name"],
        subject=row["subject"],
        category=row["category"],
        priority=row["priority"],
        status=row["status"],
        assigned_handler=row["assigned_handler"],
        assigned_at=_parse_dt(row["assigned_at"]),
        resolved_at=_parse_dt(row["resolved_at"]),
        resolved_by=row["resolved_by"],
        last_activity_at=_parse_dt(row["last_activity_at"]),
        expires_at=_parse_dt(row["expires_at"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        version=row["version"],
        transfer_history=[TransferRecord.from_dict(t) for t in history],
        feedback=json.loads(feedback) if feedback else None,
    )


# ─────────────────────────────────────────────
# Conversation messages and system notes
# ─────────────────────────────────────────────

async def msg_append(
    db: aiosqlite.Connection,
    case_id: str,
    body: str,
    sender_id: Optional[str] = None,
    sender_role: str = "System",
    is_system: bool = False,
) -> Message:
    mid = str(uuid.uuid4())
    now = utcnow()
    seq = await next_seq(db)
    await db.execute(
        "INSERT INTO messages (id, case_id, sender_id, sender_role, body, is_system, seq, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (mid, case_id, sender_id, sender_role, body, 1 if is_system else 0, seq, _iso(now)),
    )
    await db.commit()
    logger.debug(f"Message appended: seq={seq} case={case_id} system={is_system}")
    return Message(id=mid, case_id=case_id, sender_id=sender_id, sender_role=sender_role,
                   body=body, is_system=is_system, seq=seq, created_at=now)


async def system_note(db: aiosqlite.Connection, case_id: str, body: str) -> Message:
    return await msg_append(db, case_id, body, sender_id=None, sender_role="System", is_system=True)


async def msg_list(
    db: aiosqlite.Connection, case_id: str, after_seq: int = 0, limit: int = 100
) -> list[Message]:
    async with db.execute(
        "SELECT * FROM messages WHERE case_id = ? AND seq > ? ORDER BY seq ASC LIMIT ?",
        (case_id, after_seq, limit),
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_message(r) for r in rows]


def _row_to_message(row: aiosqlite.Row) -> Message:
    return Message(
        id=row["id"],
        case_id=row["case_id"],
        sender_id=row["sender_id"],
        sender_role=row["sender_role"],
        body=row["body"],
        is_system=bool(row["is_system"]),
        seq=row["seq"],
        created_at=_parse_dt(row["created_at"]),
    )


# ─────────────────────────────────────────────
# Agent presence rows
# ─────────────────────────────────────────────

async def agent_get(
    db: aiosqlite.Connection, agent_id: str, tenant_id: Optional[str] = None
) -> Optional[AgentPresence]:
    if tenant_id is None:
        async with db.execute("SELECT * FROM agents WHERE agent_id = ?", (agent_id,)) as cur:
            row = await cur.fetchone()
    else:
        async with db.execute(
            "SELECT * FROM agents WHERE agent_id = ? AND tenant_id = ?", (agent_id, tenant_id)
        ) as cur:
            row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_agent(row)


async def agent_upsert(
    db: aiosqlite.Connection,
    agent_id: str,
    tenant_id: str,
    name: str,
    role: str,
    department: Optional[str],
    work_status: str,
    now: datetime,
) -> AgentPresence:
    """Create or refresh an agent row for a new login session (counter reset to zero)."""
    await db.execute(
        "INSERT INTO agents (agent_id, tenant_id, name, role, department, work_status, "
        "last_status_change_at, accumulated_active_minutes, break_started_at, login_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, 0, NULL, ?) "
        "ON CONFLICT(agent_id) DO UPDATE SET name = excluded.name, "
        "role = excluded.role, department = excluded.department, work_status = excluded.work_status, "
        "last_status_change_at = excluded.last_status_change_at, accumulated_active_minutes = 0, "
        "break_started_at = NULL, login_at = excluded.login_at",
        (agent_id, tenant_id, name, role, department, work_status, _iso(now), _iso(now)),
    )
    await db.commit()
    return AgentPresence(
        agent_id=agent_id, tenant_id=tenant_id, name=name, role=role, department=department,
        work_status=work_status, last_status_change_at=now, accumulated_active_minutes=0.0,
        break_started_at=None, login_at=now,
    )


async def agent_save_status(db: aiosqlite.Connection, agent: AgentPresence) -> None:
    await db.execute(
        "UPDATE agents SET work_status = ?, last_status_change_at = ?, accumulated_active_minutes = ?, "
        "break_started_at = ? WHERE agent_id = ?",
        (agent.work_status, _iso(agent.last_status_change_at), agent.accumulated_active_minutes,
         _iso(agent.break_started_at), agent.agent_id),
    )
    await db.commit()


async def agent_list(
    db: aiosqlite.Connection,
    tenant_id: str,
    roles: Optional[Iterable[str]] = None,
    work_status: Optional[str] = None,
    department: Optional[str] = None,
) -> list[AgentPresence]:
    clauses = ["tenant_id = ?"]
    params: list[Any] = [tenant_id]
    if roles:
        roles = list(roles)
        clauses.append(f"role IN ({_placeholders(roles)})")
        params.extend(roles)
    if work_status:
        clauses.append("work_status = ?")
        params.append(work_status)
    if department:
        clauses.append("department = ?")
        params.append(department)
    async with db.execute(
        f"SELECT * FROM agents WHERE {' AND '.join(clauses)} ORDER BY name", params
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_agent(r) for r in rows]


def _row_to_agent(row: aiosqlite.Row) -> AgentPresence:
    return AgentPresence(
        agent_id=row["agent_id"],
        tenant_id=row["tenant_id"],
        name=row["name"],
        role=row["role"],
        department=row["department"] if "department" in row.keys() else None,
        work_status=row["work_status"] or WORK_OFFLINE,
        last_status_change_at=_parse_dt(row["last_status_change_at"]),
        accumulated_active_minutes=row["accumulated_active_minutes"] or 0.0,
        break_started_at=_parse_dt(row["break_started_at"]),
        login_at=_parse_dt(row["login_at"]),
    )


async def break_log_insert(
    db: aiosqlite.Connection, agent_id: str, started_at: datetime, ended_at: datetime, duration_minutes: int
) -> None:
    await db.execute(
        "INSERT INTO break_logs (agent_id, started_at, ended_at, duration_minutes) VALUES (?, ?, ?, ?)",
        (agent_id, _iso(started_at), _iso(ended_at), duration_minutes),
    )
    await db.commit()


async def break_log_list(db: aiosqlite.Connection, agent_id: str, limit: int = 50) -> list[BreakLog]:
    async with db.execute(
        "SELECT * FROM break_logs WHERE agent_id = ? ORDER BY started_at DESC LIMIT ?",
        (agent_id, limit),
    ) as cur:
        rows = await cur.fetchall()
    return [BreakLog(
        agent_id=row["agent_id"],
        started_at=_parse_dt(row["started_at"]),
        ended_at=_parse_dt(row["ended_at"]),
        duration_minutes=row["duration_minutes"],
    ) for row in rows]

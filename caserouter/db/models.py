"""
Data models (dataclasses) for CaseRouter.
These are plain Python objects used across the DB, engine, MCP, and API layers.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


# Query lifecycle
PENDING = "Pending"
ACCEPTED = "Accepted"
IN_PROGRESS = "InProgress"
TRANSFERRED = "Transferred"
RESOLVED = "Resolved"
EXPIRED = "Expired"

QUERY_STATUSES = {PENDING, ACCEPTED, IN_PROGRESS, TRANSFERRED, RESOLVED, EXPIRED}
ACTIVE_STATUSES = (ACCEPTED, IN_PROGRESS)          # statuses that hold a handler
SWEEPABLE_STATUSES = (PENDING, ACCEPTED, IN_PROGRESS)
REOPENABLE_STATUSES = (RESOLVED, EXPIRED)

# Transfer record sub-status
TRANSFER_REQUESTED = "Requested"
TRANSFER_ACCEPTED = "Accepted"
TRANSFER_REJECTED = "Rejected"

# Agent work status
WORK_ACTIVE = "Active"
WORK_BUSY = "Busy"
WORK_BREAK = "Break"
WORK_OFFLINE = "Offline"

WORK_STATUSES = {WORK_ACTIVE, WORK_BUSY, WORK_BREAK, WORK_OFFLINE}
PRODUCTIVE_STATUSES = (WORK_ACTIVE, WORK_BUSY)

# Roles supplied by the identity collaborator
ROLE_AGENT = "Agent"
ROLE_QA = "QA"
ROLE_TL = "TL"
ROLE_ADMIN = "Admin"
ROLE_CUSTOMER = "Customer"
STAFF_ROLES = {ROLE_AGENT, ROLE_QA, ROLE_TL, ROLE_ADMIN}

PRIORITIES = ("Low", "Medium", "High", "Urgent")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Actor:
    """Caller identity as supplied by the identity/session collaborator."""
    id: str
    role: str
    tenant_id: str


@dataclass
class TransferRecord:
    from_agent: str
    to_agent: str
    reason: Optional[str]
    status: str                  # Requested | Accepted | Rejected
    requested_at: datetime
    from_agent_name: Optional[str] = None
    to_agent_name: Optional[str] = None
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "from_agent": self.from_agent,
            "from_agent_name": self.from_agent_name,
            "to_agent": self.to_agent,
            "to_agent_name": self.to_agent_name,
            "reason": self.reason,
            "status": self.status,
            "requested_at": _iso(self.requested_at),
            "accepted_at": _iso(self.accepted_at),
            "rejected_at": _iso(self.rejected_at),
            "rejection_reason": self.rejection_reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TransferRecord":
        def _dt(key):
            return datetime.fromisoformat(data[key]) if data.get(key) else None

        return cls(
            from_agent=data["from_agent"],
            to_agent=data["to_agent"],
            reason=data.get("reason"),
            status=data["status"],
            requested_at=_dt("requested_at"),
            from_agent_name=data.get("from_agent_name"),
            to_agent_name=data.get("to_agent_name"),
            accepted_at=_dt("accepted_at"),
            rejected_at=_dt("rejected_at"),
            rejection_reason=data.get("rejection_reason"),
        )


@dataclass
class Query:
    case_id: str
    tenant_id: str
    customer_id: str
    customer_name: str
    subject: str
    category: str
    priority: str
    status: str                  # Pending | Accepted | InProgress | Transferred | Resolved | Expired
    assigned_handler: Optional[str]
    assigned_at: Optional[datetime]
    resolved_at: Optional[datetime]
    resolved_by: Optional[str]
    last_activity_at: datetime
    expires_at: datetime
    created_at: datetime
    updated_at: datetime
    version: int                 # compare-and-swap key, bumped on every write
    transfer_history: list[TransferRecord] = field(default_factory=list)
    feedback: Optional[dict] = None

    @property
    def latest_transfer(self) -> Optional[TransferRecord]:
        return self.transfer_history[-1] if self.transfer_history else None

    @property
    def pending_transfer(self) -> Optional[TransferRecord]:
        latest = self.latest_transfer
        if latest is not None and latest.status == TRANSFER_REQUESTED:
            return latest
        return None

    def as_dict(self) -> dict:
        return {
            "case_id": self.case_id,
            "tenant_id": self.tenant_id,
            "customer_id": self.customer_id,
            "customer_name": self.customer_name,
            "subject": self.subject,
            "category": self.category,
            "priority": self.priority,
            "status": self.status,
            "assigned_handler": self.assigned_handler,
            "assigned_at": _iso(self.assigned_at),
            "resolved_at": _iso(self.resolved_at),
            "resolved_by": self.resolved_by,
            "last_activity_at": _iso(self.last_activity_at),
            "expires_at": _iso(self.expires_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "version": self.version,
            "transfer_history": [t.as_dict() for t in self.transfer_history],
            "feedback": self.feedback,
        }


@dataclass
class AgentPresence:
    agent_id: str
    tenant_id: str
    name: str
    role: str
    department: Optional[str]
    work_status: str             # Active | Busy | Break | Offline
    last_status_change_at: datetime
    accumulated_active_minutes: float
    break_started_at: Optional[datetime]
    login_at: Optional[datetime]

    def as_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "role": self.role,
            "department": self.department,
            "work_status": self.work_status,
            "last_status_change_at": _iso(self.last_status_change_at),
            "accumulated_active_minutes": self.accumulated_active_minutes,
            "break_started_at": _iso(self.break_started_at),
            "login_at": _iso(self.login_at),
        }


@dataclass
class BreakLog:
    agent_id: str
    started_at: datetime
    ended_at: datetime
    duration_minutes: int


@dataclass
class Message:
    id: str
    case_id: str
    sender_id: Optional[str]     # None for system notes
    sender_role: str             # Customer | Agent | QA | TL | Admin | System
    body: str
    is_system: bool
    seq: int                     # monotonically increasing store-wide sequence number
    created_at: datetime

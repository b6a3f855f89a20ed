"""
In-process real-time transport.

Each client stream (SSE, see `main.py`) registers a Connection with the hub.
A connection joins its tenant channel (`tenant:<id>`) and its own user channel
(`user:<agent_id>`) on connect, and case channels (`case:<case_id>`) on demand.

Emitting never blocks the caller: events go into a bounded per-connection
queue and are dropped (and logged) when a slow consumer lets it fill up.
"""
import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from caserouter.config import CONNECTION_QUEUE_SIZE

logger = logging.getLogger(__name__)

_conn_ids = itertools.count(1)


def tenant_channel(tenant_id: str) -> str:
    return f"tenant:{tenant_id}"


def user_channel(agent_id: str) -> str:
    return f"user:{agent_id}"


def case_channel(case_id: str) -> str:
    return f"case:{case_id}"


@dataclass
class Event:
    id: int
    event_type: str
    payload: dict


@dataclass
class Connection:
    conn_id: int
    agent_id: str
    tenant_id: str
    role: str
    channels: set[str] = field(default_factory=set)
    queue: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=CONNECTION_QUEUE_SIZE))
    dropped: int = 0

    def push(self, event: Event) -> bool:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                f"Connection {self.conn_id} ({self.agent_id}) queue full, dropped '{event.event_type}'"
            )
            return False
        return True


class ConnectionHub:
    """Channel membership plus fan-out for live client connections."""

    def __init__(self) -> None:
        self._connections: dict[int, Connection] = {}
        self._channels: dict[str, set[int]] = {}
        self._event_ids = itertools.count(1)

    # ── membership ───────────────────────────────────────────────

    def connect(self, agent_id: str, tenant_id: str, role: str) -> Connection:
        conn = Connection(conn_id=next(_conn_ids), agent_id=agent_id, tenant_id=tenant_id, role=role)
        self._connections[conn.conn_id] = conn
        self.join_tenant_channel(conn, tenant_id)
        self._join(conn, user_channel(agent_id))
        logger.info(f"Connection {conn.conn_id} opened for {agent_id} ({role}) tenant={tenant_id}")
        return conn

    def disconnect(self, conn: Connection) -> None:
        self._connections.pop(conn.conn_id, None)
        for channel in conn.channels:
            members = self._channels.get(channel)
            if members is not None:
                members.discard(conn.conn_id)
                if not members:
                    del self._channels[channel]
        conn.channels.clear()
        logger.info(f"Connection {conn.conn_id} closed for {conn.agent_id}")

    def _join(self, conn: Connection, channel: str) -> None:
        self._channels.setdefault(channel, set()).add(conn.conn_id)
        conn.channels.add(channel)

    def join_tenant_channel(self, conn: Connection, tenant_id: str) -> None:
        self._join(conn, tenant_channel(tenant_id))

    def join_case_channel(self, conn: Connection, case_id: str) -> None:
        self._join(conn, case_channel(case_id))

    def connections_in(self, channel: str) -> list[Connection]:
        return [self._connections[cid] for cid in sorted(self._channels.get(channel, ()))
                if cid in self._connections]

    def get(self, conn_id: int) -> Optional[Connection]:
        return self._connections.get(conn_id)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    # ── emission ─────────────────────────────────────────────────

    def _event(self, event_type: str, payload: dict[str, Any]) -> Event:
        return Event(id=next(self._event_ids), event_type=event_type, payload=payload)

    def emit_to_connection(self, conn: Connection, event_type: str, payload: dict[str, Any]) -> bool:
        return conn.push(self._event(event_type, payload))

    def emit_to_channel(self, channel: str, event_type: str, payload: dict[str, Any]) -> int:
        """Fan out to every member of `channel`. Returns how many queues accepted it."""
        delivered = 0
        event = self._event(event_type, payload)
        for conn in self.connections_in(channel):
            if conn.push(event):
                delivered += 1
        logger.debug(f"Emitted '{event_type}' to {channel}: {delivered} connection(s)")
        return delivered


# Process-wide hub used by the engine and the HTTP stream endpoint
hub = ConnectionHub()

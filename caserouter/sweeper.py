"""
Expiry Sweeper: periodically forces stale queries into Expired.

Only Pending, Accepted and InProgress queries are swept. A Transferred query
keeps its latent request until it is answered, timed out or the query is
reopened, so a swept query can never be accepted afterwards.
"""
import asyncio
import contextlib
import logging
from datetime import datetime, timedelta
from typing import Optional

import aiosqlite

from caserouter import lifecycle, presence, realtime, transfer
from caserouter.config import SWEEP_INTERVAL, TRANSFER_TIMEOUT_ENABLED, TRANSFER_TIMEOUT_MINUTES
from caserouter.db import crud
from caserouter.db.database import get_db

logger = logging.getLogger(__name__)


async def sweep_expired(db: aiosqlite.Connection, now: Optional[datetime] = None) -> list[str]:
    """Expire every query whose sliding deadline has passed. Idempotent.

    Returns the case ids expired by this call.
    """
    now = now or crud.utcnow()
    expired, handlers = await crud.query_expire_stale(db, now)
    for case_id, tenant_id in expired:
        await crud.system_note(db, case_id, "Query expired after 24 hours of inactivity")
        payload = {"case_id": case_id, "tenant_id": tenant_id, "expired_at": now.isoformat()}
        realtime.hub.emit_to_channel(realtime.tenant_channel(tenant_id), "query-expired", payload)
        realtime.hub.emit_to_channel(realtime.case_channel(case_id), "query-expired", payload)
    for agent_id in handlers:
        lifecycle.announce_presence(await presence.clear_busy_if_no_active_work(db, agent_id))
    if expired:
        logger.info(f"Sweep expired {len(expired)} query(ies): {[c for c, _ in expired]}")
    return [c for c, _ in expired]


class ExpirySweeper:
    """Runs `sweep_expired` every `interval` seconds until stopped.

    A failed tick is logged and the next tick runs as scheduled.
    """

    def __init__(self, interval: float = SWEEP_INTERVAL) -> None:
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Expiry sweeper started (every {self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Expiry sweeper stopped")

    async def tick(self) -> list[str]:
        db = await get_db()
        expired = await sweep_expired(db)
        if TRANSFER_TIMEOUT_ENABLED:
            await transfer.expire_stale_transfer_requests(db, timedelta(minutes=TRANSFER_TIMEOUT_MINUTES))
        return expired

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.ticks += 1
            try:
                await self.tick()
            except Exception:
                self.failures += 1
                logger.exception("Expiry sweep failed; retrying next tick")

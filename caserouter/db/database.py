"""
SQLite database connection management and schema initialization.
Uses aiosqlite for fully async, non-blocking access.
"""
import aiosqlite
import asyncio
import logging
import sqlite3
from pathlib import Path

from caserouter.config import DB_PATH

logger = logging.getLogger(__name__)

# Module-level connection (single shared connection with WAL mode)
_db: aiosqlite.Connection | None = None
_lock = asyncio.Lock()


async def get_db() -> aiosqlite.Connection:
    """Return the shared async database connection, initializing it if needed."""
    global _db
    if _db is None:
        async with _lock:
            if _db is None:
                if DB_PATH != ":memory:":
                    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
                _db = await aiosqlite.connect(DB_PATH)
                _db.row_factory = aiosqlite.Row
                # WAL mode: allows concurrent reads while writing
                await _db.execute("PRAGMA journal_mode=WAL")
                await _db.execute("PRAGMA foreign_keys=ON")
                await init_schema(_db)
                logger.info(f"Database initialized at {DB_PATH}")
    return _db


async def close_db() -> None:
    """Gracefully close the database connection."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None
        logger.info("Database connection closed.")


async def init_schema(db: aiosqlite.Connection) -> None:
    """Create all tables if they do not already exist (idempotent)."""
    await db.executescript("""
        -- ----------------------------------------------------------------
        -- Query: one customer conversation case.
        -- `version` is bumped on every write and is the compare-and-swap key.
        -- `transfer_history` is a JSON array of transfer records.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS queries (
            case_id           TEXT PRIMARY KEY,
            tenant_id         TEXT NOT NULL,
            customer_id       TEXT NOT NULL,
            customer_name     TEXT NOT NULL,
            subject           TEXT NOT NULL,
            category          TEXT NOT NULL DEFAULT 'Other',
            priority          TEXT NOT NULL DEFAULT 'Medium',
            status            TEXT NOT NULL DEFAULT 'Pending',
            assigned_handler  TEXT,
            assigned_at       TEXT,
            resolved_at       TEXT,
            resolved_by       TEXT,
            last_activity_at  TEXT NOT NULL,
            expires_at        TEXT NOT NULL,
            created_at        TEXT NOT NULL,
            updated_at        TEXT NOT NULL,
            version           INTEGER NOT NULL DEFAULT 1,
            transfer_history  TEXT NOT NULL DEFAULT '[]'
        );

        CREATE INDEX IF NOT EXISTS idx_queries_tenant_status
            ON queries(tenant_id, status);
        CREATE INDEX IF NOT EXISTS idx_queries_handler_status
            ON queries(assigned_handler, status);
        CREATE INDEX IF NOT EXISTS idx_queries_status_expires
            ON queries(status, expires_at);

        -- ----------------------------------------------------------------
        -- Message: conversation turns and lifecycle system notes.
        -- The store-wide `seq` is a globally monotonic integer.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS messages (
            id          TEXT PRIMARY KEY,
            case_id     TEXT NOT NULL REFERENCES queries(case_id),
            sender_id   TEXT,
            sender_role TEXT NOT NULL,
            body        TEXT NOT NULL,
            is_system   INTEGER NOT NULL DEFAULT 0,
            seq         INTEGER NOT NULL,
            created_at  TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_messages_case_seq
            ON messages(case_id, seq);

        -- ----------------------------------------------------------------
        -- Sequence counter: single-row table for thread-safe seq increment
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS seq_counter (
            id  INTEGER PRIMARY KEY CHECK (id = 1),
            val INTEGER NOT NULL DEFAULT 0
        );
        INSERT OR IGNORE INTO seq_counter (id, val) VALUES (1, 0);

        -- ----------------------------------------------------------------
        -- Agent presence: availability and productive-time accounting
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS agents (
            agent_id                    TEXT PRIMARY KEY,
            tenant_id                   TEXT NOT NULL,
            name                        TEXT NOT NULL,
            role                        TEXT NOT NULL,
            work_status                 TEXT NOT NULL DEFAULT 'Offline',
            last_status_change_at       TEXT NOT NULL,
            accumulated_active_minutes  REAL NOT NULL DEFAULT 0,
            break_started_at            TEXT,
            login_at                    TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_agents_tenant_status
            ON agents(tenant_id, work_status);

        -- ----------------------------------------------------------------
        -- Break log: one row per finished break
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS break_logs (
            id                INTEGER PRIMARY KEY AUTOINCREMENT,
            agent_id          TEXT NOT NULL,
            started_at        TEXT NOT NULL,
            ended_at          TEXT NOT NULL,
            duration_minutes  INTEGER NOT NULL
        );
    """)
    await db.commit()

    # ── Safe migration: add new columns to existing DBs ──────────────────────
    # Unique human-readable case ids
    try:
        await db.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_queries_case_id ON queries(case_id)")
        await db.commit()
    except sqlite3.OperationalError as e:
        logger.error(f"UNIQUE INDEX on queries.case_id may already exist or conflict: {e}")

    for col, typedef in [
        ("feedback", "TEXT"),
    ]:
        try:
            await db.execute(f"ALTER TABLE queries ADD COLUMN {col} {typedef}")
            await db.commit()
            logger.info(f"Migration: added column 'queries.{col}'")
        except sqlite3.OperationalError:
            pass  # column already exists

    for col, typedef in [
        ("department", "TEXT"),
    ]:
        try:
            await db.execute(f"ALTER TABLE agents ADD COLUMN {col} {typedef}")
            await db.commit()
            logger.info(f"Migration: added column 'agents.{col}'")
        except sqlite3.OperationalError:
            pass

    logger.info("Schema initialized.")

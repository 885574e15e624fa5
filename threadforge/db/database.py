"""
SQLite database connection management and schema initialization.
Uses aiosqlite for fully async, non-blocking access.
"""
import aiosqlite
import asyncio
import logging
import weakref
from pathlib import Path
from typing import AsyncIterator
from contextlib import asynccontextmanager

from threadforge.config import DB_PATH

logger = logging.getLogger(__name__)

# Module-level connection (single shared connection with WAL mode)
_db: aiosqlite.Connection | None = None
_lock = asyncio.Lock()

# One write lock per connection: seq allocation, insert and stat updates of a
# single write must not interleave with another coroutine's commit.
_write_locks: "weakref.WeakKeyDictionary[aiosqlite.Connection, asyncio.Lock]" = weakref.WeakKeyDictionary()


async def connect(path: str) -> aiosqlite.Connection:
    """Open a new connection to ``path`` and make sure the schema exists."""
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(path)
    db.row_factory = aiosqlite.Row
    # WAL mode: allows concurrent reads while writing
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA foreign_keys=ON")
    await init_schema(db)
    return db


async def get_db() -> aiosqlite.Connection:
    """Return the shared async database connection, initializing it if needed."""
    global _db
    if _db is None:
        async with _lock:
            if _db is None:
                _db = await connect(DB_PATH)
                logger.info(f"Database initialized at {DB_PATH}")
    return _db


async def close_db() -> None:
    """Gracefully close the database connection."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None
        logger.info("Database connection closed.")


@asynccontextmanager
async def transaction(db: aiosqlite.Connection) -> AsyncIterator[aiosqlite.Connection]:
    """Serialize a multi-statement write on ``db`` and commit it as one unit."""
    lock = _write_locks.get(db)
    if lock is None:
        lock = _write_locks[db] = asyncio.Lock()
    async with lock:
        try:
            yield db
        except BaseException:
            await db.rollback()
            raise
        await db.commit()


async def init_schema(db: aiosqlite.Connection) -> None:
    """Create all tables if they do not already exist (idempotent)."""
    await db.executescript("""
        -- ----------------------------------------------------------------
        -- Agent: one model-backed participant. parent_thread_id is set
        -- only for delegated sub-agents.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS agents (
            id               TEXT PRIMARY KEY,
            owner_id         TEXT NOT NULL,
            name             TEXT NOT NULL UNIQUE,
            display_name     TEXT NOT NULL,
            description      TEXT NOT NULL DEFAULT '',
            provider         TEXT NOT NULL,
            model_name       TEXT NOT NULL,
            system_prompt    TEXT,
            parent_thread_id TEXT,
            is_active        INTEGER NOT NULL DEFAULT 1,
            created_at       TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_agents_owner
            ON agents(owner_id, created_at);
        CREATE INDEX IF NOT EXISTS idx_agents_parent
            ON agents(parent_thread_id);

        -- ----------------------------------------------------------------
        -- Thread: the ordered conversation owned by exactly one agent
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS threads (
            id              TEXT PRIMARY KEY,
            agent_id        TEXT NOT NULL UNIQUE REFERENCES agents(id) ON DELETE CASCADE,
            title           TEXT NOT NULL,
            status          TEXT NOT NULL DEFAULT 'active',
            message_count   INTEGER NOT NULL DEFAULT 0,
            last_message_at TEXT,
            created_at      TEXT NOT NULL
        );

        -- ----------------------------------------------------------------
        -- Message: one utterance within a thread.
        -- The bus-wide `seq` is a globally monotonic integer.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS messages (
            id          TEXT PRIMARY KEY,
            thread_id   TEXT NOT NULL REFERENCES threads(id) ON DELETE CASCADE,
            role        TEXT NOT NULL,
            content     TEXT NOT NULL,
            tool_name   TEXT,
            state       TEXT NOT NULL DEFAULT 'complete',
            token_count INTEGER NOT NULL DEFAULT 0,
            seq         INTEGER NOT NULL,
            created_at  TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_messages_thread_seq
            ON messages(thread_id, seq);

        -- ----------------------------------------------------------------
        -- Sequence counter: single-row table for atomic seq increment
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS seq_counter (
            id  INTEGER PRIMARY KEY CHECK (id = 1),
            val INTEGER NOT NULL DEFAULT 0
        );
        INSERT OR IGNORE INTO seq_counter (id, val) VALUES (1, 0);
    """)
    await db.commit()

    # ── Safe migration: add new columns to existing DBs ──────────────────────
    for col, typedef in [
        ("state", "TEXT NOT NULL DEFAULT 'complete'"),
        ("token_count", "INTEGER NOT NULL DEFAULT 0"),
    ]:
        try:
            await db.execute(f"ALTER TABLE messages ADD COLUMN {col} {typedef}")
            await db.commit()
            logger.info(f"Migration: added column 'messages.{col}'")
        except aiosqlite.OperationalError:
            pass  # Column already exists

    for col, typedef in [
        ("system_prompt", "TEXT"),
    ]:
        try:
            await db.execute(f"ALTER TABLE agents ADD COLUMN {col} {typedef}")
            await db.commit()
            logger.info(f"Migration: added column 'agents.{col}'")
        except aiosqlite.OperationalError:
            pass

    logger.info("Schema initialized.")

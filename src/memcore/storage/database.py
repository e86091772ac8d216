"""SQLite database connection manager with schema migration."""

from __future__ import annotations

import asyncio
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Optional

import aiosqlite

from memcore.log import get_logger

logger = get_logger(__name__)

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
    id              TEXT    PRIMARY KEY,
    conversation_id TEXT    NOT NULL,
    started_at      TEXT    NOT NULL,
    ended_at        TEXT,
    end_reason      TEXT    NOT NULL DEFAULT '',
    message_count   INTEGER NOT NULL DEFAULT 0,
    title           TEXT    NOT NULL DEFAULT '',
    summary         TEXT    NOT NULL DEFAULT '',
    tags_json       TEXT    NOT NULL DEFAULT '[]',
    metadata_json   TEXT
);

CREATE INDEX IF NOT EXISTS idx_sessions_conversation
    ON sessions(conversation_id, started_at);

CREATE INDEX IF NOT EXISTS idx_sessions_started
    ON sessions(started_at);

CREATE TABLE IF NOT EXISTS archived_messages (
    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
    id              TEXT    NOT NULL,
    session_id      TEXT    NOT NULL,
    conversation_id TEXT    NOT NULL,
    role            TEXT    NOT NULL CHECK(role IN ('user','assistant','tool','system')),
    content         TEXT    NOT NULL,
    timestamp       TEXT    NOT NULL,
    token_count     INTEGER NOT NULL DEFAULT 0,
    tool_call_id    TEXT    NOT NULL DEFAULT '',
    archive_reason  TEXT    NOT NULL DEFAULT '',
    UNIQUE(session_id, id)
);

CREATE INDEX IF NOT EXISTS idx_messages_session
    ON archived_messages(session_id, timestamp);

CREATE TABLE IF NOT EXISTS archived_tool_calls (
    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
    id              TEXT    NOT NULL,
    session_id      TEXT    NOT NULL,
    conversation_id TEXT    NOT NULL,
    tool_name       TEXT    NOT NULL,
    arguments       TEXT    NOT NULL DEFAULT '{}',
    result          TEXT    NOT NULL DEFAULT '',
    started_at      TEXT    NOT NULL,
    completed_at    TEXT,
    UNIQUE(session_id, id)
);

CREATE INDEX IF NOT EXISTS idx_tool_calls_session
    ON archived_tool_calls(session_id, started_at);

CREATE TABLE IF NOT EXISTS imports (
    foreign_id      TEXT NOT NULL,
    source_type     TEXT NOT NULL,
    local_id        TEXT NOT NULL,
    imported_at     TEXT NOT NULL,
    PRIMARY KEY (foreign_id, source_type)
);

CREATE TABLE IF NOT EXISTS operational_state (
    namespace       TEXT NOT NULL,
    key             TEXT NOT NULL,
    value           TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    PRIMARY KEY (namespace, key)
);
"""

FTS_SCHEMA_SQL = """
CREATE VIRTUAL TABLE IF NOT EXISTS archive_fts USING fts5(
    content,
    content='archived_messages',
    content_rowid='seq',
    tokenize='porter unicode61'
);

CREATE TRIGGER IF NOT EXISTS trg_archive_fts_insert AFTER INSERT ON archived_messages BEGIN
    INSERT INTO archive_fts(rowid, content) VALUES (new.seq, new.content);
END;

CREATE TRIGGER IF NOT EXISTS trg_archive_fts_delete AFTER DELETE ON archived_messages BEGIN
    INSERT INTO archive_fts(archive_fts, rowid, content) VALUES ('delete', old.seq, old.content);
END;
"""


def to_db_time(dt: datetime) -> str:
    """Fixed-width UTC text so that lexical order equals chronological order."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(_TS_FORMAT)


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


class Database:
    """Async SQLite database manager.

    A single connection is shared by every store. All access goes through an
    asyncio lock so a multi-statement transaction is never interleaved with
    another coroutine's reads or writes.
    """

    def __init__(self, db_path: str, fts_enabled: bool = True):
        self._db_path = db_path
        self._fts_enabled = fts_enabled
        self._fts_available = False
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open connection and run migrations."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path, isolation_level=None)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA busy_timeout=5000")
        await self._conn.executescript(SCHEMA_SQL)
        if self._fts_enabled:
            try:
                await self._conn.executescript(FTS_SCHEMA_SQL)
                self._fts_available = True
            except sqlite3.OperationalError as e:
                logger.warning("fts5_unavailable", error=str(e))
        logger.info("database_initialized", path=self._db_path, fts=self._fts_available)

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

    @property
    def fts_available(self) -> bool:
        return self._fts_available

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run the enclosed statements atomically; roll back on any exception."""
        async with self._lock:
            conn = self.conn
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            await conn.execute("COMMIT")

    async def execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        """Run a single write statement and return the affected row count."""
        async with self._lock:
            cursor = await self.conn.execute(sql, tuple(params))
            return cursor.rowcount

    async def fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[aiosqlite.Row]:
        async with self._lock:
            cursor = await self.conn.execute(sql, tuple(params))
            return list(await cursor.fetchall())

    async def fetchone(self, sql: str, params: Iterable[Any] = ()) -> aiosqlite.Row | None:
        async with self._lock:
            cursor = await self.conn.execute(sql, tuple(params))
            return await cursor.fetchone()

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("database_closed")

"""Session archive: sessions, messages, tool calls, imports and full-text search."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

import aiosqlite

from memcore.core.types import EndReason
from memcore.log import get_logger
from memcore.storage.database import Database, from_db_time, to_db_time
from memcore.storage.errors import AmbiguousSessionIDError, SessionNotFoundError
from memcore.storage.models import (
    VALID_ROLES,
    ArchivedMessage,
    ArchivedToolCall,
    ArchiveStats,
    SearchOptions,
    SearchResult,
    Session,
    SessionMetadata,
    rfc3339,
    short_id,
    utcnow,
)

logger = get_logger(__name__)

_SESSION_COLUMNS = (
    "id, conversation_id, started_at, ended_at, end_reason, message_count, "
    "title, summary, tags_json, metadata_json"
)
_MESSAGE_COLUMNS = (
    "m.id, m.session_id, m.conversation_id, m.role, m.content, m.timestamp, "
    "m.token_count, m.tool_call_id, m.archive_reason"
)


class ArchiveStore:
    """Durable store for every session, message and tool call."""

    def __init__(
        self,
        db: Database,
        silence_minutes: float = 10,
        max_context_messages: int = 50,
        max_context_minutes: float = 60,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._db = db
        self._silence = timedelta(minutes=silence_minutes)
        self._max_context_messages = max_context_messages
        self._max_context_span = timedelta(minutes=max_context_minutes)
        self._clock = clock

    # ── sessions ─────────────────────────────────────────────────

    async def start_session(self, conversation_id: str) -> Session:
        return await self.start_session_at(conversation_id, self._clock())

    async def start_session_at(self, conversation_id: str, started_at: datetime) -> Session:
        session = Session(id=str(uuid.uuid4()), conversation_id=conversation_id, started_at=started_at)
        await self._db.execute(
            "INSERT INTO sessions (id, conversation_id, started_at) VALUES (?, ?, ?)",
            (session.id, conversation_id, to_db_time(started_at)),
        )
        logger.info("session_started", session=session.short_id, conversation=conversation_id)
        return session

    async def end_session(self, session_id: str, reason: str = EndReason.NORMAL) -> bool:
        return await self.end_session_at(session_id, reason, self._clock())

    async def end_session_at(self, session_id: str, reason: str, ended_at: datetime) -> bool:
        """Close a session once. Returns False if it was already closed (or unknown)."""
        # MAX() on fixed-width timestamps clamps ended_at to started_at
        updated = await self._db.execute(
            """UPDATE sessions SET ended_at = MAX(?, started_at), end_reason = ?
               WHERE id = ? AND ended_at IS NULL""",
            (to_db_time(ended_at), str(reason), session_id),
        )
        if updated:
            logger.info("session_ended", session=short_id(session_id), reason=str(reason))
        return updated > 0

    async def get_session(self, session_id: str) -> Session | None:
        row = await self._db.fetchone(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?", (session_id,)
        )
        return self._row_to_session(row) if row else None

    async def resolve_session_id(self, id_or_prefix: str) -> Session:
        """Look up a session by full id or unique short-id prefix."""
        session = await self.get_session(id_or_prefix)
        if session is not None:
            return session
        escaped = id_or_prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        rows = await self._db.fetchall(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id LIKE ? ESCAPE '\\' LIMIT 2",
            (escaped + "%",),
        )
        if not rows:
            raise SessionNotFoundError(id_or_prefix)
        if len(rows) > 1:
            raise AmbiguousSessionIDError(id_or_prefix, len(rows))
        return self._row_to_session(rows[0])

    async def active_session(self, conversation_id: str) -> Session | None:
        """Newest open session for a conversation, if any."""
        row = await self._db.fetchone(
            f"""SELECT {_SESSION_COLUMNS} FROM sessions
                WHERE conversation_id = ? AND ended_at IS NULL
                ORDER BY started_at DESC LIMIT 1""",
            (conversation_id,),
        )
        return self._row_to_session(row) if row else None

    async def list_sessions(self, conversation_id: str = "", limit: int = 20) -> list[Session]:
        """Sessions newest-first. Empty conversation_id lists across all conversations."""
        if conversation_id:
            rows = await self._db.fetchall(
                f"""SELECT {_SESSION_COLUMNS} FROM sessions WHERE conversation_id = ?
                    ORDER BY started_at DESC, rowid DESC LIMIT ?""",
                (conversation_id, limit),
            )
        else:
            rows = await self._db.fetchall(
                f"""SELECT {_SESSION_COLUMNS} FROM sessions
                    ORDER BY started_at DESC, rowid DESC LIMIT ?""",
                (limit,),
            )
        return [self._row_to_session(row) for row in rows]

    async def set_session_metadata(
        self, session_id: str, metadata: SessionMetadata, title: str, tags: list[str]
    ) -> None:
        await self._db.execute(
            "UPDATE sessions SET metadata_json = ?, title = ?, tags_json = ? WHERE id = ?",
            (json.dumps(metadata.to_dict()), title, json.dumps(list(tags)), session_id),
        )

    async def set_session_summary(self, session_id: str, summary: str) -> None:
        await self._db.execute("UPDATE sessions SET summary = ? WHERE id = ?", (summary, session_id))

    async def set_session_message_count(self, session_id: str, count: int) -> None:
        await self._db.execute(
            "UPDATE sessions SET message_count = ? WHERE id = ?", (count, session_id)
        )

    async def increment_message_count(self, session_id: str, delta: int = 1) -> None:
        await self._db.execute(
            "UPDATE sessions SET message_count = message_count + ? WHERE id = ?",
            (delta, session_id),
        )

    async def unsummarized_sessions(self, limit: int) -> list[Session]:
        """Closed sessions without metadata that hold at least one non-system message."""
        rows = await self._db.fetchall(
            f"""SELECT {_SESSION_COLUMNS} FROM sessions s
                WHERE s.ended_at IS NOT NULL
                  AND s.metadata_json IS NULL
                  AND EXISTS (
                      SELECT 1 FROM archived_messages m
                      WHERE m.session_id = s.id AND m.role != 'system'
                  )
                ORDER BY s.started_at DESC LIMIT ?""",
            (limit,),
        )
        return [self._row_to_session(row) for row in rows]

    async def close_orphaned_sessions(self, cutoff: datetime) -> int:
        """Close every open session started before cutoff with reason crash_recovery."""
        cutoff_text = to_db_time(cutoff)
        count = await self._db.execute(
            """UPDATE sessions SET ended_at = MAX(?, started_at), end_reason = ?
               WHERE ended_at IS NULL AND started_at < ?""",
            (cutoff_text, EndReason.CRASH_RECOVERY.value, cutoff_text),
        )
        if count:
            logger.info("orphaned_sessions_closed", count=count)
        return count

    async def active_sessions_with_last_activity(self) -> list[tuple[Session, datetime]]:
        """Open sessions paired with their latest message time (or start time)."""
        rows = await self._db.fetchall(
            f"""SELECT {_SESSION_COLUMNS},
                       (SELECT MAX(timestamp) FROM archived_messages m WHERE m.session_id = s.id)
                           AS last_activity
                FROM sessions s WHERE s.ended_at IS NULL
                ORDER BY s.started_at"""
        )
        result = []
        for row in rows:
            session = self._row_to_session(row)
            last = from_db_time(row["last_activity"]) or session.started_at
            result.append((session, last))
        return result

    # ── messages & tool calls ────────────────────────────────────

    async def archive_messages(self, messages: list[ArchivedMessage]) -> None:
        """Append a batch of messages atomically. Re-archiving an id is a no-op."""
        if not messages:
            return
        for msg in messages:
            if msg.role not in VALID_ROLES:
                raise ValueError(f"invalid message role: {msg.role!r}")
            if not msg.id:
                msg.id = str(uuid.uuid4())
        async with self._db.transaction() as conn:
            await conn.executemany(
                """INSERT OR IGNORE INTO archived_messages
                   (id, session_id, conversation_id, role, content, timestamp,
                    token_count, tool_call_id, archive_reason)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (
                        m.id,
                        m.session_id,
                        m.conversation_id,
                        str(m.role),
                        m.content,
                        to_db_time(m.timestamp),
                        m.token_count,
                        m.tool_call_id,
                        m.archive_reason,
                    )
                    for m in messages
                ],
            )

    async def archive_tool_calls(self, tool_calls: list[ArchivedToolCall]) -> None:
        """Append a batch of tool-call records atomically."""
        if not tool_calls:
            return
        for tc in tool_calls:
            if tc.completed_at is not None and tc.completed_at < tc.started_at:
                raise ValueError(f"tool call {tc.id!r} completed before it started")
        async with self._db.transaction() as conn:
            await conn.executemany(
                """INSERT OR IGNORE INTO archived_tool_calls
                   (id, session_id, conversation_id, tool_name, arguments, result,
                    started_at, completed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (
                        tc.id,
                        tc.session_id,
                        tc.conversation_id,
                        tc.tool_name,
                        tc.arguments,
                        tc.result,
                        to_db_time(tc.started_at),
                        to_db_time(tc.completed_at) if tc.completed_at else None,
                    )
                    for tc in tool_calls
                ],
            )

    async def get_session_transcript(self, session_id: str) -> list[ArchivedMessage]:
        """All messages of a session in timestamp order (insertion order breaks ties)."""
        rows = await self._db.fetchall(
            f"""SELECT {_MESSAGE_COLUMNS} FROM archived_messages m
                WHERE m.session_id = ? ORDER BY m.timestamp ASC, m.seq ASC""",
            (session_id,),
        )
        return [self._row_to_message(row) for row in rows]

    async def get_session_tool_calls(self, session_id: str) -> list[ArchivedToolCall]:
        rows = await self._db.fetchall(
            """SELECT id, session_id, conversation_id, tool_name, arguments, result,
                      started_at, completed_at
               FROM archived_tool_calls WHERE session_id = ?
               ORDER BY started_at ASC, seq ASC""",
            (session_id,),
        )
        return [
            ArchivedToolCall(
                id=row["id"],
                session_id=row["session_id"],
                conversation_id=row["conversation_id"],
                tool_name=row["tool_name"],
                arguments=row["arguments"],
                result=row["result"],
                started_at=from_db_time(row["started_at"]),
                completed_at=from_db_time(row["completed_at"]),
            )
            for row in rows
        ]

    # ── search ───────────────────────────────────────────────────

    async def search(self, opts: SearchOptions) -> list[SearchResult]:
        """Full-text search; each hit carries context bounded by silence gaps."""
        terms = opts.query.split()
        if not terms:
            return []

        filters = ""
        params: list = []
        if opts.conversation_id:
            filters += " AND m.conversation_id = ?"
            params.append(opts.conversation_id)
        if opts.session_id:
            filters += " AND m.session_id = ?"
            params.append(opts.session_id)

        if self._db.fts_available:
            match = " ".join('"' + t.replace('"', '""') + '"' for t in terms)
            rows = await self._db.fetchall(
                f"""SELECT {_MESSAGE_COLUMNS} FROM archived_messages m
                    JOIN archive_fts f ON m.seq = f.rowid
                    WHERE archive_fts MATCH ?{filters}
                    ORDER BY rank LIMIT ?""",
                (match, *params, opts.limit),
            )
        else:
            like = " AND ".join("m.content LIKE ? ESCAPE '\\'" for _ in terms)
            like_params = [
                "%" + t.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
                for t in terms
            ]
            rows = await self._db.fetchall(
                f"""SELECT {_MESSAGE_COLUMNS} FROM archived_messages m
                    WHERE {like}{filters}
                    ORDER BY m.timestamp DESC LIMIT ?""",
                (*like_params, *params, opts.limit),
            )

        hits = [self._row_to_message(row) for row in rows]
        sessions: dict[str, Session | None] = {}
        transcripts: dict[str, list[ArchivedMessage]] = {}
        results = []
        for hit in hits:
            if hit.session_id not in sessions:
                sessions[hit.session_id] = await self.get_session(hit.session_id)
            session = sessions[hit.session_id]
            result = SearchResult(
                message=hit,
                session_title=session.title if session else "",
                session_started_at=session.started_at if session else None,
            )
            if not opts.no_context:
                if hit.session_id not in transcripts:
                    transcripts[hit.session_id] = await self.get_session_transcript(hit.session_id)
                silence = (
                    timedelta(minutes=opts.silence_minutes)
                    if opts.silence_minutes and opts.silence_minutes > 0
                    else self._silence
                )
                result.context = self._context_around(transcripts[hit.session_id], hit, silence)
            results.append(result)
        return results

    def _context_around(
        self, transcript: list[ArchivedMessage], hit: ArchivedMessage, silence: timedelta
    ) -> list[ArchivedMessage]:
        """Expand outward from the hit until a silence gap or a cap is reached."""
        index = next((i for i, m in enumerate(transcript) if m.id == hit.id), None)
        if index is None:
            return [hit]

        start = index
        while start > 0 and index - start < self._max_context_messages:
            prev, cur = transcript[start - 1], transcript[start]
            if cur.timestamp - prev.timestamp > silence:
                break
            if hit.timestamp - prev.timestamp > self._max_context_span:
                break
            start -= 1

        end = index
        while end < len(transcript) - 1 and end - index < self._max_context_messages:
            cur, nxt = transcript[end], transcript[end + 1]
            if nxt.timestamp - cur.timestamp > silence:
                break
            if nxt.timestamp - hit.timestamp > self._max_context_span:
                break
            end += 1

        return transcript[start : end + 1]

    # ── imports ──────────────────────────────────────────────────

    async def is_imported(self, foreign_id: str, source_type: str) -> bool:
        row = await self._db.fetchone(
            "SELECT 1 FROM imports WHERE foreign_id = ? AND source_type = ?",
            (foreign_id, source_type),
        )
        return row is not None

    async def record_import(self, foreign_id: str, source_type: str, local_id: str) -> None:
        await self._db.execute(
            """INSERT OR REPLACE INTO imports (foreign_id, source_type, local_id, imported_at)
               VALUES (?, ?, ?, ?)""",
            (foreign_id, source_type, local_id, to_db_time(self._clock())),
        )

    async def purge_imported(self, source_type: str) -> int:
        """Delete every session (and its rows) imported from source_type."""
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "SELECT local_id FROM imports WHERE source_type = ?", (source_type,)
            )
            local_ids = [row["local_id"] for row in await cursor.fetchall()]
            for local_id in local_ids:
                await conn.execute("DELETE FROM archived_messages WHERE session_id = ?", (local_id,))
                await conn.execute(
                    "DELETE FROM archived_tool_calls WHERE session_id = ?", (local_id,)
                )
                await conn.execute("DELETE FROM sessions WHERE id = ?", (local_id,))
            await conn.execute("DELETE FROM imports WHERE source_type = ?", (source_type,))
        logger.info("imports_purged", source_type=source_type, count=len(local_ids))
        return len(local_ids)

    # ── export & stats ───────────────────────────────────────────

    async def export_session_markdown(self, session_id: str) -> str:
        session = await self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        messages = await self.get_session_transcript(session_id)

        ended = rfc3339(session.ended_at) if session.ended_at else "active"
        parts = [
            f"# Session {session.short_id}\n\n",
            f"Started: {rfc3339(session.started_at)}\nEnded: {ended}\n\n",
        ]
        for msg in messages:
            parts.append(f"## {msg.role} {rfc3339(msg.timestamp)}\n{msg.content}\n\n")
        return "".join(parts)

    async def stats(self) -> ArchiveStats:
        stats = ArchiveStats()
        row = await self._db.fetchone(
            """SELECT COUNT(*) AS total,
                      SUM(CASE WHEN ended_at IS NULL THEN 1 ELSE 0 END) AS open,
                      SUM(CASE WHEN metadata_json IS NOT NULL THEN 1 ELSE 0 END) AS summarized
               FROM sessions"""
        )
        if row:
            stats.total_sessions = row["total"] or 0
            stats.open_sessions = row["open"] or 0
            stats.summarized_sessions = row["summarized"] or 0

        for role_row in await self._db.fetchall(
            "SELECT role, COUNT(*) AS n FROM archived_messages GROUP BY role"
        ):
            stats.messages_by_role[role_row["role"]] = role_row["n"]
        stats.total_messages = sum(stats.messages_by_role.values())

        row = await self._db.fetchone(
            "SELECT MIN(timestamp) AS oldest, MAX(timestamp) AS newest FROM archived_messages"
        )
        if row:
            stats.oldest_message = from_db_time(row["oldest"])
            stats.newest_message = from_db_time(row["newest"])

        row = await self._db.fetchone("SELECT COUNT(*) AS n FROM archived_tool_calls")
        stats.total_tool_calls = row["n"] if row else 0
        return stats

    # ── row mapping ──────────────────────────────────────────────

    @staticmethod
    def _row_to_session(row: aiosqlite.Row) -> Session:
        metadata_json = row["metadata_json"]
        return Session(
            id=row["id"],
            conversation_id=row["conversation_id"],
            started_at=from_db_time(row["started_at"]),
            ended_at=from_db_time(row["ended_at"]),
            end_reason=row["end_reason"],
            message_count=row["message_count"],
            title=row["title"],
            summary=row["summary"],
            tags=json.loads(row["tags_json"] or "[]"),
            metadata=SessionMetadata.from_dict(json.loads(metadata_json)) if metadata_json else None,
        )

    @staticmethod
    def _row_to_message(row: aiosqlite.Row) -> ArchivedMessage:
        return ArchivedMessage(
            id=row["id"],
            session_id=row["session_id"],
            conversation_id=row["conversation_id"],
            role=row["role"],
            content=row["content"],
            timestamp=from_db_time(row["timestamp"]),
            token_count=row["token_count"],
            tool_call_id=row["tool_call_id"],
            archive_reason=row["archive_reason"],
        )

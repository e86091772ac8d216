"""Namespaced key/value store for small pieces of operational state."""

from __future__ import annotations

from memcore.storage.database import Database, to_db_time
from memcore.storage.models import utcnow


class OpStateStore:
    def __init__(self, db: Database):
        self._db = db

    async def get(self, namespace: str, key: str) -> str | None:
        row = await self._db.fetchone(
            "SELECT value FROM operational_state WHERE namespace = ? AND key = ?",
            (namespace, key),
        )
        return row["value"] if row else None

    async def set(self, namespace: str, key: str, value: str) -> None:
        await self._db.execute(
            """INSERT INTO operational_state (namespace, key, value, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(namespace, key) DO UPDATE
               SET value = excluded.value, updated_at = excluded.updated_at""",
            (namespace, key, value, to_db_time(utcnow())),
        )

    async def delete(self, namespace: str, key: str) -> None:
        await self._db.execute(
            "DELETE FROM operational_state WHERE namespace = ? AND key = ?", (namespace, key)
        )

    async def delete_namespace(self, namespace: str) -> int:
        return await self._db.execute(
            "DELETE FROM operational_state WHERE namespace = ?", (namespace,)
        )

    async def list(self, namespace: str) -> dict[str, str]:
        rows = await self._db.fetchall(
            "SELECT key, value FROM operational_state WHERE namespace = ? ORDER BY key",
            (namespace,),
        )
        return {row["key"]: row["value"] for row in rows}

"""SQLite implementation of the file-access log and conflict dismissals."""
from __future__ import annotations

import aiosqlite


class SqliteFileAccessRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def record(
        self,
        file_path: str,
        project_name: str,
        session_id: str,
        source_app: str,
        access_type: str,
        now: int,
    ) -> None:
        await self.db.execute(
            """INSERT INTO file_access_log (
                file_path, project_name, session_id, source_app, access_type, timestamp
            ) VALUES (?, ?, ?, ?, ?, ?)""",
            (file_path, project_name, session_id, source_app, access_type, now),
        )
        await self.db.commit()

    async def list_since(self, since: int) -> list[dict]:
        async with self.db.execute(
            """SELECT file_path, project_name, session_id, source_app, access_type, timestamp
            FROM file_access_log WHERE timestamp >= ?
            ORDER BY file_path, timestamp""",
            (since,),
        ) as cur:
            rows = await cur.fetchall()
        return [dict(r) for r in rows]

    async def dismiss(self, conflict_id: str, now: int) -> None:
        await self.db.execute(
            "INSERT OR REPLACE INTO dismissed_conflicts (id, dismissed_at) VALUES (?, ?)",
            (conflict_id, now),
        )
        await self.db.commit()

    async def dismissed_ids(self, since: int) -> set[str]:
        """Ids dismissed at or after ``since`` (older dismissals have expired)."""
        async with self.db.execute(
            "SELECT id FROM dismissed_conflicts WHERE dismissed_at >= ?", (since,)
        ) as cur:
            rows = await cur.fetchall()
        return {r[0] for r in rows}

    async def delete_before(self, cutoff: int) -> tuple[int, int]:
        """Drop access rows and dismissals older than ``cutoff``."""
        accesses = await self.db.execute("DELETE FROM file_access_log WHERE timestamp < ?", (cutoff,))
        dismissals = await self.db.execute("DELETE FROM dismissed_conflicts WHERE dismissed_at < ?", (cutoff,))
        await self.db.commit()
        return accesses.rowcount, dismissals.rowcount

    async def count(self) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM file_access_log") as cur:
            row = await cur.fetchone()
        return row[0] if row else 0

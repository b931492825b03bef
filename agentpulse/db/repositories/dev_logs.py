"""SQLite implementation of DevLogRepository."""
from __future__ import annotations

import json
from typing import Any

import aiosqlite


def _decode(raw: Any, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


class SqliteDevLogRepository:
    """Dev logs are written once per (session_id, source_app)."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def insert(self, log: dict) -> bool:
        """Insert a dev log; returns False if one already exists for the session."""
        cur = await self.db.execute(
            """INSERT INTO dev_logs (
                session_id, source_app, project_name, branch, summary,
                files_changed, commits, started_at, ended_at,
                duration_minutes, event_count, tool_breakdown
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(session_id, source_app) DO NOTHING""",
            (
                log["session_id"],
                log["source_app"],
                log["project_name"],
                log.get("branch", ""),
                log.get("summary", ""),
                json.dumps(log.get("files_changed", [])),
                json.dumps(log.get("commits", [])),
                log["started_at"],
                log["ended_at"],
                log.get("duration_minutes", 0),
                log.get("event_count", 0),
                json.dumps(log.get("tool_breakdown", {})),
            ),
        )
        await self.db.commit()
        return cur.rowcount > 0

    async def get_for_session(self, session_id: str, source_app: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM dev_logs WHERE session_id = ? AND source_app = ?",
            (session_id, source_app),
        ) as cur:
            row = await cur.fetchone()
        return self._row_to_dict(row) if row else None

    async def list_recent(self, limit: int = 50, project_name: str | None = None) -> list[dict]:
        if project_name:
            query = "SELECT * FROM dev_logs WHERE project_name = ? ORDER BY ended_at DESC LIMIT ?"
            params: tuple = (project_name, limit)
        else:
            query = "SELECT * FROM dev_logs ORDER BY ended_at DESC LIMIT ?"
            params = (limit,)
        async with self.db.execute(query, params) as cur:
            rows = await cur.fetchall()
        return [self._row_to_dict(r) for r in rows]

    async def list_between(self, start: int, end: int) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM dev_logs WHERE ended_at >= ? AND ended_at < ? ORDER BY ended_at ASC",
            (start, end),
        ) as cur:
            rows = await cur.fetchall()
        return [self._row_to_dict(r) for r in rows]

    async def search(self, term: str, limit: int) -> list[dict]:
        like = f"%{term}%"
        async with self.db.execute(
            """SELECT * FROM dev_logs
            WHERE summary LIKE ? OR branch LIKE ? OR files_changed LIKE ?
               OR commits LIKE ? OR project_name LIKE ?
            ORDER BY ended_at DESC LIMIT ?""",
            (like, like, like, like, like, limit),
        ) as cur:
            rows = await cur.fetchall()
        return [self._row_to_dict(r) for r in rows]

    async def list_before(self, cutoff: int) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM dev_logs WHERE ended_at < ? ORDER BY ended_at ASC", (cutoff,)
        ) as cur:
            rows = await cur.fetchall()
        return [self._row_to_dict(r) for r in rows]

    async def delete_before(self, cutoff: int) -> int:
        cur = await self.db.execute("DELETE FROM dev_logs WHERE ended_at < ?", (cutoff,))
        await self.db.commit()
        return cur.rowcount

    async def count(self) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM dev_logs") as cur:
            row = await cur.fetchone()
        return row[0] if row else 0

    def _row_to_dict(self, row: aiosqlite.Row) -> dict:
        d = dict(row)
        d["files_changed"] = _decode(d.get("files_changed"), [])
        d["commits"] = _decode(d.get("commits"), [])
        d["tool_breakdown"] = _decode(d.get("tool_breakdown"), {})
        return d

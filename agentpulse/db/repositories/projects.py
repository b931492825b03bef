"""SQLite implementation of ProjectRepository."""
from __future__ import annotations

import json
from typing import Any

import aiosqlite

_JSON_COLUMNS = {
    "dev_servers": [],
    "deployment_status": {},
    "github_status": {},
    "health": {},
}


def _decode(raw: Any, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


class SqliteProjectRepository:
    """One row per source application."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert(
        self,
        name: str,
        now: int,
        path: str = "",
        branch: str = "",
    ) -> None:
        await self.db.execute(
            """INSERT INTO projects (name, path, current_branch, last_activity, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                path = CASE WHEN excluded.path != '' THEN excluded.path ELSE projects.path END,
                current_branch = CASE WHEN ? != '' THEN excluded.current_branch ELSE projects.current_branch END,
                last_activity = excluded.last_activity,
                updated_at = excluded.updated_at
            """,
            (name, path, branch or "main", now, now, now, branch),
        )
        await self.db.commit()

    async def get(self, name: str) -> dict | None:
        async with self.db.execute("SELECT * FROM projects WHERE name = ?", (name,)) as cur:
            row = await cur.fetchone()
        return self._row_to_dict(row) if row else None

    async def list_all(self) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM projects ORDER BY last_activity DESC, name ASC"
        ) as cur:
            rows = await cur.fetchall()
        return [self._row_to_dict(r) for r in rows]

    async def list_with_paths(self) -> list[dict]:
        async with self.db.execute(
            "SELECT name, path, current_branch FROM projects WHERE path IS NOT NULL AND path != ''"
        ) as cur:
            rows = await cur.fetchall()
        return [dict(r) for r in rows]

    async def set_active_sessions(self, name: str, count: int) -> None:
        await self.db.execute(
            "UPDATE projects SET active_sessions = ? WHERE name = ?", (count, name)
        )
        await self.db.commit()

    async def set_branch(self, name: str, branch: str, now: int) -> None:
        await self.db.execute(
            "UPDATE projects SET current_branch = ?, updated_at = ? WHERE name = ?",
            (branch, now, name),
        )
        await self.db.commit()

    async def set_test_status(self, name: str, status: str, summary: str, now: int) -> None:
        await self.db.execute(
            "UPDATE projects SET test_status = ?, test_summary = ?, updated_at = ? WHERE name = ?",
            (status, summary, now, name),
        )
        await self.db.commit()

    async def set_dev_servers(self, name: str, servers: list[dict]) -> None:
        await self.db.execute(
            "UPDATE projects SET dev_servers = ? WHERE name = ?",
            (json.dumps(servers), name),
        )
        await self.db.commit()

    async def set_health(self, name: str, health: dict) -> None:
        await self.db.execute(
            "UPDATE projects SET health = ? WHERE name = ?",
            (json.dumps(health), name),
        )
        await self.db.commit()

    async def set_external_status(self, name: str, column: str, status: dict) -> None:
        """Store an opaque deployment/CI status blob owned by an external poller."""
        if column not in ("deployment_status", "github_status"):
            raise ValueError(f"Unknown status column: {column}")
        await self.db.execute(
            f"UPDATE projects SET {column} = ? WHERE name = ?",
            (json.dumps(status), name),
        )
        await self.db.commit()

    async def count(self) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM projects") as cur:
            row = await cur.fetchone()
        return row[0] if row else 0

    def _row_to_dict(self, row: aiosqlite.Row) -> dict:
        d = dict(row)
        for column, default in _JSON_COLUMNS.items():
            d[column] = _decode(d.get(column), default)
        return d

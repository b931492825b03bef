"""SQLite implementation of the append-only event log."""
from __future__ import annotations

import json

import aiosqlite

from agentpulse.hook_events import HookEvent, event_from_row


class SqliteEventRepository:
    """Event rows are inserted once and never updated."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def insert(self, event: HookEvent) -> int:
        cur = await self.db.execute(
            """INSERT INTO events (
                source_app, session_id, hook_event_type, payload,
                chat, summary, timestamp, model_name
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                event.source_app,
                event.session_id,
                event.hook_event_type,
                json.dumps(event.payload, default=str),
                json.dumps(event.chat, default=str) if event.chat is not None else None,
                event.summary,
                event.timestamp,
                event.model_name or "",
            ),
        )
        await self.db.commit()
        return cur.lastrowid

    async def list_recent(self, limit: int = 300) -> list[HookEvent]:
        """Most recent events, returned oldest first."""
        async with self.db.execute(
            "SELECT * FROM events ORDER BY timestamp DESC, id DESC LIMIT ?", (limit,)
        ) as cur:
            rows = await cur.fetchall()
        return [event_from_row(r) for r in reversed(rows)]

    async def list_for_session(
        self,
        session_id: str,
        source_app: str,
        start: int | None = None,
        end: int | None = None,
    ) -> list[HookEvent]:
        query = "SELECT * FROM events WHERE session_id = ? AND source_app = ?"
        params: list = [session_id, source_app]
        if start is not None:
            query += " AND timestamp >= ?"
            params.append(start)
        if end is not None:
            query += " AND timestamp <= ?"
            params.append(end)
        query += " ORDER BY timestamp ASC, id ASC"
        async with self.db.execute(query, params) as cur:
            rows = await cur.fetchall()
        return [event_from_row(r) for r in rows]

    async def list_by_session_id(self, session_id: str, source_app: str | None = None) -> list[HookEvent]:
        if source_app:
            return await self.list_for_session(session_id, source_app)
        async with self.db.execute(
            "SELECT * FROM events WHERE session_id = ? ORDER BY timestamp ASC, id ASC", (session_id,)
        ) as cur:
            rows = await cur.fetchall()
        return [event_from_row(r) for r in rows]

    async def filter_options(self) -> dict[str, list[str]]:
        options: dict[str, list[str]] = {}
        for column, key in (
            ("source_app", "source_apps"),
            ("session_id", "session_ids"),
            ("hook_event_type", "hook_event_types"),
        ):
            async with self.db.execute(
                f"SELECT DISTINCT {column} FROM events ORDER BY {column} LIMIT 300"
            ) as cur:
                rows = await cur.fetchall()
            options[key] = [r[0] for r in rows]
        return options

    async def tool_outcomes(self, source_app: str, since: int) -> tuple[int, int]:
        """Return ``(successes, failures)`` of tool events for an app since ``since``."""
        async with self.db.execute(
            """SELECT
                SUM(CASE WHEN hook_event_type = 'PostToolUse' THEN 1 ELSE 0 END),
                SUM(CASE WHEN hook_event_type = 'PostToolUseFailure' THEN 1 ELSE 0 END)
            FROM events
            WHERE source_app = ? AND timestamp >= ?
              AND hook_event_type IN ('PostToolUse', 'PostToolUseFailure')""",
            (source_app, since),
        ) as cur:
            row = await cur.fetchone()
        if not row:
            return 0, 0
        return int(row[0] or 0), int(row[1] or 0)

    async def count_by_session(
        self,
        event_type: str,
        since: int,
        tool_names: tuple[str, ...] = (),
    ) -> list[dict]:
        """Per-session event counts of one type within a window."""
        query = (
            "SELECT session_id, source_app, COUNT(*) AS count FROM events "
            "WHERE hook_event_type = ? AND timestamp >= ?"
        )
        params: list = [event_type, since]
        if tool_names:
            placeholders = ",".join("?" for _ in tool_names)
            query += f" AND json_extract(payload, '$.tool_name') IN ({placeholders})"
            params.extend(tool_names)
        query += " GROUP BY session_id, source_app"
        async with self.db.execute(query, params) as cur:
            rows = await cur.fetchall()
        return [dict(r) for r in rows]

    async def search(self, term: str, limit: int) -> list[HookEvent]:
        like = f"%{term}%"
        async with self.db.execute(
            """SELECT * FROM events
            WHERE payload LIKE ? OR summary LIKE ? OR source_app LIKE ? OR hook_event_type LIKE ?
            ORDER BY timestamp DESC LIMIT ?""",
            (like, like, like, like, limit),
        ) as cur:
            rows = await cur.fetchall()
        return [event_from_row(r) for r in rows]

    async def hourly_counts(self, since: int, source_app: str | None = None) -> list[dict]:
        query = (
            "SELECT strftime('%Y-%m-%d', timestamp / 1000, 'unixepoch') AS day, "
            "CAST(strftime('%H', timestamp / 1000, 'unixepoch') AS INTEGER) AS hour, "
            "COUNT(*) AS count FROM events WHERE timestamp >= ?"
        )
        params: list = [since]
        if source_app:
            query += " AND source_app = ?"
            params.append(source_app)
        query += " GROUP BY day, hour ORDER BY day, hour"
        async with self.db.execute(query, params) as cur:
            rows = await cur.fetchall()
        return [dict(r) for r in rows]

    async def list_before(self, cutoff: int) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM events WHERE timestamp < ? ORDER BY timestamp ASC", (cutoff,)
        ) as cur:
            rows = await cur.fetchall()
        return [dict(r) for r in rows]

    async def delete_before(self, cutoff: int) -> int:
        cur = await self.db.execute("DELETE FROM events WHERE timestamp < ?", (cutoff,))
        await self.db.commit()
        return cur.rowcount

    async def time_bounds(self) -> tuple[int | None, int | None]:
        async with self.db.execute("SELECT MIN(timestamp), MAX(timestamp) FROM events") as cur:
            row = await cur.fetchone()
        if not row:
            return None, None
        return row[0], row[1]

"""SQLite implementation of SessionRepository.

Every status write carries a ``status != 'stopped'`` guard except
:meth:`start`, so a straggling event can never resurrect a finished session.
"""
from __future__ import annotations

import json
from typing import Any

import aiosqlite

MAX_COMPACTION_HISTORY = 20


def _decode(raw: Any, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


class SqliteSessionRepository:
    """SQLite-backed session state keyed by (session_id, source_app)."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def start(
        self,
        session_id: str,
        source_app: str,
        project_name: str,
        now: int,
        branch: str = "",
        task_context: dict | None = None,
        model_name: str = "",
        cwd: str = "",
    ) -> None:
        await self.db.execute(
            """INSERT INTO sessions (
                session_id, source_app, project_name, status, current_branch,
                started_at, last_event_at, event_count, model_name, cwd, task_context
            ) VALUES (?, ?, ?, 'active', ?, ?, ?, 1, ?, ?, ?)
            ON CONFLICT(session_id, source_app) DO UPDATE SET
                status = 'active',
                ended_at = NULL,
                last_event_at = excluded.last_event_at,
                event_count = sessions.event_count + 1,
                current_branch = CASE WHEN excluded.current_branch != '' THEN excluded.current_branch ELSE sessions.current_branch END,
                task_context = CASE WHEN excluded.current_branch != '' THEN excluded.task_context ELSE sessions.task_context END,
                model_name = CASE WHEN excluded.model_name != '' THEN excluded.model_name ELSE sessions.model_name END,
                cwd = CASE WHEN excluded.cwd != '' THEN excluded.cwd ELSE sessions.cwd END
            """,
            (
                session_id, source_app, project_name, branch,
                now, now, model_name, cwd, json.dumps(task_context or {}),
            ),
        )
        await self.db.commit()

    async def ensure(
        self,
        session_id: str,
        source_app: str,
        project_name: str,
        now: int,
        branch: str = "",
        task_context: dict | None = None,
        model_name: str = "",
        cwd: str = "",
    ) -> bool:
        """Create the session lazily if it does not exist yet. Returns True if created."""
        cur = await self.db.execute(
            """INSERT OR IGNORE INTO sessions (
                session_id, source_app, project_name, status, current_branch,
                started_at, last_event_at, event_count, model_name, cwd, task_context
            ) VALUES (?, ?, ?, 'active', ?, ?, ?, 0, ?, ?, ?)""",
            (
                session_id, source_app, project_name, branch,
                now, now, model_name, cwd, json.dumps(task_context or {}),
            ),
        )
        await self.db.commit()
        return cur.rowcount > 0

    async def get(self, session_id: str, source_app: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM sessions WHERE session_id = ? AND source_app = ?",
            (session_id, source_app),
        ) as cur:
            row = await cur.fetchone()
        return self._row_to_dict(row) if row else None

    async def record_activity(
        self,
        session_id: str,
        source_app: str,
        now: int,
        status: str | None = "active",
        model_name: str = "",
    ) -> bool:
        """Bump event count and last-event time, optionally moving status.

        ``status=None`` leaves the status column untouched. Stopped sessions are
        never modified. Returns True when a row was updated.
        """
        cur = await self.db.execute(
            """UPDATE sessions SET
                status = COALESCE(?, status),
                last_event_at = ?,
                event_count = event_count + 1,
                model_name = CASE WHEN ? != '' THEN ? ELSE model_name END
            WHERE session_id = ? AND source_app = ? AND status != 'stopped'""",
            (status, now, model_name, model_name, session_id, source_app),
        )
        await self.db.commit()
        return cur.rowcount > 0

    async def stop(self, session_id: str, source_app: str, now: int) -> bool:
        """Mark a session stopped. Returns False if it was already stopped."""
        cur = await self.db.execute(
            """UPDATE sessions SET status = 'stopped', last_event_at = ?, ended_at = ?,
                event_count = event_count + 1
            WHERE session_id = ? AND source_app = ? AND status != 'stopped'""",
            (now, now, session_id, source_app),
        )
        await self.db.commit()
        return cur.rowcount > 0

    async def update_branch(
        self, session_id: str, source_app: str, branch: str, task_context: dict
    ) -> None:
        await self.db.execute(
            """UPDATE sessions SET current_branch = ?, task_context = ?
            WHERE session_id = ? AND source_app = ? AND current_branch != ?""",
            (branch, json.dumps(task_context), session_id, source_app, branch),
        )
        await self.db.commit()

    async def set_topic_once(self, session_id: str, source_app: str, topic: str) -> bool:
        cur = await self.db.execute(
            """UPDATE sessions SET topic = ?
            WHERE session_id = ? AND source_app = ? AND (topic IS NULL OR topic = '')""",
            (topic, session_id, source_app),
        )
        await self.db.commit()
        return cur.rowcount > 0

    async def record_compaction(self, session_id: str, source_app: str, now: int) -> None:
        async with self.db.execute(
            "SELECT compaction_history FROM sessions WHERE session_id = ? AND source_app = ?",
            (session_id, source_app),
        ) as cur:
            row = await cur.fetchone()
        if not row:
            return
        history = _decode(row[0], [])
        if not isinstance(history, list):
            history = []
        history.append(now)
        history = history[-MAX_COMPACTION_HISTORY:]
        await self.db.execute(
            """UPDATE sessions SET
                compaction_count = compaction_count + 1,
                last_compaction_at = ?,
                compaction_history = ?
            WHERE session_id = ? AND source_app = ?""",
            (now, json.dumps(history), session_id, source_app),
        )
        await self.db.commit()

    async def count_non_terminal(self, project_name: str) -> int:
        async with self.db.execute(
            "SELECT COUNT(*) FROM sessions WHERE project_name = ? AND status != 'stopped'",
            (project_name,),
        ) as cur:
            row = await cur.fetchone()
        return row[0] if row else 0

    async def status_counts(self, project_name: str) -> dict[str, int]:
        async with self.db.execute(
            "SELECT status, COUNT(*) FROM sessions WHERE project_name = ? GROUP BY status",
            (project_name,),
        ) as cur:
            rows = await cur.fetchall()
        return {r[0]: r[1] for r in rows}

    # ── Sweeps ──────────────────────────────────────────────────────

    async def mark_idle(self, cutoff: int) -> set[str]:
        """Move ``active`` sessions quiet since ``cutoff`` to ``idle``.

        Returns the affected project names.
        """
        async with self.db.execute(
            "SELECT DISTINCT project_name FROM sessions WHERE status = 'active' AND last_event_at < ?",
            (cutoff,),
        ) as cur:
            rows = await cur.fetchall()
        projects = {r[0] for r in rows}
        if projects:
            await self.db.execute(
                "UPDATE sessions SET status = 'idle' WHERE status = 'active' AND last_event_at < ?",
                (cutoff,),
            )
            await self.db.commit()
        return projects

    async def list_stale(self, cutoff: int) -> list[dict]:
        async with self.db.execute(
            """SELECT * FROM sessions
            WHERE status IN ('idle', 'waiting') AND last_event_at < ?
            ORDER BY last_event_at ASC""",
            (cutoff,),
        ) as cur:
            rows = await cur.fetchall()
        return [self._row_to_dict(r) for r in rows]

    async def stop_if_stale(self, session_id: str, source_app: str, cutoff: int, now: int) -> bool:
        """Stop a session only if it still matches the stale predicate."""
        cur = await self.db.execute(
            """UPDATE sessions SET status = 'stopped', ended_at = ?
            WHERE session_id = ? AND source_app = ?
              AND status IN ('idle', 'waiting') AND last_event_at < ?""",
            (now, session_id, source_app, cutoff),
        )
        await self.db.commit()
        return cur.rowcount > 0

    # ── Queries ─────────────────────────────────────────────────────

    async def list_active(self, stopped_since: int) -> list[dict]:
        async with self.db.execute(
            """SELECT s.*, c.estimated_cost_usd AS estimated_cost
            FROM sessions s
            LEFT JOIN cost_estimates c
              ON c.session_id = s.session_id AND c.source_app = s.source_app
            WHERE s.status IN ('active', 'idle', 'waiting')
               OR (s.status = 'stopped' AND COALESCE(s.ended_at, s.last_event_at) >= ?)
            ORDER BY s.last_event_at DESC""",
            (stopped_since,),
        ) as cur:
            rows = await cur.fetchall()
        return [self._row_to_dict(r) for r in rows]

    async def list_for_project(self, project_name: str, limit: int = 20) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM sessions WHERE project_name = ? ORDER BY last_event_at DESC LIMIT ?",
            (project_name, limit),
        ) as cur:
            rows = await cur.fetchall()
        return [self._row_to_dict(r) for r in rows]

    async def list_all(self, limit: int = 100) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM sessions ORDER BY last_event_at DESC LIMIT ?", (limit,)
        ) as cur:
            rows = await cur.fetchall()
        return [self._row_to_dict(r) for r in rows]

    async def list_keys(
        self,
        project_name: str | None = None,
        start: int | None = None,
        end: int | None = None,
    ) -> list[dict]:
        query = "SELECT session_id, source_app, project_name, started_at, model_name FROM sessions"
        clauses: list[str] = []
        params: list = []
        if project_name:
            clauses.append("project_name = ?")
            params.append(project_name)
        if start is not None:
            clauses.append("started_at >= ?")
            params.append(start)
        if end is not None:
            clauses.append("started_at <= ?")
            params.append(end)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY started_at ASC"
        async with self.db.execute(query, params) as cur:
            rows = await cur.fetchall()
        return [dict(r) for r in rows]

    async def search(self, term: str, limit: int) -> list[dict]:
        like = f"%{term}%"
        async with self.db.execute(
            """SELECT * FROM sessions
            WHERE session_id LIKE ? OR project_name LIKE ? OR current_branch LIKE ?
               OR topic LIKE ? OR task_context LIKE ?
            ORDER BY last_event_at DESC LIMIT ?""",
            (like, like, like, like, like, limit),
        ) as cur:
            rows = await cur.fetchall()
        return [self._row_to_dict(r) for r in rows]

    async def delete_stopped_before(self, cutoff: int) -> int:
        cur = await self.db.execute(
            "DELETE FROM sessions WHERE status = 'stopped' AND last_event_at < ?", (cutoff,)
        )
        await self.db.commit()
        return cur.rowcount

    async def count(self) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM sessions") as cur:
            row = await cur.fetchone()
        return row[0] if row else 0

    def _row_to_dict(self, row: aiosqlite.Row) -> dict:
        d = dict(row)
        d["task_context"] = _decode(d.get("task_context"), {})
        d["compaction_history"] = _decode(d.get("compaction_history"), [])
        return d

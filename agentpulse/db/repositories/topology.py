"""SQLite implementation of the agent topology table."""
from __future__ import annotations

import aiosqlite


class SqliteTopologyRepository:
    """Nodes exist only for sessions reported as sub-agents."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert(
        self,
        agent_id: str,
        parent_id: str | None,
        session_id: str,
        source_app: str,
        project_name: str,
        now: int,
        model_name: str = "",
    ) -> None:
        await self.db.execute(
            """INSERT INTO agent_topology (
                agent_id, parent_id, session_id, source_app, project_name,
                status, model_name, started_at, last_event_at
            ) VALUES (?, ?, ?, ?, ?, 'active', ?, ?, ?)
            ON CONFLICT(agent_id) DO UPDATE SET
                status = 'active',
                parent_id = COALESCE(excluded.parent_id, agent_topology.parent_id),
                model_name = CASE WHEN excluded.model_name != '' THEN excluded.model_name ELSE agent_topology.model_name END,
                last_event_at = excluded.last_event_at
            """,
            (agent_id, parent_id, session_id, source_app, project_name, model_name, now, now),
        )
        await self.db.commit()

    async def set_status(self, agent_id: str, status: str, now: int) -> bool:
        cur = await self.db.execute(
            "UPDATE agent_topology SET status = ?, last_event_at = ? WHERE agent_id = ?",
            (status, now, agent_id),
        )
        await self.db.commit()
        return cur.rowcount > 0

    async def touch(self, agent_id: str, now: int) -> None:
        await self.db.execute(
            "UPDATE agent_topology SET last_event_at = ? WHERE agent_id = ?",
            (now, agent_id),
        )
        await self.db.commit()

    async def list_nodes(self, project_name: str | None = None) -> list[dict]:
        query = (
            "SELECT t.*, s.task_context AS task_context, s.topic AS topic "
            "FROM agent_topology t "
            "LEFT JOIN sessions s ON s.session_id = t.session_id AND s.source_app = t.source_app"
        )
        params: tuple = ()
        if project_name:
            query += " WHERE t.project_name = ?"
            params = (project_name,)
        query += " ORDER BY t.started_at ASC"
        async with self.db.execute(query, params) as cur:
            rows = await cur.fetchall()
        return [dict(r) for r in rows]

    async def delete_before(self, cutoff: int) -> int:
        cur = await self.db.execute(
            "DELETE FROM agent_topology WHERE status = 'stopped' AND last_event_at < ?", (cutoff,)
        )
        await self.db.commit()
        return cur.rowcount

"""SQLite implementation of CostRepository."""
from __future__ import annotations

import aiosqlite


class SqliteCostRepository:
    """Per-session running token and cost totals."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get(self, session_id: str, source_app: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM cost_estimates WHERE session_id = ? AND source_app = ?",
            (session_id, source_app),
        ) as cur:
            row = await cur.fetchone()
        return dict(row) if row else None

    async def accumulate(
        self,
        session_id: str,
        source_app: str,
        project_name: str,
        model_name: str,
        input_tokens: int,
        output_tokens: int,
        now: int,
    ) -> None:
        """Add one event's token estimate to the running totals.

        The sums happen inside the statement, so totals only ever grow. An
        empty ``model_name`` keeps the stored one.
        """
        await self.db.execute(
            """INSERT INTO cost_estimates (
                session_id, source_app, project_name, model_name,
                input_tokens, output_tokens, estimated_cost_usd, event_count,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, 0, 1, ?, ?)
            ON CONFLICT(session_id, source_app) DO UPDATE SET
                project_name = excluded.project_name,
                model_name = CASE WHEN excluded.model_name != '' THEN excluded.model_name
                                  ELSE cost_estimates.model_name END,
                input_tokens = cost_estimates.input_tokens + excluded.input_tokens,
                output_tokens = cost_estimates.output_tokens + excluded.output_tokens,
                event_count = cost_estimates.event_count + 1,
                updated_at = excluded.updated_at
            """,
            (session_id, source_app, project_name, model_name, input_tokens, output_tokens, now, now),
        )
        await self.db.commit()

    async def reprice(
        self, session_id: str, source_app: str, input_price: float, output_price: float
    ) -> None:
        """Recompute the session cost from its stored totals; prices are USD per million."""
        await self.db.execute(
            """UPDATE cost_estimates SET
                estimated_cost_usd = input_tokens * ? / 1000000.0 + output_tokens * ? / 1000000.0
            WHERE session_id = ? AND source_app = ?""",
            (input_price, output_price, session_id, source_app),
        )
        await self.db.commit()

    async def totals_by_project_model(self, start: int | None = None, end: int | None = None) -> list[dict]:
        """Cost totals grouped by (project, model) for sessions updated in range."""
        query = (
            "SELECT project_name, model_name, "
            "SUM(estimated_cost_usd) AS estimated_cost_usd, "
            "SUM(input_tokens) AS input_tokens, SUM(output_tokens) AS output_tokens, "
            "COUNT(*) AS session_count FROM cost_estimates"
        )
        clauses: list[str] = []
        params: list = []
        if start is not None:
            clauses.append("updated_at >= ?")
            params.append(start)
        if end is not None:
            clauses.append("updated_at <= ?")
            params.append(end)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " GROUP BY project_name, model_name ORDER BY project_name, estimated_cost_usd DESC"
        async with self.db.execute(query, params) as cur:
            rows = await cur.fetchall()
        return [dict(r) for r in rows]

    async def list_sessions(self, project_name: str | None = None, limit: int = 100) -> list[dict]:
        query = (
            "SELECT c.*, s.started_at, s.last_event_at, s.status, s.current_branch, s.topic "
            "FROM cost_estimates c "
            "LEFT JOIN sessions s ON s.session_id = c.session_id AND s.source_app = c.source_app"
        )
        params: list = []
        if project_name:
            query += " WHERE c.project_name = ?"
            params.append(project_name)
        query += " ORDER BY c.updated_at DESC LIMIT ?"
        params.append(limit)
        async with self.db.execute(query, params) as cur:
            rows = await cur.fetchall()
        return [dict(r) for r in rows]

    async def daily_by_project(self, since: int) -> list[dict]:
        async with self.db.execute(
            """SELECT date(updated_at / 1000, 'unixepoch') AS day, project_name,
                SUM(estimated_cost_usd) AS cost
            FROM cost_estimates WHERE updated_at >= ?
            GROUP BY day, project_name ORDER BY day ASC""",
            (since,),
        ) as cur:
            rows = await cur.fetchall()
        return [dict(r) for r in rows]

    async def delete_orphans(self) -> int:
        cur = await self.db.execute(
            """DELETE FROM cost_estimates WHERE NOT EXISTS (
                SELECT 1 FROM sessions s
                WHERE s.session_id = cost_estimates.session_id AND s.source_app = cost_estimates.source_app
            )"""
        )
        await self.db.commit()
        return cur.rowcount

    async def count(self) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM cost_estimates") as cur:
            row = await cur.fetchone()
        return row[0] if row else 0


"""SQLite implementation of WebhookRepository."""
from __future__ import annotations

import json
from typing import Any

import aiosqlite

_UPDATABLE = ("name", "url", "secret", "event_types", "project_filter", "active")


class SqliteWebhookRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def list_all(self, active_only: bool = False) -> list[dict]:
        query = "SELECT * FROM webhooks"
        if active_only:
            query += " WHERE active = 1"
        query += " ORDER BY created_at ASC"
        async with self.db.execute(query) as cur:
            rows = await cur.fetchall()
        return [self._row_to_dict(r) for r in rows]

    async def get(self, webhook_id: str) -> dict | None:
        async with self.db.execute("SELECT * FROM webhooks WHERE id = ?", (webhook_id,)) as cur:
            row = await cur.fetchone()
        return self._row_to_dict(row) if row else None

    async def create(self, webhook: dict, now: int) -> None:
        await self.db.execute(
            """INSERT INTO webhooks (
                id, name, url, secret, event_types, project_filter, active, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                webhook["id"],
                webhook["name"],
                webhook["url"],
                webhook.get("secret") or "",
                json.dumps(webhook.get("event_types") or []),
                webhook.get("project_filter") or "",
                1 if webhook.get("active", True) else 0,
                now,
                now,
            ),
        )
        await self.db.commit()

    async def update(self, webhook_id: str, changes: dict[str, Any], now: int) -> bool:
        fields: list[str] = []
        params: list = []
        for key in _UPDATABLE:
            if key not in changes or changes[key] is None:
                continue
            value = changes[key]
            if key == "event_types":
                value = json.dumps(value)
            elif key == "active":
                value = 1 if value else 0
            fields.append(f"{key} = ?")
            params.append(value)
        fields.append("updated_at = ?")
        params.extend([now, webhook_id])
        cur = await self.db.execute(
            f"UPDATE webhooks SET {', '.join(fields)} WHERE id = ?", params
        )
        await self.db.commit()
        return cur.rowcount > 0

    async def delete(self, webhook_id: str) -> bool:
        cur = await self.db.execute("DELETE FROM webhooks WHERE id = ?", (webhook_id,))
        await self.db.commit()
        return cur.rowcount > 0

    async def record_result(
        self,
        webhook_id: str,
        now: int,
        status: int | None,
        error: str,
    ) -> None:
        failed = 1 if error else 0
        await self.db.execute(
            """UPDATE webhooks SET
                last_triggered_at = ?,
                last_status = ?,
                last_error = ?,
                trigger_count = trigger_count + 1,
                failure_count = failure_count + ?
            WHERE id = ?""",
            (now, status, error, failed, webhook_id),
        )
        await self.db.commit()

    def _row_to_dict(self, row: aiosqlite.Row) -> dict:
        d = dict(row)
        try:
            d["event_types"] = json.loads(d.get("event_types") or "[]")
        except ValueError:
            d["event_types"] = []
        d["active"] = bool(d.get("active"))
        return d

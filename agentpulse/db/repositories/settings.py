"""SQLite implementation of the key/value settings table."""
from __future__ import annotations

import aiosqlite


class SqliteSettingsRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_all(self) -> dict[str, str]:
        async with self.db.execute("SELECT key, value FROM settings ORDER BY key") as cur:
            rows = await cur.fetchall()
        return {r[0]: r[1] for r in rows}

    async def get(self, key: str, default: str | None = None) -> str | None:
        async with self.db.execute("SELECT value FROM settings WHERE key = ?", (key,)) as cur:
            row = await cur.fetchone()
        return row[0] if row else default

    async def set_many(self, values: dict[str, str], now: int) -> None:
        for key, value in values.items():
            await self.db.execute(
                """INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at""",
                (key, value, now),
            )
        await self.db.commit()

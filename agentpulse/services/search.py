"""Free-text search and activity heatmap."""
from __future__ import annotations

import aiosqlite

from agentpulse.date_utils import DAY_MS, now_ms
from agentpulse.db.repositories.dev_logs import SqliteDevLogRepository
from agentpulse.db.repositories.events import SqliteEventRepository
from agentpulse.db.repositories.sessions import SqliteSessionRepository

SEARCH_TYPES = ("events", "sessions", "devlogs", "all")
MAX_SEARCH_LIMIT = 100
MAX_HEATMAP_DAYS = 365


class SearchService:
    def __init__(self, db: aiosqlite.Connection):
        self.events = SqliteEventRepository(db)
        self.sessions = SqliteSessionRepository(db)
        self.dev_logs = SqliteDevLogRepository(db)

    async def search(self, query: str, search_type: str = "all", limit: int = 20) -> dict:
        term = (query or "").strip()
        if not term:
            raise ValueError("Query parameter 'q' is required")
        if search_type not in SEARCH_TYPES:
            raise ValueError(f"type must be one of: {', '.join(SEARCH_TYPES)}")
        if limit < 1 or limit > MAX_SEARCH_LIMIT:
            raise ValueError(f"limit must be between 1 and {MAX_SEARCH_LIMIT}")

        results: dict = {"query": term, "type": search_type}
        if search_type in ("events", "all"):
            results["events"] = [e.model_dump() for e in await self.events.search(term, limit)]
        if search_type in ("sessions", "all"):
            results["sessions"] = await self.sessions.search(term, limit)
        if search_type in ("devlogs", "all"):
            results["devlogs"] = await self.dev_logs.search(term, limit)
        results["count"] = sum(len(results.get(k, [])) for k in ("events", "sessions", "devlogs"))
        return results

    async def heatmap(self, days: int = 30, project: str | None = None, now: int | None = None) -> dict:
        if days < 1 or days > MAX_HEATMAP_DAYS:
            raise ValueError(f"days must be between 1 and {MAX_HEATMAP_DAYS}")
        now = now_ms() if now is None else now
        cells = await self.events.hourly_counts(now - days * DAY_MS, project)
        return {
            "days": days,
            "project": project,
            "cells": cells,
            "max_count": max((c["count"] for c in cells), default=0),
        }

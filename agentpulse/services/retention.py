"""Retention policy: archive, delete expired rows, vacuum; admin statistics."""
from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from agentpulse import config
from agentpulse.date_utils import DAY_MS, now_ms
from agentpulse.db.repositories.costs import SqliteCostRepository
from agentpulse.db.repositories.dev_logs import SqliteDevLogRepository
from agentpulse.db.repositories.events import SqliteEventRepository
from agentpulse.db.repositories.projects import SqliteProjectRepository
from agentpulse.db.repositories.sessions import SqliteSessionRepository
from agentpulse.db.repositories.settings import SqliteSettingsRepository
from agentpulse.services.conflicts import ConflictDetector

logger = logging.getLogger("agentpulse.retention")

ARCHIVE_PREFIX = "agentpulse-archive-"

DAY_SETTINGS = ("retention.events.days", "retention.devlogs.days", "retention.sessions.days")
SETTING_KEYS = DAY_SETTINGS + ("retention.archive.enabled", "retention.archive.directory")
DEFAULT_SETTINGS = {
    "retention.events.days": "30",
    "retention.devlogs.days": "90",
    "retention.sessions.days": "30",
    "retention.archive.enabled": "false",
    "retention.archive.directory": "./archives",
}


def validate_settings(values: dict[str, Any]) -> dict[str, str]:
    """Normalize a settings update to strings. Raises ValueError on bad input."""
    cleaned: dict[str, str] = {}
    for key, value in values.items():
        if value is None:
            continue
        if key not in SETTING_KEYS:
            raise ValueError(f"Unknown setting: {key}")
        if key in DAY_SETTINGS:
            try:
                days = int(value)
            except (TypeError, ValueError):
                raise ValueError(f"{key} must be an integer") from None
            if days < 1 or days > 3650:
                raise ValueError(f"{key} must be between 1 and 3650")
            cleaned[key] = str(days)
        elif key == "retention.archive.enabled":
            if isinstance(value, bool):
                cleaned[key] = "true" if value else "false"
            elif str(value).lower() in ("true", "false"):
                cleaned[key] = str(value).lower()
            else:
                raise ValueError(f"{key} must be true or false")
        else:
            directory = str(value).strip()
            if not directory:
                raise ValueError(f"{key} must not be empty")
            cleaned[key] = directory
    return cleaned


def _day(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def archive_filename(first_ms: int, cutoff_ms: int) -> str:
    return f"{ARCHIVE_PREFIX}{_day(first_ms)}_{_day(cutoff_ms)}.json"


def _file_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0


class RetentionService:
    def __init__(self, db: aiosqlite.Connection, db_path: Path | None = None):
        self.db = db
        self.db_path = db_path or config.DB_PATH
        self.settings = SqliteSettingsRepository(db)
        self.events = SqliteEventRepository(db)
        self.dev_logs = SqliteDevLogRepository(db)
        self.sessions = SqliteSessionRepository(db)
        self.costs = SqliteCostRepository(db)
        self.projects = SqliteProjectRepository(db)
        self.conflicts = ConflictDetector(db, config.CONFLICT_RETENTION_HOURS)

    async def get_settings(self) -> dict[str, str]:
        return {**DEFAULT_SETTINGS, **await self.settings.get_all()}

    async def update_settings(self, values: dict[str, Any]) -> dict[str, str]:
        cleaned = validate_settings(values)
        if cleaned:
            await self.settings.set_many(cleaned, now_ms())
        return await self.get_settings()

    async def cleanup(self, now: int | None = None) -> dict:
        now = now_ms() if now is None else now
        settings = await self.get_settings()
        event_cutoff = now - int(settings["retention.events.days"]) * DAY_MS
        devlog_cutoff = now - int(settings["retention.devlogs.days"]) * DAY_MS
        session_cutoff = now - int(settings["retention.sessions.days"]) * DAY_MS

        archive_file = None
        events_archived = 0
        if settings["retention.archive.enabled"] == "true":
            archive_file, events_archived = await self._archive(
                settings, event_cutoff, devlog_cutoff, now
            )

        size_before = _file_size(self.db_path)
        events_deleted = await self.events.delete_before(event_cutoff)
        dev_logs_deleted = await self.dev_logs.delete_before(devlog_cutoff)
        sessions_deleted = await self.sessions.delete_stopped_before(session_cutoff)
        costs_deleted = await self.costs.delete_orphans()
        accesses_deleted, dismissals_deleted = await self.conflicts.cleanup(now)

        await self.db.execute("VACUUM")
        size_after = _file_size(self.db_path)

        result = {
            "events_archived": events_archived,
            "events_deleted": events_deleted,
            "dev_logs_deleted": dev_logs_deleted,
            "sessions_deleted": sessions_deleted,
            "cost_estimates_deleted": costs_deleted,
            "file_accesses_deleted": accesses_deleted,
            "dismissals_deleted": dismissals_deleted,
            "archive_file": archive_file,
            "db_size_before_vacuum": size_before,
            "db_size_after_vacuum": size_after,
            "vacuum_reclaimed_bytes": max(0, size_before - size_after),
        }
        logger.info(
            "Retention cleanup: %s events, %s dev logs, %s sessions deleted",
            events_deleted, dev_logs_deleted, sessions_deleted,
        )
        return result

    async def _archive(
        self, settings: dict[str, str], event_cutoff: int, devlog_cutoff: int, now: int
    ) -> tuple[str | None, int]:
        events = await self.events.list_before(event_cutoff)
        if not events:
            return None, 0
        dev_logs = await self.dev_logs.list_before(devlog_cutoff)
        directory = Path(settings["retention.archive.directory"]).expanduser()
        path = directory / archive_filename(events[0]["timestamp"], event_cutoff)
        archive = {
            "exported_at": now,
            "retention_settings": {key: settings[key] for key in DAY_SETTINGS},
            "cutoffs": {"events": event_cutoff, "dev_logs": devlog_cutoff},
            "counts": {"events": len(events), "dev_logs": len(dev_logs)},
            "data": {"events": events, "dev_logs": dev_logs},
        }
        directory.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(archive, indent=2, default=str), encoding="utf-8")
        logger.info("Archived %d events to %s", len(events), path)
        return str(path), len(events)

    async def stats(self) -> dict:
        settings = await self.get_settings()
        oldest, newest = await self.events.time_bounds()
        async with self.db.execute("SELECT COUNT(*) FROM events") as cur:
            row = await cur.fetchone()
        event_count = row[0] if row else 0

        archive_dir = Path(settings["retention.archive.directory"]).expanduser()
        archive_files: list[str] = []
        if archive_dir.is_dir():
            archive_files = sorted(
                name for name in os.listdir(archive_dir)
                if name.startswith(ARCHIVE_PREFIX) and name.endswith(".json")
            )
        return {
            "db_size_bytes": _file_size(self.db_path),
            "event_count": event_count,
            "session_count": await self.sessions.count(),
            "dev_log_count": await self.dev_logs.count(),
            "project_count": await self.projects.count(),
            "cost_estimate_count": await self.costs.count(),
            "oldest_event_timestamp": oldest,
            "newest_event_timestamp": newest,
            "archive_count": len(archive_files),
            "archive_files": archive_files,
        }

"""Daily and weekly rollups of dev logs, grouped by project."""
from __future__ import annotations

from datetime import timedelta

import aiosqlite

from agentpulse.date_utils import DAY_MS, day_bounds, parse_date, parse_iso_week
from agentpulse.db.repositories.dev_logs import SqliteDevLogRepository


def aggregate_dev_logs(logs: list[dict]) -> list[dict]:
    projects: dict[str, dict] = {}
    for log in logs:
        name = log.get("project_name") or log.get("source_app") or "unknown"
        project = projects.setdefault(name, {
            "project_name": name,
            "session_count": 0,
            "total_duration_minutes": 0,
            "files_changed": [],
            "commit_count": 0,
            "commits": [],
            "tool_breakdown": {},
            "dev_logs": [],
        })
        project["session_count"] += 1
        project["total_duration_minutes"] += int(log.get("duration_minutes") or 0)
        for path in log.get("files_changed") or []:
            if path not in project["files_changed"]:
                project["files_changed"].append(path)
        for commit in log.get("commits") or []:
            if commit not in project["commits"]:
                project["commits"].append(commit)
                project["commit_count"] += 1
        for tool, count in (log.get("tool_breakdown") or {}).items():
            project["tool_breakdown"][tool] = project["tool_breakdown"].get(tool, 0) + int(count or 0)
        project["dev_logs"].append(log)
    return list(projects.values())


def calculate_totals(projects: list[dict]) -> dict:
    files: set[str] = set()
    for project in projects:
        files.update(project["files_changed"])
    return {
        "total_sessions": sum(p["session_count"] for p in projects),
        "total_duration_minutes": sum(p["total_duration_minutes"] for p in projects),
        "total_files_changed": len(files),
        "total_commits": sum(p["commit_count"] for p in projects),
        "active_projects": len(projects),
    }


class SummaryService:
    def __init__(self, db: aiosqlite.Connection):
        self.dev_logs = SqliteDevLogRepository(db)

    async def daily(self, value: str) -> dict:
        """Summary for one UTC day. Raises ValueError for a malformed date."""
        day = parse_date(value)
        if day is None:
            raise ValueError("Invalid date format. Expected YYYY-MM-DD")
        start, end = day_bounds(day)
        projects = aggregate_dev_logs(await self.dev_logs.list_between(start, end))
        return {
            "period": "daily",
            "start_date": day.isoformat(),
            "end_date": day.isoformat(),
            "projects": projects,
            "totals": calculate_totals(projects),
        }

    async def weekly(self, value: str) -> dict:
        """Summary for an ISO week, Monday through Sunday (UTC)."""
        monday = parse_iso_week(value)
        if monday is None:
            raise ValueError("Invalid ISO week format. Expected YYYY-Www (e.g., 2026-W07)")
        start, _ = day_bounds(monday)
        projects = aggregate_dev_logs(await self.dev_logs.list_between(start, start + 7 * DAY_MS))
        return {
            "period": "weekly",
            "start_date": monday.isoformat(),
            "end_date": (monday + timedelta(days=6)).isoformat(),
            "projects": projects,
            "totals": calculate_totals(projects),
        }

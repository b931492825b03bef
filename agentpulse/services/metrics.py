"""Per-session and per-project performance metrics, computed on demand."""
from __future__ import annotations

import aiosqlite

from agentpulse.date_utils import MINUTE_MS
from agentpulse.db.repositories.events import SqliteEventRepository
from agentpulse.db.repositories.sessions import SqliteSessionRepository
from agentpulse.hook_events import (
    NOTIFICATION,
    POST_TOOL_USE,
    POST_TOOL_USE_FAILURE,
    STOP,
    USER_PROMPT_SUBMIT,
    HookEvent,
)


def calculate_median(values: list[float]) -> float:
    if not values:
        return 0
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[mid - 1] + ordered[mid]) / 2
    return ordered[mid]


def calculate_turn_durations(events: list[HookEvent]) -> list[float]:
    """Seconds from each prompt to the next Stop/Notification.

    A trailing prompt with no closing event is discarded.
    """
    durations: list[float] = []
    turn_started: int | None = None
    for event in events:
        if event.hook_event_type == USER_PROMPT_SUBMIT:
            turn_started = event.timestamp
        elif turn_started is not None and event.hook_event_type in (STOP, NOTIFICATION):
            duration = event.timestamp - turn_started
            if duration > 0:
                durations.append(duration / 1000)
            turn_started = None
    return durations


def build_activity_timeline(events: list[HookEvent], started_at: int) -> list[dict]:
    buckets: dict[int, int] = {}
    for event in events:
        minute = (event.timestamp - started_at) // MINUTE_MS
        buckets[minute] = buckets.get(minute, 0) + 1
    return [{"minute": minute, "events": count} for minute, count in sorted(buckets.items())]


def calculate_tool_metrics(events: list[HookEvent]) -> dict:
    successes = 0
    failures = 0
    breakdown: dict[str, dict[str, int]] = {}
    for event in events:
        if event.hook_event_type not in (POST_TOOL_USE, POST_TOOL_USE_FAILURE):
            continue
        tool = event.tool_name or "unknown"
        counts = breakdown.setdefault(tool, {"success": 0, "failure": 0})
        if event.hook_event_type == POST_TOOL_USE:
            successes += 1
            counts["success"] += 1
        else:
            failures += 1
            counts["failure"] += 1
    total = successes + failures
    return {
        "tool_use_count": successes,
        "tool_failure_count": failures,
        "tool_success_rate": (successes / total) * 100 if total else 100,
        "tool_breakdown": breakdown,
    }


def calculate_turn_stats(durations: list[float]) -> dict:
    count = len(durations)
    return {
        "turn_count": count,
        "avg_turn_duration_seconds": sum(durations) / count if count else 0,
        "median_turn_duration_seconds": calculate_median(durations),
        "min_turn_duration_seconds": min(durations) if count else 0,
        "max_turn_duration_seconds": max(durations) if count else 0,
    }


def summarize_session(
    events: list[HookEvent],
    session_id: str,
    source_app: str,
    project_name: str,
    started_at: int,
) -> dict:
    duration_minutes = (events[-1].timestamp - started_at) / MINUTE_MS
    return {
        "session_id": session_id,
        "source_app": source_app,
        "project_name": project_name,
        "model_name": next((e.model_name for e in events if e.model_name), "unknown"),
        **calculate_tool_metrics(events),
        **calculate_turn_stats(calculate_turn_durations(events)),
        "total_events": len(events),
        "events_per_minute": len(events) / duration_minutes if duration_minutes > 0 else 0,
        "session_duration_minutes": duration_minutes,
        "activity_timeline": build_activity_timeline(events, started_at),
    }


class PerformanceMetrics:
    def __init__(self, db: aiosqlite.Connection):
        self.events = SqliteEventRepository(db)
        self.sessions = SqliteSessionRepository(db)

    async def session_metrics(
        self,
        session_id: str,
        source_app: str,
        start: int | None = None,
        end: int | None = None,
    ) -> dict | None:
        events = await self.events.list_for_session(session_id, source_app, start, end)
        if not events:
            return None
        session = await self.sessions.get(session_id, source_app)
        project_name = (session or {}).get("project_name") or "unknown"
        started_at = (session or {}).get("started_at") or events[0].timestamp
        return summarize_session(events, session_id, source_app, project_name, started_at)

    async def sessions_for_project(
        self,
        project_name: str | None = None,
        start: int | None = None,
        end: int | None = None,
    ) -> list[dict]:
        keys = await self.sessions.list_keys(project_name, start, end)
        results = []
        for key in keys:
            metrics = await self.session_metrics(key["session_id"], key["source_app"], start, end)
            if metrics:
                results.append(metrics)
        return results

    async def project_metrics(
        self,
        project_name: str | None = None,
        start: int | None = None,
        end: int | None = None,
    ) -> list[dict]:
        """Session-weighted averages per project.

        Sessions with no events in range count toward ``session_count`` but not
        toward the averages.
        """
        keys = await self.sessions.list_keys(project_name, start, end)
        grouped: dict[str, list[dict]] = {}
        for key in keys:
            grouped.setdefault(key["project_name"] or "unknown", []).append(key)

        results = []
        for name, sessions in grouped.items():
            valid: list[dict] = []
            for key in sessions:
                metrics = await self.session_metrics(key["session_id"], key["source_app"], start, end)
                if metrics:
                    valid.append(metrics)
            count = len(valid)
            results.append({
                "project_name": name,
                "session_count": len(sessions),
                "avg_tool_success_rate": sum(m["tool_success_rate"] for m in valid) / count if count else 100,
                "avg_turn_duration_seconds": sum(m["avg_turn_duration_seconds"] for m in valid) / count if count else 0,
                "median_turn_duration_seconds": calculate_median([m["median_turn_duration_seconds"] for m in valid if m["turn_count"]]),
                "total_events": sum(m["total_events"] for m in valid),
                "total_duration_minutes": sum(m["session_duration_minutes"] for m in valid),
            })
        return results

"""Token and cost estimation from hook payload sizes.

Hooks carry no real token counts, so usage is approximated from the size of
what passes through them: roughly four characters per token plus a fixed
per-event overhead for the system prompt and tool schema.
"""
from __future__ import annotations

import json
import math
from datetime import datetime, timedelta, timezone
from typing import Any

import aiosqlite

from agentpulse.date_utils import DAY_MS
from agentpulse.db.repositories.costs import SqliteCostRepository
from agentpulse.hook_events import NOTIFICATION, POST_TOOL_USE, USER_PROMPT_SUBMIT, HookEvent, ToolPayload
from agentpulse.observability import record_token_cost

BASE_OVERHEAD_TOKENS = 500
CHARS_PER_TOKEN = 4

# Ordered by match priority; prices are USD per million tokens.
MODEL_PRICING: tuple[tuple[str, float, float], ...] = (
    ("opus", 15.0, 75.0),
    ("sonnet", 3.0, 15.0),
    ("haiku", 0.80, 4.0),
)
DEFAULT_PRICING = (3.0, 15.0)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _serialize(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str, separators=(",", ":"))


def get_model_pricing(model_name: str | None) -> tuple[float, float]:
    """Return ``(input, output)`` USD-per-million prices for a model name."""
    lowered = (model_name or "").lower()
    for tier, input_price, output_price in MODEL_PRICING:
        if tier in lowered:
            return input_price, output_price
    return DEFAULT_PRICING


def calculate_cost(input_tokens: int, output_tokens: int, model_name: str | None) -> float:
    input_price, output_price = get_model_pricing(model_name)
    return (input_tokens / 1_000_000) * input_price + (output_tokens / 1_000_000) * output_price


def estimate_event_tokens(event: HookEvent) -> tuple[int, int]:
    """Estimate ``(input_tokens, output_tokens)`` contributed by one event."""
    input_tokens = estimate_tokens(_serialize(event.payload)) + BASE_OVERHEAD_TOKENS
    output_tokens = 0

    if event.hook_event_type == POST_TOOL_USE:
        data = event.typed_payload()
        result = None
        if isinstance(data, ToolPayload):
            for candidate in (data.tool_result, data.tool_response, data.output):
                if candidate is not None:
                    result = candidate
                    break
        if result is not None:
            output_tokens += estimate_tokens(_serialize(result))

    if event.hook_event_type in (USER_PROMPT_SUBMIT, NOTIFICATION):
        input_tokens += estimate_tokens(_serialize(event.chat or []))

    return input_tokens, output_tokens


class CostEstimator:
    """Accumulates estimated usage per (session, app)."""

    def __init__(self, db: aiosqlite.Connection):
        self.costs = SqliteCostRepository(db)

    async def track(self, event: HookEvent, project_name: str, now: int) -> dict:
        """Add this event's estimate to the stored totals and reprice the session.

        The whole session is repriced from the accumulated totals, so a late
        model name changes the cost of every earlier event too.
        """
        input_tokens, output_tokens = estimate_event_tokens(event)
        await self.costs.accumulate(
            event.session_id,
            event.source_app,
            project_name,
            event.model_name or "",
            input_tokens,
            output_tokens,
            now,
        )
        stored = await self.costs.get(event.session_id, event.source_app) or {}
        model_name = stored.get("model_name") or ""
        await self.costs.reprice(event.session_id, event.source_app, *get_model_pricing(model_name))
        estimate = await self.costs.get(event.session_id, event.source_app) or {}

        record_token_cost(
            project=project_name,
            model=model_name,
            token_input=input_tokens,
            token_output=output_tokens,
            cost_usd=calculate_cost(input_tokens, output_tokens, model_name),
        )
        return estimate

    async def by_project(self, start: int | None = None, end: int | None = None) -> list[dict]:
        rows = await self.costs.totals_by_project_model(start, end)
        projects: dict[str, dict] = {}
        for row in rows:
            name = row["project_name"]
            project = projects.setdefault(name, {
                "project_name": name,
                "total_cost_usd": 0.0,
                "total_input_tokens": 0,
                "total_output_tokens": 0,
                "session_count": 0,
                "model_distribution": {},
            })
            cost = float(row["estimated_cost_usd"] or 0)
            project["total_cost_usd"] += cost
            project["total_input_tokens"] += int(row["input_tokens"] or 0)
            project["total_output_tokens"] += int(row["output_tokens"] or 0)
            project["session_count"] += int(row["session_count"] or 0)
            model = row["model_name"] or "unknown"
            project["model_distribution"][model] = project["model_distribution"].get(model, 0.0) + cost
        return sorted(projects.values(), key=lambda p: p["total_cost_usd"], reverse=True)

    async def by_session(self, project_name: str | None = None, limit: int = 100) -> list[dict]:
        rows = await self.costs.list_sessions(project_name, limit)
        items = []
        for row in rows:
            started = row.get("started_at") or row.get("created_at") or 0
            last = row.get("last_event_at") or row.get("updated_at") or started
            items.append({
                "session_id": row["session_id"],
                "source_app": row["source_app"],
                "project_name": row["project_name"],
                "model_name": row.get("model_name") or "",
                "estimated_input_tokens": int(row.get("input_tokens") or 0),
                "estimated_output_tokens": int(row.get("output_tokens") or 0),
                "estimated_cost_usd": float(row.get("estimated_cost_usd") or 0),
                "event_count": int(row.get("event_count") or 0),
                "status": row.get("status") or "",
                "duration_minutes": max(0, round((last - started) / 60000)),
            })
        return items

    async def daily(self, days: int, now: int) -> list[dict]:
        """Per-day totals for the last ``days`` days, zero-filled."""
        rows = await self.costs.daily_by_project(now - days * DAY_MS)
        by_day: dict[str, dict] = {}
        for row in rows:
            day = str(row["day"])
            entry = by_day.setdefault(day, {"date": day, "total_cost_usd": 0.0, "projects": {}})
            cost = float(row["cost"] or 0)
            entry["total_cost_usd"] += cost
            entry["projects"][row["project_name"]] = cost

        today = datetime.fromtimestamp(now / 1000, tz=timezone.utc).date()
        result = []
        for offset in range(days - 1, -1, -1):
            day = (today - timedelta(days=offset)).isoformat()
            result.append(by_day.get(day, {"date": day, "total_cost_usd": 0.0, "projects": {}}))
        return result

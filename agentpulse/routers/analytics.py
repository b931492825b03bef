"""Analytics: summaries, costs, metrics, conflicts, alerts, search, heatmap, export."""
from __future__ import annotations

import re
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import HTMLResponse

from agentpulse.date_utils import now_ms, parse_range_param
from agentpulse.runtime import get_runtime

analytics_router = APIRouter(prefix="/api", tags=["analytics"])

_FILENAME_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")


def _range(start: Optional[str], end: Optional[str]) -> tuple[int | None, int | None]:
    start_ms = parse_range_param(start)
    end_ms = parse_range_param(end, end_of_day=True)
    if start and start_ms is None:
        raise HTTPException(status_code=400, detail=f"Invalid start: {start}")
    if end and end_ms is None:
        raise HTTPException(status_code=400, detail=f"Invalid end: {end}")
    if start_ms is not None and end_ms is not None and start_ms > end_ms:
        raise HTTPException(status_code=400, detail="start must not be after end")
    return start_ms, end_ms


@analytics_router.get("/summaries")
async def get_summary(
    request: Request,
    period: str = Query("daily", pattern="^(daily|weekly)$"),
    date: Optional[str] = Query(None, description="YYYY-MM-DD for daily summaries"),
    week: Optional[str] = Query(None, description="YYYY-Www for weekly summaries"),
):
    summaries = get_runtime(request).summaries
    try:
        if period == "daily":
            if not date:
                raise HTTPException(status_code=400, detail="date is required for daily summaries")
            return await summaries.daily(date)
        if not week:
            raise HTTPException(status_code=400, detail="week is required for weekly summaries")
        return await summaries.weekly(week)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from None


@analytics_router.get("/costs")
async def get_costs(
    request: Request,
    view: str = Query("project", pattern="^(project|session|daily)$"),
    project: Optional[str] = Query(None),
    start: Optional[str] = Query(None),
    end: Optional[str] = Query(None),
    days: int = Query(30, ge=1, le=365),
    limit: int = Query(100, ge=1, le=1000),
):
    costs = get_runtime(request).engine.costs
    if view == "session":
        return await costs.by_session(project, limit)
    if view == "daily":
        return await costs.daily(days, now_ms())
    start_ms, end_ms = _range(start, end)
    rows = await costs.by_project(start_ms, end_ms)
    if project:
        rows = [r for r in rows if r["project_name"] == project]
    return rows


@analytics_router.get("/metrics")
async def get_metrics(
    request: Request,
    project: Optional[str] = Query(None),
    session_id: Optional[str] = Query(None),
    source_app: Optional[str] = Query(None),
    start: Optional[str] = Query(None),
    end: Optional[str] = Query(None),
):
    metrics = get_runtime(request).metrics
    start_ms, end_ms = _range(start, end)
    if session_id:
        result = await metrics.session_metrics(session_id, source_app or project or "", start_ms, end_ms)
        if result is None:
            raise HTTPException(status_code=404, detail=f"No events for session {session_id}")
        return result
    return {
        "projects": await metrics.project_metrics(project, start_ms, end_ms),
        "sessions": await metrics.sessions_for_project(project, start_ms, end_ms),
    }


@analytics_router.get("/conflicts")
async def get_conflicts(request: Request, window: int = Query(30, ge=1, le=1440, description="Window in minutes")):
    return await get_runtime(request).engine.conflicts.active_conflicts(now_ms(), window)


@analytics_router.post("/conflicts/{conflict_id:path}/dismiss")
async def dismiss_conflict(conflict_id: str, request: Request):
    runtime = get_runtime(request)
    await runtime.engine.conflicts.dismiss(conflict_id, now_ms())
    if len(runtime.broadcaster):
        await runtime.broadcaster.send("conflicts", await runtime.engine.conflicts.active_conflicts(now_ms()))
    return {"dismissed": conflict_id}


@analytics_router.get("/alerts")
async def get_alerts(request: Request):
    return await get_runtime(request).alerts.check(now_ms())


@analytics_router.get("/search")
async def search(
    request: Request,
    q: str = Query(""),
    type: str = Query("all"),
    limit: int = Query(20),
):
    try:
        return await get_runtime(request).search.search(q, type, limit)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from None


@analytics_router.get("/analytics/heatmap")
async def get_heatmap(request: Request, days: int = Query(30), project: Optional[str] = Query(None)):
    try:
        return await get_runtime(request).search.heatmap(days, project)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from None


@analytics_router.get("/export/report", response_class=HTMLResponse)
async def export_report(request: Request, project: Optional[str] = Query(None)):
    html = await get_runtime(request).reports.html_report(project)
    filename = f"agentpulse-report-{_FILENAME_UNSAFE.sub('-', project or 'all')}.html"
    return HTMLResponse(content=html, headers={"Content-Disposition": f'inline; filename="{filename}"'})

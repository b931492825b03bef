"""Projects, sessions, dev logs and agent topology."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from agentpulse.runtime import get_runtime

projects_router = APIRouter(prefix="/api/projects", tags=["projects"])
sessions_router = APIRouter(prefix="/api/sessions", tags=["sessions"])
devlogs_router = APIRouter(prefix="/api/devlogs", tags=["devlogs"])
topology_router = APIRouter(prefix="/api/topology", tags=["topology"])


@projects_router.get("")
async def list_projects(request: Request):
    return await get_runtime(request).engine.list_projects()


@projects_router.get("/{name}")
async def get_project(name: str, request: Request):
    detail = await get_runtime(request).engine.project_detail(name)
    if detail is None:
        raise HTTPException(status_code=404, detail=f"Project not found: {name}")
    return detail


@sessions_router.get("")
async def list_active_sessions(request: Request):
    """Active, idle and waiting sessions plus those stopped in the last 30 minutes."""
    return await get_runtime(request).engine.active_sessions()


@sessions_router.get("/{session_id}/events")
async def get_session_events(
    session_id: str,
    request: Request,
    source_app: Optional[str] = Query(None, description="Disambiguate a session id reused across apps"),
):
    engine = get_runtime(request).engine
    events = await engine.events.list_by_session_id(session_id, source_app)
    return [e.model_dump() for e in events]


@devlogs_router.get("")
async def list_dev_logs(
    request: Request,
    project: Optional[str] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=500),
):
    return await get_runtime(request).engine.list_dev_logs(project, limit)


@topology_router.get("")
async def get_topology(request: Request, project: Optional[str] = Query(None)):
    return await get_runtime(request).engine.topology.tree(project)

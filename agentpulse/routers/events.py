"""Hook event ingestion and raw event queries."""
from __future__ import annotations

import json

from fastapi import APIRouter, HTTPException, Query, Request

from agentpulse import config
from agentpulse.db.repositories.events import SqliteEventRepository
from agentpulse.runtime import get_runtime
from agentpulse.services.ingest import EventValidationError, validate_event

events_router = APIRouter(prefix="/events", tags=["events"])


@events_router.post("")
async def receive_event(request: Request):
    """Accept one hook event. Only a failure to store it produces a 5xx."""
    runtime = get_runtime(request)
    body = await request.body()
    if len(body) > config.MAX_EVENT_BYTES:
        raise HTTPException(status_code=413, detail=f"Event body exceeds {config.MAX_EVENT_BYTES} bytes")
    try:
        data = json.loads(body or b"null")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON") from None
    try:
        event = validate_event(data, len(body))
    except EventValidationError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from None
    stored = await runtime.ingest.ingest(event)
    return stored.model_dump()


@events_router.get("/recent")
async def get_recent_events(request: Request, limit: int = Query(config.RECENT_EVENTS_LIMIT, ge=1, le=1000)):
    runtime = get_runtime(request)
    events = await SqliteEventRepository(runtime.db).list_recent(limit)
    return [e.model_dump() for e in events]


@events_router.get("/filter-options")
async def get_filter_options(request: Request):
    runtime = get_runtime(request)
    return await SqliteEventRepository(runtime.db).filter_options()

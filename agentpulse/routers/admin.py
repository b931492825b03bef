"""Retention settings, manual cleanup and store statistics."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from agentpulse.models import RetentionSettingsUpdate
from agentpulse.runtime import get_runtime

admin_router = APIRouter(prefix="/api/admin", tags=["admin"])


@admin_router.get("/stats")
async def get_stats(request: Request):
    runtime = get_runtime(request)
    stats = await runtime.retention.stats()
    stats["websocket_clients"] = len(runtime.broadcaster)
    stats["background"] = {
        "pending": runtime.worker.pending,
        "completed": runtime.worker.completed,
        "failures": runtime.worker.failures,
        "dropped": runtime.worker.dropped,
        "last_error": runtime.worker.last_error,
    }
    stats["last_cleanup_at"] = runtime.scheduler.last_cleanup_at
    return stats


@admin_router.post("/cleanup")
async def run_cleanup(request: Request):
    return await get_runtime(request).scheduler.run_cleanup()


@admin_router.get("/settings")
async def get_settings(request: Request):
    return await get_runtime(request).retention.get_settings()


@admin_router.put("/settings")
async def update_settings(payload: RetentionSettingsUpdate, request: Request):
    try:
        return await get_runtime(request).retention.update_settings(payload.settings)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from None

"""AgentPulse FastAPI Backend: main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from agentpulse import config
from agentpulse.db import connection, sqlite_migrations
from agentpulse.db.repositories.events import SqliteEventRepository
from agentpulse.observability import initialize as initialize_observability, shutdown as shutdown_observability
from agentpulse.routers.admin import admin_router
from agentpulse.routers.analytics import analytics_router
from agentpulse.routers.events import events_router
from agentpulse.routers.projects import devlogs_router, projects_router, sessions_router, topology_router
from agentpulse.routers.webhooks import webhooks_router
from agentpulse.runtime import build_runtime

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("agentpulse")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("AgentPulse backend starting up")
    initialize_observability(app)

    # 1. Initialize DB connection; failures here abort startup
    db = await connection.get_connection()

    # 2. Run migrations
    await sqlite_migrations.run_migrations(db)

    # 3. Services and background loops
    runtime = build_runtime(db)
    app.state.runtime = runtime
    await runtime.worker.start()
    await runtime.scheduler.start()

    yield

    logger.info("AgentPulse backend shutting down")
    await runtime.scheduler.stop()
    await runtime.worker.stop()
    await runtime.worker.drain()
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="AgentPulse API",
    description="Live monitoring backend for coding-agent hook events",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS: allow the Vite dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(events_router)
app.include_router(projects_router)
app.include_router(sessions_router)
app.include_router(devlogs_router)
app.include_router(topology_router)
app.include_router(analytics_router)
app.include_router(webhooks_router)
app.include_router(admin_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    runtime = getattr(app.state, "runtime", None)
    return {
        "status": "ok",
        "db": "connected" if connection.is_connected() else "disconnected",
        "scheduler": "running" if runtime and runtime.scheduler.is_running else "stopped",
        "background_worker": "running" if runtime and runtime.worker.is_running else "stopped",
    }


@app.websocket("/stream")
async def stream(websocket: WebSocket):
    runtime = getattr(websocket.app.state, "runtime", None)
    await websocket.accept()
    if runtime is None:
        await websocket.close(code=1013)
        return
    recent = await SqliteEventRepository(runtime.db).list_recent(config.RECENT_EVENTS_LIMIT)
    await websocket.send_json({"type": "initial", "data": [e.model_dump() for e in recent]})
    runtime.broadcaster.add(websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        runtime.broadcaster.remove(websocket)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("agentpulse.main:app", host=config.HOST, port=config.PORT)

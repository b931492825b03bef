"""Service container attached to ``app.state.runtime``."""
from __future__ import annotations

from dataclasses import dataclass

import aiosqlite
from fastapi import HTTPException, Request

from agentpulse import config
from agentpulse.broadcast import Broadcaster
from agentpulse.db.sweeper import MaintenanceScheduler
from agentpulse.services.alerts import AlertEngine
from agentpulse.services.background import BackgroundWorker
from agentpulse.services.ingest import IngestionService
from agentpulse.services.lifecycle import SessionLifecycleEngine
from agentpulse.services.metrics import PerformanceMetrics
from agentpulse.services.port_scanner import PortScanner
from agentpulse.services.report import ReportService
from agentpulse.services.retention import RetentionService
from agentpulse.services.search import SearchService
from agentpulse.services.summaries import SummaryService
from agentpulse.services.webhooks import WebhookDispatcher


@dataclass
class Runtime:
    db: aiosqlite.Connection
    worker: BackgroundWorker
    broadcaster: Broadcaster
    engine: SessionLifecycleEngine
    webhooks: WebhookDispatcher
    ingest: IngestionService
    alerts: AlertEngine
    metrics: PerformanceMetrics
    summaries: SummaryService
    search: SearchService
    reports: ReportService
    retention: RetentionService
    scheduler: MaintenanceScheduler


def build_runtime(db: aiosqlite.Connection) -> Runtime:
    worker = BackgroundWorker()
    broadcaster = Broadcaster()
    engine = SessionLifecycleEngine(db, worker=worker)
    webhooks = WebhookDispatcher(db, worker)
    alerts = AlertEngine(db)
    retention = RetentionService(db)
    scheduler = MaintenanceScheduler(
        engine,
        alerts,
        retention,
        port_scanner=PortScanner(db) if config.PORT_SCAN_ENABLED else None,
        broadcaster=broadcaster,
        webhooks=webhooks,
    )
    return Runtime(
        db=db,
        worker=worker,
        broadcaster=broadcaster,
        engine=engine,
        webhooks=webhooks,
        ingest=IngestionService(engine, broadcaster, webhooks),
        alerts=alerts,
        metrics=PerformanceMetrics(db),
        summaries=SummaryService(db),
        search=SearchService(db),
        reports=ReportService(db),
        retention=retention,
        scheduler=scheduler,
    )


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Store not initialized")
    return runtime

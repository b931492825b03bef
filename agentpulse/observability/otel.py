"""Telemetry for the ingestion path.

Metrics are exported over OTLP when ``AGENTPULSE_OTEL_ENABLED`` is set and are
also served on a Prometheus scrape port when ``AGENTPULSE_PROM_PORT`` > 0, so a
missing OpenTelemetry SDK still leaves the counters scrapeable. With telemetry
off every ``record_*`` helper is a no-op.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI

from agentpulse import config

logger = logging.getLogger("agentpulse.observability")


@dataclass(frozen=True)
class Metric:
    name: str
    kind: str  # "counter" or "histogram"
    description: str
    labels: tuple[str, ...]
    unit: str = "1"


EVENTS_INGESTED = Metric(
    "agentpulse_events_ingested_total", "counter",
    "Hook events received by type and outcome", ("event_type", "result", "project"),
)
INGESTION_LATENCY = Metric(
    "agentpulse_ingestion_latency_ms", "histogram",
    "Time from receipt to broadcast of a hook event", ("event_type", "project"), unit="ms",
)
ENRICHMENT_FAILURES = Metric(
    "agentpulse_enrichment_failures_total", "counter",
    "Failures while deriving state from stored events", ("stage", "project"),
)
WEBHOOK_DELIVERIES = Metric(
    "agentpulse_webhook_deliveries_total", "counter",
    "Outbound webhook delivery outcomes", ("result",),
)
ESTIMATED_TOKENS = Metric(
    "agentpulse_estimated_tokens_total", "counter",
    "Estimated tokens by model and direction", ("model", "direction", "project"),
)
ESTIMATED_COST = Metric(
    "agentpulse_estimated_cost_usd_total", "counter",
    "Estimated cost by model", ("model", "project"), unit="usd",
)
METRICS = (
    EVENTS_INGESTED,
    INGESTION_LATENCY,
    ENRICHMENT_FAILURES,
    WEBHOOK_DELIVERIES,
    ESTIMATED_TOKENS,
    ESTIMATED_COST,
)


def _label(value: Any) -> str:
    return str(value or "").strip() or "unknown"


class Telemetry:
    """Instruments keyed by metric name, one map per backend."""

    def __init__(self) -> None:
        self.initialized = False
        self.tracer: Any | None = None
        self.instrumentor: Any | None = None
        self.providers: list[Any] = []
        self.otel: dict[str, Any] = {}
        self.prom: dict[str, Any] = {}

    def emit(self, metric: Metric, value: float, labels: dict[str, Any]) -> None:
        values = {key: _label(labels.get(key)) for key in metric.labels}
        instrument = self.otel.get(metric.name)
        if instrument is not None:
            if metric.kind == "counter":
                instrument.add(value, values)
            else:
                instrument.record(value, values)
        collector = self.prom.get(metric.name)
        if collector is not None:
            child = collector.labels(**values)
            if metric.kind == "counter":
                child.inc(value)
            else:
                child.observe(value)


_state = Telemetry()


def _start_otlp(app: FastAPI | None) -> None:
    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("OpenTelemetry SDK unavailable; OTLP export disabled: %s", exc)
        return

    base = config.OTEL_ENDPOINT.rstrip("/")
    resource = Resource.create({"service.name": config.OTEL_SERVICE_NAME, "service.namespace": "agentpulse"})

    tracer_provider = TracerProvider(resource=resource)
    tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{base}/v1/traces")))
    trace.set_tracer_provider(tracer_provider)

    reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=f"{base}/v1/metrics"))
    meter_provider = MeterProvider(resource=resource, metric_readers=[reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("agentpulse")

    for metric in METRICS:
        create = meter.create_counter if metric.kind == "counter" else meter.create_histogram
        _state.otel[metric.name] = create(metric.name, unit=metric.unit, description=metric.description)

    _state.tracer = trace.get_tracer("agentpulse")
    _state.providers = [meter_provider, tracer_provider]
    _state.instrumentor = FastAPIInstrumentor()
    if app is not None:
        _state.instrumentor.instrument_app(app)
    logger.info("OTLP export to %s (service=%s)", base, config.OTEL_SERVICE_NAME)


def _start_prometheus() -> None:
    if config.PROM_PORT <= 0:
        return
    try:
        from prometheus_client import Counter, Histogram, start_http_server
    except ImportError as exc:
        logger.warning("prometheus_client unavailable; scrape port disabled: %s", exc)
        return
    try:
        start_http_server(config.PROM_PORT)
    except OSError as exc:
        logger.warning("Prometheus port %s unavailable: %s", config.PROM_PORT, exc)
        return
    for metric in METRICS:
        collector = Counter if metric.kind == "counter" else Histogram
        _state.prom[metric.name] = collector(metric.name, metric.description, list(metric.labels))
    logger.info("Prometheus metrics on port %s", config.PROM_PORT)


def initialize(app: FastAPI | None = None) -> None:
    if _state.initialized:
        if app is not None and _state.instrumentor is not None:
            _state.instrumentor.instrument_app(app)
        return
    _state.initialized = True
    if not config.OTEL_ENABLED:
        logger.info("Telemetry disabled (AGENTPULSE_OTEL_ENABLED=false)")
        return
    _start_otlp(app)
    _start_prometheus()


def shutdown(app: FastAPI | None = None) -> None:
    if app is not None and _state.instrumentor is not None:
        try:
            _state.instrumentor.uninstrument_app(app)
        except Exception as exc:  # noqa: BLE001
            logger.debug("FastAPI uninstrument failed: %s", exc)
    for provider in _state.providers:
        try:
            provider.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Telemetry provider shutdown failed: %s", exc)
    _state.providers = []
    _state.otel.clear()
    _state.tracer = None


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if _state.tracer is None:
        yield None
        return
    with _state.tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def record_ingestion(event_type: str, result: str, duration_ms: float, *, project: str) -> None:
    _state.emit(EVENTS_INGESTED, 1, {"event_type": event_type, "result": result, "project": project})
    _state.emit(INGESTION_LATENCY, max(0.0, float(duration_ms)), {"event_type": event_type, "project": project})


def record_enrichment_failure(stage: str, project: str) -> None:
    _state.emit(ENRICHMENT_FAILURES, 1, {"stage": stage, "project": project})


def record_webhook_delivery(result: str) -> None:
    _state.emit(WEBHOOK_DELIVERIES, 1, {"result": result})


def record_token_cost(*, project: str, model: str, token_input: int, token_output: int, cost_usd: float) -> None:
    for direction, count in (("input", token_input), ("output", token_output)):
        if count > 0:
            _state.emit(ESTIMATED_TOKENS, int(count), {"model": model, "direction": direction, "project": project})
    if cost_usd > 0:
        _state.emit(ESTIMATED_COST, float(cost_usd), {"model": model, "project": project})

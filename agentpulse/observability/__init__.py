"""Observability helpers."""

from agentpulse.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_ingestion,
    record_enrichment_failure,
    record_webhook_delivery,
    record_token_cost,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_ingestion",
    "record_enrichment_failure",
    "record_webhook_delivery",
    "record_token_cost",
]

"""AgentPulse Backend Configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default

# Project root (one level up from agentpulse/)
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Database
DB_PATH = Path(os.getenv("AGENTPULSE_DB_PATH", str(PROJECT_ROOT / "data" / "agentpulse.db")))

# Ingestion
MAX_EVENT_BYTES = _env_int("AGENTPULSE_MAX_EVENT_BYTES", 5 * 1024 * 1024)
RECENT_EVENTS_LIMIT = _env_int("AGENTPULSE_RECENT_EVENTS_LIMIT", 300)

# Session lifecycle
IDLE_AFTER_SECONDS = _env_int("AGENTPULSE_IDLE_AFTER_SECONDS", 120)
STOP_AFTER_SECONDS = _env_int("AGENTPULSE_STOP_AFTER_SECONDS", 600)
HEALTH_THROTTLE_SECONDS = _env_int("AGENTPULSE_HEALTH_THROTTLE_SECONDS", 30)
BRANCH_CACHE_TTL_SECONDS = _env_int("AGENTPULSE_BRANCH_CACHE_TTL_SECONDS", 15)
BRANCH_CACHE_SIZE = _env_int("AGENTPULSE_BRANCH_CACHE_SIZE", 50)
DEV_NOTES_ENABLED = _env_bool("AGENTPULSE_DEV_NOTES_ENABLED", True)

# Background timers
SWEEP_INTERVAL_SECONDS = _env_int("AGENTPULSE_SWEEP_INTERVAL_SECONDS", 30)
CLEANUP_INTERVAL_SECONDS = _env_int("AGENTPULSE_CLEANUP_INTERVAL_SECONDS", 3600)
PORT_SCAN_INTERVAL_SECONDS = _env_int("AGENTPULSE_PORT_SCAN_INTERVAL_SECONDS", 60)
PORT_SCAN_ENABLED = _env_bool("AGENTPULSE_PORT_SCAN_ENABLED", True)

# Conflict dismissals and file-access rows share one expiry window
CONFLICT_RETENTION_HOURS = _env_int("AGENTPULSE_CONFLICT_RETENTION_HOURS", 24)

# Webhooks
WEBHOOK_TIMEOUT_SECONDS = _env_int("AGENTPULSE_WEBHOOK_TIMEOUT_SECONDS", 5)
WEBHOOK_USER_AGENT = os.getenv("AGENTPULSE_WEBHOOK_USER_AGENT", "AgentPulse-Webhook/1.0")

# WebSocket broadcast
BROADCAST_SEND_TIMEOUT_SECONDS = _env_int("AGENTPULSE_BROADCAST_SEND_TIMEOUT_SECONDS", 2)

# Observability
OTEL_ENABLED = _env_bool("AGENTPULSE_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("AGENTPULSE_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("AGENTPULSE_OTEL_SERVICE_NAME", "agentpulse-backend")
PROM_PORT = _env_int("AGENTPULSE_PROM_PORT", 9464)

# Server settings
HOST = os.getenv("AGENTPULSE_HOST", "0.0.0.0")
PORT = int(os.getenv("AGENTPULSE_PORT", "4000"))

# CORS
FRONTEND_ORIGIN = os.getenv("AGENTPULSE_FRONTEND_ORIGIN", "http://localhost:5173")

"""Repository package for database access."""

from .sessions import SqliteSessionRepository
from .projects import SqliteProjectRepository
from .events import SqliteEventRepository
from .dev_logs import SqliteDevLogRepository
from .topology import SqliteTopologyRepository
from .costs import SqliteCostRepository
from .file_access import SqliteFileAccessRepository
from .webhooks import SqliteWebhookRepository
from .settings import SqliteSettingsRepository

__all__ = [
    "SqliteSessionRepository",
    "SqliteProjectRepository",
    "SqliteEventRepository",
    "SqliteDevLogRepository",
    "SqliteTopologyRepository",
    "SqliteCostRepository",
    "SqliteFileAccessRepository",
    "SqliteWebhookRepository",
    "SqliteSettingsRepository",
]

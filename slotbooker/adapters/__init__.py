"""
Adapters for configuration-backed policies, booking storage and notifications.
"""

from .config_store import ConfigPolicyStore
from .locks import ProviderLocks
from .memory_repository import InMemoryBookingRepository
from .notifiers import LoggingNotifier, WebhookNotifier
from .sqlite_repository import SqliteBookingRepository

__all__ = [
    "ConfigPolicyStore",
    "InMemoryBookingRepository",
    "LoggingNotifier",
    "ProviderLocks",
    "SqliteBookingRepository",
    "WebhookNotifier",
]

"""
Wiring of configuration, stores and notifier into a ready-to-use service.
"""

import logging

from .adapters.config_store import ConfigPolicyStore
from .adapters.memory_repository import InMemoryBookingRepository
from .adapters.notifiers import LoggingNotifier, WebhookNotifier
from .adapters.sqlite_repository import SqliteBookingRepository
from .config import AppConfig
from .services.booking_service import BookingService

logger = logging.getLogger(__name__)


def build_booking_service(config: AppConfig) -> BookingService:
    """
    Build a BookingService from configuration.

    A configured ``store.path`` selects the SQLite repository, otherwise
    bookings live in memory. A ``notifications.webhook_url`` selects the
    webhook notifier, otherwise events are only logged.
    """
    policy_store = ConfigPolicyStore(config)

    if config.store.path is not None:
        repository = SqliteBookingRepository(
            config.store.path,
            timezone=config.timezone,
            timeout=config.store.timeout_seconds,
        )
        logger.debug("Using SQLite booking store at %s", config.store.path)
    else:
        repository = InMemoryBookingRepository()
        logger.debug("Using in-memory booking store")

    if config.notifications.webhook_url:
        notifier = WebhookNotifier(
            config.notifications.webhook_url,
            timeout=config.notifications.timeout_seconds,
        )
    else:
        notifier = LoggingNotifier()

    return BookingService(
        policy_store,
        repository,
        config.timezone,
        notifier=notifier,
        store_timeout=config.store.timeout_seconds,
        exact_dates=config.exact_dates,
    )

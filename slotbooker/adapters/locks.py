"""
Keyed, timeout-bounded mutual exclusion: one lock per provider.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator

from ..domain.exceptions import TransientStoreError

logger = logging.getLogger(__name__)


class ProviderLocks:
    """
    Serializes admissions per provider while unrelated providers proceed in
    parallel. Locks are created lazily and never removed.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, provider_id: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks.setdefault(provider_id, threading.Lock())

    @contextmanager
    def hold(self, provider_id: str, timeout: float) -> Iterator[None]:
        """
        Hold the provider's lock for the duration of the block.

        Raises:
            TransientStoreError: If the lock is not acquired within ``timeout`` seconds
        """
        lock = self._lock_for(provider_id)
        if not lock.acquire(timeout=timeout):
            logger.warning(
                "Timed out after %.1fs waiting for the admission lock of provider %s",
                timeout, provider_id,
            )
            raise TransientStoreError(
                f"Provider {provider_id} is busy, please retry the request"
            )
        try:
            yield
        finally:
            lock.release()

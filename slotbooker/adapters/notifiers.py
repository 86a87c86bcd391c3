"""
Notification dispatchers for committed booking changes.

Delivery is fire-and-forget: failures are logged and never reach the booking
flow.
"""

import logging
import threading
from typing import Any, Dict, Optional

import requests

from ..domain.models import Booking

logger = logging.getLogger(__name__)


class LoggingNotifier:
    """Writes booking events to the log; the default when no webhook is configured."""

    def dispatch(self, event: str, booking: Booking) -> None:
        logger.info(
            "%s: %s (%s with %s at %s)",
            event,
            booking.confirmation_code,
            booking.service_name,
            booking.provider_name,
            booking.start.isoformat(),
        )


class WebhookNotifier:
    """
    Posts booking events as JSON to an HTTP endpoint.

    Payload format:
    {
        "event": "booking.confirmed",
        "booking": {"id": "...", "confirmation_code": "K7MQ2X", ...}
    }
    """

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
        background: bool = True,
    ):
        """
        Initialize the notifier.

        Args:
            url: Endpoint receiving the events
            timeout: Per-request timeout in seconds
            session: Optional requests session (connection reuse, testing)
            background: Deliver on a daemon thread instead of the caller's thread
        """
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.background = background

    def dispatch(self, event: str, booking: Booking) -> None:
        payload = {"event": event, "booking": booking.to_dict()}

        if self.background:
            threading.Thread(
                target=self._post,
                args=(payload,),
                name=f"webhook-{booking.confirmation_code}",
                daemon=True,
            ).start()
        else:
            self._post(payload)

    def _post(self, payload: Dict[str, Any]) -> bool:
        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.warning(
                "Webhook delivery of %s for booking %s failed: %s",
                payload["event"], payload["booking"]["confirmation_code"], e,
            )
            return False

        logger.debug("Delivered %s to %s", payload["event"], self.url)
        return True

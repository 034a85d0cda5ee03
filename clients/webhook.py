"""Workflow webhook notifier (Make.com scenarios)."""
import logging
from typing import Any, Optional

import requests

logger = logging.getLogger(__name__)


class WebhookNotifier:
    """
    POST JSON payloads to a fixed webhook URL.

    Delivery is at-most-once: a failed call is logged and reported through
    the return value, never retried, and never undoes work already written
    to Airtable.
    """

    def __init__(self, url: str, *, session: Optional[requests.Session] = None, timeout: int = 30):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def notify(self, payload: Any) -> bool:
        """
        Send one payload.

        Args:
            payload: JSON-serializable object (flat dict or list of dicts)

        Returns:
            True if the webhook answered with a 2xx status
        """
        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Webhook call failed: {e}")
            return False

        if not response.ok:
            logger.warning(
                f"Webhook returned {response.status_code} {response.reason}: {response.text}"
            )
            return False
        return True

"""Transactional email over an OAuth client-credentials API (Microsoft Graph shape)."""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

import requests

from clients.http_retry import request_with_retry
from config import get_env, require_env

logger = logging.getLogger(__name__)

EMAIL_RETRY_STATUSES = (429, 503, 504)
DEFAULT_SCOPE = "https://graph.microsoft.com/.default"
TOKEN_EXPIRY_MARGIN = 60


@dataclass(frozen=True)
class EmailConfig:
    token_url: str
    client_id: str
    client_secret: str
    send_url: str
    scope: str = DEFAULT_SCOPE

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> Optional["EmailConfig"]:
        """Build from EMAIL_* variables; None when EMAIL_CLIENT_ID is unset."""
        if not get_env(environ, "EMAIL_CLIENT_ID"):
            return None
        tenant = get_env(environ, "EMAIL_TENANT_ID")
        sender = get_env(environ, "EMAIL_SENDER")
        token_url = get_env(environ, "EMAIL_TOKEN_URL") or (
            f"https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token" if tenant else ""
        )
        send_url = get_env(environ, "EMAIL_SEND_URL") or (
            f"https://graph.microsoft.com/v1.0/users/{sender}/sendMail" if sender else ""
        )
        return cls(
            token_url=token_url or require_env(environ, "EMAIL_TOKEN_URL"),
            client_id=require_env(environ, "EMAIL_CLIENT_ID"),
            client_secret=require_env(environ, "EMAIL_CLIENT_SECRET"),
            send_url=send_url or require_env(environ, "EMAIL_SEND_URL"),
            scope=get_env(environ, "EMAIL_SCOPE", DEFAULT_SCOPE),
        )


class EmailClient:
    """Fetches an app token and sends HTML mail, retrying throttled calls."""

    def __init__(
        self,
        config: EmailConfig,
        *,
        session: Optional[requests.Session] = None,
        timeout: int = 30,
        max_attempts: int = 5,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.timeout = timeout
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._clock = clock
        self.session = session or requests.Session()
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def _access_token(self) -> str:
        if self._token and self._clock() < self._token_expires_at:
            return self._token

        response = request_with_retry(
            self.session,
            "POST",
            self.config.token_url,
            max_attempts=self.max_attempts,
            retry_statuses=EMAIL_RETRY_STATUSES,
            sleep=self._sleep,
            data={
                "grant_type": "client_credentials",
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "scope": self.config.scope,
            },
            timeout=self.timeout,
        )
        body = response.json()
        self._token = body["access_token"]
        expires_in = int(body.get("expires_in", 3600))
        self._token_expires_at = self._clock() + max(expires_in - TOKEN_EXPIRY_MARGIN, 0)
        logger.debug("Obtained email API access token")
        return self._token

    def send(self, to: str, subject: str, html_body: str, *, reply_to: Optional[str] = None) -> None:
        """
        Send one HTML message.

        Raises:
            HttpStatusError: On a non-retryable API error
            RetriesExceededError: When throttling outlasts max_attempts
        """
        message = {
            "subject": subject,
            "body": {"contentType": "HTML", "content": html_body},
            "toRecipients": [{"emailAddress": {"address": to}}],
        }
        if reply_to:
            message["replyTo"] = [{"emailAddress": {"address": reply_to}}]

        request_with_retry(
            self.session,
            "POST",
            self.config.send_url,
            max_attempts=self.max_attempts,
            retry_statuses=EMAIL_RETRY_STATUSES,
            sleep=self._sleep,
            json={"message": message, "saveToSentItems": False},
            headers={"Authorization": f"Bearer {self._access_token()}"},
            timeout=self.timeout,
        )
        logger.info(f"Sent email to {to}")

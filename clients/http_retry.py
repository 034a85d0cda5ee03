"""HTTP helpers with bounded retry for rate-limited APIs."""
import logging
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Iterable, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_FALLBACK_DELAY = 2.0


class HttpStatusError(Exception):
    """Non-retryable HTTP error status from an upstream API."""

    def __init__(self, status: int, body: str, url: str = "", method: str = "GET"):
        self.status = status
        self.body = body
        self.url = url
        self.method = method
        super().__init__(f"HTTP {status} for {method} {url}: {body}")


class RetriesExceededError(Exception):
    """The upstream kept answering with a retryable status."""

    def __init__(self, max_attempts: int, url: str, last_status: int):
        self.max_attempts = max_attempts
        self.url = url
        self.last_status = last_status
        super().__init__(
            f"Exceeded max retries ({max_attempts}) for {url} "
            f"after repeated {last_status} responses"
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_retry_after(
    value: Optional[str],
    *,
    fallback: float = DEFAULT_FALLBACK_DELAY,
    now: Callable[[], datetime] = _utcnow,
) -> float:
    """
    Compute a wait in seconds from a Retry-After header value.

    Args:
        value: Raw header value (seconds or an HTTP date), may be None
        fallback: Delay used when the header is absent, invalid or not positive
        now: Clock used for HTTP-date deltas

    Returns:
        Delay in seconds
    """
    if not value or not value.strip():
        return fallback

    value = value.strip()
    try:
        delay = float(value)
    except ValueError:
        try:
            retry_at = parsedate_to_datetime(value)
        except (TypeError, ValueError, IndexError):
            return fallback
        if retry_at is None:
            return fallback
        if retry_at.tzinfo is None:
            retry_at = retry_at.replace(tzinfo=timezone.utc)
        delay = (retry_at - now()).total_seconds()

    if delay != delay or delay <= 0:  # NaN or already elapsed
        return fallback
    return delay


def raise_for_status(response: requests.Response) -> requests.Response:
    """Raise HttpStatusError carrying the response body for any non-2xx status."""
    if not response.ok:
        method = response.request.method if response.request is not None else "GET"
        raise HttpStatusError(response.status_code, response.text, response.url, method)
    return response


def request_with_retry(
    session: requests.Session,
    method: str,
    url: str,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    retry_statuses: Iterable[int] = (429,),
    fallback_delay: float = DEFAULT_FALLBACK_DELAY,
    sleep: Callable[[float], None] = time.sleep,
    now: Callable[[], datetime] = _utcnow,
    **kwargs,
) -> requests.Response:
    """
    Issue an HTTP request, sleeping and retrying on rate-limit statuses.

    Args:
        session: requests session used for the call
        method: HTTP method
        url: Absolute URL
        max_attempts: Upper bound on the total number of requests
        retry_statuses: Statuses that trigger a wait and another attempt
        fallback_delay: Seconds to wait when Retry-After is unusable
        sleep: Sleep function (injectable for tests)
        now: Clock used for HTTP-date Retry-After values
        **kwargs: Passed through to session.request

    Returns:
        The successful response

    Raises:
        HttpStatusError: On a non-retryable error status
        RetriesExceededError: When every attempt got a retryable status
    """
    retry_statuses = frozenset(retry_statuses)
    last_status = 0

    for attempt in range(1, max_attempts + 1):
        response = session.request(method, url, **kwargs)

        if response.status_code not in retry_statuses:
            return raise_for_status(response)

        last_status = response.status_code
        retry_after = response.headers.get("Retry-After")
        delay = parse_retry_after(retry_after, fallback=fallback_delay, now=now)

        if attempt == max_attempts:
            break

        logger.warning(
            f"Got {response.status_code} for {method} {url}. "
            f"Retry-After={retry_after or 'n/a'}; waiting {delay:.1f}s "
            f"(attempt {attempt}/{max_attempts})",
            extra={'attempt': attempt, 'delay_seconds': round(delay, 3)}
        )
        sleep(delay)

    raise RetriesExceededError(max_attempts, url, last_status)

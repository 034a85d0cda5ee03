"""Unit tests for the rate-limited request helper."""
from datetime import datetime, timezone

import pytest
import requests
import responses

from clients.http_retry import (
    HttpStatusError,
    RetriesExceededError,
    parse_retry_after,
    raise_for_status,
    request_with_retry,
)

URL = "https://api.example.com/things"
FIXED_NOW = datetime(2026, 3, 9, 8, 0, 0, tzinfo=timezone.utc)


class TestParseRetryAfter:
    """Test cases for Retry-After parsing."""

    def test_seconds(self):
        assert parse_retry_after("3") == 3.0

    def test_fractional_seconds(self):
        assert parse_retry_after("1.5") == 1.5

    def test_http_date(self):
        delay = parse_retry_after("Mon, 09 Mar 2026 08:00:05 GMT", now=lambda: FIXED_NOW)
        assert delay == 5.0

    def test_missing_header_uses_fallback(self):
        assert parse_retry_after(None) == 2.0
        assert parse_retry_after("   ") == 2.0
        assert parse_retry_after(None, fallback=7.0) == 7.0

    def test_garbage_uses_fallback(self):
        assert parse_retry_after("soon") == 2.0

    def test_non_positive_uses_fallback(self):
        assert parse_retry_after("0") == 2.0
        assert parse_retry_after("-4") == 2.0

    def test_date_in_the_past_uses_fallback(self):
        delay = parse_retry_after("Mon, 09 Mar 2026 07:59:00 GMT", now=lambda: FIXED_NOW)
        assert delay == 2.0


class TestRequestWithRetry:
    """Test cases for request_with_retry."""

    @responses.activate
    def test_success_first_try(self):
        responses.add(responses.GET, URL, json={"ok": True}, status=200)
        sleeps = []

        response = request_with_retry(requests.Session(), "GET", URL, sleep=sleeps.append)

        assert response.json() == {"ok": True}
        assert sleeps == []
        assert len(responses.calls) == 1

    @responses.activate
    def test_retries_429_honouring_retry_after(self):
        responses.add(responses.GET, URL, status=429, headers={"Retry-After": "3"})
        responses.add(responses.GET, URL, json={"ok": True}, status=200)
        sleeps = []

        response = request_with_retry(requests.Session(), "GET", URL, sleep=sleeps.append)

        assert response.status_code == 200
        assert sleeps == [3.0]
        assert len(responses.calls) == 2

    @responses.activate
    def test_gives_up_after_max_attempts(self):
        responses.add(responses.GET, URL, status=429)
        sleeps = []

        with pytest.raises(RetriesExceededError) as exc_info:
            request_with_retry(
                requests.Session(), "GET", URL, max_attempts=3, sleep=sleeps.append
            )

        assert exc_info.value.max_attempts == 3
        assert exc_info.value.last_status == 429
        assert "Exceeded max retries (3)" in str(exc_info.value)
        assert len(responses.calls) == 3
        # no sleep after the final attempt
        assert sleeps == [2.0, 2.0]

    @responses.activate
    def test_non_retryable_status_raises_immediately(self):
        responses.add(responses.GET, URL, body="not here", status=404)
        sleeps = []

        with pytest.raises(HttpStatusError) as exc_info:
            request_with_retry(requests.Session(), "GET", URL, sleep=sleeps.append)

        assert exc_info.value.status == 404
        assert exc_info.value.body == "not here"
        assert sleeps == []
        assert len(responses.calls) == 1

    @responses.activate
    def test_server_error_not_retried_by_default(self):
        responses.add(responses.POST, URL, status=500)

        with pytest.raises(HttpStatusError) as exc_info:
            request_with_retry(requests.Session(), "POST", URL, sleep=lambda s: None)

        assert exc_info.value.method == "POST"
        assert len(responses.calls) == 1

    @responses.activate
    def test_custom_retry_statuses(self):
        responses.add(responses.GET, URL, status=503, headers={"Retry-After": "1"})
        responses.add(responses.GET, URL, json={}, status=200)
        sleeps = []

        request_with_retry(
            requests.Session(), "GET", URL, retry_statuses=(503,), sleep=sleeps.append
        )

        assert sleeps == [1.0]

    @responses.activate
    def test_kwargs_are_passed_through(self):
        responses.add(responses.GET, URL, json={}, status=200)

        request_with_retry(requests.Session(), "GET", URL, params={"page": 2}, timeout=5)

        assert "page=2" in responses.calls[0].request.url


class TestRaiseForStatus:
    """Test cases for raise_for_status."""

    @responses.activate
    def test_ok_response_is_returned(self):
        responses.add(responses.GET, URL, json={}, status=200)
        response = requests.get(URL)
        assert raise_for_status(response) is response

    @responses.activate
    def test_error_carries_body(self):
        responses.add(responses.GET, URL, body='{"error": "INVALID_FILTER"}', status=422)
        response = requests.get(URL)

        with pytest.raises(HttpStatusError) as exc_info:
            raise_for_status(response)

        assert exc_info.value.status == 422
        assert "INVALID_FILTER" in str(exc_info.value)

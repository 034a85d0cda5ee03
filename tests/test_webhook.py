"""Unit tests for the webhook notifier."""
import json

import requests
import responses

from clients.webhook import WebhookNotifier

HOOK_URL = "https://hook.us1.make.com/abc123"


class TestWebhookNotifier:
    """Test cases for WebhookNotifier."""

    @responses.activate
    def test_posts_json(self):
        responses.add(responses.POST, HOOK_URL, body="Accepted", status=200)

        assert WebhookNotifier(HOOK_URL).notify({"email": "a@b.co"}) is True
        assert json.loads(responses.calls[0].request.body) == {"email": "a@b.co"}

    @responses.activate
    def test_posts_list_payload(self):
        responses.add(responses.POST, HOOK_URL, status=200)

        WebhookNotifier(HOOK_URL).notify([{"reservationId": "1"}, {"reservationId": "2"}])

        assert len(json.loads(responses.calls[0].request.body)) == 2

    @responses.activate
    def test_error_status_is_reported_not_raised(self):
        responses.add(responses.POST, HOOK_URL, body="Scenario is off", status=410)

        assert WebhookNotifier(HOOK_URL).notify({}) is False
        assert len(responses.calls) == 1

    @responses.activate
    def test_network_error_is_reported_not_raised(self):
        responses.add(responses.POST, HOOK_URL, body=requests.ConnectionError("connection reset"))

        assert WebhookNotifier(HOOK_URL).notify({}) is False

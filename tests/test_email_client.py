"""Unit tests for the email client."""
import json
from urllib.parse import parse_qs

import pytest
import responses

from clients.email_client import EmailClient, EmailConfig
from clients.http_retry import HttpStatusError
from config import ConfigError

TOKEN_URL = "https://login.example.com/token"
SEND_URL = "https://mail.example.com/send"


@pytest.fixture
def email_config():
    return EmailConfig(
        token_url=TOKEN_URL,
        client_id="client",
        client_secret="secret",
        send_url=SEND_URL,
    )


class TestEmailConfig:
    """Test cases for EmailConfig.from_env."""

    def test_none_without_client_id(self):
        assert EmailConfig.from_env({}) is None

    def test_graph_urls_from_tenant_and_sender(self):
        config = EmailConfig.from_env({
            "EMAIL_CLIENT_ID": "client",
            "EMAIL_CLIENT_SECRET": "secret",
            "EMAIL_TENANT_ID": "tenant-1",
            "EMAIL_SENDER": "studio@example.com",
        })

        assert config.token_url == "https://login.microsoftonline.com/tenant-1/oauth2/v2.0/token"
        assert config.send_url == "https://graph.microsoft.com/v1.0/users/studio@example.com/sendMail"
        assert config.scope == "https://graph.microsoft.com/.default"

    def test_explicit_urls(self):
        config = EmailConfig.from_env({
            "EMAIL_CLIENT_ID": "client",
            "EMAIL_CLIENT_SECRET": "secret",
            "EMAIL_TOKEN_URL": TOKEN_URL,
            "EMAIL_SEND_URL": SEND_URL,
        })

        assert config.token_url == TOKEN_URL
        assert config.send_url == SEND_URL

    def test_missing_secret(self):
        with pytest.raises(ConfigError, match="EMAIL_CLIENT_SECRET"):
            EmailConfig.from_env({
                "EMAIL_CLIENT_ID": "client",
                "EMAIL_TOKEN_URL": TOKEN_URL,
                "EMAIL_SEND_URL": SEND_URL,
            })


class TestEmailClient:
    """Test cases for EmailClient.send."""

    @responses.activate
    def test_send_fetches_token_then_mails(self, email_config):
        responses.add(responses.POST, TOKEN_URL, json={"access_token": "tok1", "expires_in": 3600})
        responses.add(responses.POST, SEND_URL, status=202)

        EmailClient(email_config).send("rider@example.com", "Reminder", "<p>Hi</p>", reply_to="dt@example.com")

        token_form = parse_qs(responses.calls[0].request.body)
        assert token_form["grant_type"] == ["client_credentials"]
        assert token_form["client_id"] == ["client"]

        send_request = responses.calls[1].request
        assert send_request.headers["Authorization"] == "Bearer tok1"
        message = json.loads(send_request.body)["message"]
        assert message["subject"] == "Reminder"
        assert message["body"] == {"contentType": "HTML", "content": "<p>Hi</p>"}
        assert message["toRecipients"] == [{"emailAddress": {"address": "rider@example.com"}}]
        assert message["replyTo"] == [{"emailAddress": {"address": "dt@example.com"}}]

    @responses.activate
    def test_token_is_cached(self, email_config):
        responses.add(responses.POST, TOKEN_URL, json={"access_token": "tok1", "expires_in": 3600})
        responses.add(responses.POST, SEND_URL, status=202)
        client = EmailClient(email_config, clock=lambda: 1000.0)

        client.send("a@example.com", "s", "b")
        client.send("b@example.com", "s", "b")

        token_calls = [c for c in responses.calls if c.request.url == TOKEN_URL]
        assert len(token_calls) == 1

    @responses.activate
    def test_expired_token_is_refreshed(self, email_config):
        responses.add(responses.POST, TOKEN_URL, json={"access_token": "tok1", "expires_in": 120})
        responses.add(responses.POST, TOKEN_URL, json={"access_token": "tok2", "expires_in": 120})
        responses.add(responses.POST, SEND_URL, status=202)
        now = [1000.0]
        client = EmailClient(email_config, clock=lambda: now[0])

        client.send("a@example.com", "s", "b")
        now[0] += 61
        client.send("a@example.com", "s", "b")

        send_calls = [c for c in responses.calls if c.request.url == SEND_URL]
        assert send_calls[1].request.headers["Authorization"] == "Bearer tok2"

    @responses.activate
    def test_throttled_send_is_retried(self, email_config):
        responses.add(responses.POST, TOKEN_URL, json={"access_token": "tok1"})
        responses.add(responses.POST, SEND_URL, status=429, headers={"Retry-After": "2"})
        responses.add(responses.POST, SEND_URL, status=202)
        sleeps = []

        EmailClient(email_config, sleep=sleeps.append).send("a@example.com", "s", "b")

        assert sleeps == [2.0]

    @responses.activate
    def test_rejected_send_raises(self, email_config):
        responses.add(responses.POST, TOKEN_URL, json={"access_token": "tok1"})
        responses.add(responses.POST, SEND_URL, status=400, json={"error": "ErrorInvalidRecipients"})

        with pytest.raises(HttpStatusError):
            EmailClient(email_config).send("not-an-address", "s", "b")

"""Tests for the SendGrid and Twilio transports over a mocked HTTP layer"""

import json

import httpx
import pytest

from studioflow.services.email_service import SendGridEmailSender, classify_status
from studioflow.services.sms_service import TwilioSmsSender, normalize_phone


def mock_client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def sendgrid(handler, **overrides):
    options = {
        "api_key": "SG.test",
        "from_email": "studio@example.com",
        "base_url": "https://sendgrid.test/v3",
        "client": mock_client(handler),
    }
    options.update(overrides)
    return SendGridEmailSender(**options)


def twilio(handler, **overrides):
    options = {
        "account_sid": "AC123",
        "api_key": "SK123",
        "api_key_secret": "secret",
        "from_number": "+15550000000",
        "base_url": "https://twilio.test/2010-04-01",
        "client": mock_client(handler),
    }
    options.update(overrides)
    return TwilioSmsSender(**options)


@pytest.mark.parametrize("status_code,retryable", [
    (400, False), (401, False), (404, False), (429, True), (500, True), (503, True),
])
def test_classify_status(status_code, retryable):
    assert classify_status(status_code) is retryable


class TestSendGrid:

    def test_accepted_message(self):
        captured = {}

        def handler(request):
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["Authorization"]
            captured["payload"] = json.loads(request.content)
            return httpx.Response(202, headers={"X-Message-Id": "msg-42"})

        result = sendgrid(handler).send(
            "ana@example.com", "Hi Ana", "<p>Hi</p>", "Hi", from_name="Lumen Studio", reply_to="owner@example.com"
        )

        assert result.success is True
        assert result.provider_message_id == "msg-42"
        assert captured["url"] == "https://sendgrid.test/v3/mail/send"
        assert captured["auth"] == "Bearer SG.test"
        payload = captured["payload"]
        assert payload["personalizations"] == [{"to": [{"email": "ana@example.com"}]}]
        assert payload["from"] == {"email": "studio@example.com", "name": "Lumen Studio"}
        assert payload["reply_to"] == {"email": "owner@example.com"}
        assert [c["type"] for c in payload["content"]] == ["text/plain", "text/html"]

    def test_client_error_is_permanent(self):
        result = sendgrid(lambda request: httpx.Response(400, text="bad address")).send(
            "ana@example.com", "Hi", None, "Hi"
        )

        assert result.success is False
        assert result.retryable is False
        assert result.error == "SendGrid error 400: bad address"

    @pytest.mark.parametrize("status_code", [429, 503])
    def test_throttling_and_outages_are_retryable(self, status_code):
        result = sendgrid(lambda request: httpx.Response(status_code)).send("ana@example.com", "Hi", None, "Hi")

        assert result.success is False
        assert result.retryable is True

    def test_network_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        result = sendgrid(handler).send("ana@example.com", "Hi", None, "Hi")

        assert result.retryable is True
        assert "connection refused" in result.error

    def test_missing_key_is_not_sent(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(202)

        result = sendgrid(handler, api_key="").send("ana@example.com", "Hi", None, "Hi")

        assert result.success is False
        assert result.retryable is True
        assert result.error == "Email transport not configured"
        assert calls == []


class TestTwilio:

    def test_accepted_message(self):
        captured = {}

        def handler(request):
            captured["url"] = str(request.url)
            captured["form"] = dict(httpx.QueryParams(request.content.decode()))
            return httpx.Response(201, json={"sid": "SM123"})

        result = twilio(handler).send("+15551234567", "See you soon")

        assert result.success is True
        assert result.provider_message_id == "SM123"
        assert captured["url"] == "https://twilio.test/2010-04-01/Accounts/AC123/Messages.json"
        assert captured["form"] == {"To": "+15551234567", "From": "+15550000000", "Body": "See you soon"}

    def test_invalid_number_is_permanent(self):
        result = twilio(lambda request: httpx.Response(400, json={"code": 21211})).send("+1555", "Hi")

        assert result.success is False
        assert result.retryable is False

    def test_unconfigured_transport(self):
        sender = twilio(lambda request: httpx.Response(201, json={"sid": "SM1"}), from_number="")

        assert sender.is_configured is False
        result = sender.send("+15551234567", "Hi")
        assert result.success is False
        assert result.error == "SMS transport not configured"


class TestNormalizePhone:

    @pytest.mark.parametrize("raw,expected", [
        ("(555) 123-4567", "+15551234567"),
        ("555.123.4567", "+15551234567"),
        ("1-555-123-4567", "+15551234567"),
        ("+44 20 7946 0958", "+442079460958"),
        ("0044 20 7946 0958", "+442079460958"),
    ])
    def test_valid_numbers(self, raw, expected):
        assert normalize_phone(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "12345", "+0123456789", "call me", "+1234567890123456"])
    def test_invalid_numbers(self, raw):
        assert normalize_phone(raw) is None

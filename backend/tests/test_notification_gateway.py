# Overview: Pytest coverage for the notification gateway adapters.

import json

import httpx
import pytest

from stockroom.services.notification_gateway import (
    LoggingGateway,
    SendGridGateway,
    build_gateway,
)


def _gateway(handler, api_key="SG.test"):
    return SendGridGateway(
        api_key=api_key,
        from_email="noreply@stockroom.local",
        from_name="Stockroom",
        timeout=2.0,
        transport=httpx.MockTransport(handler),
    )


class TestSendGridGateway:
    def test_accepted_send(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(202, headers={"X-Message-Id": "sg-123"})

        result = _gateway(handler).send("order-1", "order_confirmation", "ada@example.com")

        assert result.success is True
        assert result.message_id == "sg-123"
        assert seen["url"] == "https://api.sendgrid.com/v3/mail/send"
        assert seen["auth"] == "Bearer SG.test"
        personalization = seen["body"]["personalizations"][0]
        assert personalization["to"] == [{"email": "ada@example.com"}]
        assert personalization["custom_args"]["order_uuid"] == "order-1"
        assert seen["body"]["subject"] == "Your order is confirmed"

    def test_server_error_is_reported(self):
        result = _gateway(lambda request: httpx.Response(500, text="upstream down")).send(
            "order-1", "order_confirmation", "ada@example.com",
        )
        assert result.success is False
        assert result.error == "HTTP 500: upstream down"
        assert result.timed_out is False

    def test_timeout_is_reported(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        result = _gateway(handler).send("order-1", "order_confirmation", "ada@example.com")
        assert result.success is False
        assert result.timed_out is True

    def test_connection_error_is_reported(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        result = _gateway(handler).send("order-1", "order_confirmation", "ada@example.com")
        assert result.success is False
        assert result.timed_out is False

    def test_missing_api_key(self):
        calls = []
        gateway = _gateway(lambda request: calls.append(request) or httpx.Response(202), api_key=None)
        result = gateway.send("order-1", "order_confirmation", "ada@example.com")

        assert result.success is False
        assert result.error == "Email not configured"
        assert calls == []


class TestBuildGateway:
    def test_log_backend(self):
        gateway = build_gateway({"NOTIFICATION_BACKEND": "log"})
        assert isinstance(gateway, LoggingGateway)
        assert gateway.send("o-1", "order_confirmation", "a@b.co").success is True

    def test_sendgrid_backend(self):
        gateway = build_gateway({
            "NOTIFICATION_BACKEND": "sendgrid",
            "SENDGRID_API_KEY": "SG.key",
            "SENDGRID_FROM_EMAIL": "shop@example.com",
            "NOTIFICATION_TIMEOUT_SECONDS": 3,
        })
        assert isinstance(gateway, SendGridGateway)
        assert gateway.timeout == 3.0
        assert gateway.from_email == "shop@example.com"

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            build_gateway({"NOTIFICATION_BACKEND": "pigeon"})

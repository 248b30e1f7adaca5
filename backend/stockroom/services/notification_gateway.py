# Overview: Notification gateway adapters (SendGrid over httpx, logging backend for development).

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from flask import current_app

logger = logging.getLogger(__name__)


TEMPLATE_ORDER_CONFIRMATION = "order_confirmation"

TEMPLATE_SUBJECTS = {
    TEMPLATE_ORDER_CONFIRMATION: "Your order is confirmed",
}


@dataclass
class SendResult:
    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None
    timed_out: bool = False


class NotificationGateway:
    """
    Contract: send(order_uuid, template_type, recipient) -> SendResult.

    Implementations must never raise for delivery problems; they report them
    through SendResult so the workflow can decide what to do.
    """

    def send(self, order_uuid: str, template_type: str, recipient: str) -> SendResult:
        raise NotImplementedError


class LoggingGateway(NotificationGateway):
    """Development backend: logs the notification and reports success."""

    def send(self, order_uuid: str, template_type: str, recipient: str) -> SendResult:
        logger.info("Notification %s for order %s to %s (logging backend)", template_type, order_uuid, recipient)
        return SendResult(success=True, message_id=f"log-{order_uuid}-{template_type}")


class SendGridGateway(NotificationGateway):
    """SendGrid v3 mail/send adapter with a bounded request timeout."""

    BASE_URL = "https://api.sendgrid.com/v3"

    def __init__(
        self,
        *,
        api_key: str | None,
        from_email: str,
        from_name: str | None = None,
        timeout: float = 10.0,
        base_url: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.timeout = timeout
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self._transport = transport
        self._http_client: Optional[httpx.Client] = None

    def _get_http_client(self) -> httpx.Client:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.Client(
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._http_client

    def close(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            self._http_client.close()

    def _payload(self, order_uuid: str, template_type: str, recipient: str) -> dict:
        subject = TEMPLATE_SUBJECTS.get(template_type, template_type.replace("_", " ").capitalize())
        sender = {"email": self.from_email}
        if self.from_name:
            sender["name"] = self.from_name
        return {
            "personalizations": [{
                "to": [{"email": recipient}],
                "custom_args": {"order_uuid": order_uuid, "template_type": template_type},
            }],
            "from": sender,
            "subject": subject,
            "content": [{
                "type": "text/plain",
                "value": f"{subject}. Order reference: {order_uuid}",
            }],
        }

    def send(self, order_uuid: str, template_type: str, recipient: str) -> SendResult:
        if not self.api_key:
            logger.warning("SendGrid API key not configured")
            return SendResult(success=False, error="Email not configured")

        http = self._get_http_client()
        try:
            resp = http.post(f"{self.base_url}/mail/send", json=self._payload(order_uuid, template_type, recipient))
        except httpx.TimeoutException:
            logger.warning("SendGrid timed out sending %s for order %s", template_type, order_uuid)
            return SendResult(success=False, error="timeout", timed_out=True)
        except httpx.HTTPError as e:
            logger.error("SendGrid request failed: %s", e)
            return SendResult(success=False, error=str(e))

        if resp.status_code in (200, 202):
            return SendResult(success=True, message_id=resp.headers.get("X-Message-Id"))

        logger.error("SendGrid send failed: %s - %s", resp.status_code, resp.text)
        return SendResult(success=False, error=f"HTTP {resp.status_code}: {resp.text}")


_gateway: NotificationGateway | None = None


def set_gateway(gateway: NotificationGateway | None) -> None:
    """Swap the process-wide gateway (tests, custom backends). None resets to config."""
    global _gateway
    _gateway = gateway


def build_gateway(config) -> NotificationGateway:
    backend = (config.get("NOTIFICATION_BACKEND") or "log").lower()
    if backend == "sendgrid":
        return SendGridGateway(
            api_key=config.get("SENDGRID_API_KEY"),
            from_email=config.get("SENDGRID_FROM_EMAIL"),
            from_name=config.get("SENDGRID_FROM_NAME"),
            timeout=float(config.get("NOTIFICATION_TIMEOUT_SECONDS", 10)),
            base_url=config.get("SENDGRID_BASE_URL"),
        )
    if backend == "log":
        return LoggingGateway()
    raise ValueError(f"Unknown NOTIFICATION_BACKEND {backend!r}")


def get_gateway() -> NotificationGateway:
    global _gateway
    if _gateway is None:
        _gateway = build_gateway(current_app.config)
    return _gateway

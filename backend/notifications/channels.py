"""Channel senders used by automation actions.

Each sender delivers one transport (SMS or email). The provider
integrations live behind HTTP edge functions; the senders here only POST
JSON to them and report a ``DeliveryResult``.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


# ─── Data Types ────────────────────────────────────────────────

class ChannelType(str, Enum):
    SMS = "sms"
    EMAIL = "email"


@dataclass
class DeliveryResult:
    """Result of a delivery attempt."""
    success: bool
    channel: ChannelType
    recipient: str
    message_id: Optional[str] = None
    error: Optional[str] = None
    delivered_at: Optional[str] = None


# ─── Base Senders ──────────────────────────────────────────────

class SmsSender(ABC):
    """Sends a text message to one phone number."""

    channel_type = ChannelType.SMS

    @abstractmethod
    async def send(self, phone: str, message: str, correlation: dict) -> DeliveryResult:
        ...


class EmailSender(ABC):
    """Sends one email with an HTML body and a plain-text fallback."""

    channel_type = ChannelType.EMAIL

    @abstractmethod
    async def send(
        self, to: str, subject: str, html: str, text: str, correlation: dict
    ) -> DeliveryResult:
        ...


# ─── HTTP Senders ──────────────────────────────────────────────

class _HttpChannel:
    """Shared POST logic for edge-function backed senders.

    Config:
        url: Edge function URL
        api_key: Bearer token sent with every request
        timeout: Request timeout in seconds
        transport: Optional httpx transport (tests use ``httpx.MockTransport``)
    """

    channel_type: ChannelType

    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, recipient: str, payload: dict[str, Any]) -> DeliveryResult:
        if not self.url:
            return DeliveryResult(
                success=False,
                channel=self.channel_type,
                recipient=recipient,
                error=f"{self.channel_type.value.upper()} channel not configured",
            )

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=payload, headers=self._headers())
        except httpx.TimeoutException as e:
            logger.error(f"{self.channel_type.value} send timed out: {e}")
            return self._failed(recipient, f"Request timeout: {e}")
        except httpx.RequestError as e:
            logger.error(f"{self.channel_type.value} send failed: {e}")
            return self._failed(recipient, f"Network error: {e}")

        if response.is_error:
            return self._failed(
                recipient,
                f"HTTP {response.status_code} {response.reason_phrase}: {response.text[:200]}",
            )

        try:
            body = response.json()
        except ValueError:
            body = {}
        if isinstance(body, dict) and body.get("success") is False:
            return self._failed(recipient, str(body.get("error") or "Delivery rejected"))

        return DeliveryResult(
            success=True,
            channel=self.channel_type,
            recipient=recipient,
            message_id=(body.get("id") or body.get("message_id")) if isinstance(body, dict) else None,
            delivered_at=datetime.now(timezone.utc).isoformat(),
        )

    def _failed(self, recipient: str, error: str) -> DeliveryResult:
        return DeliveryResult(
            success=False, channel=self.channel_type, recipient=recipient, error=error
        )


class HttpSmsSender(_HttpChannel, SmsSender):
    """SMS via the messaging edge function."""

    channel_type = ChannelType.SMS

    async def send(self, phone: str, message: str, correlation: dict) -> DeliveryResult:
        return await self._post(phone, {
            "recipientPhone": phone,
            "message": message,
            "client_id": correlation.get("client_id"),
            "job_id": correlation.get("job_id"),
            "metadata": correlation,
        })


class HttpEmailSender(_HttpChannel, EmailSender):
    """Email via the mailer edge function."""

    channel_type = ChannelType.EMAIL

    async def send(
        self, to: str, subject: str, html: str, text: str, correlation: dict
    ) -> DeliveryResult:
        return await self._post(to, {
            "to": to,
            "subject": subject,
            "html": html,
            "text": text,
            "client_id": correlation.get("client_id"),
            "job_id": correlation.get("job_id"),
            "metadata": correlation,
        })


def build_senders(settings) -> tuple[HttpSmsSender, HttpEmailSender]:
    """Create the configured SMS and email senders."""
    sms = HttpSmsSender(
        settings.SMS_ENDPOINT_URL,
        api_key=settings.CHANNEL_API_KEY,
        timeout=settings.CHANNEL_TIMEOUT_SECONDS,
    )
    email = HttpEmailSender(
        settings.EMAIL_ENDPOINT_URL,
        api_key=settings.CHANNEL_API_KEY,
        timeout=settings.CHANNEL_TIMEOUT_SECONDS,
    )
    for sender, name in ((sms, "SMS_ENDPOINT_URL"), (email, "EMAIL_ENDPOINT_URL")):
        if not sender.url:
            logger.warning(f"{name} is not set; {sender.channel_type.value} actions will fail")
    return sms, email

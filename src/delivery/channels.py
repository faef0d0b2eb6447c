"""Delivery channel adapters."""

from __future__ import annotations

import logging
from typing import Callable, Protocol

import httpx

from config import settings
from errors import ChannelError, PermanentChannelError, TransientChannelError
from models import NotificationPriority

logger = logging.getLogger(__name__)

_PERMANENT_MARKERS = (
    "invalid email",
    "invalid recipient",
    "invalid_email",
    "hard bounce",
    "spam complaint",
    "unsubscribe",
)
_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "network",
    "connection",
    "rate limit",
    "429",
    "503",
    "service unavailable",
)
_TRANSIENT_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


class Channel(Protocol):
    """Capability boundary for sending one message."""

    provider_name: str

    def send(
        self,
        recipient_address: str,
        subject: str,
        body: str,
        priority: int,
    ) -> str:
        """Send a message and return the provider message id."""


def classify_error_message(message: str, *, status_code: int | None = None) -> ChannelError:
    """Classify a provider error message into a transient or permanent error.

    Unrecognized messages are permanent so a misbehaving provider cannot
    cause unbounded retries.
    """
    lowered = (message or "").lower()
    if any(marker in lowered for marker in _PERMANENT_MARKERS):
        return PermanentChannelError(message, status_code=status_code)
    if status_code in _TRANSIENT_STATUS_CODES:
        return TransientChannelError(message, status_code=status_code)
    if any(marker in lowered for marker in _TRANSIENT_MARKERS):
        return TransientChannelError(message, status_code=status_code)
    return PermanentChannelError(message, status_code=status_code)


class ResendEmailChannel:
    """Email delivery through the Resend HTTP API."""

    provider_name = "RESEND"

    def __init__(
        self,
        api_url: str | None = None,
        api_key: str | None = None,
        from_address: str | None = None,
        timeout_seconds: float | None = None,
        client_factory: Callable[..., httpx.Client] = httpx.Client,
    ) -> None:
        email_config = settings.email
        self.api_url = (api_url or email_config.api_url).rstrip("/")
        self.api_key = api_key or email_config.api_key
        self.from_address = from_address or email_config.from_address
        self.timeout_seconds = timeout_seconds or email_config.timeout_seconds
        self._client_factory = client_factory

    def send(
        self,
        recipient_address: str,
        subject: str,
        body: str,
        priority: int,
    ) -> str:
        """Send one email; raises TransientChannelError or PermanentChannelError."""
        if not self.api_key:
            raise PermanentChannelError("Email API key is not configured")
        if not recipient_address or "@" not in recipient_address:
            raise PermanentChannelError(f"invalid recipient: {recipient_address!r}")

        headers = {"Authorization": f"Bearer {self.api_key}"}
        payload: dict[str, object] = {
            "from": self.from_address,
            "to": [recipient_address],
            "subject": subject,
            "text": body,
        }
        if priority >= NotificationPriority.URGENT:
            payload["headers"] = {"X-Priority": "1"}

        try:
            with self._client_factory(timeout=self.timeout_seconds) as client:
                response = client.post(f"{self.api_url}/emails", json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as exc:
            raise TransientChannelError(f"Email provider timeout: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            detail = _error_detail(exc.response)
            raise classify_error_message(
                f"Email provider error {exc.response.status_code}: {detail}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            raise TransientChannelError(f"Email provider connection error: {exc}") from exc

        message_id = data.get("id") if isinstance(data, dict) else None
        if not message_id:
            raise TransientChannelError("Email provider returned no message id")
        logger.info("Sent email to recipient=%s provider_id=%s", recipient_address, message_id)
        return str(message_id)


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or data)
    return str(data)

"""Provider delivery-status webhook handling.

Provider events update ``delivery_status``, ``delivery_error`` and the
metadata counters of the matching notification. The lifecycle ``status``
column is never touched here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from models import Notification
from time_utils import ensure_aware

logger = logging.getLogger(__name__)

DELIVERED = "DELIVERED"
BOUNCED = "BOUNCED"
COMPLAINED = "COMPLAINED"


@dataclass
class WebhookResult:
    """Counters for one webhook payload."""

    received: int = 0
    applied: int = 0
    unknown_message: int = 0
    ignored: int = 0
    applied_ids: list[int] = field(default_factory=list)


def normalize_event_type(raw: str | None) -> str:
    """Strip the ``email.`` prefix and lower-case an event type."""
    value = (raw or "").strip().lower()
    if value.startswith("email."):
        value = value[len("email."):]
    return value


def _events(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        return [event for event in payload if isinstance(event, dict)]
    if isinstance(payload, dict):
        return [payload]
    return []


def _message_id(event: dict[str, Any]) -> str | None:
    data = event.get("data")
    if isinstance(data, dict) and data.get("email_id"):
        return str(data["email_id"])
    if event.get("email_id"):
        return str(event["email_id"])
    return None


def _bounce_reason(event: dict[str, Any]) -> str:
    data = event.get("data") if isinstance(event.get("data"), dict) else {}
    bounce = data.get("bounce") if isinstance(data.get("bounce"), dict) else {}
    return (
        bounce.get("type")
        or data.get("bounce_type")
        or event.get("bounce_type")
        or "Email bounced"
    )


def apply_event(notification: Notification, event_type: str, event: dict[str, Any], now: datetime) -> bool:
    """Apply one normalized event to a notification; return False if unsupported."""
    meta = dict(notification.meta or {})
    stamp = now.isoformat()
    if event_type == "delivered":
        notification.delivery_status = DELIVERED
        meta["delivered_at"] = stamp
    elif event_type == "bounced":
        notification.delivery_status = BOUNCED
        notification.delivery_error = str(_bounce_reason(event))
        meta["bounced_at"] = stamp
    elif event_type in {"complained", "spamreport"}:
        notification.delivery_status = COMPLAINED
        notification.delivery_error = "Marked as spam"
        meta["complained_at"] = stamp
    elif event_type == "opened":
        meta["opened_at"] = stamp
        meta["open_count"] = int(meta.get("open_count", 0)) + 1
    elif event_type == "clicked":
        meta["clicked_at"] = stamp
        meta["click_count"] = int(meta.get("click_count", 0)) + 1
    else:
        return False
    notification.meta = meta
    notification.updated_at = now
    return True


def apply_provider_events(session: Session, payload: Any, now: datetime) -> WebhookResult:
    """Apply a provider webhook payload (one event or a list) and commit."""
    now = ensure_aware(now)
    result = WebhookResult()
    for event in _events(payload):
        result.received += 1
        event_type = normalize_event_type(event.get("type") or event.get("event"))
        message_id = _message_id(event)
        if not message_id:
            logger.warning("Webhook event without message id: type=%s", event_type or "unknown")
            result.ignored += 1
            continue

        notification = (
            session.query(Notification)
            .filter(Notification.delivery_provider_id == message_id)
            .order_by(Notification.id.asc())
            .first()
        )
        if notification is None:
            logger.info("Webhook event for unknown message: id=%s type=%s", message_id, event_type)
            result.unknown_message += 1
            continue

        if not apply_event(notification, event_type, event, now):
            logger.info(
                "Ignoring unsupported webhook event: type=%s notification=%s",
                event_type or "unknown",
                notification.id,
            )
            result.ignored += 1
            continue
        result.applied += 1
        result.applied_ids.append(notification.id)

    session.commit()
    logger.info(
        "Webhook processed: received=%s applied=%s unknown=%s ignored=%s",
        result.received,
        result.applied,
        result.unknown_message,
        result.ignored,
    )
    return result

"""Rate limiting for engine notifications.

Decisions are derived from persisted notification rows only, so they hold
across restarts and concurrent workers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from config import settings
from store import count_recent_notifications, latest_item_notification

logger = logging.getLogger(__name__)

ALLOW = "ALLOW"
DEFER = "DEFER"
COOLDOWN_ACTIVE = "cooldown_active"
VOLUME_CAP_EXCEEDED = "volume_cap_exceeded"


@dataclass(frozen=True)
class RateLimitConfig:
    """Rate limit configuration for a channel.

    ``max_per_window`` caps one recipient; the company and global caps bound
    the whole tenant and the whole engine over the same window.
    """

    channel: str
    cooldown_hours: int
    max_per_window: int
    window_seconds: int
    company_max_per_window: int = 500
    global_max_per_window: int = 10000

    @staticmethod
    def from_settings(channel: str = "EMAIL") -> "RateLimitConfig":
        """Build a rate limit configuration from settings."""
        config = settings.rate_limit
        return RateLimitConfig(
            channel=channel,
            cooldown_hours=int(config.cooldown_hours),
            max_per_window=int(config.max_per_window),
            window_seconds=int(config.window_seconds),
            company_max_per_window=int(config.company_max_per_window),
            global_max_per_window=int(config.global_max_per_window),
        )


@dataclass(frozen=True)
class RateLimitInput:
    """Inputs required for rate limiting decisions."""

    recipient_id: int
    notification_type: str
    timestamp: datetime
    entity_type: str | None = None
    entity_id: int | None = None
    escalation_level: int | None = None
    company_id: int | None = None


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of rate limiting evaluation."""

    allowed: bool
    decision: str
    reason: str


def should_send_now(
    session: Session,
    inputs: RateLimitInput,
    config: RateLimitConfig,
) -> RateLimitDecision:
    """Decide whether a new notification may be created for immediate delivery.

    ``cooldown_active`` means the notification must not be created at all;
    ``volume_cap_exceeded`` means it is created but routed to the digest.
    """
    if cooldown_active(session, inputs, config):
        return RateLimitDecision(allowed=False, decision=DEFER, reason=COOLDOWN_ACTIVE)
    if volume_cap_reached(
        session,
        inputs.recipient_id,
        inputs.timestamp,
        config,
        company_id=inputs.company_id,
    ):
        return RateLimitDecision(allowed=False, decision=DEFER, reason=VOLUME_CAP_EXCEEDED)
    return RateLimitDecision(allowed=True, decision=ALLOW, reason="within_limit")


def cooldown_active(
    session: Session,
    inputs: RateLimitInput,
    config: RateLimitConfig,
) -> bool:
    """Return whether the recipient was told about this item at this level recently."""
    if inputs.entity_type is None or inputs.entity_id is None or inputs.escalation_level is None:
        return False
    if config.cooldown_hours <= 0:
        return False
    latest = latest_item_notification(
        session,
        inputs.recipient_id,
        inputs.entity_type,
        inputs.entity_id,
        inputs.escalation_level,
    )
    if latest is None:
        return False
    return latest.created_at > inputs.timestamp - timedelta(hours=config.cooldown_hours)


def volume_cap_reached(
    session: Session,
    recipient_id: int,
    now: datetime,
    config: RateLimitConfig,
    *,
    exclude_id: int | None = None,
    company_id: int | None = None,
) -> bool:
    """Return whether any volume cap (recipient, company, global) is full.

    The company cap applies only when ``company_id`` is known.
    """
    window_start = now - timedelta(seconds=config.window_seconds)
    limits: list[tuple[str, object, dict[str, int], int]] = [
        ("recipient", recipient_id, {"recipient_id": recipient_id}, config.max_per_window)
    ]
    if company_id is not None:
        limits.append(
            ("company", company_id, {"company_id": company_id}, config.company_max_per_window)
        )
    limits.append(("global", "*", {}, config.global_max_per_window))

    for scope, key, filters, maximum in limits:
        count = count_recent_notifications(
            session,
            config.channel,
            window_start,
            exclude_id=exclude_id,
            **filters,
        )
        if count >= maximum:
            logger.info(
                "Volume cap reached: scope=%s key=%s channel=%s count=%s max=%s",
                scope,
                key,
                config.channel,
                count,
                maximum,
            )
            return True
    return False

"""Exception taxonomy and best-effort write helpers for the alerting engine."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator


class AlertingError(Exception):
    """Base class for alerting engine errors."""


class CandidateDataError(AlertingError):
    """Raised when a monitored item lacks data required to process it."""


class IllegalTransitionError(AlertingError):
    """Raised when a notification status change is not in the transition table."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Illegal notification transition {current} -> {target}")
        self.current = current
        self.target = target


class ChannelError(AlertingError):
    """Base class for delivery channel failures."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientChannelError(ChannelError):
    """Delivery failure that may succeed on a later attempt."""


class PermanentChannelError(ChannelError):
    """Delivery failure that will not succeed on retry."""


@contextmanager
def best_effort(logger: logging.Logger, description: str, *args: object) -> Iterator[None]:
    """Run a non-critical write, logging instead of raising on failure.

    Used for audit and bookkeeping writes that must never abort the primary
    transition they accompany.
    """
    try:
        yield
    except Exception:
        logger.exception("Best-effort step failed: " + description, *args)

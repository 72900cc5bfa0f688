"""
notifications.py
Outbound notification delegate. Email delivery itself belongs to an external
provider; the engine only says "send template X to Y with these variables".
"""

from __future__ import annotations

import logging
from typing import Protocol

from errors import DeliveryError

logger = logging.getLogger("dues.notifications")

PAYMENT_REMINDER = "payment_reminder"
PAYMENT_FAILED = "payment_failed"


class Notifier(Protocol):
    def send(self, template: str, recipient: str | None, variables: dict) -> None:
        """Deliver one notification; raise DeliveryError when it cannot be sent."""


class LoggingNotifier:
    """Default delegate: records what would be sent (used until a provider is wired in)."""

    def send(self, template: str, recipient: str | None, variables: dict) -> None:
        if not recipient:
            raise DeliveryError(f"No recipient address for {template}")
        logger.info("notification_queued", extra={"template": template, "recipient": recipient, "variables": variables})


def get_default_notifier() -> Notifier:
    return LoggingNotifier()

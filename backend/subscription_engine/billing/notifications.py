"""Notification dispatch contract.

Delivery (email, in-app, push) is owned by another service. The engine
only hands over a type and a payload, and never lets a delivery failure
affect a subscription transition.
"""

import enum
import logging
from typing import Any, Protocol

from subscription_engine.billing.subscriber import SubscriberRef

logger = logging.getLogger(__name__)


class NotificationType(str, enum.Enum):
    SUBSCRIPTION_RENEWED = "SUBSCRIPTION_RENEWED"
    SUBSCRIPTION_RENEWAL_REMINDER = "SUBSCRIPTION_RENEWAL_REMINDER"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"
    SUBSCRIPTION_CANCELLED = "SUBSCRIPTION_CANCELLED"
    SUBSCRIPTION_UPGRADED = "SUBSCRIPTION_UPGRADED"
    SUBSCRIPTION_DOWNGRADED = "SUBSCRIPTION_DOWNGRADED"
    TRIAL_CONVERTED = "TRIAL_CONVERTED"


class NotificationDispatcher(Protocol):
    async def notify(
        self, subscriber: SubscriberRef, type: NotificationType, payload: dict[str, Any]
    ) -> None: ...


class LoggingNotifier:
    """Default dispatcher: writes the notification to the log."""

    async def notify(
        self, subscriber: SubscriberRef, type: NotificationType, payload: dict[str, Any]
    ) -> None:
        logger.info("Notification %s for %s: %s", type.value, subscriber, payload)


async def dispatch(
    notifier: NotificationDispatcher,
    subscriber: SubscriberRef,
    type: NotificationType,
    payload: dict[str, Any],
) -> bool:
    """Send a notification, logging instead of raising on failure.

    Returns True when the dispatcher accepted the notification.
    """
    try:
        await notifier.notify(subscriber, type, payload)
    except Exception:
        logger.exception("Failed to dispatch %s notification to %s", type.value, subscriber)
        return False
    return True


logging_notifier = LoggingNotifier()

"""SQLAlchemy models for the subscription engine.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from subscription_engine.models.history import (
    SubscriptionCancellation,
    SubscriptionDowngrade,
    SubscriptionReminder,
    SubscriptionRenewal,
    SubscriptionUpgrade,
    TrialConversion,
)
from subscription_engine.models.ledger import LedgerEntry, LedgerEntryKind, LedgerEntryStatus
from subscription_engine.models.subscriber import SubscriberAccount
from subscription_engine.models.subscription import Subscription, SubscriptionStatus
from subscription_engine.models.sweep import SweepLock, SweepRun
from subscription_engine.models.usage import UsageEvent

__all__ = [
    "LedgerEntry",
    "LedgerEntryKind",
    "LedgerEntryStatus",
    "SubscriberAccount",
    "Subscription",
    "SubscriptionCancellation",
    "SubscriptionDowngrade",
    "SubscriptionReminder",
    "SubscriptionRenewal",
    "SubscriptionStatus",
    "SubscriptionUpgrade",
    "SweepLock",
    "SweepRun",
    "TrialConversion",
    "UsageEvent",
]

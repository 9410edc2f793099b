"""Append-only history records for subscription lifecycle events.

Rows in these tables are written once and never modified; an attempt to
flush a change to an existing record raises.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Date, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column

from subscription_engine.database import Base, UUIDPrimaryKeyMixin


class SubscriptionRenewal(UUIDPrimaryKeyMixin, Base):
    """One renewal of a subscription's billing period."""

    __tablename__ = "subscription_renewals"

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    renewed_at: Mapped[datetime] = mapped_column(nullable=False, index=True)
    previous_end_date: Mapped[datetime] = mapped_column(nullable=False)
    new_end_date: Mapped[datetime] = mapped_column(nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)


class SubscriptionUpgrade(UUIDPrimaryKeyMixin, Base):
    """An immediate move to a more expensive plan."""

    __tablename__ = "subscription_upgrades"

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    from_plan_id: Mapped[str] = mapped_column(String(50), nullable=False)
    to_plan_id: Mapped[str] = mapped_column(String(50), nullable=False)
    upgrade_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    prorated_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    remaining_fraction: Mapped[Decimal] = mapped_column(Numeric(12, 8), nullable=False)
    effective_date: Mapped[datetime] = mapped_column(nullable=False)
    ledger_entry_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)


class SubscriptionDowngrade(UUIDPrimaryKeyMixin, Base):
    """A move to a cheaper plan, applied at ``effective_date`` by the sweep."""

    __tablename__ = "subscription_downgrades"

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    from_plan_id: Mapped[str] = mapped_column(String(50), nullable=False)
    to_plan_id: Mapped[str] = mapped_column(String(50), nullable=False)
    effective_date: Mapped[datetime] = mapped_column(nullable=False)
    credit_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)


class SubscriptionCancellation(UUIDPrimaryKeyMixin, Base):
    """Cancellation of an active subscription, with the refund owed."""

    __tablename__ = "subscription_cancellations"

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cancelled_at: Mapped[datetime] = mapped_column(nullable=False, index=True)
    refund_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)


class TrialConversion(UUIDPrimaryKeyMixin, Base):
    """Conversion of a trial subscription to a paid plan."""

    __tablename__ = "trial_conversions"

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    from_plan_id: Mapped[str] = mapped_column(String(50), nullable=False)
    to_plan_id: Mapped[str] = mapped_column(String(50), nullable=False)
    converted_at: Mapped[datetime] = mapped_column(nullable=False)
    trial_days_used: Mapped[int] = mapped_column(Integer, nullable=False)
    remaining_trial_days: Mapped[int] = mapped_column(Integer, nullable=False)


class SubscriptionReminder(UUIDPrimaryKeyMixin, Base):
    """A renewal reminder sent ``days_before`` the end of a period."""

    __tablename__ = "subscription_reminders"

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    days_before: Mapped[int] = mapped_column(Integer, nullable=False)
    sent_at: Mapped[datetime] = mapped_column(nullable=False)
    sent_on: Mapped[date] = mapped_column(Date, nullable=False)

    __table_args__ = (
        UniqueConstraint("subscription_id", "days_before", "sent_on", name="uq_reminders_once_per_day"),
    )


IMMUTABLE_RECORDS = (
    SubscriptionRenewal,
    SubscriptionUpgrade,
    SubscriptionDowngrade,
    SubscriptionCancellation,
    TrialConversion,
    SubscriptionReminder,
)


def _reject_update(mapper, connection, target) -> None:
    raise TypeError(f"{type(target).__name__} records are immutable once created")


for _record in IMMUTABLE_RECORDS:
    event.listen(_record, "before_update", _reject_update)

"""Subscription model: one billing relationship between a subscriber and a plan."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, Index, Integer, String, Text, false, text
from sqlalchemy.orm import Mapped, mapped_column

from subscription_engine.billing.subscriber import SubscriberRef
from subscription_engine.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    PAST_DUE = "PAST_DUE"


_ACTIVE_ONLY = text("status = 'ACTIVE'")


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Tracks a subscriber's plan, billing period, and lifecycle state."""

    __tablename__ = "subscriptions"

    # Subscriber: exactly one of the two is set
    user_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    employer_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)

    # Plan & status
    plan_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value, index=True
    )
    is_trial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())

    # Billing period
    start_date: Mapped[datetime] = mapped_column(nullable=False)
    end_date: Mapped[datetime] = mapped_column(nullable=False, index=True)
    next_billing_date: Mapped[datetime | None] = mapped_column(nullable=True)
    renewal_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    # Plan changes (no FK: the history tables reference this table)
    scheduled_downgrade_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    scheduled_downgrade_date: Mapped[datetime | None] = mapped_column(nullable=True, index=True)
    upgrade_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)

    # Lifecycle timestamps
    last_renewed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    upgraded_at: Mapped[datetime | None] = mapped_column(nullable=True)
    downgraded_at: Mapped[datetime | None] = mapped_column(nullable=True)
    converted_from_trial_at: Mapped[datetime | None] = mapped_column(nullable=True)
    expired_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "(user_id IS NULL) <> (employer_id IS NULL)",
            name="ck_subscriptions_single_subscriber",
        ),
        CheckConstraint("end_date > start_date", name="ck_subscriptions_period"),
        # At most one ACTIVE subscription per subscriber
        Index(
            "uq_subscriptions_active_user",
            "user_id",
            unique=True,
            postgresql_where=_ACTIVE_ONLY,
            sqlite_where=_ACTIVE_ONLY,
        ),
        Index(
            "uq_subscriptions_active_employer",
            "employer_id",
            unique=True,
            postgresql_where=_ACTIVE_ONLY,
            sqlite_where=_ACTIVE_ONLY,
        ),
    )

    @property
    def subscriber(self) -> SubscriberRef:
        return SubscriberRef.from_ids(self.user_id, self.employer_id)

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE.value

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, subscriber={self.user_id or self.employer_id}, "
            f"plan={self.plan_id}, status={self.status})>"
        )

"""Subscriber account flags: the subscriber-side view of subscription state."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from subscription_engine.database import Base

FREE_TIER = "FREE"


class SubscriberAccount(Base):
    """Whether a user or employer currently holds an active subscription."""

    __tablename__ = "subscriber_accounts"

    subscriber_type: Mapped[str] = mapped_column(String(20), primary_key=True)
    subscriber_id: Mapped[uuid.UUID] = mapped_column(primary_key=True)
    has_active_subscription: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    subscription_tier: Mapped[str] = mapped_column(String(50), nullable=False, default=FREE_TIER)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return (
            f"<SubscriberAccount({self.subscriber_type}:{self.subscriber_id}, "
            f"active={self.has_active_subscription}, tier={self.subscription_tier})>"
        )

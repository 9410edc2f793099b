"""Usage event model: counted feature consumption per subscription."""

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from subscription_engine.database import Base, UUIDPrimaryKeyMixin


class UsageEvent(UUIDPrimaryKeyMixin, Base):
    """One consumption of a metered feature (a job posting, an application, ...)."""

    __tablename__ = "usage_events"

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
    )
    feature: Mapped[str] = mapped_column(String(50), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        Index("ix_usage_events_window", "subscription_id", "feature", "occurred_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<UsageEvent(subscription_id={self.subscription_id}, feature={self.feature!r}, "
            f"quantity={self.quantity})>"
        )

"""Ledger entry model: payment records whose settlement happens elsewhere."""

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from subscription_engine.database import Base, UUIDPrimaryKeyMixin


class LedgerEntryKind(str, enum.Enum):
    SUBSCRIPTION = "SUBSCRIPTION"
    SUBSCRIPTION_UPGRADE = "SUBSCRIPTION_UPGRADE"
    SUBSCRIPTION_RENEWAL = "SUBSCRIPTION_RENEWAL"
    SUBSCRIPTION_CREDIT = "SUBSCRIPTION_CREDIT"
    SUBSCRIPTION_REFUND = "SUBSCRIPTION_REFUND"


class LedgerEntryStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


class LedgerEntry(UUIDPrimaryKeyMixin, Base):
    """A charge (positive amount) or credit (negative amount) for a subscriber."""

    __tablename__ = "ledger_entries"

    subscriber_type: Mapped[str] = mapped_column(String(20), nullable=False)
    subscriber_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    reference_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)  # upgrade/downgrade id
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    kind: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (Index("ix_ledger_entries_subscriber", "subscriber_type", "subscriber_id"),)

    def __repr__(self) -> str:
        return f"<LedgerEntry(id={self.id}, kind={self.kind}, amount={self.amount}, status={self.status})>"

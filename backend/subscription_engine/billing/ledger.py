"""Payment ledger contract and the default in-database ledger.

The engine only records ledger entries; capture and settlement belong to
whatever consumes the ledger.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.billing.subscriber import SubscriberRef
from subscription_engine.models.ledger import LedgerEntry, LedgerEntryKind, LedgerEntryStatus

logger = logging.getLogger(__name__)


class PaymentLedger(Protocol):
    """Records charges and credits for a subscriber."""

    async def record_payment(
        self,
        db: AsyncSession,
        subscriber: SubscriberRef,
        amount: Decimal,
        kind: LedgerEntryKind,
        *,
        status: LedgerEntryStatus,
        recorded_at: datetime,
        subscription_id: uuid.UUID | None = None,
        reference_id: uuid.UUID | None = None,
        description: str | None = None,
    ) -> uuid.UUID: ...


class DatabaseLedger:
    """Writes ledger entries into the caller's session and transaction."""

    async def record_payment(
        self,
        db: AsyncSession,
        subscriber: SubscriberRef,
        amount: Decimal,
        kind: LedgerEntryKind,
        *,
        status: LedgerEntryStatus,
        recorded_at: datetime,
        subscription_id: uuid.UUID | None = None,
        reference_id: uuid.UUID | None = None,
        description: str | None = None,
    ) -> uuid.UUID:
        entry = LedgerEntry(
            subscriber_type=subscriber.type.value,
            subscriber_id=subscriber.id,
            subscription_id=subscription_id,
            reference_id=reference_id,
            amount=amount,
            kind=kind.value,
            status=status.value,
            description=description,
            created_at=recorded_at,
        )
        db.add(entry)
        await db.flush()
        logger.info(
            "Recorded %s ledger entry %s for %s: %s (%s)",
            kind.value,
            entry.id,
            subscriber,
            amount,
            status.value,
        )
        return entry.id


database_ledger = DatabaseLedger()

"""Pydantic v2 schemas for batch sweep reports."""

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class SweepItemStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class SweepItemResult(BaseModel):
    """What happened to one subscription during a sweep."""

    subscription_id: uuid.UUID
    status: SweepItemStatus
    detail: str | None = None
    days_before: int | None = None
    new_plan_id: str | None = None
    credit_amount: Decimal | None = None


class SweepReport(BaseModel):
    sweep: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    results: list[SweepItemResult] = Field(default_factory=list)
    timestamp: datetime

    def add(self, result: SweepItemResult) -> None:
        self.results.append(result)
        self.processed += 1
        if result.status is SweepItemStatus.SUCCESS:
            self.succeeded += 1
        elif result.status is SweepItemStatus.FAILED:
            self.failed += 1
        else:
            self.skipped += 1


class SweepRunResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    sweep: str
    started_at: datetime
    finished_at: datetime
    processed: int
    succeeded: int
    failed: int
    skipped: int


class ReminderSweepRequest(BaseModel):
    offsets: list[int] | None = None  # None = configured offsets

"""Pydantic v2 schemas for the usage meter."""

import enum
import uuid
from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from subscription_engine.billing.clock import to_naive_utc


class UsageStatus(str, enum.Enum):
    OK = "OK"
    NEAR_LIMIT = "NEAR_LIMIT"
    EXCEEDED = "EXCEEDED"


class FeatureUsage(BaseModel):
    """Consumption of one feature in the current billing window."""

    used: int
    limit: int | None  # None = unlimited
    percentage: float
    remaining: int | None  # None = unlimited
    status: UsageStatus


class BillingCycle(BaseModel):
    start_date: datetime
    end_date: datetime
    days_remaining: int


class SubscriptionUsageResponse(BaseModel):
    subscription_id: uuid.UUID
    plan_id: str
    usage: dict[str, FeatureUsage]
    billing_cycle: BillingCycle


class LimitCheckResult(BaseModel):
    """Outcome of a limit check or an atomic consume."""

    feature: str
    allowed: bool
    requested: int
    used: int | None = None
    limit: int | None = None
    remaining: int | None = None
    exceeded_by: int | None = None
    reason: str | None = None


class ConsumeRequest(BaseModel):
    feature: str
    count: int = Field(default=1, ge=1)


class RecordUsageRequest(BaseModel):
    feature: str
    quantity: int = Field(default=1, ge=1)
    occurred_at: datetime | None = None

    @field_validator("occurred_at")
    @classmethod
    def _as_naive_utc(cls, value: datetime | None) -> datetime | None:
        return to_naive_utc(value) if value is not None else None

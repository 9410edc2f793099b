"""Pydantic v2 request/response schemas for subscription endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from subscription_engine.billing.clock import to_naive_utc

# --- Request schemas ---


class SubscriberFields(BaseModel):
    """Exactly one of user_id / employer_id identifies the subscriber."""

    user_id: uuid.UUID | None = None
    employer_id: uuid.UUID | None = None

    @model_validator(mode="after")
    def _exactly_one_subscriber(self) -> "SubscriberFields":
        if (self.user_id is None) == (self.employer_id is None):
            raise ValueError("Provide exactly one of user_id or employer_id")
        return self


class CreateSubscriptionRequest(SubscriberFields):
    plan_id: str


class CreateTrialRequest(SubscriberFields):
    plan_id: str | None = None  # None = the catalog's trial plan


class CancelRequest(BaseModel):
    reason: str | None = None
    cancelled_by: str | None = None


class UpgradeRequest(BaseModel):
    plan_id: str


class ScheduleDowngradeRequest(BaseModel):
    plan_id: str
    effective_date: datetime | None = None  # None = end of the current period

    @field_validator("effective_date")
    @classmethod
    def _as_naive_utc(cls, value: datetime | None) -> datetime | None:
        return to_naive_utc(value) if value is not None else None


class ConvertTrialRequest(BaseModel):
    plan_id: str


# --- Response schemas ---


class PlanResponse(BaseModel):
    """Plan details for display."""

    id: str
    name: str
    price: Decimal
    duration_months: int
    limits: dict[str, int]
    is_trial: bool
    features: list[str]


class PlansListResponse(BaseModel):
    plans: list[PlanResponse]


class SubscriptionResponse(BaseModel):
    """A subscription as stored."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID | None
    employer_id: uuid.UUID | None
    plan_id: str
    status: str
    is_trial: bool
    start_date: datetime
    end_date: datetime
    next_billing_date: datetime | None
    renewal_count: int
    scheduled_downgrade_id: uuid.UUID | None
    scheduled_downgrade_date: datetime | None
    upgrade_id: uuid.UUID | None
    cancelled_at: datetime | None
    cancellation_reason: str | None
    expired_at: datetime | None
    created_at: datetime


class CancellationResponse(BaseModel):
    subscription: SubscriptionResponse
    refund_amount: Decimal
    cancelled_at: datetime


class RenewalResponse(BaseModel):
    subscription: SubscriptionResponse
    previous_end_date: datetime
    new_end_date: datetime
    amount: Decimal


class UpgradeResponse(BaseModel):
    subscription: SubscriptionResponse
    upgrade_id: uuid.UUID
    from_plan_id: str
    to_plan_id: str
    upgrade_cost: Decimal
    remaining_fraction: Decimal
    ledger_entry_id: uuid.UUID | None


class DowngradeScheduleResponse(BaseModel):
    subscription: SubscriptionResponse
    downgrade_id: uuid.UUID
    to_plan_id: str
    effective_date: datetime
    credit_amount: Decimal
    message: str


class TrialConversionResponse(BaseModel):
    subscription: SubscriptionResponse
    from_plan_id: str
    to_plan_id: str
    trial_days_used: int
    remaining_trial_days: int


# --- Health, comparison, history ---


class HealthIssue(BaseModel):
    type: str  # EXPIRING_SOON, LIMIT_EXCEEDED, PAYMENT_ISSUE
    severity: str
    message: str
    action: str


class HealthRecommendation(BaseModel):
    type: str  # IMMEDIATE_ACTION, RENEWAL, TRIAL_CONVERSION
    priority: str
    title: str
    description: str
    action: str | None = None


class HealthMetrics(BaseModel):
    days_remaining: int
    utilization_percentage: float
    near_limit_features: int
    exceeded_features: int
    subscription_status: str


class SubscriptionHealthResponse(BaseModel):
    subscription_id: uuid.UUID
    health_score: float  # 0–100
    status: str  # HEALTHY, WARNING, CRITICAL
    metrics: HealthMetrics
    issues: list[HealthIssue]
    recommendations: list[HealthRecommendation]


class LimitChange(BaseModel):
    feature: str
    current: int
    target: int
    change: int
    type: str  # INCREASE, DECREASE


class PlanComparisonResponse(BaseModel):
    current_plan: PlanResponse
    target_plan: PlanResponse
    price_difference: Decimal
    new_features: list[str]
    removed_features: list[str]
    limit_changes: list[LimitChange]
    recommendation: str  # UPGRADE, DOWNGRADE, SAME_TIER


class LedgerEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    subscription_id: uuid.UUID | None
    amount: Decimal
    kind: str
    status: str
    description: str | None
    created_at: datetime


class HistoryRecord(BaseModel):
    """One lifecycle event in a subscriber's history."""

    subscription_id: uuid.UUID
    event: str  # RENEWAL, UPGRADE, DOWNGRADE, CANCELLATION, TRIAL_CONVERSION
    occurred_at: datetime
    amount: Decimal | None = None
    from_plan_id: str | None = None
    to_plan_id: str | None = None


class HistorySummary(BaseModel):
    total_charged: Decimal
    total_credited: Decimal
    active_subscriptions: int
    total_subscriptions: int


class SubscriberHistoryResponse(BaseModel):
    exported_at: datetime
    subscriptions: list[SubscriptionResponse]
    events: list[HistoryRecord]
    ledger: list[LedgerEntryResponse]
    summary: HistorySummary

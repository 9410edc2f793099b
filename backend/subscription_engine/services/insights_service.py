"""Subscriber-facing read models: subscription health, plan comparison, history export."""

import logging
import math
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.billing.context import BillingContext, default_context
from subscription_engine.billing.plans import Plan
from subscription_engine.billing.proration import ZERO, days_remaining
from subscription_engine.billing.subscriber import SubscriberRef
from subscription_engine.models.history import (
    SubscriptionCancellation,
    SubscriptionDowngrade,
    SubscriptionRenewal,
    SubscriptionUpgrade,
    TrialConversion,
)
from subscription_engine.models.ledger import LedgerEntry
from subscription_engine.models.subscription import SubscriptionStatus
from subscription_engine.schemas.subscription import (
    HealthIssue,
    HealthMetrics,
    HealthRecommendation,
    HistoryRecord,
    HistorySummary,
    LedgerEntryResponse,
    LimitChange,
    PlanComparisonResponse,
    PlanResponse,
    SubscriberHistoryResponse,
    SubscriptionHealthResponse,
    SubscriptionResponse,
)
from subscription_engine.schemas.usage import UsageStatus
from subscription_engine.services.subscription_service import (
    get_subscription,
    list_subscriber_subscriptions,
    require_plan,
)
from subscription_engine.services.usage_service import get_subscription_usage

logger = logging.getLogger(__name__)


def plan_response(plan: Plan) -> PlanResponse:
    return PlanResponse(
        id=plan.id,
        name=plan.name,
        price=plan.price,
        duration_months=plan.duration_months,
        limits=dict(plan.limits),
        is_trial=plan.is_trial,
        features=list(plan.features),
    )


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


def health_status(score: float) -> str:
    if score >= 80:
        return "HEALTHY"
    if score >= 60:
        return "WARNING"
    return "CRITICAL"


def _health_issues(status: str, remaining_days: int, exceeded: int) -> list[HealthIssue]:
    issues: list[HealthIssue] = []
    if remaining_days < 7:
        issues.append(
            HealthIssue(
                type="EXPIRING_SOON",
                severity="HIGH",
                message=f"Subscription expires in {remaining_days} days",
                action="RENEW",
            )
        )
    if exceeded > 0:
        issues.append(
            HealthIssue(
                type="LIMIT_EXCEEDED",
                severity="MEDIUM",
                message=f"{exceeded} feature limit(s) exceeded",
                action="UPGRADE",
            )
        )
    if status == SubscriptionStatus.PAST_DUE.value:
        issues.append(
            HealthIssue(
                type="PAYMENT_ISSUE",
                severity="HIGH",
                message="Payment is past due",
                action="UPDATE_PAYMENT",
            )
        )
    return issues


def _health_recommendations(score: float, is_trial: bool, remaining_days: int) -> list[HealthRecommendation]:
    recommendations: list[HealthRecommendation] = []
    if score < 60:
        recommendations.append(
            HealthRecommendation(
                type="IMMEDIATE_ACTION",
                priority="HIGH",
                title="Take Immediate Action",
                description="Subscription health is critical. Address the listed issues.",
            )
        )
    if remaining_days < 14:
        recommendations.append(
            HealthRecommendation(
                type="RENEWAL",
                priority="HIGH" if remaining_days < 7 else "MEDIUM",
                title="Renew Subscription",
                description=f"The subscription expires in {remaining_days} days. Renew to avoid interruption.",
                action="RENEW_NOW",
            )
        )
    if is_trial and remaining_days < 3:
        recommendations.append(
            HealthRecommendation(
                type="TRIAL_CONVERSION",
                priority="HIGH",
                title="Convert Trial to Paid",
                description="The trial is ending soon. Choose a plan to continue.",
                action="VIEW_PLANS",
            )
        )
    return recommendations


async def get_subscription_health(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    *,
    ctx: BillingContext = default_context,
) -> SubscriptionHealthResponse:
    """Score a subscription 0-100 from time left, limit pressure and payment state."""
    subscription = await get_subscription(db, subscription_id)
    now = ctx.clock.now()

    remaining_days = days_remaining(subscription.end_date, now)
    total_days = max(1, math.ceil((subscription.end_date - subscription.start_date).total_seconds() / 86_400))
    utilization = round((total_days - remaining_days) / total_days * 100, 1)

    usage = await get_subscription_usage(db, subscription.id, ctx=ctx)
    near_limit = sum(1 for item in usage.usage.values() if item.status is UsageStatus.NEAR_LIMIT)
    exceeded = sum(1 for item in usage.usage.values() if item.status is UsageStatus.EXCEEDED)

    score = 100.0
    if remaining_days < 7:
        score -= 30
    elif remaining_days < 14:
        score -= 15
    score -= near_limit * 10
    score -= exceeded * 20
    if subscription.status == SubscriptionStatus.PAST_DUE.value:
        score -= 25
    score = max(0.0, min(100.0, score))

    return SubscriptionHealthResponse(
        subscription_id=subscription.id,
        health_score=score,
        status=health_status(score),
        metrics=HealthMetrics(
            days_remaining=remaining_days,
            utilization_percentage=utilization,
            near_limit_features=near_limit,
            exceeded_features=exceeded,
            subscription_status=subscription.status,
        ),
        issues=_health_issues(subscription.status, remaining_days, exceeded),
        recommendations=_health_recommendations(score, subscription.is_trial, remaining_days),
    )


# ---------------------------------------------------------------------------
# Plan comparison
# ---------------------------------------------------------------------------


def _limit_changes(current: Plan, target: Plan) -> list[LimitChange]:
    changes: list[LimitChange] = []
    for feature in sorted(set(current.limits) | set(target.limits)):
        before = current.limits.get(feature, 0)
        after = target.limits.get(feature, 0)
        if before != after:
            changes.append(
                LimitChange(
                    feature=feature,
                    current=before,
                    target=after,
                    change=after - before,
                    type="INCREASE" if after > before else "DECREASE",
                )
            )
    return changes


def compare_plans(
    current_plan_id: str,
    target_plan_id: str,
    *,
    ctx: BillingContext = default_context,
) -> PlanComparisonResponse:
    """Price, feature and limit differences between two catalog plans."""
    current = require_plan(ctx.catalog, current_plan_id)
    target = require_plan(ctx.catalog, target_plan_id)

    if target.price > current.price:
        recommendation = "UPGRADE"
    elif target.price < current.price:
        recommendation = "DOWNGRADE"
    else:
        recommendation = "SAME_TIER"

    return PlanComparisonResponse(
        current_plan=plan_response(current),
        target_plan=plan_response(target),
        price_difference=target.price - current.price,
        new_features=[f for f in target.features if f not in current.features],
        removed_features=[f for f in current.features if f not in target.features],
        limit_changes=_limit_changes(current, target),
        recommendation=recommendation,
    )


# ---------------------------------------------------------------------------
# History export
# ---------------------------------------------------------------------------


async def export_subscriber_history(
    db: AsyncSession,
    subscriber: SubscriberRef,
    *,
    ctx: BillingContext = default_context,
) -> SubscriberHistoryResponse:
    """Everything recorded for one subscriber: subscriptions, lifecycle events and ledger."""
    subscriptions = await list_subscriber_subscriptions(db, subscriber)
    ids = [subscription.id for subscription in subscriptions]

    events: list[HistoryRecord] = []
    if ids:
        for renewal in (
            await db.execute(select(SubscriptionRenewal).where(SubscriptionRenewal.subscription_id.in_(ids)))
        ).scalars():
            events.append(
                HistoryRecord(
                    subscription_id=renewal.subscription_id,
                    event="RENEWAL",
                    occurred_at=renewal.renewed_at,
                    amount=renewal.amount,
                )
            )
        for upgrade in (
            await db.execute(select(SubscriptionUpgrade).where(SubscriptionUpgrade.subscription_id.in_(ids)))
        ).scalars():
            events.append(
                HistoryRecord(
                    subscription_id=upgrade.subscription_id,
                    event="UPGRADE",
                    occurred_at=upgrade.effective_date,
                    amount=upgrade.upgrade_cost,
                    from_plan_id=upgrade.from_plan_id,
                    to_plan_id=upgrade.to_plan_id,
                )
            )
        for downgrade in (
            await db.execute(select(SubscriptionDowngrade).where(SubscriptionDowngrade.subscription_id.in_(ids)))
        ).scalars():
            events.append(
                HistoryRecord(
                    subscription_id=downgrade.subscription_id,
                    event="DOWNGRADE",
                    occurred_at=downgrade.effective_date,
                    amount=downgrade.credit_amount,
                    from_plan_id=downgrade.from_plan_id,
                    to_plan_id=downgrade.to_plan_id,
                )
            )
        for cancellation in (
            await db.execute(
                select(SubscriptionCancellation).where(SubscriptionCancellation.subscription_id.in_(ids))
            )
        ).scalars():
            events.append(
                HistoryRecord(
                    subscription_id=cancellation.subscription_id,
                    event="CANCELLATION",
                    occurred_at=cancellation.cancelled_at,
                    amount=cancellation.refund_amount,
                )
            )
        for conversion in (
            await db.execute(select(TrialConversion).where(TrialConversion.subscription_id.in_(ids)))
        ).scalars():
            events.append(
                HistoryRecord(
                    subscription_id=conversion.subscription_id,
                    event="TRIAL_CONVERSION",
                    occurred_at=conversion.converted_at,
                    from_plan_id=conversion.from_plan_id,
                    to_plan_id=conversion.to_plan_id,
                )
            )
    events.sort(key=lambda record: record.occurred_at, reverse=True)

    ledger_result = await db.execute(
        select(LedgerEntry)
        .where(
            LedgerEntry.subscriber_type == subscriber.type.value,
            LedgerEntry.subscriber_id == subscriber.id,
        )
        .order_by(LedgerEntry.created_at.desc())
    )
    ledger = list(ledger_result.scalars().all())

    total_charged = sum((entry.amount for entry in ledger if entry.amount > 0), ZERO)
    total_credited = sum((-entry.amount for entry in ledger if entry.amount < 0), ZERO)

    return SubscriberHistoryResponse(
        exported_at=ctx.clock.now(),
        subscriptions=[SubscriptionResponse.model_validate(s) for s in subscriptions],
        events=events,
        ledger=[LedgerEntryResponse.model_validate(entry) for entry in ledger],
        summary=HistorySummary(
            total_charged=total_charged,
            total_credited=total_credited,
            active_subscriptions=sum(1 for s in subscriptions if s.is_active),
            total_subscriptions=len(subscriptions),
        ),
    )

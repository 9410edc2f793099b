"""Usage meter: feature consumption against the plan's limits."""

import logging
import uuid
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.billing.clock import to_naive_utc
from subscription_engine.billing.context import BillingContext, default_context
from subscription_engine.billing.exceptions import InvalidTransitionError, SubscriptionNotFoundError
from subscription_engine.billing.plans import Plan
from subscription_engine.billing.proration import days_remaining
from subscription_engine.models.subscription import Subscription, SubscriptionStatus
from subscription_engine.models.usage import UsageEvent
from subscription_engine.schemas.usage import (
    BillingCycle,
    FeatureUsage,
    LimitCheckResult,
    SubscriptionUsageResponse,
    UsageStatus,
)
from subscription_engine.services.subscription_service import get_subscription, require_plan

logger = logging.getLogger(__name__)


def usage_status(percentage: float, threshold_pct: int) -> UsageStatus:
    if percentage >= 100:
        return UsageStatus.EXCEEDED
    if percentage >= threshold_pct:
        return UsageStatus.NEAR_LIMIT
    return UsageStatus.OK


def feature_usage(used: int, limit: int | None, threshold_pct: int) -> FeatureUsage:
    """Build the usage summary for one feature; ``limit=None`` means unlimited."""
    if limit is None:
        return FeatureUsage(used=used, limit=None, percentage=0.0, remaining=None, status=UsageStatus.OK)
    percentage = float(
        (Decimal(used) * 100 / Decimal(limit)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    )
    return FeatureUsage(
        used=used,
        limit=limit,
        percentage=percentage,
        remaining=max(0, limit - used),
        status=usage_status(percentage, threshold_pct),
    )


async def _count_usage(db: AsyncSession, subscription: Subscription, feature: str) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(UsageEvent.quantity), 0)).where(
            UsageEvent.subscription_id == subscription.id,
            UsageEvent.feature == feature,
            UsageEvent.occurred_at >= subscription.start_date,
            UsageEvent.occurred_at < subscription.end_date,
        )
    )
    return int(result.scalar_one())


async def _count_usage_by_feature(db: AsyncSession, subscription: Subscription) -> dict[str, int]:
    result = await db.execute(
        select(UsageEvent.feature, func.sum(UsageEvent.quantity))
        .where(
            UsageEvent.subscription_id == subscription.id,
            UsageEvent.occurred_at >= subscription.start_date,
            UsageEvent.occurred_at < subscription.end_date,
        )
        .group_by(UsageEvent.feature)
    )
    return {feature: int(total or 0) for feature, total in result.all()}


def _evaluate_limit(plan: Plan, feature: str, used: int, requested: int) -> LimitCheckResult:
    limit = plan.limit_for(feature)
    if limit is None:
        return LimitCheckResult(feature=feature, allowed=True, requested=requested, used=used)

    remaining = max(0, limit - used)
    if remaining >= requested:
        return LimitCheckResult(
            feature=feature,
            allowed=True,
            requested=requested,
            used=used,
            limit=limit,
            remaining=remaining,
        )
    return LimitCheckResult(
        feature=feature,
        allowed=False,
        requested=requested,
        used=used,
        limit=limit,
        remaining=remaining,
        exceeded_by=requested - remaining,
        reason=f"{feature} limit of {limit} reached for the current billing period",
    )


async def get_subscription_usage(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    feature: str | None = None,
    *,
    ctx: BillingContext = default_context,
) -> SubscriptionUsageResponse:
    """Usage of every limited feature (or just ``feature``) in the current period."""
    subscription = await get_subscription(db, subscription_id)
    plan = require_plan(ctx.catalog, subscription.plan_id)

    if feature is not None:
        counts = {feature: await _count_usage(db, subscription, feature)}
        features = [feature]
    else:
        counts = await _count_usage_by_feature(db, subscription)
        features = [name for name in plan.limits if plan.limit_for(name) is not None]

    usage = {
        name: feature_usage(counts.get(name, 0), plan.limit_for(name), ctx.near_limit_threshold_pct)
        for name in features
    }
    return SubscriptionUsageResponse(
        subscription_id=subscription.id,
        plan_id=plan.id,
        usage=usage,
        billing_cycle=BillingCycle(
            start_date=subscription.start_date,
            end_date=subscription.end_date,
            days_remaining=days_remaining(subscription.end_date, ctx.clock.now()),
        ),
    )


async def check_subscription_limit(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    feature: str,
    requested: int = 1,
    *,
    ctx: BillingContext = default_context,
) -> LimitCheckResult:
    """Whether ``requested`` more units of ``feature`` fit in the plan's limit.

    Read-only: two callers may both see room for the last unit. Use
    :func:`increment_if_below_limit` to check and consume atomically.
    """
    subscription = await get_subscription(db, subscription_id)
    if subscription.status != SubscriptionStatus.ACTIVE.value:
        return LimitCheckResult(
            feature=feature,
            allowed=False,
            requested=requested,
            reason=f"Subscription is {subscription.status}",
        )
    plan = require_plan(ctx.catalog, subscription.plan_id)
    used = await _count_usage(db, subscription, feature)
    return _evaluate_limit(plan, feature, used, requested)


async def increment_if_below_limit(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    feature: str,
    count: int = 1,
    *,
    ctx: BillingContext = default_context,
) -> LimitCheckResult:
    """Consume ``count`` units of ``feature`` only if the limit allows it.

    The subscription row is locked for the rest of the caller's transaction,
    so concurrent consumers of the same subscription are serialized.
    """
    result = await db.execute(
        select(Subscription)
        .where(Subscription.id == subscription_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    subscription = result.scalar_one_or_none()
    if subscription is None:
        raise SubscriptionNotFoundError(subscription_id)
    if subscription.status != SubscriptionStatus.ACTIVE.value:
        raise InvalidTransitionError(
            "Usage can only be consumed on an active subscription",
            {"subscription_id": subscription.id, "status": subscription.status},
        )

    plan = require_plan(ctx.catalog, subscription.plan_id)
    used = await _count_usage(db, subscription, feature)
    check = _evaluate_limit(plan, feature, used, count)
    if not check.allowed:
        logger.info(
            "Refused %d %s for subscription %s (used %d of %s)",
            count,
            feature,
            subscription.id,
            used,
            check.limit,
        )
        return check

    db.add(
        UsageEvent(
            subscription_id=subscription.id,
            feature=feature,
            quantity=count,
            occurred_at=ctx.clock.now(),
        )
    )
    await db.flush()
    if check.remaining is not None:
        check.remaining -= count
    check.used = used + count
    return check


async def record_usage(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    feature: str,
    quantity: int = 1,
    occurred_at: datetime | None = None,
    *,
    ctx: BillingContext = default_context,
) -> UsageEvent:
    """Record consumption that already happened elsewhere, without a limit check."""
    if quantity < 1:
        raise ValueError("quantity must be positive")
    subscription = await get_subscription(db, subscription_id)
    event = UsageEvent(
        subscription_id=subscription.id,
        feature=feature,
        quantity=quantity,
        occurred_at=to_naive_utc(occurred_at) if occurred_at is not None else ctx.clock.now(),
    )
    db.add(event)
    await db.flush()
    logger.debug("Recorded %d %s for subscription %s", quantity, feature, subscription.id)
    return event

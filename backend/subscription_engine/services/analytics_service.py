"""Analytics aggregator: churn, renewal rate, MRR/ARR and growth over a timeframe.

Read-only. The period covers subscriptions created since ``now - timeframe``;
growth compares that cohort with the one created in the preceding window of
the same length, using each subscription's current status.
"""

import logging
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.billing.context import BillingContext, default_context
from subscription_engine.billing.exceptions import InvalidTimeframeError
from subscription_engine.billing.plans import PlanCatalog
from subscription_engine.billing.proration import ZERO, add_months, quantize_money
from subscription_engine.models.history import SubscriptionRenewal
from subscription_engine.models.subscription import Subscription, SubscriptionStatus
from subscription_engine.schemas.analytics import (
    AnalyticsMetrics,
    AnalyticsResponse,
    AnalyticsTotals,
    GrowthMetrics,
    PlanBreakdown,
)

logger = logging.getLogger(__name__)

TIMEFRAMES = ("7d", "30d", "90d", "1y")

ACTIVE = SubscriptionStatus.ACTIVE.value
CANCELLED = SubscriptionStatus.CANCELLED.value


def period_start(timeframe: str, now: datetime) -> datetime:
    """Start of the analysis window ending at ``now``."""
    if timeframe == "7d":
        return now - timedelta(days=7)
    if timeframe == "30d":
        return now - timedelta(days=30)
    if timeframe == "90d":
        return now - timedelta(days=90)
    if timeframe == "1y":
        return add_months(now, -12)
    raise InvalidTimeframeError(timeframe)


def _rate(numerator: int, denominator: int) -> float:
    if denominator <= 0:
        return 0.0
    return round(numerator / denominator, 4)


def _growth_pct(current: Decimal | int, previous: Decimal | int) -> float:
    if previous <= 0:
        return 0.0
    change = (Decimal(current) - Decimal(previous)) * 100 / Decimal(previous)
    return float(change.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


async def _count(db: AsyncSession, *conditions) -> int:
    result = await db.execute(select(func.count()).select_from(Subscription).where(*conditions))
    return result.scalar_one()


async def _count_by(db: AsyncSession, column, *conditions) -> dict[str, int]:
    result = await db.execute(select(column, func.count()).where(*conditions).group_by(column))
    return {key: count for key, count in result.all()}


async def _mrr(db: AsyncSession, catalog: PlanCatalog, *conditions) -> Decimal:
    """Sum of plan prices over ACTIVE, non-trial subscriptions matching ``conditions``."""
    counts = await _count_by(
        db,
        Subscription.plan_id,
        Subscription.status == ACTIVE,
        Subscription.is_trial.is_(False),
        *conditions,
    )
    total = ZERO
    for plan_id, count in counts.items():
        plan = catalog.get_plan(plan_id)
        if plan is None:
            logger.warning("Plan %s not in catalog; excluded from MRR", plan_id)
            continue
        total += plan.price * count
    return quantize_money(total)


async def get_analytics(
    db: AsyncSession,
    timeframe: str = "30d",
    *,
    ctx: BillingContext = default_context,
) -> AnalyticsResponse:
    """Aggregate subscription metrics for subscriptions created within ``timeframe``."""
    now = ctx.clock.now()
    start = period_start(timeframe, now)
    previous_start = start - (now - start)
    in_period = Subscription.created_at >= start

    total = await _count(db, in_period)
    active = await _count(db, in_period, Subscription.status == ACTIVE)
    trial = await _count(db, in_period, Subscription.is_trial.is_(True))
    cancelled = await _count(db, in_period, Subscription.status == CANCELLED)
    by_status = await _count_by(db, Subscription.status, in_period)

    by_plan: list[PlanBreakdown] = []
    for plan_id, count in (await _count_by(db, Subscription.plan_id, in_period)).items():
        plan = ctx.catalog.get_plan(plan_id)
        price = plan.price if plan is not None else ZERO
        by_plan.append(
            PlanBreakdown(
                plan_id=plan_id,
                plan_name=plan.name if plan is not None else "Unknown",
                count=count,
                price=price,
                revenue=quantize_money(price * count),
            )
        )
    by_plan.sort(key=lambda item: (-item.revenue, item.plan_id))

    # Eligible = active subscriptions in the period whose end date already passed
    renewals = (
        await db.execute(
            select(func.count()).select_from(SubscriptionRenewal).where(SubscriptionRenewal.renewed_at >= start)
        )
    ).scalar_one()
    eligible = await _count(db, in_period, Subscription.status == ACTIVE, Subscription.end_date < now)

    mrr = await _mrr(db, ctx.catalog)
    current_mrr = await _mrr(db, ctx.catalog, in_period)
    previous_mrr = await _mrr(
        db, ctx.catalog, Subscription.created_at >= previous_start, Subscription.created_at < start
    )
    previous_active = await _count(
        db,
        Subscription.status == ACTIVE,
        Subscription.created_at >= previous_start,
        Subscription.created_at < start,
    )

    logger.debug("Computed %s analytics over %d subscriptions", timeframe, total)
    return AnalyticsResponse(
        timeframe=timeframe,
        totals=AnalyticsTotals(all=total, active=active, trial=trial, paid=total - trial),
        by_plan=by_plan,
        by_status=by_status,
        metrics=AnalyticsMetrics(
            churn_rate=_rate(cancelled, total),
            renewal_rate=_rate(renewals, eligible),
            mrr=mrr,
            arr=mrr * 12,
            growth=GrowthMetrics(
                mrr_growth=_growth_pct(current_mrr, previous_mrr),
                subscriber_growth=_growth_pct(active, previous_active),
                net_new_mrr=current_mrr - previous_mrr,
                net_new_subscribers=active - previous_active,
            ),
        ),
    )

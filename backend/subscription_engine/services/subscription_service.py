"""Subscription lifecycle: creation, renewal, plan changes, cancellation, expiry.

Every state change is a conditional UPDATE on the row's current status (and,
where relevant, on the fields the change depends on), so a transition that
races another one affects zero rows instead of overwriting it. Functions
flush but never commit; the caller owns the transaction.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.billing.clock import to_naive_utc
from subscription_engine.billing.context import BillingContext, default_context
from subscription_engine.billing.exceptions import (
    ActiveSubscriptionExistsError,
    InvalidDateError,
    InvalidPlanChangeError,
    InvalidTransitionError,
    PendingDowngradeError,
    PlanNotFoundError,
    SubscriptionNotFoundError,
    TrialAlreadyUsedError,
)
from subscription_engine.billing.notifications import NotificationType, dispatch
from subscription_engine.billing.plans import Plan, PlanCatalog
from subscription_engine.billing.proration import (
    add_months,
    downgrade_credit,
    prorated_amount,
    refund_on_cancel,
    remaining_fraction,
    upgrade_cost,
)
from subscription_engine.billing.subscriber import SubscriberRef, SubscriberType
from subscription_engine.models.history import (
    SubscriptionCancellation,
    SubscriptionDowngrade,
    SubscriptionRenewal,
    SubscriptionUpgrade,
    TrialConversion,
)
from subscription_engine.models.ledger import LedgerEntryKind, LedgerEntryStatus
from subscription_engine.models.subscriber import FREE_TIER, SubscriberAccount
from subscription_engine.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)

ACTIVE = SubscriptionStatus.ACTIVE.value


@dataclass
class CancellationResult:
    subscription: Subscription
    cancellation: SubscriptionCancellation


@dataclass
class RenewalResult:
    subscription: Subscription
    renewal: SubscriptionRenewal


@dataclass
class UpgradeResult:
    subscription: Subscription
    upgrade: SubscriptionUpgrade


@dataclass
class DowngradeScheduleResult:
    subscription: Subscription
    downgrade: SubscriptionDowngrade


@dataclass
class TrialConversionResult:
    subscription: Subscription
    conversion: TrialConversion


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def _subscriber_clause(subscriber: SubscriberRef):
    if subscriber.type is SubscriberType.USER:
        return Subscription.user_id == subscriber.id
    return Subscription.employer_id == subscriber.id


def require_plan(catalog: PlanCatalog, plan_id: str | None) -> Plan:
    """Fetch a plan from the catalog or raise PlanNotFoundError."""
    plan = catalog.get_plan(plan_id) if plan_id else None
    if plan is None:
        raise PlanNotFoundError(plan_id)
    return plan


async def get_subscription(db: AsyncSession, subscription_id: uuid.UUID) -> Subscription:
    """Load a subscription or raise SubscriptionNotFoundError."""
    subscription = await db.get(Subscription, subscription_id)
    if subscription is None:
        raise SubscriptionNotFoundError(subscription_id)
    return subscription


async def get_active_subscription(db: AsyncSession, subscriber: SubscriberRef) -> Subscription | None:
    """Return the subscriber's ACTIVE subscription, if any."""
    result = await db.execute(
        select(Subscription).where(_subscriber_clause(subscriber), Subscription.status == ACTIVE)
    )
    return result.scalar_one_or_none()


async def list_subscriber_subscriptions(db: AsyncSession, subscriber: SubscriberRef) -> list[Subscription]:
    """All subscriptions of a subscriber, newest first."""
    result = await db.execute(
        select(Subscription)
        .where(_subscriber_clause(subscriber))
        .order_by(Subscription.created_at.desc())
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------


async def _transition(
    db: AsyncSession,
    subscription: Subscription,
    expected_status: str,
    values: dict[str, Any],
    now: datetime,
    *conditions,
) -> bool:
    """Apply ``values`` only if the row still has ``expected_status`` and ``conditions``.

    Returns True when the row was updated; the in-session object is refreshed.
    """
    result = await db.execute(
        update(Subscription)
        .where(
            Subscription.id == subscription.id,
            Subscription.status == expected_status,
            *conditions,
        )
        .values(**values, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    await db.refresh(subscription)
    return True


async def _set_subscriber_flag(
    db: AsyncSession, subscriber: SubscriberRef, active: bool, tier: str, now: datetime
) -> None:
    account = await db.get(SubscriberAccount, (subscriber.type.value, subscriber.id))
    if account is None:
        account = SubscriberAccount(subscriber_type=subscriber.type.value, subscriber_id=subscriber.id)
        db.add(account)
    account.has_active_subscription = active
    account.subscription_tier = tier if active else FREE_TIER
    account.updated_at = now
    await db.flush()


async def _record_pending_entry(
    db: AsyncSession,
    ctx: BillingContext,
    subscription: Subscription,
    amount: Decimal,
    kind: LedgerEntryKind,
    description: str,
    reference_id: uuid.UUID | None = None,
) -> uuid.UUID | None:
    """Record a pending charge (positive) or refund (negative).

    The write runs in a savepoint, so a failed ledger write is logged and
    rolled back on its own without undoing the transition.
    """
    if amount == 0:
        return None
    try:
        async with db.begin_nested():
            return await ctx.ledger.record_payment(
                db,
                subscription.subscriber,
                amount,
                kind,
                status=LedgerEntryStatus.PENDING,
                recorded_at=ctx.clock.now(),
                subscription_id=subscription.id,
                reference_id=reference_id,
                description=description,
            )
    except Exception:
        logger.exception(
            "Ledger write failed for %s entry of %s on subscription %s",
            kind.value,
            amount,
            subscription.id,
        )
        return None


def _require_active(subscription: Subscription, action: str) -> None:
    if subscription.status != ACTIVE:
        raise InvalidTransitionError(
            f"Only active subscriptions can be {action}",
            {"subscription_id": subscription.id, "status": subscription.status},
        )


def _lost_race(subscription: Subscription, action: str) -> InvalidTransitionError:
    logger.warning("Concurrent change prevented %s of subscription %s", action, subscription.id)
    return InvalidTransitionError(
        f"Subscription changed concurrently; {action} was not applied",
        {"subscription_id": subscription.id},
    )


async def _insert_subscription(
    db: AsyncSession,
    subscriber: SubscriberRef,
    plan: Plan,
    start: datetime,
    end: datetime,
    is_trial: bool,
) -> Subscription:
    if end <= start:
        raise InvalidDateError(
            "Subscription period must have positive length",
            {"start_date": start, "end_date": end},
        )
    if await get_active_subscription(db, subscriber) is not None:
        raise ActiveSubscriptionExistsError(
            f"{subscriber} already has an active subscription", {"subscriber": subscriber}
        )

    subscription = Subscription(
        user_id=subscriber.user_id,
        employer_id=subscriber.employer_id,
        plan_id=plan.id,
        status=ACTIVE,
        is_trial=is_trial,
        start_date=start,
        end_date=end,
        next_billing_date=end,
        renewal_count=0,
        created_at=start,
        updated_at=start,
    )
    db.add(subscription)
    try:
        await db.flush()
    except IntegrityError as exc:
        # A concurrent create won the partial unique index on ACTIVE rows
        raise ActiveSubscriptionExistsError(
            f"{subscriber} already has an active subscription", {"subscriber": subscriber}
        ) from exc

    await _set_subscriber_flag(db, subscriber, True, plan.id, start)
    return subscription


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


async def create_subscription(
    db: AsyncSession,
    subscriber: SubscriberRef,
    plan_id: str,
    *,
    ctx: BillingContext = default_context,
) -> Subscription:
    """Start a paid subscription: ACTIVE from now for the plan's duration."""
    plan = require_plan(ctx.catalog, plan_id)
    if plan.is_trial:
        raise InvalidPlanChangeError(
            f"Plan {plan.id!r} is a trial plan; start a trial subscription instead",
            {"plan_id": plan.id},
        )

    now = ctx.clock.now()
    subscription = await _insert_subscription(
        db, subscriber, plan, now, add_months(now, plan.duration_months), is_trial=False
    )
    await _record_pending_entry(
        db, ctx, subscription, plan.price, LedgerEntryKind.SUBSCRIPTION, f"Subscription to {plan.name}"
    )
    logger.info(
        "Created subscription %s for %s on plan %s (ends %s)",
        subscription.id,
        subscriber,
        plan.id,
        subscription.end_date,
    )
    return subscription


async def create_trial_subscription(
    db: AsyncSession,
    subscriber: SubscriberRef,
    plan_id: str | None = None,
    *,
    ctx: BillingContext = default_context,
) -> Subscription:
    """Start a trial; each subscriber gets at most one, ever."""
    plan = require_plan(ctx.catalog, plan_id) if plan_id else ctx.catalog.get_trial_plan()
    if plan is None:
        raise PlanNotFoundError(None)

    previous_trial = await db.execute(
        select(Subscription.id)
        .where(
            _subscriber_clause(subscriber),
            or_(
                Subscription.is_trial.is_(True),
                Subscription.id.in_(select(TrialConversion.subscription_id)),
            ),
        )
        .limit(1)
    )
    if previous_trial.scalar_one_or_none() is not None:
        raise TrialAlreadyUsedError(f"{subscriber} has already used a trial", {"subscriber": subscriber})

    now = ctx.clock.now()
    subscription = await _insert_subscription(
        db, subscriber, plan, now, now + timedelta(days=ctx.trial_days), is_trial=True
    )
    logger.info(
        "Created %d-day trial %s for %s on plan %s",
        ctx.trial_days,
        subscription.id,
        subscriber,
        plan.id,
    )
    return subscription


# ---------------------------------------------------------------------------
# Interactive transitions
# ---------------------------------------------------------------------------


async def cancel_subscription(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    reason: str | None = None,
    cancelled_by: str | None = None,
    *,
    ctx: BillingContext = default_context,
) -> CancellationResult:
    """Cancel an active subscription and record the refund for the unused period."""
    subscription = await get_subscription(db, subscription_id)
    _require_active(subscription, "cancelled")
    plan = require_plan(ctx.catalog, subscription.plan_id)

    now = ctx.clock.now()
    refund = refund_on_cancel(
        plan.price, remaining_fraction(subscription.start_date, subscription.end_date, now)
    )

    applied = await _transition(
        db,
        subscription,
        ACTIVE,
        {
            "status": SubscriptionStatus.CANCELLED.value,
            "cancelled_at": now,
            "cancellation_reason": reason,
            "cancelled_by": cancelled_by,
            "scheduled_downgrade_id": None,
            "scheduled_downgrade_date": None,
        },
        now,
    )
    if not applied:
        raise _lost_race(subscription, "cancellation")

    cancellation = SubscriptionCancellation(
        subscription_id=subscription.id,
        reason=reason,
        cancelled_by=cancelled_by,
        cancelled_at=now,
        refund_amount=refund,
    )
    db.add(cancellation)
    await db.flush()
    await _set_subscriber_flag(db, subscription.subscriber, False, FREE_TIER, now)
    await _record_pending_entry(
        db,
        ctx,
        subscription,
        -refund,
        LedgerEntryKind.SUBSCRIPTION_REFUND,
        f"Refund for unused {plan.name} period",
        reference_id=cancellation.id,
    )

    logger.info("Cancelled subscription %s (refund %s)", subscription.id, refund)
    await dispatch(
        ctx.notifier,
        subscription.subscriber,
        NotificationType.SUBSCRIPTION_CANCELLED,
        {"subscription_id": str(subscription.id), "refund_amount": str(refund)},
    )
    return CancellationResult(subscription=subscription, cancellation=cancellation)


async def renew_subscription(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    *,
    ctx: BillingContext = default_context,
) -> RenewalResult:
    """Roll an active subscription into its next billing period."""
    subscription = await get_subscription(db, subscription_id)
    _require_active(subscription, "renewed")
    if subscription.is_trial:
        raise InvalidTransitionError(
            "Trial subscriptions are converted, not renewed",
            {"subscription_id": subscription.id},
        )
    plan = require_plan(ctx.catalog, subscription.plan_id)

    now = ctx.clock.now()
    previous_end = subscription.end_date
    new_start = previous_end
    new_end = add_months(new_start, plan.duration_months)

    applied = await _transition(
        db,
        subscription,
        ACTIVE,
        {
            "start_date": new_start,
            "end_date": new_end,
            "next_billing_date": new_end,
            "renewal_count": Subscription.renewal_count + 1,
            "last_renewed_at": now,
        },
        now,
        Subscription.end_date == previous_end,
    )
    if not applied:
        raise _lost_race(subscription, "renewal")

    renewal = SubscriptionRenewal(
        subscription_id=subscription.id,
        renewed_at=now,
        previous_end_date=previous_end,
        new_end_date=new_end,
        amount=plan.price,
    )
    db.add(renewal)
    await db.flush()
    await _record_pending_entry(
        db,
        ctx,
        subscription,
        plan.price,
        LedgerEntryKind.SUBSCRIPTION_RENEWAL,
        f"Renewal of {plan.name}",
        reference_id=renewal.id,
    )

    logger.info(
        "Renewed subscription %s until %s (renewal #%d)",
        subscription.id,
        new_end,
        subscription.renewal_count,
    )
    await dispatch(
        ctx.notifier,
        subscription.subscriber,
        NotificationType.SUBSCRIPTION_RENEWED,
        {
            "subscription_id": str(subscription.id),
            "end_date": new_end.isoformat(),
            "plan_id": plan.id,
        },
    )
    return RenewalResult(subscription=subscription, renewal=renewal)


async def upgrade_subscription(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    new_plan_id: str,
    *,
    ctx: BillingContext = default_context,
) -> UpgradeResult:
    """Swap to a more expensive plan now and charge the prorated difference."""
    subscription = await get_subscription(db, subscription_id)
    _require_active(subscription, "upgraded")
    if subscription.is_trial:
        raise InvalidTransitionError(
            "Convert the trial to a paid plan before upgrading",
            {"subscription_id": subscription.id},
        )
    if subscription.scheduled_downgrade_id is not None:
        raise PendingDowngradeError(
            "A downgrade is scheduled for this subscription",
            {"subscription_id": subscription.id, "downgrade_id": subscription.scheduled_downgrade_id},
        )

    now = ctx.clock.now()
    if subscription.end_date <= now:
        raise InvalidTransitionError(
            "The current billing period has ended; renew before upgrading",
            {"subscription_id": subscription.id, "end_date": subscription.end_date},
        )

    current_plan = require_plan(ctx.catalog, subscription.plan_id)
    new_plan = require_plan(ctx.catalog, new_plan_id)
    if new_plan.price <= current_plan.price:
        raise InvalidPlanChangeError(
            "New plan must be more expensive than current plan",
            {"current_plan": current_plan.id, "new_plan": new_plan.id},
        )

    remaining = remaining_fraction(subscription.start_date, subscription.end_date, now)
    cost = upgrade_cost(current_plan.price, new_plan.price, remaining)
    upgrade_id = uuid.uuid4()

    applied = await _transition(
        db,
        subscription,
        ACTIVE,
        {"plan_id": new_plan.id, "upgraded_at": now, "upgrade_id": upgrade_id},
        now,
        Subscription.plan_id == current_plan.id,
        Subscription.scheduled_downgrade_id.is_(None),
    )
    if not applied:
        raise _lost_race(subscription, "upgrade")

    ledger_entry_id = await _record_pending_entry(
        db,
        ctx,
        subscription,
        cost,
        LedgerEntryKind.SUBSCRIPTION_UPGRADE,
        f"Upgrade from {current_plan.name} to {new_plan.name}",
        reference_id=upgrade_id,
    )
    upgrade = SubscriptionUpgrade(
        id=upgrade_id,
        subscription_id=subscription.id,
        from_plan_id=current_plan.id,
        to_plan_id=new_plan.id,
        upgrade_cost=cost,
        prorated_amount=prorated_amount(current_plan.price, 1 - remaining),
        remaining_fraction=remaining,
        effective_date=now,
        ledger_entry_id=ledger_entry_id,
    )
    db.add(upgrade)
    await db.flush()
    await _set_subscriber_flag(db, subscription.subscriber, True, new_plan.id, now)

    logger.info(
        "Upgraded subscription %s from %s to %s (cost %s)",
        subscription.id,
        current_plan.id,
        new_plan.id,
        cost,
    )
    await dispatch(
        ctx.notifier,
        subscription.subscriber,
        NotificationType.SUBSCRIPTION_UPGRADED,
        {"subscription_id": str(subscription.id), "plan_id": new_plan.id, "upgrade_cost": str(cost)},
    )
    return UpgradeResult(subscription=subscription, upgrade=upgrade)


async def schedule_downgrade(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    new_plan_id: str,
    effective_date: datetime | None = None,
    *,
    ctx: BillingContext = default_context,
) -> DowngradeScheduleResult:
    """Record a downgrade to a cheaper plan, applied later by the downgrade sweep.

    The credit is computed for the remaining fraction of the period at the
    effective date (default: the end of the current period).
    """
    subscription = await get_subscription(db, subscription_id)
    _require_active(subscription, "downgraded")
    if subscription.is_trial:
        raise InvalidTransitionError(
            "Trial subscriptions cannot be downgraded",
            {"subscription_id": subscription.id},
        )
    if subscription.scheduled_downgrade_id is not None:
        raise PendingDowngradeError(
            "A downgrade is already scheduled for this subscription",
            {"subscription_id": subscription.id, "downgrade_id": subscription.scheduled_downgrade_id},
        )

    current_plan = require_plan(ctx.catalog, subscription.plan_id)
    new_plan = require_plan(ctx.catalog, new_plan_id)
    if new_plan.price >= current_plan.price:
        raise InvalidPlanChangeError(
            "New plan must be less expensive than current plan",
            {"current_plan": current_plan.id, "new_plan": new_plan.id},
        )

    now = ctx.clock.now()
    effective = to_naive_utc(effective_date) if effective_date is not None else subscription.end_date
    if not now < effective <= subscription.end_date:
        raise InvalidDateError(
            "Downgrade must take effect after now and no later than the end of the period",
            {"effective_date": effective, "end_date": subscription.end_date},
        )

    credit = downgrade_credit(
        current_plan.price,
        new_plan.price,
        remaining_fraction(subscription.start_date, subscription.end_date, effective),
    )
    downgrade = SubscriptionDowngrade(
        id=uuid.uuid4(),
        subscription_id=subscription.id,
        from_plan_id=current_plan.id,
        to_plan_id=new_plan.id,
        effective_date=effective,
        credit_amount=credit,
        created_at=now,
    )
    db.add(downgrade)
    await db.flush()

    applied = await _transition(
        db,
        subscription,
        ACTIVE,
        {"scheduled_downgrade_id": downgrade.id, "scheduled_downgrade_date": effective},
        now,
        Subscription.plan_id == current_plan.id,
        Subscription.scheduled_downgrade_id.is_(None),
    )
    if not applied:
        raise _lost_race(subscription, "downgrade scheduling")

    logger.info(
        "Scheduled downgrade %s of subscription %s to %s on %s (credit %s)",
        downgrade.id,
        subscription.id,
        new_plan.id,
        effective,
        credit,
    )
    return DowngradeScheduleResult(subscription=subscription, downgrade=downgrade)


async def convert_trial_to_paid(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    plan_id: str,
    *,
    ctx: BillingContext = default_context,
) -> TrialConversionResult:
    """Turn a trial into a paid plan, keeping the unused trial time."""
    subscription = await get_subscription(db, subscription_id)
    _require_active(subscription, "converted")
    if not subscription.is_trial:
        raise InvalidTransitionError(
            "Only trial subscriptions can be converted",
            {"subscription_id": subscription.id},
        )
    plan = require_plan(ctx.catalog, plan_id)
    if plan.is_trial:
        raise InvalidPlanChangeError(
            "A trial must be converted to a paid plan", {"plan_id": plan.id}
        )

    now = ctx.clock.now()
    trial_plan_id = subscription.plan_id
    remaining = max(timedelta(0), subscription.end_date - now)
    new_end = add_months(now + remaining, plan.duration_months)

    applied = await _transition(
        db,
        subscription,
        ACTIVE,
        {
            "plan_id": plan.id,
            "is_trial": False,
            "end_date": new_end,
            "next_billing_date": new_end,
            "converted_from_trial_at": now,
        },
        now,
        Subscription.is_trial.is_(True),
    )
    if not applied:
        raise _lost_race(subscription, "trial conversion")

    conversion = TrialConversion(
        subscription_id=subscription.id,
        from_plan_id=trial_plan_id,
        to_plan_id=plan.id,
        converted_at=now,
        trial_days_used=max(0, (now - subscription.start_date).days),
        remaining_trial_days=remaining.days,
    )
    db.add(conversion)
    await db.flush()
    await _set_subscriber_flag(db, subscription.subscriber, True, plan.id, now)
    await _record_pending_entry(
        db,
        ctx,
        subscription,
        plan.price,
        LedgerEntryKind.SUBSCRIPTION,
        f"Trial converted to {plan.name}",
        reference_id=conversion.id,
    )

    logger.info(
        "Converted trial %s to plan %s (ends %s, %d trial days carried over)",
        subscription.id,
        plan.id,
        new_end,
        remaining.days,
    )
    await dispatch(
        ctx.notifier,
        subscription.subscriber,
        NotificationType.TRIAL_CONVERTED,
        {"subscription_id": str(subscription.id), "plan_id": plan.id, "end_date": new_end.isoformat()},
    )
    return TrialConversionResult(subscription=subscription, conversion=conversion)


async def mark_past_due(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    *,
    ctx: BillingContext = default_context,
) -> Subscription:
    """Flag an active subscription whose payment failed to settle.

    The subscriber loses active access and any scheduled downgrade is dropped.
    """
    subscription = await get_subscription(db, subscription_id)
    _require_active(subscription, "marked past due")
    now = ctx.clock.now()
    applied = await _transition(
        db,
        subscription,
        ACTIVE,
        {
            "status": SubscriptionStatus.PAST_DUE.value,
            "scheduled_downgrade_id": None,
            "scheduled_downgrade_date": None,
        },
        now,
    )
    if not applied:
        raise _lost_race(subscription, "past-due marking")
    await _set_subscriber_flag(db, subscription.subscriber, False, FREE_TIER, now)
    logger.info("Subscription %s marked as past_due", subscription.id)
    return subscription


async def resolve_past_due(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    *,
    ctx: BillingContext = default_context,
) -> Subscription:
    """Return a past-due subscription to ACTIVE once its payment settles."""
    subscription = await get_subscription(db, subscription_id)
    if subscription.status != SubscriptionStatus.PAST_DUE.value:
        raise InvalidTransitionError(
            "Only past-due subscriptions can be reactivated",
            {"subscription_id": subscription.id, "status": subscription.status},
        )
    if await get_active_subscription(db, subscription.subscriber) is not None:
        raise ActiveSubscriptionExistsError(
            f"{subscription.subscriber} already has an active subscription",
            {"subscriber": subscription.subscriber},
        )

    now = ctx.clock.now()
    try:
        applied = await _transition(
            db, subscription, SubscriptionStatus.PAST_DUE.value, {"status": ACTIVE}, now
        )
    except IntegrityError as exc:
        raise ActiveSubscriptionExistsError(
            f"{subscription.subscriber} already has an active subscription",
            {"subscriber": subscription.subscriber},
        ) from exc
    if not applied:
        raise _lost_race(subscription, "reactivation")
    await _set_subscriber_flag(db, subscription.subscriber, True, subscription.plan_id, now)
    logger.info("Subscription %s reactivated after payment", subscription.id)
    return subscription


# ---------------------------------------------------------------------------
# Time-triggered transitions (driven by the sweeps)
# ---------------------------------------------------------------------------


async def apply_scheduled_downgrade(
    db: AsyncSession,
    subscription: Subscription,
    *,
    ctx: BillingContext = default_context,
) -> SubscriptionDowngrade | None:
    """Apply a due scheduled downgrade and issue its credit.

    Returns the applied downgrade, or None when there is nothing (left) to
    apply. A ledger failure propagates so the whole item rolls back and the
    next sweep retries it.
    """
    now = ctx.clock.now()
    if (
        subscription.status != ACTIVE
        or subscription.scheduled_downgrade_id is None
        or subscription.scheduled_downgrade_date is None
        or subscription.scheduled_downgrade_date > now
    ):
        return None

    downgrade = await db.get(SubscriptionDowngrade, subscription.scheduled_downgrade_id)
    if downgrade is None:
        raise InvalidTransitionError(
            "Scheduled downgrade record is missing",
            {"subscription_id": subscription.id, "downgrade_id": subscription.scheduled_downgrade_id},
        )

    applied = await _transition(
        db,
        subscription,
        ACTIVE,
        {
            "plan_id": downgrade.to_plan_id,
            "scheduled_downgrade_id": None,
            "scheduled_downgrade_date": None,
            "downgraded_at": now,
        },
        now,
        Subscription.scheduled_downgrade_id == downgrade.id,
    )
    if not applied:
        return None

    if downgrade.credit_amount > 0:
        await ctx.ledger.record_payment(
            db,
            subscription.subscriber,
            -downgrade.credit_amount,
            LedgerEntryKind.SUBSCRIPTION_CREDIT,
            status=LedgerEntryStatus.COMPLETED,
            recorded_at=now,
            subscription_id=subscription.id,
            reference_id=downgrade.id,
            description=f"Credit from downgrade to {downgrade.to_plan_id}",
        )
    await _set_subscriber_flag(db, subscription.subscriber, True, downgrade.to_plan_id, now)

    logger.info(
        "Applied downgrade %s: subscription %s now on %s (credit %s)",
        downgrade.id,
        subscription.id,
        downgrade.to_plan_id,
        downgrade.credit_amount,
    )
    return downgrade


async def expire_subscription(
    db: AsyncSession,
    subscription: Subscription,
    *,
    ctx: BillingContext = default_context,
) -> bool:
    """Move an ACTIVE subscription whose period ended to EXPIRED.

    Returns False when the subscription is no longer eligible (already
    cancelled, already expired, or renewed in the meantime).
    """
    now = ctx.clock.now()
    if subscription.status != ACTIVE or subscription.end_date >= now:
        return False

    applied = await _transition(
        db,
        subscription,
        ACTIVE,
        {
            "status": SubscriptionStatus.EXPIRED.value,
            "expired_at": now,
            "scheduled_downgrade_id": None,
            "scheduled_downgrade_date": None,
        },
        now,
        Subscription.end_date < now,
    )
    if not applied:
        return False

    await _set_subscriber_flag(db, subscription.subscriber, False, FREE_TIER, now)
    logger.info("Expired subscription %s (ended %s)", subscription.id, subscription.end_date)
    return True

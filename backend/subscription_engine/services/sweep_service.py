"""Scheduled sweeps: expiration, scheduled downgrades, and renewal reminders.

Each sweep selects candidate ids up front, then handles every subscription in
its own session and transaction. A failing item is logged and reported as
FAILED without affecting the others; an item whose state changed since it
was selected is SKIPPED. Re-running a sweep only picks up what is still due.
"""

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from sqlalchemy import Select, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscription_engine.billing.context import BillingContext, default_context
from subscription_engine.billing.exceptions import InvalidDateError
from subscription_engine.billing.locks import sweep_lock
from subscription_engine.billing.notifications import NotificationType, dispatch
from subscription_engine.config import settings
from subscription_engine.database import async_session_factory
from subscription_engine.models.history import SubscriptionReminder
from subscription_engine.models.subscription import Subscription, SubscriptionStatus
from subscription_engine.models.sweep import SweepRun
from subscription_engine.schemas.sweep import SweepItemResult, SweepItemStatus, SweepReport
from subscription_engine.services.subscription_service import (
    apply_scheduled_downgrade,
    expire_subscription,
)

logger = logging.getLogger(__name__)

EXPIRATION_SWEEP = "expiration"
DOWNGRADE_SWEEP = "scheduled_downgrades"
REMINDER_SWEEP = "renewal_reminders"

ACTIVE = SubscriptionStatus.ACTIVE.value


# ---------------------------------------------------------------------------
# Selections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExpiringBeforeQuery:
    """ACTIVE subscriptions whose period ended before ``cutoff``."""

    cutoff: datetime

    def statement(self) -> Select:
        return (
            select(Subscription.id)
            .where(Subscription.status == ACTIVE, Subscription.end_date < self.cutoff)
            .order_by(Subscription.end_date)
        )


@dataclass(frozen=True)
class ScheduledDowngradeQuery:
    """ACTIVE subscriptions with a downgrade due at or before ``due_at``."""

    due_at: datetime

    def statement(self) -> Select:
        return (
            select(Subscription.id)
            .where(
                Subscription.status == ACTIVE,
                Subscription.scheduled_downgrade_id.is_not(None),
                Subscription.scheduled_downgrade_date <= self.due_at,
            )
            .order_by(Subscription.scheduled_downgrade_date)
        )


@dataclass(frozen=True)
class RenewalWindowQuery:
    """ACTIVE subscriptions ending on the calendar day ``today + days_before``."""

    today: date
    days_before: int

    @property
    def window(self) -> tuple[datetime, datetime]:
        day_start = datetime.combine(self.today + timedelta(days=self.days_before), time.min)
        return day_start, day_start + timedelta(days=1)

    def statement(self) -> Select:
        window_start, window_end = self.window
        return (
            select(Subscription.id)
            .where(
                Subscription.status == ACTIVE,
                Subscription.end_date >= window_start,
                Subscription.end_date < window_end,
            )
            .order_by(Subscription.end_date)
        )


async def _select_ids(
    session_factory: async_sessionmaker[AsyncSession], statement: Select
) -> list[uuid.UUID]:
    async with session_factory() as db:
        result = await db.execute(statement)
        return list(result.scalars().all())


async def _record_run(
    session_factory: async_sessionmaker[AsyncSession], report: SweepReport, ctx: BillingContext
) -> None:
    async with session_factory() as db:
        db.add(
            SweepRun(
                sweep=report.sweep,
                started_at=report.timestamp,
                finished_at=ctx.clock.now(),
                processed=report.processed,
                succeeded=report.succeeded,
                failed=report.failed,
                skipped=report.skipped,
            )
        )
        await db.commit()
    logger.info(
        "Sweep %s finished: %d processed, %d succeeded, %d failed, %d skipped",
        report.sweep,
        report.processed,
        report.succeeded,
        report.failed,
        report.skipped,
    )


def _skipped(subscription_id: uuid.UUID, detail: str, **extra) -> SweepItemResult:
    logger.warning("Skipped subscription %s: %s", subscription_id, detail)
    return SweepItemResult(subscription_id=subscription_id, status=SweepItemStatus.SKIPPED, detail=detail, **extra)


def _failed(subscription_id: uuid.UUID, exc: Exception, **extra) -> SweepItemResult:
    return SweepItemResult(subscription_id=subscription_id, status=SweepItemStatus.FAILED, detail=str(exc), **extra)


# ---------------------------------------------------------------------------
# Expiration
# ---------------------------------------------------------------------------


async def _expire_one(
    session_factory: async_sessionmaker[AsyncSession], subscription_id: uuid.UUID, ctx: BillingContext
) -> SweepItemResult:
    try:
        async with session_factory() as db:
            subscription = await db.get(Subscription, subscription_id)
            if subscription is None or not await expire_subscription(db, subscription, ctx=ctx):
                return _skipped(subscription_id, "no longer eligible for expiration")
            subscriber = subscription.subscriber
            payload = {
                "subscription_id": str(subscription.id),
                "plan_id": subscription.plan_id,
                "end_date": subscription.end_date.isoformat(),
            }
            await db.commit()
    except Exception as exc:
        logger.exception("Failed to expire subscription %s", subscription_id)
        return _failed(subscription_id, exc)

    await dispatch(ctx.notifier, subscriber, NotificationType.SUBSCRIPTION_EXPIRED, payload)
    return SweepItemResult(subscription_id=subscription_id, status=SweepItemStatus.SUCCESS)


async def process_expired_subscriptions(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    ctx: BillingContext = default_context,
) -> SweepReport:
    """Expire every ACTIVE subscription whose period has ended."""
    now = ctx.clock.now()
    report = SweepReport(sweep=EXPIRATION_SWEEP, timestamp=now)
    for subscription_id in await _select_ids(session_factory, ExpiringBeforeQuery(now).statement()):
        report.add(await _expire_one(session_factory, subscription_id, ctx))
    await _record_run(session_factory, report, ctx)
    return report


# ---------------------------------------------------------------------------
# Scheduled downgrades
# ---------------------------------------------------------------------------


async def _downgrade_one(
    session_factory: async_sessionmaker[AsyncSession], subscription_id: uuid.UUID, ctx: BillingContext
) -> SweepItemResult:
    try:
        async with session_factory() as db:
            subscription = await db.get(Subscription, subscription_id)
            downgrade = None
            if subscription is not None:
                downgrade = await apply_scheduled_downgrade(db, subscription, ctx=ctx)
            if downgrade is None:
                return _skipped(subscription_id, "no scheduled downgrade due")
            subscriber = subscription.subscriber
            await db.commit()
    except Exception as exc:
        # The whole item rolled back, so the downgrade is still scheduled
        logger.exception("Failed to apply scheduled downgrade for subscription %s", subscription_id)
        return _failed(subscription_id, exc)

    await dispatch(
        ctx.notifier,
        subscriber,
        NotificationType.SUBSCRIPTION_DOWNGRADED,
        {
            "subscription_id": str(subscription_id),
            "plan_id": downgrade.to_plan_id,
            "credit_amount": str(downgrade.credit_amount),
        },
    )
    return SweepItemResult(
        subscription_id=subscription_id,
        status=SweepItemStatus.SUCCESS,
        new_plan_id=downgrade.to_plan_id,
        credit_amount=downgrade.credit_amount,
    )


async def process_scheduled_downgrades(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    ctx: BillingContext = default_context,
) -> SweepReport:
    """Apply every scheduled downgrade whose effective date has arrived."""
    now = ctx.clock.now()
    report = SweepReport(sweep=DOWNGRADE_SWEEP, timestamp=now)
    for subscription_id in await _select_ids(session_factory, ScheduledDowngradeQuery(now).statement()):
        report.add(await _downgrade_one(session_factory, subscription_id, ctx))
    await _record_run(session_factory, report, ctx)
    return report


# ---------------------------------------------------------------------------
# Renewal reminders
# ---------------------------------------------------------------------------


async def _remind_one(
    session_factory: async_sessionmaker[AsyncSession],
    subscription_id: uuid.UUID,
    days_before: int,
    ctx: BillingContext,
) -> SweepItemResult:
    now = ctx.clock.now()
    today = now.date()
    try:
        async with session_factory() as db:
            subscription = await db.get(Subscription, subscription_id)
            if subscription is None or subscription.status != ACTIVE:
                return _skipped(subscription_id, "no longer active", days_before=days_before)

            already_sent = await db.execute(
                select(SubscriptionReminder.id).where(
                    SubscriptionReminder.subscription_id == subscription_id,
                    SubscriptionReminder.days_before == days_before,
                    SubscriptionReminder.sent_on == today,
                )
            )
            if already_sent.scalar_one_or_none() is not None:
                return _skipped(subscription_id, "reminder already sent today", days_before=days_before)

            subscriber = subscription.subscriber
            payload = {
                "subscription_id": str(subscription.id),
                "plan_id": subscription.plan_id,
                "end_date": subscription.end_date.isoformat(),
                "days_before": days_before,
            }
            db.add(
                SubscriptionReminder(
                    subscription_id=subscription_id,
                    days_before=days_before,
                    sent_at=now,
                    sent_on=today,
                )
            )
            try:
                await db.commit()
            except IntegrityError:
                # A concurrent run recorded the same reminder first
                await db.rollback()
                return _skipped(subscription_id, "reminder already sent today", days_before=days_before)
    except Exception as exc:
        logger.exception("Failed to record renewal reminder for subscription %s", subscription_id)
        return _failed(subscription_id, exc, days_before=days_before)

    # The reminder row is committed before dispatch; a failed dispatch is not retried
    if not await dispatch(ctx.notifier, subscriber, NotificationType.SUBSCRIPTION_RENEWAL_REMINDER, payload):
        return SweepItemResult(
            subscription_id=subscription_id,
            status=SweepItemStatus.FAILED,
            detail="notification dispatch failed",
            days_before=days_before,
        )
    return SweepItemResult(
        subscription_id=subscription_id, status=SweepItemStatus.SUCCESS, days_before=days_before
    )


async def send_renewal_reminders(
    session_factory: async_sessionmaker[AsyncSession],
    offsets: Iterable[int] | None = None,
    *,
    ctx: BillingContext = default_context,
) -> SweepReport:
    """Remind subscribers whose period ends in exactly ``d`` days, for each offset ``d``."""
    offsets = list(settings.reminder_offsets if offsets is None else offsets)
    if any(offset < 1 for offset in offsets):
        raise InvalidDateError("Reminder offsets must be positive day counts", {"offsets": offsets})

    now = ctx.clock.now()
    report = SweepReport(sweep=REMINDER_SWEEP, timestamp=now)
    for days_before in sorted(set(offsets), reverse=True):
        query = RenewalWindowQuery(today=now.date(), days_before=days_before)
        for subscription_id in await _select_ids(session_factory, query.statement()):
            report.add(await _remind_one(session_factory, subscription_id, days_before, ctx))
    await _record_run(session_factory, report, ctx)
    return report


# ---------------------------------------------------------------------------
# Lock-wrapped runners (worker and admin entry points)
# ---------------------------------------------------------------------------


async def run_expiration_sweep(
    session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
    *,
    ctx: BillingContext = default_context,
) -> SweepReport:
    """Run the expiration sweep unless another run holds its lease."""
    async with sweep_lock(session_factory, EXPIRATION_SWEEP, ctx.clock, ctx.sweep_lock_ttl_seconds):
        return await process_expired_subscriptions(session_factory, ctx=ctx)


async def run_scheduled_downgrade_sweep(
    session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
    *,
    ctx: BillingContext = default_context,
) -> SweepReport:
    """Run the scheduled-downgrade sweep unless another run holds its lease."""
    async with sweep_lock(session_factory, DOWNGRADE_SWEEP, ctx.clock, ctx.sweep_lock_ttl_seconds):
        return await process_scheduled_downgrades(session_factory, ctx=ctx)


async def run_renewal_reminder_sweep(
    offsets: Iterable[int] | None = None,
    session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
    *,
    ctx: BillingContext = default_context,
) -> SweepReport:
    """Run the renewal-reminder sweep unless another run holds its lease."""
    async with sweep_lock(session_factory, REMINDER_SWEEP, ctx.clock, ctx.sweep_lock_ttl_seconds):
        return await send_renewal_reminders(session_factory, offsets, ctx=ctx)


async def list_sweep_runs(db: AsyncSession, sweep: str | None = None, limit: int = 20) -> list[SweepRun]:
    """Most recent sweep runs, optionally for one sweep."""
    query = select(SweepRun).order_by(SweepRun.started_at.desc()).limit(limit)
    if sweep is not None:
        query = query.where(SweepRun.sweep == sweep)
    result = await db.execute(query)
    return list(result.scalars().all())

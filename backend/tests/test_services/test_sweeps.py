"""Tests for the expiration, downgrade and reminder sweeps.

Sweeps open their own sessions, so setup data is committed first.
"""

import dataclasses
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from subscription_engine.billing.exceptions import InvalidDateError, SweepInProgressError
from subscription_engine.billing.locks import acquire_lease
from subscription_engine.billing.notifications import NotificationType
from subscription_engine.billing.subscriber import SubscriberRef
from subscription_engine.models.history import SubscriptionReminder
from subscription_engine.models.ledger import LedgerEntry
from subscription_engine.models.subscriber import SubscriberAccount
from subscription_engine.models.subscription import Subscription
from subscription_engine.schemas.sweep import SweepItemStatus
from subscription_engine.services import subscription_service, sweep_service
from subscription_engine.services.subscription_service import (
    cancel_subscription,
    create_subscription,
    renew_subscription,
    schedule_downgrade,
)
from subscription_engine.services.sweep_service import (
    EXPIRATION_SWEEP,
    RenewalWindowQuery,
    list_sweep_runs,
    process_expired_subscriptions,
    process_scheduled_downgrades,
    run_expiration_sweep,
    run_renewal_reminder_sweep,
    send_renewal_reminders,
)


async def _load(session_factory, subscription_id) -> Subscription:
    async with session_factory() as db:
        return await db.get(Subscription, subscription_id)


class TestExpirationSweep:
    async def test_expires_ended_subscriptions_once(self, db_session, session_factory, ctx, clock, user, notifier):
        subscription = await create_subscription(db_session, user, "starter", ctx=ctx)
        await db_session.commit()
        clock.set(subscription.end_date + timedelta(minutes=1))

        first = await process_expired_subscriptions(session_factory, ctx=ctx)
        second = await process_expired_subscriptions(session_factory, ctx=ctx)

        assert (first.processed, first.succeeded) == (1, 1)
        assert second.processed == 0
        assert (await _load(session_factory, subscription.id)).status == "EXPIRED"
        assert len(notifier.of_type(NotificationType.SUBSCRIPTION_EXPIRED)) == 1

        async with session_factory() as db:
            account = await db.get(SubscriberAccount, (user.type.value, user.id))
        assert account.has_active_subscription is False

    async def test_period_ending_exactly_now_is_not_expired(self, db_session, session_factory, ctx, clock, user):
        subscription = await create_subscription(db_session, user, "starter", ctx=ctx)
        await db_session.commit()
        clock.set(subscription.end_date)

        report = await process_expired_subscriptions(session_factory, ctx=ctx)

        assert report.processed == 0

    async def test_renewed_and_cancelled_are_left_alone(self, db_session, session_factory, ctx, clock, user, employer):
        renewed = await create_subscription(db_session, user, "starter", ctx=ctx)
        cancelled = await create_subscription(db_session, employer, "starter", ctx=ctx)
        await renew_subscription(db_session, renewed.id, ctx=ctx)
        await cancel_subscription(db_session, cancelled.id, ctx=ctx)
        await db_session.commit()
        clock.set(cancelled.end_date + timedelta(days=1))

        report = await process_expired_subscriptions(session_factory, ctx=ctx)

        assert report.processed == 0
        assert (await _load(session_factory, renewed.id)).status == "ACTIVE"

    async def test_one_failure_does_not_stop_the_batch(self, db_session, session_factory, ctx, clock):
        subscribers = [SubscriberRef.user(uuid.uuid4()) for _ in range(3)]
        subscriptions = [await create_subscription(db_session, s, "starter", ctx=ctx) for s in subscribers]
        await db_session.commit()
        clock.set(subscriptions[0].end_date + timedelta(hours=1))
        broken_id = subscriptions[1].id
        real_expire = subscription_service.expire_subscription

        async def flaky_expire(db, subscription, *, ctx):
            if subscription.id == broken_id:
                raise RuntimeError("row is cursed")
            return await real_expire(db, subscription, ctx=ctx)

        with patch.object(sweep_service, "expire_subscription", flaky_expire):
            report = await process_expired_subscriptions(session_factory, ctx=ctx)

        assert (report.processed, report.succeeded, report.failed) == (3, 2, 1)
        failed = [r for r in report.results if r.status is SweepItemStatus.FAILED]
        assert failed[0].subscription_id == broken_id
        assert failed[0].detail == "row is cursed"
        assert (await _load(session_factory, broken_id)).status == "ACTIVE"

    async def test_notification_failure_keeps_expiry(self, db_session, session_factory, ctx, clock, user, notifier):
        subscription = await create_subscription(db_session, user, "starter", ctx=ctx)
        await db_session.commit()
        clock.set(subscription.end_date + timedelta(days=1))
        notifier.notify = AsyncMock(side_effect=RuntimeError("smtp down"))

        report = await process_expired_subscriptions(session_factory, ctx=ctx)

        assert report.succeeded == 1
        assert (await _load(session_factory, subscription.id)).status == "EXPIRED"

    async def test_run_is_recorded(self, db_session, session_factory, ctx):
        await process_expired_subscriptions(session_factory, ctx=ctx)

        runs = await list_sweep_runs(db_session, EXPIRATION_SWEEP)

        assert len(runs) == 1
        assert runs[0].processed == 0


class TestScheduledDowngradeSweep:
    async def test_applies_due_downgrade_with_credit(self, db_session, session_factory, ctx, clock, user, notifier):
        subscription = await create_subscription(db_session, user, "growth", ctx=ctx)
        effective = clock.now() + timedelta(days=25)
        scheduled = await schedule_downgrade(db_session, subscription.id, "starter", effective, ctx=ctx)
        await db_session.commit()

        clock.set(effective - timedelta(hours=1))
        early = await process_scheduled_downgrades(session_factory, ctx=ctx)
        assert early.processed == 0

        clock.set(effective)
        report = await process_scheduled_downgrades(session_factory, ctx=ctx)

        assert report.succeeded == 1
        assert report.results[0].new_plan_id == "starter"
        assert report.results[0].credit_amount == Decimal("16.67")

        applied = await _load(session_factory, subscription.id)
        assert applied.plan_id == "starter"
        assert applied.scheduled_downgrade_id is None
        assert applied.downgraded_at == effective

        async with session_factory() as db:
            credits = (
                await db.execute(select(LedgerEntry).where(LedgerEntry.kind == "SUBSCRIPTION_CREDIT"))
            ).scalars().all()
        assert [(c.amount, c.status, c.reference_id) for c in credits] == [
            (Decimal("-16.67"), "COMPLETED", scheduled.downgrade.id)
        ]
        assert notifier.of_type(NotificationType.SUBSCRIPTION_DOWNGRADED)

        again = await process_scheduled_downgrades(session_factory, ctx=ctx)
        assert again.processed == 0

    async def test_ledger_failure_is_retried_next_run(self, db_session, session_factory, ctx, clock, user):
        subscription = await create_subscription(db_session, user, "growth", ctx=ctx)
        effective = clock.now() + timedelta(days=25)
        await schedule_downgrade(db_session, subscription.id, "starter", effective, ctx=ctx)
        await db_session.commit()
        clock.set(effective)

        failing_ledger = AsyncMock()
        failing_ledger.record_payment.side_effect = RuntimeError("ledger down")
        broken = dataclasses.replace(ctx, ledger=failing_ledger)

        failed = await process_scheduled_downgrades(session_factory, ctx=broken)
        assert failed.failed == 1
        still_pending = await _load(session_factory, subscription.id)
        assert still_pending.plan_id == "growth"
        assert still_pending.scheduled_downgrade_id is not None

        retried = await process_scheduled_downgrades(session_factory, ctx=ctx)
        assert retried.succeeded == 1
        assert (await _load(session_factory, subscription.id)).plan_id == "starter"

    async def test_no_credit_at_period_end(self, db_session, session_factory, ctx, clock, user):
        subscription = await create_subscription(db_session, user, "growth", ctx=ctx)
        await schedule_downgrade(db_session, subscription.id, "starter", ctx=ctx)
        await db_session.commit()
        clock.set(subscription.end_date)

        report = await process_scheduled_downgrades(session_factory, ctx=ctx)

        assert report.results[0].credit_amount == Decimal("0.00")
        async with session_factory() as db:
            credits = (
                await db.execute(select(LedgerEntry).where(LedgerEntry.kind == "SUBSCRIPTION_CREDIT"))
            ).scalars().all()
        assert credits == []


class TestRenewalReminders:
    # START subscriptions end 2026-05-01 12:00; seven days before is 2026-04-24
    REMIND_AT = datetime(2026, 4, 24, 9, 0)

    def test_window_is_one_calendar_day(self):
        query = RenewalWindowQuery(today=datetime(2026, 4, 24).date(), days_before=7)
        assert query.window == (datetime(2026, 5, 1), datetime(2026, 5, 2))

    async def test_reminds_once_per_day(self, db_session, session_factory, ctx, clock, user, notifier):
        subscription = await create_subscription(db_session, user, "starter", ctx=ctx)
        await db_session.commit()
        clock.set(self.REMIND_AT)

        first = await send_renewal_reminders(session_factory, [7], ctx=ctx)
        clock.advance(hours=6)
        second = await send_renewal_reminders(session_factory, [7], ctx=ctx)

        assert first.succeeded == 1
        assert first.results[0].days_before == 7
        assert second.skipped == 1
        reminders = notifier.of_type(NotificationType.SUBSCRIPTION_RENEWAL_REMINDER)
        assert len(reminders) == 1
        assert reminders[0]["subscription_id"] == str(subscription.id)

    async def test_only_matching_offsets(self, db_session, session_factory, ctx, clock, user):
        await create_subscription(db_session, user, "starter", ctx=ctx)
        await db_session.commit()
        clock.set(self.REMIND_AT)

        report = await send_renewal_reminders(session_factory, [3, 1], ctx=ctx)

        assert report.processed == 0

    async def test_duplicate_offsets_processed_once(self, db_session, session_factory, ctx, clock, user):
        await create_subscription(db_session, user, "starter", ctx=ctx)
        await db_session.commit()
        clock.set(self.REMIND_AT)

        report = await send_renewal_reminders(session_factory, [7, 7, 3], ctx=ctx)

        assert report.processed == 1

    async def test_dispatch_failure_is_not_resent(self, db_session, session_factory, ctx, clock, user, notifier):
        await create_subscription(db_session, user, "starter", ctx=ctx)
        await db_session.commit()
        clock.set(self.REMIND_AT)

        with patch.object(notifier, "notify", AsyncMock(side_effect=RuntimeError("push down"))):
            failed = await send_renewal_reminders(session_factory, [7], ctx=ctx)
        retried = await send_renewal_reminders(session_factory, [7], ctx=ctx)

        assert failed.failed == 1
        assert failed.results[0].detail == "notification dispatch failed"
        assert retried.skipped == 1
        assert notifier.of_type(NotificationType.SUBSCRIPTION_RENEWAL_REMINDER) == []

        async with session_factory() as db:
            rows = (await db.execute(select(SubscriptionReminder))).scalars().all()
        assert len(rows) == 1

    async def test_invalid_offset(self, session_factory, ctx):
        with pytest.raises(InvalidDateError):
            await send_renewal_reminders(session_factory, [7, 0], ctx=ctx)


class TestRunners:
    async def test_concurrent_run_is_refused(self, session_factory, ctx, clock):
        assert await acquire_lease(session_factory, EXPIRATION_SWEEP, "other-worker", clock, 3600)
        with pytest.raises(SweepInProgressError):
            await run_expiration_sweep(session_factory, ctx=ctx)

    async def test_runner_releases_lease(self, session_factory, ctx):
        await run_renewal_reminder_sweep([7], session_factory, ctx=ctx)
        report = await run_renewal_reminder_sweep([7], session_factory, ctx=ctx)
        assert report.sweep == "renewal_reminders"

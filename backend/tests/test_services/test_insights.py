"""Tests for subscription health, plan comparison and history export."""

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from subscription_engine.billing.exceptions import PlanNotFoundError, SubscriptionNotFoundError
from subscription_engine.services.insights_service import (
    compare_plans,
    export_subscriber_history,
    get_subscription_health,
    health_status,
)
from subscription_engine.services.subscription_service import (
    cancel_subscription,
    create_subscription,
    mark_past_due,
    upgrade_subscription,
)
from subscription_engine.services.usage_service import record_usage


class TestHealth:
    @pytest.mark.parametrize("score, expected", [(100, "HEALTHY"), (80, "HEALTHY"), (60, "WARNING"), (59, "CRITICAL")])
    def test_status_bands(self, score, expected):
        assert health_status(score) == expected

    async def test_fresh_subscription_is_healthy(self, db_session, ctx, user):
        subscription = await create_subscription(db_session, user, "starter", ctx=ctx)

        health = await get_subscription_health(db_session, subscription.id, ctx=ctx)

        assert health.health_score == 100.0
        assert health.status == "HEALTHY"
        assert health.issues == []
        assert health.metrics.utilization_percentage == 0.0

    async def test_limit_pressure_and_time_left(self, db_session, ctx, clock, user):
        subscription = await create_subscription(db_session, user, "starter", ctx=ctx)
        await record_usage(db_session, subscription.id, "job_postings", 9, ctx=ctx)
        await record_usage(db_session, subscription.id, "applications", 120, ctx=ctx)
        clock.advance(days=20)

        health = await get_subscription_health(db_session, subscription.id, ctx=ctx)

        # -15 for 10 days left, -10 near limit, -20 exceeded
        assert health.health_score == 55.0
        assert health.status == "CRITICAL"
        assert health.metrics.days_remaining == 10
        assert health.metrics.utilization_percentage == 66.7
        assert health.metrics.near_limit_features == 1
        assert health.metrics.exceeded_features == 1
        assert [issue.type for issue in health.issues] == ["LIMIT_EXCEEDED"]
        assert [r.type for r in health.recommendations] == ["IMMEDIATE_ACTION", "RENEWAL"]
        assert health.recommendations[1].priority == "MEDIUM"

    async def test_past_due_and_expiring(self, db_session, ctx, clock, user):
        subscription = await create_subscription(db_session, user, "starter", ctx=ctx)
        await mark_past_due(db_session, subscription.id, ctx=ctx)
        clock.advance(days=25)

        health = await get_subscription_health(db_session, subscription.id, ctx=ctx)

        assert health.health_score == 45.0
        assert {issue.type for issue in health.issues} == {"EXPIRING_SOON", "PAYMENT_ISSUE"}

    async def test_score_never_below_zero(self, db_session, ctx, clock, user):
        subscription = await create_subscription(db_session, user, "growth", ctx=ctx)
        for feature in ("job_postings", "applications", "scoring_calls"):
            await record_usage(db_session, subscription.id, feature, 1000, ctx=ctx)
        await mark_past_due(db_session, subscription.id, ctx=ctx)
        clock.advance(days=29)

        health = await get_subscription_health(db_session, subscription.id, ctx=ctx)

        assert health.health_score == 0.0

    async def test_unknown_subscription(self, db_session, ctx):
        with pytest.raises(SubscriptionNotFoundError):
            await get_subscription_health(db_session, uuid.uuid4(), ctx=ctx)


class TestComparePlans:
    def test_upgrade_comparison(self, ctx):
        comparison = compare_plans("starter", "growth", ctx=ctx)

        assert comparison.recommendation == "UPGRADE"
        assert comparison.price_difference == Decimal("100.00")
        assert comparison.new_features == ["ai_scoring"]
        assert comparison.removed_features == []
        assert [(c.feature, c.change, c.type) for c in comparison.limit_changes] == [
            ("applications", 400, "INCREASE"),
            ("job_postings", 40, "INCREASE"),
            ("scoring_calls", 100, "INCREASE"),
        ]

    def test_downgrade_comparison(self, ctx):
        comparison = compare_plans("growth", "starter", ctx=ctx)
        assert comparison.recommendation == "DOWNGRADE"
        assert comparison.removed_features == ["ai_scoring"]

    def test_same_plan(self, ctx):
        comparison = compare_plans("pro", "pro", ctx=ctx)
        assert comparison.recommendation == "SAME_TIER"
        assert comparison.limit_changes == []

    def test_unknown_plan(self, ctx):
        with pytest.raises(PlanNotFoundError):
            compare_plans("starter", "platinum", ctx=ctx)


class TestHistoryExport:
    async def test_events_ledger_and_totals(self, db_session, ctx, clock, user):
        subscription = await create_subscription(db_session, user, "starter", ctx=ctx)
        clock.advance(days=10)
        await upgrade_subscription(db_session, subscription.id, "growth", ctx=ctx)
        clock.advance(days=10)
        await cancel_subscription(db_session, subscription.id, "switching vendors", ctx=ctx)

        history = await export_subscriber_history(db_session, user, ctx=ctx)

        assert [event.event for event in history.events] == ["CANCELLATION", "UPGRADE"]
        assert history.events[0].amount == Decimal("66.67")
        assert history.events[1].to_plan_id == "growth"
        assert len(history.ledger) == 3
        assert history.summary.total_charged == Decimal("166.67")
        assert history.summary.total_credited == Decimal("66.67")
        assert history.summary.active_subscriptions == 0
        assert history.summary.total_subscriptions == 1

    async def test_subscriber_without_subscriptions(self, db_session, ctx, employer):
        history = await export_subscriber_history(db_session, employer, ctx=ctx)
        assert history.subscriptions == []
        assert history.events == []
        assert history.summary.total_charged == Decimal("0")

    async def test_other_subscribers_are_excluded(self, db_session, ctx, user, employer):
        await create_subscription(db_session, employer, "starter", ctx=ctx)
        history = await export_subscriber_history(db_session, user, ctx=ctx)
        assert history.ledger == []

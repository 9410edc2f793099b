"""Tests for the plan catalog, subscriber references and typed errors."""

import uuid
from decimal import Decimal

import pytest

from subscription_engine.billing.exceptions import (
    ErrorKind,
    InvalidSubscriberError,
    PlanNotFoundError,
    SweepInProgressError,
    TrialAlreadyUsedError,
)
from subscription_engine.billing.plans import PLANS, Plan, StaticPlanCatalog
from subscription_engine.billing.subscriber import SubscriberRef, SubscriberType


class TestPlan:
    def test_negative_price_rejected(self):
        with pytest.raises(ValueError):
            Plan(id="bad", name="Bad", price=Decimal("-1"), duration_months=1)

    def test_zero_duration_rejected(self):
        with pytest.raises(ValueError):
            Plan(id="bad", name="Bad", price=Decimal("1"), duration_months=0)

    def test_limit_for_treats_absent_and_zero_as_unlimited(self):
        plan = Plan(
            id="p", name="P", price=Decimal("5"), duration_months=1, limits={"job_postings": 3, "resumes": 0}
        )
        assert plan.limit_for("job_postings") == 3
        assert plan.limit_for("resumes") is None
        assert plan.limit_for("applications") is None


class TestStaticPlanCatalog:
    def test_get_plan(self):
        catalog = StaticPlanCatalog()
        assert catalog.get_plan("pro") is PLANS["pro"]
        assert catalog.get_plan("missing") is None

    def test_trial_plan(self):
        assert StaticPlanCatalog().get_trial_plan().is_trial

    def test_no_trial_plan(self):
        catalog = StaticPlanCatalog({"pro": PLANS["pro"]})
        assert catalog.get_trial_plan() is None

    def test_list_plans_cheapest_first(self):
        prices = [plan.price for plan in StaticPlanCatalog().list_plans()]
        assert prices == sorted(prices)


class TestSubscriberRef:
    def test_from_user_id(self):
        user_id = uuid.uuid4()
        ref = SubscriberRef.from_ids(user_id=user_id)
        assert ref.type is SubscriberType.USER
        assert ref.user_id == user_id
        assert ref.employer_id is None
        assert str(ref) == f"user:{user_id}"

    def test_from_employer_id(self):
        employer_id = uuid.uuid4()
        ref = SubscriberRef.from_ids(employer_id=employer_id)
        assert ref.employer_id == employer_id
        assert ref.user_id is None

    @pytest.mark.parametrize(
        "user_id, employer_id",
        [(None, None), (uuid.uuid4(), uuid.uuid4())],
    )
    def test_requires_exactly_one(self, user_id, employer_id):
        with pytest.raises(InvalidSubscriberError):
            SubscriberRef.from_ids(user_id, employer_id)


class TestErrors:
    def test_kinds_map_to_status_codes(self):
        assert PlanNotFoundError("x").status_code == 404
        assert TrialAlreadyUsedError("used").status_code == 409
        assert InvalidSubscriberError("bad").status_code == 422

    def test_to_dict(self):
        data = SweepInProgressError("expiration").to_dict()
        assert data["kind"] == ErrorKind.CONFLICT.value
        assert data["error_code"] == "SWEEP_IN_PROGRESS"
        assert data["context"] == {"sweep": "expiration"}

"""Plan definitions: pricing tiers, billing durations, and usage limits.

The catalog is read-only from the engine's point of view. ``PLANS`` is the
built-in catalog; deployments with an external catalog provide any object
satisfying :class:`PlanCatalog`.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Protocol

FEATURES: tuple[str, ...] = (
    "job_postings",
    "applications",
    "resumes",
    "scoring_calls",
    "premium_support",
)


@dataclass(frozen=True)
class Plan:
    """A subscription plan as published by the catalog."""

    id: str
    name: str
    price: Decimal
    duration_months: int
    limits: dict[str, int] = field(default_factory=dict)  # feature -> cap; absent or 0 = unlimited
    is_trial: bool = False
    features: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.price < 0:
            raise ValueError(f"Plan {self.id!r} has a negative price")
        if self.duration_months < 1:
            raise ValueError(f"Plan {self.id!r} must last at least one month")

    def limit_for(self, feature: str) -> int | None:
        """Return the cap for a feature, or None when the feature is unlimited."""
        limit = self.limits.get(feature)
        if not limit or limit <= 0:
            return None
        return limit


class PlanCatalog(Protocol):
    """Read-only plan lookup."""

    def get_plan(self, plan_id: str) -> Plan | None: ...

    def get_trial_plan(self) -> Plan | None: ...

    def list_plans(self) -> list[Plan]: ...


PLANS: dict[str, Plan] = {
    "trial": Plan(
        id="trial",
        name="Free Trial",
        price=Decimal("0.00"),
        duration_months=1,
        limits={"job_postings": 2, "applications": 10, "resumes": 1, "scoring_calls": 5},
        is_trial=True,
        features=("basic_search",),
    ),
    "basic": Plan(
        id="basic",
        name="Basic",
        price=Decimal("29.00"),
        duration_months=1,
        limits={"job_postings": 5, "applications": 50, "resumes": 3, "scoring_calls": 25},
        features=("basic_search", "email_alerts"),
    ),
    "pro": Plan(
        id="pro",
        name="Pro",
        price=Decimal("79.00"),
        duration_months=1,
        limits={
            "job_postings": 25,
            "applications": 250,
            "resumes": 10,
            "scoring_calls": 200,
            "premium_support": 5,
        },
        features=("basic_search", "email_alerts", "ai_scoring", "analytics"),
    ),
    "enterprise": Plan(
        id="enterprise",
        name="Enterprise",
        price=Decimal("199.00"),
        duration_months=1,
        limits={"premium_support": 50},
        features=("basic_search", "email_alerts", "ai_scoring", "analytics", "dedicated_manager"),
    ),
    "enterprise_annual": Plan(
        id="enterprise_annual",
        name="Enterprise (Annual)",
        price=Decimal("1990.00"),
        duration_months=12,
        limits={"premium_support": 600},
        features=("basic_search", "email_alerts", "ai_scoring", "analytics", "dedicated_manager"),
    ),
}


class StaticPlanCatalog:
    """In-process catalog backed by a dict of plans."""

    def __init__(self, plans: dict[str, Plan] | None = None) -> None:
        self._plans = dict(PLANS if plans is None else plans)

    def get_plan(self, plan_id: str) -> Plan | None:
        return self._plans.get(plan_id)

    def get_trial_plan(self) -> Plan | None:
        for plan in self._plans.values():
            if plan.is_trial:
                return plan
        return None

    def list_plans(self) -> list[Plan]:
        return sorted(self._plans.values(), key=lambda p: (p.price, p.id))


default_catalog = StaticPlanCatalog()

"""Pydantic v2 schemas for subscription analytics."""

from decimal import Decimal

from pydantic import BaseModel


class AnalyticsTotals(BaseModel):
    all: int
    active: int
    trial: int
    paid: int


class PlanBreakdown(BaseModel):
    plan_id: str
    plan_name: str
    count: int
    price: Decimal
    revenue: Decimal


class GrowthMetrics(BaseModel):
    mrr_growth: float  # percentage
    subscriber_growth: float  # percentage
    net_new_mrr: Decimal
    net_new_subscribers: int


class AnalyticsMetrics(BaseModel):
    churn_rate: float  # fraction 0–1
    renewal_rate: float  # fraction; can exceed 1
    mrr: Decimal
    arr: Decimal
    growth: GrowthMetrics


class AnalyticsResponse(BaseModel):
    timeframe: str
    totals: AnalyticsTotals
    by_plan: list[PlanBreakdown]
    by_status: dict[str, int]
    metrics: AnalyticsMetrics

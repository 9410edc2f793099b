"""Analytics API router: churn, renewals and recurring revenue."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.api.deps import get_billing_context, get_db
from subscription_engine.billing.context import BillingContext
from subscription_engine.schemas.analytics import AnalyticsResponse
from subscription_engine.services.analytics_service import get_analytics

router = APIRouter(prefix="/api/v1/analytics", tags=["analytics"])


@router.get("", response_model=AnalyticsResponse)
async def subscription_analytics(
    timeframe: str = Query("30d", description="One of 7d, 30d, 90d, 1y"),
    db: AsyncSession = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
) -> AnalyticsResponse:
    """Aggregate metrics over subscriptions created within the timeframe."""
    return await get_analytics(db, timeframe, ctx=ctx)

"""Plan catalog API: list plans and compare two of them."""

from fastapi import APIRouter, Depends, Query

from subscription_engine.api.deps import get_billing_context
from subscription_engine.billing.context import BillingContext
from subscription_engine.schemas.subscription import PlanComparisonResponse, PlansListResponse
from subscription_engine.services.insights_service import compare_plans, plan_response

router = APIRouter(prefix="/api/v1/plans", tags=["plans"])


@router.get("", response_model=PlansListResponse)
async def list_plans(ctx: BillingContext = Depends(get_billing_context)) -> PlansListResponse:
    """List available plans, cheapest first."""
    return PlansListResponse(plans=[plan_response(p) for p in ctx.catalog.list_plans()])


@router.get("/compare", response_model=PlanComparisonResponse)
async def compare(
    current: str = Query(..., description="Plan the subscriber is on"),
    target: str = Query(..., description="Plan being considered"),
    ctx: BillingContext = Depends(get_billing_context),
) -> PlanComparisonResponse:
    """Show price, feature, and limit differences between two plans."""
    return compare_plans(current, target, ctx=ctx)

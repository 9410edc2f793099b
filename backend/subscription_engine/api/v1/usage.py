"""Usage meter API routes: usage reports, limit checks and consumption."""

import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.api.deps import get_billing_context, get_db
from subscription_engine.billing.context import BillingContext
from subscription_engine.billing.exceptions import LimitExceededError
from subscription_engine.schemas.usage import (
    ConsumeRequest,
    LimitCheckResult,
    RecordUsageRequest,
    SubscriptionUsageResponse,
)
from subscription_engine.services.usage_service import (
    check_subscription_limit,
    get_subscription_usage,
    increment_if_below_limit,
    record_usage,
)

router = APIRouter(prefix="/api/v1/subscriptions", tags=["usage"])


@router.get("/{subscription_id}/usage", response_model=SubscriptionUsageResponse)
async def get_usage(
    subscription_id: uuid.UUID,
    feature: str | None = Query(None, description="Only report this feature"),
    db: AsyncSession = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
) -> SubscriptionUsageResponse:
    """Usage of limited features in the current billing period."""
    return await get_subscription_usage(db, subscription_id, feature, ctx=ctx)


@router.get("/{subscription_id}/limits/{feature}", response_model=LimitCheckResult)
async def check_limit(
    subscription_id: uuid.UUID,
    feature: str,
    requested: int = Query(1, ge=1),
    db: AsyncSession = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
) -> LimitCheckResult:
    """Whether ``requested`` more units fit in the limit (read-only)."""
    return await check_subscription_limit(db, subscription_id, feature, requested, ctx=ctx)


@router.post("/{subscription_id}/usage/consume", response_model=LimitCheckResult)
async def consume(
    subscription_id: uuid.UUID,
    body: ConsumeRequest,
    db: AsyncSession = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
) -> LimitCheckResult:
    """Atomically check the limit and record the consumption."""
    result = await increment_if_below_limit(db, subscription_id, body.feature, body.count, ctx=ctx)
    if not result.allowed:
        raise LimitExceededError(
            result.reason or f"{body.feature} limit reached",
            {
                "subscription_id": subscription_id,
                "feature": body.feature,
                "limit": result.limit,
                "exceeded_by": result.exceeded_by,
            },
        )
    return result


@router.post("/{subscription_id}/usage/events", status_code=status.HTTP_204_NO_CONTENT)
async def ingest_usage(
    subscription_id: uuid.UUID,
    body: RecordUsageRequest,
    db: AsyncSession = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
) -> None:
    """Record consumption that already happened, without a limit check."""
    await record_usage(db, subscription_id, body.feature, body.quantity, body.occurred_at, ctx=ctx)

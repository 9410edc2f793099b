"""Subscription lifecycle API routes."""

import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.api.deps import get_billing_context, get_db
from subscription_engine.billing.context import BillingContext
from subscription_engine.billing.subscriber import SubscriberRef
from subscription_engine.schemas.subscription import (
    CancellationResponse,
    CancelRequest,
    ConvertTrialRequest,
    CreateSubscriptionRequest,
    CreateTrialRequest,
    DowngradeScheduleResponse,
    RenewalResponse,
    ScheduleDowngradeRequest,
    SubscriberHistoryResponse,
    SubscriptionHealthResponse,
    SubscriptionResponse,
    TrialConversionResponse,
    UpgradeRequest,
    UpgradeResponse,
)
from subscription_engine.services import subscription_service
from subscription_engine.services.insights_service import export_subscriber_history, get_subscription_health

router = APIRouter(prefix="/api/v1/subscriptions", tags=["subscriptions"])


@router.post(
    "",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a paid subscription",
)
async def create_subscription(
    body: CreateSubscriptionRequest,
    db: AsyncSession = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
) -> SubscriptionResponse:
    subscriber = SubscriberRef.from_ids(body.user_id, body.employer_id)
    subscription = await subscription_service.create_subscription(db, subscriber, body.plan_id, ctx=ctx)
    return SubscriptionResponse.model_validate(subscription)


@router.post(
    "/trial",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a trial subscription",
)
async def create_trial(
    body: CreateTrialRequest,
    db: AsyncSession = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
) -> SubscriptionResponse:
    subscriber = SubscriberRef.from_ids(body.user_id, body.employer_id)
    subscription = await subscription_service.create_trial_subscription(db, subscriber, body.plan_id, ctx=ctx)
    return SubscriptionResponse.model_validate(subscription)


@router.get("", response_model=list[SubscriptionResponse], summary="List a subscriber's subscriptions")
async def list_subscriptions(
    user_id: uuid.UUID | None = Query(None),
    employer_id: uuid.UUID | None = Query(None),
    db: AsyncSession = Depends(get_db),
) -> list[SubscriptionResponse]:
    subscriber = SubscriberRef.from_ids(user_id, employer_id)
    subscriptions = await subscription_service.list_subscriber_subscriptions(db, subscriber)
    return [SubscriptionResponse.model_validate(s) for s in subscriptions]


@router.get("/history", response_model=SubscriberHistoryResponse, summary="Export a subscriber's history")
async def export_history(
    user_id: uuid.UUID | None = Query(None),
    employer_id: uuid.UUID | None = Query(None),
    db: AsyncSession = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
) -> SubscriberHistoryResponse:
    """Subscriptions, lifecycle events and ledger entries for one subscriber."""
    subscriber = SubscriberRef.from_ids(user_id, employer_id)
    return await export_subscriber_history(db, subscriber, ctx=ctx)


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(
    subscription_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> SubscriptionResponse:
    subscription = await subscription_service.get_subscription(db, subscription_id)
    return SubscriptionResponse.model_validate(subscription)


@router.post("/{subscription_id}/cancel", response_model=CancellationResponse)
async def cancel_subscription(
    subscription_id: uuid.UUID,
    body: CancelRequest,
    db: AsyncSession = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
) -> CancellationResponse:
    """Cancel now and report the refund owed for the unused period."""
    result = await subscription_service.cancel_subscription(
        db, subscription_id, body.reason, body.cancelled_by, ctx=ctx
    )
    return CancellationResponse(
        subscription=SubscriptionResponse.model_validate(result.subscription),
        refund_amount=result.cancellation.refund_amount,
        cancelled_at=result.cancellation.cancelled_at,
    )


@router.post("/{subscription_id}/renew", response_model=RenewalResponse)
async def renew_subscription(
    subscription_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
) -> RenewalResponse:
    result = await subscription_service.renew_subscription(db, subscription_id, ctx=ctx)
    return RenewalResponse(
        subscription=SubscriptionResponse.model_validate(result.subscription),
        previous_end_date=result.renewal.previous_end_date,
        new_end_date=result.renewal.new_end_date,
        amount=result.renewal.amount,
    )


@router.post("/{subscription_id}/upgrade", response_model=UpgradeResponse)
async def upgrade_subscription(
    subscription_id: uuid.UUID,
    body: UpgradeRequest,
    db: AsyncSession = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
) -> UpgradeResponse:
    """Switch to a more expensive plan now and charge the prorated difference."""
    result = await subscription_service.upgrade_subscription(db, subscription_id, body.plan_id, ctx=ctx)
    upgrade = result.upgrade
    return UpgradeResponse(
        subscription=SubscriptionResponse.model_validate(result.subscription),
        upgrade_id=upgrade.id,
        from_plan_id=upgrade.from_plan_id,
        to_plan_id=upgrade.to_plan_id,
        upgrade_cost=upgrade.upgrade_cost,
        remaining_fraction=upgrade.remaining_fraction,
        ledger_entry_id=upgrade.ledger_entry_id,
    )


@router.post("/{subscription_id}/downgrade", response_model=DowngradeScheduleResponse)
async def schedule_downgrade(
    subscription_id: uuid.UUID,
    body: ScheduleDowngradeRequest,
    db: AsyncSession = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
) -> DowngradeScheduleResponse:
    """Schedule a move to a cheaper plan, by default at the end of the period."""
    result = await subscription_service.schedule_downgrade(
        db, subscription_id, body.plan_id, body.effective_date, ctx=ctx
    )
    downgrade = result.downgrade
    return DowngradeScheduleResponse(
        subscription=SubscriptionResponse.model_validate(result.subscription),
        downgrade_id=downgrade.id,
        to_plan_id=downgrade.to_plan_id,
        effective_date=downgrade.effective_date,
        credit_amount=downgrade.credit_amount,
        message=f"Downgrade to {downgrade.to_plan_id} scheduled for {downgrade.effective_date.isoformat()}",
    )


@router.post("/{subscription_id}/convert", response_model=TrialConversionResponse)
async def convert_trial(
    subscription_id: uuid.UUID,
    body: ConvertTrialRequest,
    db: AsyncSession = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
) -> TrialConversionResponse:
    result = await subscription_service.convert_trial_to_paid(db, subscription_id, body.plan_id, ctx=ctx)
    conversion = result.conversion
    return TrialConversionResponse(
        subscription=SubscriptionResponse.model_validate(result.subscription),
        from_plan_id=conversion.from_plan_id,
        to_plan_id=conversion.to_plan_id,
        trial_days_used=conversion.trial_days_used,
        remaining_trial_days=conversion.remaining_trial_days,
    )


@router.post("/{subscription_id}/past-due", response_model=SubscriptionResponse)
async def mark_past_due(
    subscription_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
) -> SubscriptionResponse:
    """Flag a subscription whose payment failed to settle."""
    subscription = await subscription_service.mark_past_due(db, subscription_id, ctx=ctx)
    return SubscriptionResponse.model_validate(subscription)


@router.post("/{subscription_id}/reactivate", response_model=SubscriptionResponse)
async def resolve_past_due(
    subscription_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
) -> SubscriptionResponse:
    subscription = await subscription_service.resolve_past_due(db, subscription_id, ctx=ctx)
    return SubscriptionResponse.model_validate(subscription)


@router.get("/{subscription_id}/health", response_model=SubscriptionHealthResponse)
async def subscription_health(
    subscription_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
) -> SubscriptionHealthResponse:
    return await get_subscription_health(db, subscription_id, ctx=ctx)

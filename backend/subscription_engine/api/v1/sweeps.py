"""Admin API routes to trigger sweeps on demand and inspect past runs."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscription_engine.api.deps import get_billing_context, get_db, get_session_factory
from subscription_engine.billing.context import BillingContext
from subscription_engine.schemas.sweep import ReminderSweepRequest, SweepReport, SweepRunResponse
from subscription_engine.services.sweep_service import (
    list_sweep_runs,
    run_expiration_sweep,
    run_renewal_reminder_sweep,
    run_scheduled_downgrade_sweep,
)

router = APIRouter(prefix="/api/v1/sweeps", tags=["sweeps"])


@router.post("/expiration", response_model=SweepReport)
async def trigger_expiration(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    ctx: BillingContext = Depends(get_billing_context),
) -> SweepReport:
    """Expire every active subscription whose period has ended."""
    return await run_expiration_sweep(session_factory, ctx=ctx)


@router.post("/downgrades", response_model=SweepReport)
async def trigger_downgrades(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    ctx: BillingContext = Depends(get_billing_context),
) -> SweepReport:
    """Apply scheduled downgrades that are due."""
    return await run_scheduled_downgrade_sweep(session_factory, ctx=ctx)


@router.post("/reminders", response_model=SweepReport)
async def trigger_reminders(
    body: ReminderSweepRequest | None = None,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    ctx: BillingContext = Depends(get_billing_context),
) -> SweepReport:
    """Send renewal reminders for the given (or configured) day offsets."""
    offsets = body.offsets if body is not None else None
    return await run_renewal_reminder_sweep(offsets, session_factory, ctx=ctx)


@router.get("/runs", response_model=list[SweepRunResponse])
async def list_runs(
    sweep: str | None = Query(None, description="Filter by sweep name"),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> list[SweepRunResponse]:
    runs = await list_sweep_runs(db, sweep, limit)
    return [SweepRunResponse.model_validate(run) for run in runs]

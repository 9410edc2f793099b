"""ARQ worker: daily billing sweeps.

Run with ``arq subscription_engine.worker.WorkerSettings``.
"""

import logging

from arq import cron
from arq.connections import RedisSettings

from subscription_engine.billing.exceptions import SweepInProgressError
from subscription_engine.config import settings
from subscription_engine.schemas.sweep import SweepReport
from subscription_engine.services.sweep_service import (
    run_expiration_sweep,
    run_renewal_reminder_sweep,
    run_scheduled_downgrade_sweep,
)

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


async def expiration_sweep_job(ctx: dict) -> dict | None:
    """Cron job: expire subscriptions whose period ended."""
    try:
        report: SweepReport = await run_expiration_sweep()
    except SweepInProgressError:
        logger.warning("Expiration sweep already running elsewhere; skipping this run")
        return None
    return report.model_dump(mode="json", exclude={"results"})


async def downgrade_sweep_job(ctx: dict) -> dict | None:
    """Cron job: apply scheduled downgrades that are due."""
    try:
        report = await run_scheduled_downgrade_sweep()
    except SweepInProgressError:
        logger.warning("Downgrade sweep already running elsewhere; skipping this run")
        return None
    return report.model_dump(mode="json", exclude={"results"})


async def reminder_sweep_job(ctx: dict) -> dict | None:
    """Cron job: send renewal reminders for the configured offsets."""
    try:
        report = await run_renewal_reminder_sweep(settings.reminder_offsets)
    except SweepInProgressError:
        logger.warning("Reminder sweep already running elsewhere; skipping this run")
        return None
    return report.model_dump(mode="json", exclude={"results"})


class WorkerSettings:
    """ARQ worker configuration."""

    functions = [expiration_sweep_job, downgrade_sweep_job, reminder_sweep_job]
    cron_jobs = [
        cron(expiration_sweep_job, hour=settings.expiration_sweep_hour, minute=0),
        cron(downgrade_sweep_job, hour=settings.downgrade_sweep_hour, minute=0),
        cron(reminder_sweep_job, hour=settings.reminder_sweep_hour, minute=0),
    ]

    redis_settings = RedisSettings.from_dsn(settings.redis_url)

    max_jobs = 3
    job_timeout = settings.sweep_lock_ttl_seconds

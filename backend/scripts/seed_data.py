"""Seed the database with demo subscribers across every plan.

Creates tables if needed, then:
- two paid user subscriptions (basic, pro) with some usage,
- one employer on enterprise with a downgrade to pro scheduled,
- one user on a trial.

Run from the backend directory:
    python -m scripts.seed_data
"""

import asyncio
import sys
import uuid
from pathlib import Path

# Add backend to path so imports work when run as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy import func, select

import subscription_engine.models  # noqa: F401
from subscription_engine.billing.subscriber import SubscriberRef
from subscription_engine.database import Base, async_session_factory, engine
from subscription_engine.models.subscription import Subscription
from subscription_engine.services.subscription_service import (
    create_subscription,
    create_trial_subscription,
    schedule_downgrade,
)
from subscription_engine.services.usage_service import record_usage

# ---------------------------------------------------------------------------
# Seed data definitions
# ---------------------------------------------------------------------------

PAID_USERS = [
    # (plan_id, {feature: quantity})
    ("basic", {"job_postings": 4, "applications": 12}),
    ("pro", {"job_postings": 23, "scoring_calls": 180, "resumes": 2}),
]

EMPLOYER_PLAN = "enterprise"
EMPLOYER_DOWNGRADE_TO = "pro"


async def seed() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session_factory() as db:
        existing = (await db.execute(select(func.count()).select_from(Subscription))).scalar_one()
        if existing:
            print(f"Database already has {existing} subscriptions; skipping seed.")
            return

        for plan_id, usage in PAID_USERS:
            subscriber = SubscriberRef.user(uuid.uuid4())
            subscription = await create_subscription(db, subscriber, plan_id)
            for feature, quantity in usage.items():
                await record_usage(db, subscription.id, feature, quantity)
            print(f"  {subscriber} -> {plan_id} ({subscription.id})")

        employer = SubscriberRef.employer(uuid.uuid4())
        subscription = await create_subscription(db, employer, EMPLOYER_PLAN)
        await schedule_downgrade(db, subscription.id, EMPLOYER_DOWNGRADE_TO)
        print(f"  {employer} -> {EMPLOYER_PLAN}, downgrade to {EMPLOYER_DOWNGRADE_TO} scheduled")

        trial_user = SubscriberRef.user(uuid.uuid4())
        trial = await create_trial_subscription(db, trial_user)
        print(f"  {trial_user} -> trial until {trial.end_date:%Y-%m-%d}")

        await db.commit()

    await engine.dispose()
    print("Seed complete.")


if __name__ == "__main__":
    asyncio.run(seed())

"""create_subscription_schema

Revision ID: 3f1c9a7e2b10
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1c9a7e2b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_ONLY = sa.text("status = 'ACTIVE'")


def upgrade() -> None:
    # Step 1: Subscriptions
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("employer_id", sa.Uuid(), nullable=True),
        sa.Column("plan_id", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("is_trial", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("start_date", sa.DateTime(), nullable=False),
        sa.Column("end_date", sa.DateTime(), nullable=False),
        sa.Column("next_billing_date", sa.DateTime(), nullable=True),
        sa.Column("renewal_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("scheduled_downgrade_id", sa.Uuid(), nullable=True),
        sa.Column("scheduled_downgrade_date", sa.DateTime(), nullable=True),
        sa.Column("upgrade_id", sa.Uuid(), nullable=True),
        sa.Column("last_renewed_at", sa.DateTime(), nullable=True),
        sa.Column("upgraded_at", sa.DateTime(), nullable=True),
        sa.Column("downgraded_at", sa.DateTime(), nullable=True),
        sa.Column("converted_from_trial_at", sa.DateTime(), nullable=True),
        sa.Column("expired_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("cancelled_by", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "(user_id IS NULL) <> (employer_id IS NULL)", name="ck_subscriptions_single_subscriber"
        ),
        sa.CheckConstraint("end_date > start_date", name="ck_subscriptions_period"),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index("ix_subscriptions_employer_id", "subscriptions", ["employer_id"])
    op.create_index("ix_subscriptions_plan_id", "subscriptions", ["plan_id"])
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])
    op.create_index("ix_subscriptions_end_date", "subscriptions", ["end_date"])
    op.create_index("ix_subscriptions_scheduled_downgrade_date", "subscriptions", ["scheduled_downgrade_date"])
    op.create_index("ix_subscriptions_created_at", "subscriptions", ["created_at"])

    # Step 2: At most one ACTIVE subscription per subscriber
    op.create_index(
        "uq_subscriptions_active_user",
        "subscriptions",
        ["user_id"],
        unique=True,
        postgresql_where=ACTIVE_ONLY,
        sqlite_where=ACTIVE_ONLY,
    )
    op.create_index(
        "uq_subscriptions_active_employer",
        "subscriptions",
        ["employer_id"],
        unique=True,
        postgresql_where=ACTIVE_ONLY,
        sqlite_where=ACTIVE_ONLY,
    )

    # Step 3: Append-only history records
    op.create_table(
        "subscription_renewals",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("subscription_id", sa.Uuid(), sa.ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("renewed_at", sa.DateTime(), nullable=False),
        sa.Column("previous_end_date", sa.DateTime(), nullable=False),
        sa.Column("new_end_date", sa.DateTime(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
    )
    op.create_index("ix_subscription_renewals_subscription_id", "subscription_renewals", ["subscription_id"])
    op.create_index("ix_subscription_renewals_renewed_at", "subscription_renewals", ["renewed_at"])

    op.create_table(
        "subscription_upgrades",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("subscription_id", sa.Uuid(), sa.ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("from_plan_id", sa.String(50), nullable=False),
        sa.Column("to_plan_id", sa.String(50), nullable=False),
        sa.Column("upgrade_cost", sa.Numeric(12, 2), nullable=False),
        sa.Column("prorated_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("remaining_fraction", sa.Numeric(12, 8), nullable=False),
        sa.Column("effective_date", sa.DateTime(), nullable=False),
        sa.Column("ledger_entry_id", sa.Uuid(), nullable=True),
    )
    op.create_index("ix_subscription_upgrades_subscription_id", "subscription_upgrades", ["subscription_id"])

    op.create_table(
        "subscription_downgrades",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("subscription_id", sa.Uuid(), sa.ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("from_plan_id", sa.String(50), nullable=False),
        sa.Column("to_plan_id", sa.String(50), nullable=False),
        sa.Column("effective_date", sa.DateTime(), nullable=False),
        sa.Column("credit_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_subscription_downgrades_subscription_id", "subscription_downgrades", ["subscription_id"])

    op.create_table(
        "subscription_cancellations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "subscription_id",
            sa.Uuid(),
            sa.ForeignKey("subscriptions.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("cancelled_by", sa.String(255), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=False),
        sa.Column("refund_amount", sa.Numeric(12, 2), nullable=False),
    )
    op.create_index("ix_subscription_cancellations_cancelled_at", "subscription_cancellations", ["cancelled_at"])

    op.create_table(
        "trial_conversions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "subscription_id",
            sa.Uuid(),
            sa.ForeignKey("subscriptions.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("from_plan_id", sa.String(50), nullable=False),
        sa.Column("to_plan_id", sa.String(50), nullable=False),
        sa.Column("converted_at", sa.DateTime(), nullable=False),
        sa.Column("trial_days_used", sa.Integer(), nullable=False),
        sa.Column("remaining_trial_days", sa.Integer(), nullable=False),
    )

    op.create_table(
        "subscription_reminders",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("subscription_id", sa.Uuid(), sa.ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("days_before", sa.Integer(), nullable=False),
        sa.Column("sent_at", sa.DateTime(), nullable=False),
        sa.Column("sent_on", sa.Date(), nullable=False),
        sa.UniqueConstraint("subscription_id", "days_before", "sent_on", name="uq_reminders_once_per_day"),
    )
    op.create_index("ix_subscription_reminders_subscription_id", "subscription_reminders", ["subscription_id"])

    # Step 4: Usage, ledger and subscriber flags
    op.create_table(
        "usage_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("subscription_id", sa.Uuid(), sa.ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("feature", sa.String(50), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_usage_events_window", "usage_events", ["subscription_id", "feature", "occurred_at"])

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("subscriber_type", sa.String(20), nullable=False),
        sa.Column("subscriber_id", sa.Uuid(), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=True),
        sa.Column("reference_id", sa.Uuid(), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("kind", sa.String(40), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_ledger_entries_subscription_id", "ledger_entries", ["subscription_id"])
    op.create_index("ix_ledger_entries_subscriber", "ledger_entries", ["subscriber_type", "subscriber_id"])

    op.create_table(
        "subscriber_accounts",
        sa.Column("subscriber_type", sa.String(20), primary_key=True),
        sa.Column("subscriber_id", sa.Uuid(), primary_key=True),
        sa.Column("has_active_subscription", sa.Boolean(), nullable=False),
        sa.Column("subscription_tier", sa.String(50), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    # Step 5: Sweep bookkeeping
    op.create_table(
        "sweep_locks",
        sa.Column("name", sa.String(100), primary_key=True),
        sa.Column("holder", sa.String(100), nullable=False),
        sa.Column("acquired_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
    )
    op.create_table(
        "sweep_runs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("sweep", sa.String(100), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("finished_at", sa.DateTime(), nullable=False),
        sa.Column("processed", sa.Integer(), nullable=False),
        sa.Column("succeeded", sa.Integer(), nullable=False),
        sa.Column("failed", sa.Integer(), nullable=False),
        sa.Column("skipped", sa.Integer(), nullable=False),
    )
    op.create_index("ix_sweep_runs_sweep", "sweep_runs", ["sweep"])
    op.create_index("ix_sweep_runs_started_at", "sweep_runs", ["started_at"])


def downgrade() -> None:
    op.drop_table("sweep_runs")
    op.drop_table("sweep_locks")
    op.drop_table("subscriber_accounts")
    op.drop_table("ledger_entries")
    op.drop_table("usage_events")
    op.drop_table("subscription_reminders")
    op.drop_table("trial_conversions")
    op.drop_table("subscription_cancellations")
    op.drop_table("subscription_downgrades")
    op.drop_table("subscription_upgrades")
    op.drop_table("subscription_renewals")
    op.drop_table("subscriptions")

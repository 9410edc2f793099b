"""Collaborators injected into every engine operation."""

from dataclasses import dataclass, field

from subscription_engine.billing.clock import Clock, system_clock
from subscription_engine.billing.ledger import PaymentLedger, database_ledger
from subscription_engine.billing.notifications import NotificationDispatcher, logging_notifier
from subscription_engine.billing.plans import PlanCatalog, default_catalog
from subscription_engine.config import settings


@dataclass(frozen=True)
class BillingContext:
    """Plan catalog, clock, ledger, notifier, and billing knobs for one caller."""

    catalog: PlanCatalog = default_catalog
    clock: Clock = system_clock
    ledger: PaymentLedger = database_ledger
    notifier: NotificationDispatcher = logging_notifier
    trial_days: int = field(default_factory=lambda: settings.trial_days)
    near_limit_threshold_pct: int = field(default_factory=lambda: settings.near_limit_threshold_pct)
    sweep_lock_ttl_seconds: int = field(default_factory=lambda: settings.sweep_lock_ttl_seconds)


default_context = BillingContext()

"""Shared API dependencies: single import point for all routers.

Re-exports the database session dependency and adds the billing context and
session factory so tests can override them::

    from subscription_engine.api.deps import get_billing_context, get_db
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscription_engine.billing.context import BillingContext, default_context
from subscription_engine.database import async_session_factory, get_db


def get_billing_context() -> BillingContext:
    """Catalog, clock, ledger and notifier used by request handlers."""
    return default_context


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for sweeps, which commit per item."""
    return async_session_factory


__all__ = [
    "get_db",
    "get_billing_context",
    "get_session_factory",
]

"""Run-lock leases that keep two runs of the same sweep from overlapping."""

import logging
import os
import socket
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscription_engine.billing.clock import Clock
from subscription_engine.billing.exceptions import DependencyUnavailableError, SweepInProgressError
from subscription_engine.models.sweep import SweepLock

logger = logging.getLogger(__name__)


def _default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"[:100]


async def acquire_lease(
    session_factory: async_sessionmaker[AsyncSession],
    name: str,
    holder: str,
    clock: Clock,
    ttl_seconds: int,
) -> bool:
    """Take the named lease if it is free or its previous holder's lease expired.

    Raises:
        DependencyUnavailableError: If the lease table cannot be reached.
    """
    now = clock.now()
    expires_at = now + timedelta(seconds=ttl_seconds)

    try:
        async with session_factory() as db:
            result = await db.execute(
                update(SweepLock)
                .where(SweepLock.name == name, SweepLock.expires_at <= now)
                .values(holder=holder, acquired_at=now, expires_at=expires_at)
            )
            if result.rowcount == 1:
                await db.commit()
                logger.warning("Took over expired lease %r (new holder %s)", name, holder)
                return True

            db.add(SweepLock(name=name, holder=holder, acquired_at=now, expires_at=expires_at))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return False
    except OperationalError as exc:
        logger.error("Lease store unavailable while acquiring %r: %s", name, exc)
        raise DependencyUnavailableError(
            "Sweep lock store is unavailable", {"sweep": name}
        ) from exc
    return True


async def release_lease(
    session_factory: async_sessionmaker[AsyncSession], name: str, holder: str
) -> None:
    async with session_factory() as db:
        await db.execute(delete(SweepLock).where(SweepLock.name == name, SweepLock.holder == holder))
        await db.commit()


@asynccontextmanager
async def sweep_lock(
    session_factory: async_sessionmaker[AsyncSession],
    name: str,
    clock: Clock,
    ttl_seconds: int,
    holder: str | None = None,
) -> AsyncIterator[str]:
    """Hold the lease for ``name`` for the duration of the block.

    Raises:
        SweepInProgressError: If another holder has a live lease.
    """
    holder = holder or _default_holder()
    if not await acquire_lease(session_factory, name, holder, clock, ttl_seconds):
        raise SweepInProgressError(name)
    logger.debug("Acquired lease %r as %s", name, holder)
    try:
        yield holder
    finally:
        await release_lease(session_factory, name, holder)
        logger.debug("Released lease %r held by %s", name, holder)

"""Sweep bookkeeping: run-lock leases and run summaries."""

from datetime import datetime

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from subscription_engine.database import Base, UUIDPrimaryKeyMixin


class SweepLock(Base):
    """A lease held by the process currently running a sweep."""

    __tablename__ = "sweep_locks"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    holder: Mapped[str] = mapped_column(String(100), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)


class SweepRun(UUIDPrimaryKeyMixin, Base):
    """Summary of one completed sweep run."""

    __tablename__ = "sweep_runs"

    sweep: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    started_at: Mapped[datetime] = mapped_column(nullable=False, index=True)
    finished_at: Mapped[datetime] = mapped_column(nullable=False)
    processed: Mapped[int] = mapped_column(Integer, nullable=False)
    succeeded: Mapped[int] = mapped_column(Integer, nullable=False)
    failed: Mapped[int] = mapped_column(Integer, nullable=False)
    skipped: Mapped[int] = mapped_column(Integer, nullable=False)

    def __repr__(self) -> str:
        return f"<SweepRun(sweep={self.sweep}, processed={self.processed}, failed={self.failed})>"

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, Date, DateTime, Integer

from .base import Base


class ResetRun(Base):
    """One row per local quota day; inserting it claims that day's reset."""

    __tablename__ = "reset_runs"

    reset_date = Column(Date, primary_key=True)
    ran_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    forced = Column(Boolean, nullable=False, default=False)
    run_count = Column(Integer, nullable=False, default=1)
    records_reset = Column(Integer, nullable=False, default=0)
    records_pruned = Column(Integer, nullable=False, default=0)
    sessions_pruned = Column(Integer, nullable=False, default=0)
    devices_pruned = Column(Integer, nullable=False, default=0)
    blocks_expired = Column(Integer, nullable=False, default=0)


__all__ = ["ResetRun"]

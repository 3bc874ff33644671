"""Per-account, per-day weighted usage ledger.

The counters on ``QuotaRecord`` are the durable replacement for the
process-wide usage counter: every increment is a conditional UPDATE on
the row, so concurrent workers cannot overshoot ``daily_limit``.
"""
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .base import Base


class QuotaRecord(Base):
    """Usage for one account on one quota day."""

    __tablename__ = "quota_records"
    __table_args__ = (
        UniqueConstraint("account_id", "date", name="uq_quota_records_account_date"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(BigInteger, nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    # NULL means unlimited (exempted account)
    daily_limit = Column(Integer)
    subscription_type = Column(String(32), nullable=False, default="free")
    total_usage = Column(Float, nullable=False, default=0.0)
    # derived: set once total_usage reaches daily_limit
    is_blocked = Column(Boolean, nullable=False, default=False)
    block_reason = Column(String(255))
    # set by an admin; module calls are denied while it holds
    admin_blocked = Column(Boolean, nullable=False, default=False)
    admin_block_reason = Column(String(255))
    admin_blocked_at = Column(DateTime(timezone=True))
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    last_activity = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    module_usage = relationship(
        "QuotaModuleUsage", order_by="QuotaModuleUsage.module_id", lazy="selectin"
    )
    warnings = relationship(
        "QuotaWarning", order_by="QuotaWarning.percentage", lazy="selectin"
    )

    @property
    def remaining(self) -> float | None:
        if self.daily_limit is None:
            return None
        return max(0.0, self.daily_limit - (self.total_usage or 0.0))

    @property
    def percentage(self) -> int:
        if not self.daily_limit:
            return 0
        return round((self.total_usage or 0.0) / self.daily_limit * 100)


class QuotaModuleUsage(Base):
    __tablename__ = "quota_module_usage"
    __table_args__ = (
        UniqueConstraint("record_id", "module_id", name="uq_quota_module_usage_record_module"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    record_id = Column(
        Integer, ForeignKey("quota_records.id", ondelete="CASCADE"), nullable=False
    )
    module_id = Column(String(64), nullable=False)
    request_count = Column(Integer, nullable=False, default=0)
    weighted_usage = Column(Float, nullable=False, default=0.0)
    last_used = Column(DateTime(timezone=True))


class QuotaRequest(Base):
    """Request history entry; trimmed to the most recent rows per record."""

    __tablename__ = "quota_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    record_id = Column(
        Integer, ForeignKey("quota_records.id", ondelete="CASCADE"), nullable=False, index=True
    )
    module_id = Column(String(64), nullable=False)
    weight = Column(Float, nullable=False, default=1.0)
    ip_address = Column(String(64))
    user_agent = Column(String(512))
    request_id = Column(String(128))
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )


class QuotaWarning(Base):
    __tablename__ = "quota_warnings"
    __table_args__ = (
        UniqueConstraint("record_id", "percentage", name="uq_quota_warnings_record_pct"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    record_id = Column(
        Integer, ForeignKey("quota_records.id", ondelete="CASCADE"), nullable=False
    )
    percentage = Column(Integer, nullable=False)
    message = Column(String(255), nullable=False)
    issued_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )


__all__ = ["QuotaModuleUsage", "QuotaRecord", "QuotaRequest", "QuotaWarning"]

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)

from .base import Base


class LogoutReason(str, Enum):
    FORCE_LOGOUT = "FORCE_LOGOUT"
    USER_REQUESTED = "USER_REQUESTED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    ADMIN_TERMINATED = "ADMIN_TERMINATED"


class AccountSession(Base):
    """Login session; at most one active row per account."""

    __tablename__ = "account_sessions"
    __table_args__ = (
        Index(
            "uq_account_sessions_one_active",
            "account_id",
            unique=True,
            sqlite_where=text("active = 1"),
            postgresql_where=text("active"),
        ),
        Index("ix_account_sessions_account_active", "account_id", "active"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(BigInteger, nullable=False)
    token = Column(String(128), nullable=False, unique=True)
    ip_address = Column(String(64), nullable=False, default="")
    user_agent = Column(String(512), nullable=False, default="")
    device_fingerprint_id = Column(
        Integer, ForeignKey("device_fingerprints.id", ondelete="SET NULL")
    )
    login_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    last_activity = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    active = Column(Boolean, nullable=False, default=True)
    logout_at = Column(DateTime(timezone=True))
    logout_reason = Column(String(32))


__all__ = ["AccountSession", "LogoutReason"]

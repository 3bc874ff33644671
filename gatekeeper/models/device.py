from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    String,
    UniqueConstraint,
)

from .base import Base

SUSPICION_KINDS = (
    "rapid_location_changes",
    "unusual_usage_hours",
    "simultaneous_activity",
)


class DeviceFingerprint(Base):
    """Device sighting for an account with its suspicious-activity counters."""

    __tablename__ = "device_fingerprints"
    __table_args__ = (
        UniqueConstraint("account_id", "fingerprint_hash", name="uq_device_account_hash"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(BigInteger, nullable=False, index=True)
    fingerprint_hash = Column(String(128), nullable=False)
    device_info = Column(JSON, nullable=False, default=dict)
    ip_address = Column(String(64), nullable=False, default="")
    confidence = Column(Float)
    is_active = Column(Boolean, nullable=False, default=True)
    is_verified = Column(Boolean, nullable=False, default=False)
    first_seen = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    last_seen = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    session_count = Column(Integer, nullable=False, default=0)
    rapid_location_changes = Column(Integer, nullable=False, default=0)
    unusual_usage_hours = Column(Integer, nullable=False, default=0)
    simultaneous_activity = Column(Integer, nullable=False, default=0)

    @property
    def suspicion_total(self) -> int:
        return sum(getattr(self, kind) or 0 for kind in SUSPICION_KINDS)


__all__ = ["DeviceFingerprint", "SUSPICION_KINDS"]

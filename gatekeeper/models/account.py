from datetime import datetime, timezone

from sqlalchemy import BigInteger, Boolean, Column, DateTime, String

from .base import Base


class Account(Base):
    """Platform account as seen by the governance engine."""

    __tablename__ = "accounts"

    id = Column(BigInteger, primary_key=True)
    subscription_type = Column(String(32), nullable=False, default="free")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


__all__ = ["Account"]

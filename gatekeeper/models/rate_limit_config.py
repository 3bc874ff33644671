from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String

from .base import Base


class RateLimitConfig(Base):
    """Admin-editable quota policy; one ``is_active`` row, bumped ``version`` per change."""

    __tablename__ = "rate_limit_config"

    id = Column(Integer, primary_key=True, autoincrement=True)
    is_enabled = Column(Boolean, nullable=False, default=True)
    daily_limit = Column(Integer, nullable=False, default=200)
    reset_time = Column(String(5), nullable=False, default="00:00")
    timezone = Column(String(64), nullable=False, default="Asia/Ho_Chi_Minh")
    restricted_modules = Column(JSON, nullable=False, default=list)
    subscription_limits = Column(JSON, nullable=False, default=dict)
    exempted_accounts = Column(JSON, nullable=False, default=list)
    limit_overrides = Column(JSON, nullable=False, default=dict)
    burst_enabled = Column(Boolean, nullable=False, default=False)
    burst_limit = Column(Integer, nullable=False, default=20)
    burst_window_seconds = Column(Integer, nullable=False, default=3600)
    warning_thresholds = Column(JSON, nullable=False, default=list)
    maintenance_mode = Column(Boolean, nullable=False, default=False)
    maintenance_message = Column(String(255), nullable=False, default="")
    retention_days = Column(Integer, nullable=False, default=30)
    updated_by = Column(String(128), nullable=False, default="system")
    version = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


__all__ = ["RateLimitConfig"]

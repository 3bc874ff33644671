"""Admin-editable quota policy.

The active ``rate_limit_config`` row is read through an in-process
snapshot. The snapshot is revalidated against the stored ``version`` at
most every ``config_cache_ttl_s`` seconds and dropped right after a local
update; updates are compare-and-swap on ``version``.
"""
from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from gatekeeper.config import DEFAULT_TIMEZONE, Settings
from gatekeeper.models import RateLimitConfig
from gatekeeper.services import audit
from gatekeeper.services.clock import load_zone, utcnow
from gatekeeper.services.errors import ConfigConflictError, ConfigValidationError

settings = Settings()
logger = logging.getLogger(__name__)

MIN_DAILY_LIMIT = 1
MAX_DAILY_LIMIT = 50000

DEFAULT_RESTRICTED_MODULES = [
    {"module_id": "write-story", "name": "Write story", "weight": 1.0, "is_active": True},
    {"module_id": "batch-story-writing", "name": "Batch story writing", "weight": 2.0, "is_active": True},
    {"module_id": "rewrite", "name": "Rewrite", "weight": 1.0, "is_active": True},
    {"module_id": "batch-rewrite", "name": "Batch rewrite", "weight": 2.0, "is_active": True},
]
DEFAULT_SUBSCRIPTION_LIMITS = {"free": 50, "monthly": 200, "quarterly": 300, "lifetime": 500}
DEFAULT_WARNING_THRESHOLDS = [
    {"percentage": 50, "message": "You have used 50% of today's quota."},
    {"percentage": 75, "message": "You have used 75% of today's quota. 25% left for today."},
    {"percentage": 90, "message": "Warning: 90% of today's quota is used."},
]
DEFAULT_MAINTENANCE_MESSAGE = "System is under maintenance. Please try again later."


class RestrictedModule(BaseModel):
    module_id: str = Field(..., min_length=1, max_length=64)
    name: str = ""
    weight: float = Field(1.0, ge=0.1, le=10)
    is_active: bool = True


class WarningThreshold(BaseModel):
    percentage: int = Field(..., ge=1, le=100)
    message: str


class RateLimitPolicy(BaseModel):
    """Validated view of the active config row."""

    is_enabled: bool = True
    daily_limit: int = Field(200, ge=MIN_DAILY_LIMIT, le=MAX_DAILY_LIMIT)
    reset_time: str = Field("00:00", pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    timezone: str = DEFAULT_TIMEZONE
    restricted_modules: list[RestrictedModule] = Field(default_factory=list)
    subscription_limits: dict[str, int] = Field(default_factory=dict)
    exempted_accounts: list[int] = Field(default_factory=list)
    limit_overrides: dict[str, int] = Field(default_factory=dict)
    burst_enabled: bool = False
    burst_limit: int = Field(20, ge=1)
    burst_window_seconds: int = Field(3600, ge=1)
    warning_thresholds: list[WarningThreshold] = Field(default_factory=list)
    maintenance_mode: bool = False
    maintenance_message: str = DEFAULT_MAINTENANCE_MESSAGE
    retention_days: int = Field(30, ge=1)
    updated_by: str = "system"
    version: int = 1
    updated_at: datetime | None = None

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        load_zone(value)
        return value

    @field_validator("subscription_limits")
    @classmethod
    def _tier_limits(cls, value: dict[str, int]) -> dict[str, int]:
        for tier, limit in value.items():
            if not 0 <= limit <= MAX_DAILY_LIMIT:
                raise ValueError(f"limit for tier {tier} must be within [0, {MAX_DAILY_LIMIT}]")
        return value

    @field_validator("limit_overrides", mode="before")
    @classmethod
    def _override_keys(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): v for k, v in value.items()}
        return value

    @field_validator("limit_overrides")
    @classmethod
    def _override_range(cls, value: dict[str, int]) -> dict[str, int]:
        for account_id, limit in value.items():
            if not MIN_DAILY_LIMIT <= limit <= MAX_DAILY_LIMIT:
                raise ValueError(
                    f"override for account {account_id} must be within "
                    f"[{MIN_DAILY_LIMIT}, {MAX_DAILY_LIMIT}]"
                )
        return value

    @field_validator("warning_thresholds")
    @classmethod
    def _sorted_thresholds(cls, value: list[WarningThreshold]) -> list[WarningThreshold]:
        return sorted(value, key=lambda w: w.percentage)

    @model_validator(mode="after")
    def _unique_modules(self) -> "RateLimitPolicy":
        ids = [m.module_id for m in self.restricted_modules]
        if len(ids) != len(set(ids)):
            raise ValueError("restricted module ids must be unique")
        return self

    def module(self, module_id: str) -> RestrictedModule | None:
        """Restricted, active module entry or None when the module is ungated."""
        for item in self.restricted_modules:
            if item.module_id == module_id and item.is_active:
                return item
        return None

    def is_exempt(self, account_id: int) -> bool:
        return account_id in self.exempted_accounts


EDITABLE_FIELDS = (
    "is_enabled",
    "daily_limit",
    "reset_time",
    "timezone",
    "restricted_modules",
    "subscription_limits",
    "exempted_accounts",
    "limit_overrides",
    "burst_enabled",
    "burst_limit",
    "burst_window_seconds",
    "warning_thresholds",
    "maintenance_mode",
    "maintenance_message",
    "retention_days",
)

_lock = threading.Lock()
_cache: dict[str, Any] = {"policy": None, "checked_at": 0.0}


def clear_cache() -> None:
    with _lock:
        _cache["policy"] = None
        _cache["checked_at"] = 0.0


def _default_row() -> RateLimitConfig:
    return RateLimitConfig(
        is_enabled=True,
        daily_limit=200,
        reset_time="00:00",
        timezone=settings.default_timezone,
        restricted_modules=[dict(m) for m in DEFAULT_RESTRICTED_MODULES],
        subscription_limits=dict(DEFAULT_SUBSCRIPTION_LIMITS),
        exempted_accounts=[],
        limit_overrides={},
        burst_enabled=False,
        burst_limit=20,
        burst_window_seconds=3600,
        warning_thresholds=[dict(w) for w in DEFAULT_WARNING_THRESHOLDS],
        maintenance_mode=False,
        maintenance_message=DEFAULT_MAINTENANCE_MESSAGE,
        retention_days=30,
        updated_by="system",
        version=1,
        is_active=True,
    )


def _load_row(db: Session) -> RateLimitConfig:
    # oldest active row wins if two workers raced to create the default
    row = db.scalars(
        select(RateLimitConfig)
        .where(RateLimitConfig.is_active.is_(True))
        .order_by(RateLimitConfig.id)
        .execution_options(populate_existing=True)
    ).first()
    if row is not None:
        return row
    row = _default_row()
    db.add(row)
    db.commit()
    logger.info("Created default rate limit config")
    return row


def _snapshot(row: RateLimitConfig) -> RateLimitPolicy:
    data = {name: getattr(row, name) for name in EDITABLE_FIELDS}
    data.update(updated_by=row.updated_by, version=row.version, updated_at=row.updated_at)
    return RateLimitPolicy.model_validate(data)


def get_policy(db: Session, *, fresh: bool = False) -> RateLimitPolicy:
    now = time.monotonic()
    with _lock:
        cached = _cache["policy"]
        checked_at = _cache["checked_at"]
    if cached is not None and not fresh:
        if now - checked_at < settings.config_cache_ttl_s:
            return cached
        stored = db.scalar(
            select(RateLimitConfig.version)
            .where(RateLimitConfig.is_active.is_(True))
            .order_by(RateLimitConfig.id)
            .limit(1)
        )
        if stored == cached.version:
            with _lock:
                _cache["checked_at"] = now
            return cached
    policy = _snapshot(_load_row(db))
    with _lock:
        _cache["policy"] = policy
        _cache["checked_at"] = now
    return policy


def _validation_messages(exc: ValidationError) -> list[str]:
    messages = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        messages.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return messages


def update_policy(
    db: Session,
    changes: dict[str, Any],
    *,
    actor_id: str,
    expected_version: int | None = None,
) -> RateLimitPolicy:
    """Validate and store a config change, bumping ``version``."""
    unknown = sorted(set(changes) - set(EDITABLE_FIELDS))
    row = _load_row(db)
    current = _snapshot(row)
    try:
        if unknown:
            raise ConfigValidationError(
                "Unknown config fields", [f"{name}: not editable" for name in unknown]
            )
        merged = current.model_dump()
        merged.update(changes)
        candidate = RateLimitPolicy.model_validate(merged)
    except ValidationError as exc:
        errors = _validation_messages(exc)
        audit.emit(
            "CONFIG_UPDATE_REJECTED",
            actor_id,
            f"Rate limit config update rejected: {'; '.join(errors)}",
            errors=errors,
        )
        raise ConfigValidationError("Invalid rate limit config", errors) from exc
    except ConfigValidationError as exc:
        audit.emit(
            "CONFIG_UPDATE_REJECTED",
            actor_id,
            f"Rate limit config update rejected: {'; '.join(exc.errors)}",
            errors=exc.errors,
        )
        raise

    base_version = expected_version if expected_version is not None else row.version
    values = candidate.model_dump(include=set(EDITABLE_FIELDS), mode="json")
    result = db.execute(
        update(RateLimitConfig)
        .where(RateLimitConfig.id == row.id, RateLimitConfig.version == base_version)
        .values(
            **values,
            version=RateLimitConfig.version + 1,
            updated_by=str(actor_id),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        db.rollback()
        audit.emit(
            "CONFIG_UPDATE_REJECTED",
            actor_id,
            f"Rate limit config update rejected: version {base_version} is stale",
            expected_version=base_version,
        )
        raise ConfigConflictError(f"Config version {base_version} is stale")
    db.commit()
    clear_cache()
    policy = get_policy(db, fresh=True)
    logger.info("Rate limit config updated to version %s by %s", policy.version, actor_id)
    audit.emit(
        "CONFIG_UPDATED",
        actor_id,
        f"Rate limit config updated to version {policy.version}",
        fields=sorted(changes),
        version=policy.version,
    )
    return policy


def set_exemption(
    db: Session, account_id: int, exempt: bool, *, actor_id: str
) -> RateLimitPolicy:
    policy = get_policy(db, fresh=True)
    accounts = [a for a in policy.exempted_accounts if a != account_id]
    if exempt:
        accounts.append(account_id)
    return update_policy(
        db,
        {"exempted_accounts": sorted(accounts)},
        actor_id=actor_id,
        expected_version=policy.version,
    )


def set_limit_override(
    db: Session, account_id: int, limit: int | None, *, actor_id: str
) -> RateLimitPolicy:
    policy = get_policy(db, fresh=True)
    overrides = dict(policy.limit_overrides)
    overrides.pop(str(account_id), None)
    if limit is not None:
        overrides[str(account_id)] = limit
    return update_policy(
        db,
        {"limit_overrides": overrides},
        actor_id=actor_id,
        expected_version=policy.version,
    )

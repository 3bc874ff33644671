"""Weighted daily quota ledger.

Each account has one ``QuotaRecord`` per local quota day. Consumption is a
single conditional UPDATE that only succeeds while the new total stays
within ``daily_limit``, so concurrent callers can never push an account
past its limit; a rejected call leaves every counter untouched.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import DateTime, bindparam, case, delete, func, or_, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gatekeeper.config import Settings
from gatekeeper.metrics import quota_reject_total, quota_warning_total
from gatekeeper.models import (
    Account,
    QuotaModuleUsage,
    QuotaRecord,
    QuotaRequest,
    QuotaWarning,
)
from gatekeeper.services import audit, rate_config
from gatekeeper.services.clock import next_reset_at, quota_day, utcnow
from gatekeeper.services.errors import NotFoundError
from gatekeeper.services.rate_config import RateLimitPolicy

settings = Settings()
logger = logging.getLogger(__name__)

# float weights (0.1 steps) must not trip the ceiling through rounding
_EPSILON = 1e-6

_UPSERT_MODULE_USAGE = text(
    """
    INSERT INTO quota_module_usage (record_id, module_id, request_count, weighted_usage, last_used)
    VALUES (:record_id, :module_id, 1, :weight, :now)
    ON CONFLICT (record_id, module_id) DO UPDATE SET
        request_count = quota_module_usage.request_count + 1,
        weighted_usage = quota_module_usage.weighted_usage + excluded.weighted_usage,
        last_used = excluded.last_used
    """
).bindparams(bindparam("now", type_=DateTime(timezone=True)))

_INSERT_WARNING = text(
    """
    INSERT INTO quota_warnings (record_id, percentage, message, issued_at)
    VALUES (:record_id, :percentage, :message, :now)
    ON CONFLICT (record_id, percentage) DO NOTHING
    """
).bindparams(bindparam("now", type_=DateTime(timezone=True)))


@dataclass
class QuotaCheck:
    allowed: bool
    restricted: bool
    module_id: str
    weight: float = 0.0
    total_usage: float = 0.0
    daily_limit: int | None = None
    remaining: float | None = None
    percentage: int = 0
    warning: str | None = None
    day: date | None = None
    admin_blocked: bool = False
    block_reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["day"] = self.day.isoformat() if self.day else None
        return data


@dataclass
class UsageStatus:
    account_id: int
    day: date
    daily_limit: int | None
    total_usage: float
    remaining: float | None
    percentage: int
    is_blocked: bool
    subscription_type: str
    reset_time: str
    timezone: str
    next_reset_at: datetime
    admin_blocked: bool = False
    admin_block_reason: str | None = None
    modules: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[dict[str, Any]] = field(default_factory=list)


def resolve_daily_limit(
    policy: RateLimitPolicy, account_id: int, subscription_type: str | None = None
) -> int | None:
    """Exempt accounts are unlimited; then override, tier limit, global limit."""
    if policy.is_exempt(account_id):
        return None
    override = policy.limit_overrides.get(str(account_id))
    if override is not None:
        return override
    if subscription_type and subscription_type in policy.subscription_limits:
        return policy.subscription_limits[subscription_type]
    return policy.daily_limit


def current_day(policy: RateLimitPolicy, now: datetime | None = None) -> date:
    return quota_day(now or utcnow(), policy.timezone, policy.reset_time)


def _percentage(total: float, limit: int | None) -> int:
    if not limit:
        return 0
    return round(total / limit * 100)


def _remaining(total: float, limit: int | None) -> float | None:
    if limit is None:
        return None
    return max(0.0, round(limit - total, 6))


def _find_record(db: Session, account_id: int, day: date) -> QuotaRecord | None:
    return db.scalars(
        select(QuotaRecord)
        .where(QuotaRecord.account_id == account_id, QuotaRecord.date == day)
        .execution_options(populate_existing=True)
    ).one_or_none()


def get_or_create(
    db: Session,
    account_id: int,
    day: date | None = None,
    *,
    policy: RateLimitPolicy | None = None,
) -> QuotaRecord:
    """Return the account's record for ``day``, keeping ``daily_limit`` in step with policy."""
    policy = policy or rate_config.get_policy(db)
    day = day or current_day(policy)
    account = db.get(Account, account_id)
    tier = account.subscription_type if account else "free"
    limit = resolve_daily_limit(policy, account_id, tier)

    record = _find_record(db, account_id, day)
    if record is None:
        now = utcnow()
        db.add(
            QuotaRecord(
                account_id=account_id,
                date=day,
                daily_limit=limit,
                subscription_type=tier,
                total_usage=0.0,
                created_at=now,
                last_activity=now,
            )
        )
        try:
            db.commit()
        except IntegrityError:
            # created concurrently
            db.rollback()
        record = _find_record(db, account_id, day)
    if record.daily_limit != limit or record.subscription_type != tier:
        record.daily_limit = limit
        record.subscription_type = tier
        record.is_blocked = limit is not None and (record.total_usage or 0.0) >= limit
        db.commit()
    return record


def _trim_history(db: Session, record_id: int) -> None:
    keep = (
        select(QuotaRequest.id)
        .where(QuotaRequest.record_id == record_id)
        .order_by(QuotaRequest.id.desc())
        .limit(settings.request_history_size)
    )
    db.execute(
        delete(QuotaRequest)
        .where(QuotaRequest.record_id == record_id, QuotaRequest.id.not_in(keep))
        .execution_options(synchronize_session=False)
    )


def _issue_warnings(
    db: Session,
    record_id: int,
    total: float,
    limit: int,
    policy: RateLimitPolicy,
    now: datetime,
) -> str | None:
    """Issue every crossed threshold not yet issued today; return the highest new message.

    Thresholds compare against the exact usage ratio; the rounded
    percentage is for display only.
    """
    message = None
    for threshold in policy.warning_thresholds:
        if total * 100 + _EPSILON < threshold.percentage * limit:
            break
        inserted = db.execute(
            _INSERT_WARNING,
            {
                "record_id": record_id,
                "percentage": threshold.percentage,
                "message": threshold.message,
                "now": now,
            },
        ).rowcount
        if inserted:
            quota_warning_total.labels(percentage=str(threshold.percentage)).inc()
            message = threshold.message
    return message


def check_and_increment(
    db: Session,
    account_id: int,
    module_id: str,
    item_count: int = 1,
    *,
    ip_address: str = "",
    user_agent: str = "",
    request_id: str | None = None,
    now: datetime | None = None,
) -> QuotaCheck:
    policy = rate_config.get_policy(db)
    module = policy.module(module_id)
    if not policy.is_enabled or module is None:
        return QuotaCheck(allowed=True, restricted=False, module_id=module_id)

    now = now or utcnow()
    day = current_day(policy, now)
    weight = round(max(1, item_count) * module.weight, 6)
    record = get_or_create(db, account_id, day, policy=policy)

    result = db.execute(
        update(QuotaRecord)
        .where(
            QuotaRecord.id == record.id,
            QuotaRecord.admin_blocked.is_(False),
            or_(
                QuotaRecord.daily_limit.is_(None),
                QuotaRecord.total_usage + weight <= QuotaRecord.daily_limit + _EPSILON,
            ),
        )
        .values(total_usage=QuotaRecord.total_usage + weight, last_activity=now)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        db.rollback()
        db.refresh(record)
        total = record.total_usage or 0.0
        if record.admin_blocked:
            logger.info("Usage of account %s on %s blocked by admin", account_id, module_id)
            return QuotaCheck(
                allowed=False,
                restricted=True,
                module_id=module_id,
                weight=weight,
                total_usage=total,
                daily_limit=record.daily_limit,
                remaining=0.0,
                percentage=_percentage(total, record.daily_limit),
                day=day,
                admin_blocked=True,
                block_reason=record.admin_block_reason,
            )
        quota_reject_total.inc()
        logger.info(
            "Quota exceeded for account %s on %s (%.1f + %.1f > %s)",
            account_id,
            module_id,
            total,
            weight,
            record.daily_limit,
        )
        return QuotaCheck(
            allowed=False,
            restricted=True,
            module_id=module_id,
            weight=weight,
            total_usage=total,
            daily_limit=record.daily_limit,
            remaining=_remaining(total, record.daily_limit),
            percentage=_percentage(total, record.daily_limit),
            day=day,
        )

    db.execute(
        _UPSERT_MODULE_USAGE,
        {"record_id": record.id, "module_id": module_id, "weight": weight, "now": now},
    )
    db.add(
        QuotaRequest(
            record_id=record.id,
            module_id=module_id,
            weight=weight,
            ip_address=ip_address or "",
            user_agent=user_agent or "",
            request_id=request_id,
            created_at=now,
        )
    )
    db.flush()
    _trim_history(db, record.id)
    total = db.scalar(select(QuotaRecord.total_usage).where(QuotaRecord.id == record.id)) or 0.0
    percentage = _percentage(total, record.daily_limit)
    warning = None
    if record.daily_limit is not None:
        warning = _issue_warnings(db, record.id, total, record.daily_limit, policy, now)
        if total + _EPSILON >= record.daily_limit:
            db.execute(
                update(QuotaRecord)
                .where(QuotaRecord.id == record.id)
                .values(is_blocked=True, block_reason="Daily limit reached")
                .execution_options(synchronize_session=False)
            )
    db.commit()
    return QuotaCheck(
        allowed=True,
        restricted=True,
        module_id=module_id,
        weight=weight,
        total_usage=total,
        daily_limit=record.daily_limit,
        remaining=_remaining(total, record.daily_limit),
        percentage=percentage,
        warning=warning,
        day=day,
    )


def _clear_children(db: Session, record_ids) -> None:
    for model in (QuotaModuleUsage, QuotaRequest, QuotaWarning):
        db.execute(
            delete(model)
            .where(model.record_id.in_(record_ids))
            .execution_options(synchronize_session=False)
        )


def reset_all(db: Session, day: date) -> int:
    """Zero every record of ``day`` and clear its children; caller commits."""
    ids = select(QuotaRecord.id).where(QuotaRecord.date == day)
    _clear_children(db, ids)
    result = db.execute(
        update(QuotaRecord)
        .where(QuotaRecord.date == day)
        .values(total_usage=0.0, is_blocked=False, block_reason=None)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def reset_for_account(
    db: Session, account_id: int, day: date | None = None, *, actor_id: str
) -> QuotaRecord:
    policy = rate_config.get_policy(db)
    day = day or current_day(policy)
    record = _find_record(db, account_id, day)
    if record is None:
        audit.emit(
            "USAGE_RESET_REJECTED",
            actor_id,
            f"No usage record for account {account_id} on {day.isoformat()}",
            account_id=account_id,
        )
        raise NotFoundError(f"No usage record for account {account_id} on {day.isoformat()}")
    previous = record.total_usage
    _clear_children(db, [record.id])
    record.total_usage = 0.0
    record.is_blocked = False
    record.block_reason = None
    db.commit()
    db.refresh(record)
    audit.emit(
        "USAGE_RESET",
        actor_id,
        f"Usage of account {account_id} on {day.isoformat()} reset from {previous}",
        account_id=account_id,
        day=day.isoformat(),
        previous_usage=previous,
    )
    return record


def set_quota_block(
    db: Session,
    account_id: int,
    blocked: bool,
    reason: str | None = None,
    *,
    actor_id: str,
) -> QuotaRecord:
    """Block or unblock module usage for the account's current quota day."""
    policy = rate_config.get_policy(db)
    day = current_day(policy)
    record = _find_record(db, account_id, day)
    if record is None:
        audit.emit(
            "USAGE_BLOCK_REJECTED",
            actor_id,
            f"No usage record for account {account_id} on {day.isoformat()}",
            account_id=account_id,
        )
        raise NotFoundError(f"No usage record for account {account_id} on {day.isoformat()}")
    record.admin_blocked = blocked
    record.admin_block_reason = (reason or "Blocked by admin") if blocked else None
    record.admin_blocked_at = utcnow() if blocked else None
    db.commit()
    db.refresh(record)
    audit.emit(
        "USAGE_BLOCKED" if blocked else "USAGE_UNBLOCKED",
        actor_id,
        f"Usage of account {account_id} on {day.isoformat()} "
        f"{'blocked' if blocked else 'unblocked'}",
        account_id=account_id,
        day=day.isoformat(),
        reason=record.admin_block_reason,
    )
    return record


def usage_status(db: Session, account_id: int, now: datetime | None = None) -> UsageStatus:
    policy = rate_config.get_policy(db)
    now = now or utcnow()
    record = get_or_create(db, account_id, current_day(policy, now), policy=policy)
    db.refresh(record)
    total = record.total_usage or 0.0
    return UsageStatus(
        account_id=account_id,
        day=record.date,
        daily_limit=record.daily_limit,
        total_usage=total,
        remaining=_remaining(total, record.daily_limit),
        percentage=_percentage(total, record.daily_limit),
        is_blocked=bool(record.is_blocked),
        admin_blocked=bool(record.admin_blocked),
        admin_block_reason=record.admin_block_reason,
        subscription_type=record.subscription_type,
        reset_time=policy.reset_time,
        timezone=policy.timezone,
        next_reset_at=next_reset_at(now, policy.timezone, policy.reset_time),
        modules=[
            {
                "module_id": m.module_id,
                "request_count": m.request_count,
                "weighted_usage": m.weighted_usage,
                "last_used": m.last_used,
            }
            for m in record.module_usage
        ],
        warnings=[
            {"percentage": w.percentage, "message": w.message, "issued_at": w.issued_at}
            for w in record.warnings
        ],
    )


def usage_history(db: Session, account_id: int, days: int = 7) -> list[QuotaRecord]:
    policy = rate_config.get_policy(db)
    since = current_day(policy) - timedelta(days=max(1, days) - 1)
    return list(
        db.scalars(
            select(QuotaRecord)
            .where(QuotaRecord.account_id == account_id, QuotaRecord.date >= since)
            .order_by(QuotaRecord.date.desc())
        )
    )


def recent_requests(db: Session, record_id: int, limit: int = 20) -> list[QuotaRequest]:
    return list(
        db.scalars(
            select(QuotaRequest)
            .where(QuotaRequest.record_id == record_id)
            .order_by(QuotaRequest.id.desc())
            .limit(limit)
        )
    )


def usage_stats(db: Session, start: date, end: date) -> dict[str, Any]:
    rows = db.execute(
        select(
            QuotaRecord.date,
            func.count(QuotaRecord.id),
            func.coalesce(func.sum(QuotaRecord.total_usage), 0.0),
            func.sum(case((QuotaRecord.is_blocked.is_(True), 1), else_=0)),
        )
        .where(QuotaRecord.date >= start, QuotaRecord.date <= end)
        .group_by(QuotaRecord.date)
        .order_by(QuotaRecord.date)
    ).all()
    per_day = [
        {
            "date": day.isoformat(),
            "accounts": count,
            "total_usage": float(total or 0.0),
            "limit_reached": int(reached or 0),
        }
        for day, count, total, reached in rows
    ]
    total_usage = sum(d["total_usage"] for d in per_day)
    active = db.scalar(
        select(func.count(func.distinct(QuotaRecord.account_id))).where(
            QuotaRecord.date >= start, QuotaRecord.date <= end, QuotaRecord.total_usage > 0
        )
    ) or 0
    return {
        "start": start.isoformat(),
        "end": end.isoformat(),
        "total_usage": total_usage,
        "active_accounts": active,
        "average_per_account": round(total_usage / active, 2) if active else 0.0,
        "per_day": per_day,
    }


def module_stats(db: Session, start: date, end: date) -> list[dict[str, Any]]:
    rows = db.execute(
        select(
            QuotaModuleUsage.module_id,
            func.coalesce(func.sum(QuotaModuleUsage.request_count), 0),
            func.coalesce(func.sum(QuotaModuleUsage.weighted_usage), 0.0),
            func.count(func.distinct(QuotaRecord.account_id)),
        )
        .join(QuotaRecord, QuotaRecord.id == QuotaModuleUsage.record_id)
        .where(QuotaRecord.date >= start, QuotaRecord.date <= end)
        .group_by(QuotaModuleUsage.module_id)
        .order_by(func.sum(QuotaModuleUsage.weighted_usage).desc())
    ).all()
    return [
        {
            "module_id": module_id,
            "request_count": int(requests),
            "weighted_usage": float(weighted),
            "accounts": int(accounts),
        }
        for module_id, requests, weighted, accounts in rows
    ]


def heavy_users(
    db: Session, days: int = 7, threshold: float = 150, limit: int = 50
) -> list[dict[str, Any]]:
    policy = rate_config.get_policy(db)
    since = current_day(policy) - timedelta(days=max(1, days) - 1)
    total = func.sum(QuotaRecord.total_usage)
    rows = db.execute(
        select(QuotaRecord.account_id, total, func.count(QuotaRecord.id), func.max(QuotaRecord.total_usage))
        .where(QuotaRecord.date >= since)
        .group_by(QuotaRecord.account_id)
        .having(total >= threshold)
        .order_by(total.desc())
        .limit(limit)
    ).all()
    return [
        {
            "account_id": account_id,
            "total_usage": float(usage),
            "days_active": int(days_active),
            "peak_daily_usage": float(peak),
        }
        for account_id, usage, days_active, peak in rows
    ]


def prune_records(db: Session, cutoff_day: date) -> int:
    """Delete records dated before ``cutoff_day`` with their children; caller commits."""
    ids = select(QuotaRecord.id).where(QuotaRecord.date < cutoff_day)
    _clear_children(db, ids)
    result = db.execute(
        delete(QuotaRecord)
        .where(QuotaRecord.date < cutoff_day)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0

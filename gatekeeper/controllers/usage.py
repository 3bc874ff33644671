from __future__ import annotations

import asyncio
from datetime import date, datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from gatekeeper import db as db_module
from gatekeeper.dependencies import require_api_headers
from gatekeeper.models import QuotaRecord
from gatekeeper.services import quota
from gatekeeper.services.clock import ensure_utc

router = APIRouter(prefix="/usage", tags=["usage"])


class ModuleUsageOut(BaseModel):
    module_id: str
    request_count: int
    weighted_usage: float
    last_used: datetime | None = None


class WarningOut(BaseModel):
    percentage: int
    message: str
    issued_at: datetime


class UsageStatusOut(BaseModel):
    account_id: int
    day: date
    daily_limit: int | None
    total_usage: float
    remaining: float | None
    percentage: int
    is_blocked: bool
    admin_blocked: bool = False
    admin_block_reason: str | None = None
    subscription_type: str
    reset_time: str
    timezone: str
    next_reset_at: datetime
    modules: list[ModuleUsageOut]
    warnings: list[WarningOut]


class UsageDayOut(BaseModel):
    day: date
    daily_limit: int | None
    total_usage: float
    is_blocked: bool
    admin_blocked: bool = False
    admin_block_reason: str | None = None
    modules: list[ModuleUsageOut]


def usage_status_out(status: quota.UsageStatus) -> UsageStatusOut:
    data: dict[str, Any] = dict(status.__dict__)
    data["modules"] = [
        ModuleUsageOut(**{**m, "last_used": ensure_utc(m["last_used"])}) for m in status.modules
    ]
    data["warnings"] = [
        WarningOut(**{**w, "issued_at": ensure_utc(w["issued_at"])}) for w in status.warnings
    ]
    return UsageStatusOut(**data)


def usage_day_out(record: QuotaRecord) -> UsageDayOut:
    return UsageDayOut(
        day=record.date,
        daily_limit=record.daily_limit,
        total_usage=record.total_usage or 0.0,
        is_blocked=bool(record.is_blocked),
        admin_blocked=bool(record.admin_blocked),
        admin_block_reason=record.admin_block_reason,
        modules=[
            ModuleUsageOut(
                module_id=m.module_id,
                request_count=m.request_count,
                weighted_usage=m.weighted_usage,
                last_used=ensure_utc(m.last_used),
            )
            for m in record.module_usage
        ],
    )


def _status(account_id: int) -> UsageStatusOut:
    with db_module.SessionLocal() as db:
        return usage_status_out(quota.usage_status(db, account_id))


def _history(account_id: int, days: int) -> list[UsageDayOut]:
    with db_module.SessionLocal() as db:
        return [usage_day_out(r) for r in quota.usage_history(db, account_id, days)]


@router.get("", response_model=UsageStatusOut)
async def get_usage(account_id: int = Depends(require_api_headers)):
    return await asyncio.to_thread(_status, account_id)


@router.get("/history", response_model=list[UsageDayOut])
async def get_usage_history(
    days: int = Query(7, ge=1, le=90),
    account_id: int = Depends(require_api_headers),
):
    return await asyncio.to_thread(_history, account_id, days)

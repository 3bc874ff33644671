from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import func, select

from gatekeeper import db as db_module
from gatekeeper.controllers.accounts import AccountOut, account_out
from gatekeeper.controllers.blocks import BlockOut, block_out
from gatekeeper.controllers.sessions import SessionOut, session_out
from gatekeeper.controllers.usage import UsageDayOut, UsageStatusOut, usage_day_out, usage_status_out
from gatekeeper.dependencies import require_admin, service_error
from gatekeeper.models import AccountSession, BlockType, DeviceFingerprint
from gatekeeper.services import (
    accounts,
    blocks,
    fingerprints,
    quota,
    rate_config,
    reset,
    sessions,
    sharing,
)
from gatekeeper.services.clock import ensure_utc
from gatekeeper.services.errors import GatekeeperError
from gatekeeper.services.rate_config import RateLimitPolicy, RestrictedModule, WarningThreshold

router = APIRouter(prefix="/admin", tags=["admin"])


async def _call(func, *args, **kwargs):
    """Run a sync admin operation in a worker thread, mapping service errors."""
    try:
        return await asyncio.to_thread(func, *args, **kwargs)
    except GatekeeperError as exc:
        raise service_error(exc) from exc


# --- blocks -----------------------------------------------------------------


class BlockPage(BaseModel):
    items: list[BlockOut]
    total: int
    page: int
    page_size: int


class ManualBlockRequest(BaseModel):
    account_id: int
    block_type: BlockType = BlockType.TEMPORARY
    reason: str = Field(..., min_length=1, max_length=2000)
    hours: int | None = Field(None, ge=1, le=24 * 365)


class UnblockRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class ReviewAppealRequest(BaseModel):
    approved: bool
    notes: str = Field("", max_length=2000)


def _list_blocks(status: str | None, account_id: int | None, page: int, page_size: int) -> BlockPage:
    with db_module.SessionLocal() as db:
        items, total = blocks.list_blocks(
            db, status=status, account_id=account_id, page=page, page_size=page_size
        )
        return BlockPage(
            items=[block_out(b) for b in items], total=total, page=page, page_size=page_size
        )


def _get_block(block_id: int) -> BlockOut:
    with db_module.SessionLocal() as db:
        return block_out(blocks.get_block(db, block_id))


def _create_block(body: ManualBlockRequest, actor_id: str) -> BlockOut:
    with db_module.SessionLocal() as db:
        block = blocks.create_manual_block(
            db, body.account_id, body.block_type, body.reason, body.hours, actor_id=actor_id
        )
        return block_out(block)


def _unblock(block_id: int, reason: str, actor_id: str) -> BlockOut:
    with db_module.SessionLocal() as db:
        return block_out(blocks.admin_unblock(db, block_id, reason, actor_id=actor_id))


def _review(block_id: int, body: ReviewAppealRequest, actor_id: str) -> BlockOut:
    with db_module.SessionLocal() as db:
        block = blocks.review_appeal(db, block_id, body.approved, body.notes, actor_id=actor_id)
        return block_out(block)


@router.get("/blocks", response_model=BlockPage)
async def list_blocks(
    status: Literal["ACTIVE", "EXPIRED", "APPEALED", "UNBLOCKED"] | None = None,
    account_id: int | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    actor_id: str = Depends(require_admin),
):
    return await _call(_list_blocks, status, account_id, page, page_size)


@router.post("/blocks", response_model=BlockOut, status_code=201)
async def create_block(body: ManualBlockRequest, actor_id: str = Depends(require_admin)):
    return await _call(_create_block, body, actor_id)


@router.get("/blocks/{block_id}", response_model=BlockOut)
async def get_block(block_id: int, actor_id: str = Depends(require_admin)):
    return await _call(_get_block, block_id)


@router.post("/blocks/{block_id}/unblock", response_model=BlockOut)
async def unblock(block_id: int, body: UnblockRequest, actor_id: str = Depends(require_admin)):
    return await _call(_unblock, block_id, body.reason, actor_id)


@router.post("/blocks/{block_id}/review-appeal", response_model=BlockOut)
async def review_appeal(
    block_id: int, body: ReviewAppealRequest, actor_id: str = Depends(require_admin)
):
    return await _call(_review, block_id, body, actor_id)


# --- devices ----------------------------------------------------------------


class DeviceOut(BaseModel):
    id: int
    account_id: int
    fingerprint_hash: str
    device_info: dict[str, Any]
    ip_address: str
    confidence: float | None = None
    is_active: bool
    is_verified: bool
    first_seen: datetime
    last_seen: datetime
    session_count: int
    rapid_location_changes: int
    unusual_usage_hours: int
    simultaneous_activity: int


class VerifyDeviceRequest(BaseModel):
    verified: bool = True


class SuspicionRequest(BaseModel):
    kind: Literal["rapid_location_changes", "unusual_usage_hours", "simultaneous_activity"]


def device_out(device: DeviceFingerprint) -> DeviceOut:
    return DeviceOut(
        id=device.id,
        account_id=device.account_id,
        fingerprint_hash=device.fingerprint_hash,
        device_info=device.device_info or {},
        ip_address=device.ip_address,
        confidence=device.confidence,
        is_active=device.is_active,
        is_verified=device.is_verified,
        first_seen=ensure_utc(device.first_seen),
        last_seen=ensure_utc(device.last_seen),
        session_count=device.session_count,
        rapid_location_changes=device.rapid_location_changes,
        unusual_usage_hours=device.unusual_usage_hours,
        simultaneous_activity=device.simultaneous_activity,
    )


def _list_devices(account_id: int) -> list[DeviceOut]:
    with db_module.SessionLocal() as db:
        return [device_out(d) for d in fingerprints.list_for_account(db, account_id)]


def _verify_device(device_id: int, verified: bool, actor_id: str) -> DeviceOut:
    with db_module.SessionLocal() as db:
        return device_out(fingerprints.verify(db, device_id, verified, actor_id=actor_id))


def _add_suspicion(device_id: int, kind: str, actor_id: str) -> DeviceOut:
    with db_module.SessionLocal() as db:
        device = fingerprints.increment_suspicion(db, device_id, kind, actor_id=actor_id)
        return device_out(device)


@router.get("/devices", response_model=list[DeviceOut])
async def list_devices(account_id: int, actor_id: str = Depends(require_admin)):
    return await _call(_list_devices, account_id)


@router.post("/devices/{device_id}/verify", response_model=DeviceOut)
async def verify_device(
    device_id: int, body: VerifyDeviceRequest, actor_id: str = Depends(require_admin)
):
    return await _call(_verify_device, device_id, body.verified, actor_id)


@router.post("/devices/{device_id}/suspicion", response_model=DeviceOut)
async def add_suspicion(
    device_id: int, body: SuspicionRequest, actor_id: str = Depends(require_admin)
):
    return await _call(_add_suspicion, device_id, body.kind, actor_id)


# --- sessions ---------------------------------------------------------------


class TerminateRequest(BaseModel):
    reason: str = Field("", max_length=2000)


def _list_sessions(account_id: int | None, active: bool | None, limit: int, offset: int) -> list[SessionOut]:
    with db_module.SessionLocal() as db:
        return [
            session_out(s)
            for s in sessions.list_sessions(
                db, account_id=account_id, active=active, limit=limit, offset=offset
            )
        ]


def _terminate(session_id: int, reason: str, actor_id: str) -> SessionOut:
    with db_module.SessionLocal() as db:
        return session_out(
            sessions.terminate_session(db, session_id, actor_id=actor_id, reason=reason)
        )


def _logout_account(account_id: int, actor_id: str) -> int:
    with db_module.SessionLocal() as db:
        return sessions.force_logout_all(db, account_id, actor_id=actor_id)


@router.get("/sessions", response_model=list[SessionOut])
async def list_sessions(
    account_id: int | None = None,
    active: bool | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor_id: str = Depends(require_admin),
):
    return await _call(_list_sessions, account_id, active, limit, offset)


@router.post("/sessions/{session_id}/terminate", response_model=SessionOut)
async def terminate_session(
    session_id: int, body: TerminateRequest, actor_id: str = Depends(require_admin)
):
    return await _call(_terminate, session_id, body.reason, actor_id)


# --- accounts ---------------------------------------------------------------


class SharingScoreOut(BaseModel):
    score: int
    hardware_score: int
    behavior_score: int
    session_score: int
    evidence: dict[str, Any]


class AccountOverview(BaseModel):
    account: AccountOut
    sharing: SharingScoreOut
    active_session: SessionOut | None = None
    devices: list[DeviceOut]
    current_block: BlockOut | None = None
    blocks: list[BlockOut]
    usage: UsageStatusOut


def _overview(account_id: int) -> AccountOverview:
    with db_module.SessionLocal() as db:
        account = accounts.require_account(db, account_id)
        active = sessions.get_active_session(db, account_id)
        current = blocks.get_current_block(db, account_id)
        history, _ = blocks.list_blocks(db, account_id=account_id, page_size=50)
        return AccountOverview(
            account=account_out(account),
            sharing=SharingScoreOut(**sharing.evaluate(db, account_id).as_dict()),
            active_session=session_out(active) if active else None,
            devices=[device_out(d) for d in fingerprints.list_for_account(db, account_id)],
            current_block=block_out(current) if current else None,
            blocks=[block_out(b) for b in history],
            usage=usage_status_out(quota.usage_status(db, account_id)),
        )


class LogoutAllResponse(BaseModel):
    count: int


@router.get("/accounts/{account_id}/overview", response_model=AccountOverview)
async def account_overview(account_id: int, actor_id: str = Depends(require_admin)):
    return await _call(_overview, account_id)


@router.post("/accounts/{account_id}/logout-all", response_model=LogoutAllResponse)
async def logout_account(account_id: int, actor_id: str = Depends(require_admin)):
    count = await _call(_logout_account, account_id, actor_id)
    return LogoutAllResponse(count=count)


def _anti_sharing_stats() -> dict[str, Any]:
    with db_module.SessionLocal() as db:
        stats = blocks.block_stats(db)
        stats["active_sessions"] = db.scalar(
            select(func.count(AccountSession.id)).where(AccountSession.active.is_(True))
        ) or 0
        stats["devices"] = db.scalar(select(func.count(DeviceFingerprint.id))) or 0
        stats["verified_devices"] = db.scalar(
            select(func.count(DeviceFingerprint.id)).where(DeviceFingerprint.is_verified.is_(True))
        ) or 0
        return stats


@router.get("/anti-sharing/stats")
async def anti_sharing_stats(actor_id: str = Depends(require_admin)):
    return await _call(_anti_sharing_stats)


# --- rate limit config ------------------------------------------------------


class ConfigUpdateRequest(BaseModel):
    expected_version: int | None = None
    is_enabled: bool | None = None
    daily_limit: int | None = None
    reset_time: str | None = None
    timezone: str | None = None
    restricted_modules: list[RestrictedModule] | None = None
    subscription_limits: dict[str, int] | None = None
    exempted_accounts: list[int] | None = None
    limit_overrides: dict[str, int] | None = None
    burst_enabled: bool | None = None
    burst_limit: int | None = None
    burst_window_seconds: int | None = None
    warning_thresholds: list[WarningThreshold] | None = None
    maintenance_mode: bool | None = None
    maintenance_message: str | None = None
    retention_days: int | None = None


class ExemptionRequest(BaseModel):
    exempt: bool


class OverrideRequest(BaseModel):
    limit: int | None = None


def _get_config() -> RateLimitPolicy:
    with db_module.SessionLocal() as db:
        return rate_config.get_policy(db, fresh=True)


def _update_config(body: ConfigUpdateRequest, actor_id: str) -> RateLimitPolicy:
    changes = body.model_dump(exclude_none=True, exclude={"expected_version"})
    with db_module.SessionLocal() as db:
        return rate_config.update_policy(
            db, changes, actor_id=actor_id, expected_version=body.expected_version
        )


def _set_exemption(account_id: int, exempt: bool, actor_id: str) -> RateLimitPolicy:
    with db_module.SessionLocal() as db:
        return rate_config.set_exemption(db, account_id, exempt, actor_id=actor_id)


def _set_override(account_id: int, limit: int | None, actor_id: str) -> RateLimitPolicy:
    with db_module.SessionLocal() as db:
        return rate_config.set_limit_override(db, account_id, limit, actor_id=actor_id)


@router.get("/rate-limit/config", response_model=RateLimitPolicy)
async def get_config(actor_id: str = Depends(require_admin)):
    return await _call(_get_config)


@router.put("/rate-limit/config", response_model=RateLimitPolicy)
async def update_config(body: ConfigUpdateRequest, actor_id: str = Depends(require_admin)):
    return await _call(_update_config, body, actor_id)


@router.put("/rate-limit/exemptions/{account_id}", response_model=RateLimitPolicy)
async def set_exemption(
    account_id: int, body: ExemptionRequest, actor_id: str = Depends(require_admin)
):
    return await _call(_set_exemption, account_id, body.exempt, actor_id)


@router.put("/rate-limit/overrides/{account_id}", response_model=RateLimitPolicy)
async def set_override(
    account_id: int, body: OverrideRequest, actor_id: str = Depends(require_admin)
):
    return await _call(_set_override, account_id, body.limit, actor_id)


# --- usage ------------------------------------------------------------------


class AccountUsageOut(BaseModel):
    status: UsageStatusOut
    history: list[UsageDayOut]


class ResetRequest(BaseModel):
    force: bool = True


class UsageBlockRequest(BaseModel):
    blocked: bool
    reason: str | None = Field(None, max_length=255)


def _default_range(db, start: date | None, end: date | None) -> tuple[date, date]:
    # quota days are local dates
    end = end or quota.current_day(rate_config.get_policy(db))
    start = start or end - timedelta(days=6)
    return start, end


def _usage_stats(start: date | None, end: date | None) -> dict[str, Any]:
    with db_module.SessionLocal() as db:
        return quota.usage_stats(db, *_default_range(db, start, end))


def _module_stats(start: date | None, end: date | None) -> list[dict[str, Any]]:
    with db_module.SessionLocal() as db:
        return quota.module_stats(db, *_default_range(db, start, end))


def _heavy_users(days: int, threshold: float) -> list[dict[str, Any]]:
    with db_module.SessionLocal() as db:
        return quota.heavy_users(db, days, threshold)


def _account_usage(account_id: int, days: int) -> AccountUsageOut:
    with db_module.SessionLocal() as db:
        return AccountUsageOut(
            status=usage_status_out(quota.usage_status(db, account_id)),
            history=[usage_day_out(r) for r in quota.usage_history(db, account_id, days)],
        )


def _reset_account(account_id: int, actor_id: str) -> UsageDayOut:
    with db_module.SessionLocal() as db:
        return usage_day_out(quota.reset_for_account(db, account_id, actor_id=actor_id))


def _block_usage(account_id: int, body: UsageBlockRequest, actor_id: str) -> UsageDayOut:
    with db_module.SessionLocal() as db:
        record = quota.set_quota_block(
            db, account_id, body.blocked, body.reason, actor_id=actor_id
        )
        return usage_day_out(record)


@router.get("/usage/stats")
async def usage_stats(
    start: date | None = None,
    end: date | None = None,
    actor_id: str = Depends(require_admin),
):
    return await _call(_usage_stats, start, end)


@router.get("/usage/modules")
async def module_stats(
    start: date | None = None,
    end: date | None = None,
    actor_id: str = Depends(require_admin),
):
    return await _call(_module_stats, start, end)


@router.get("/usage/heavy-users")
async def heavy_users(
    days: int = Query(7, ge=1, le=90),
    threshold: float = Query(150, ge=0),
    actor_id: str = Depends(require_admin),
):
    return await _call(_heavy_users, days, threshold)


@router.get("/usage/accounts/{account_id}", response_model=AccountUsageOut)
async def account_usage(
    account_id: int,
    days: int = Query(7, ge=1, le=90),
    actor_id: str = Depends(require_admin),
):
    return await _call(_account_usage, account_id, days)


@router.post("/usage/accounts/{account_id}/reset", response_model=UsageDayOut)
async def reset_account_usage(account_id: int, actor_id: str = Depends(require_admin)):
    return await _call(_reset_account, account_id, actor_id)


@router.post("/usage/accounts/{account_id}/block", response_model=UsageDayOut)
async def block_account_usage(
    account_id: int, body: UsageBlockRequest, actor_id: str = Depends(require_admin)
):
    return await _call(_block_usage, account_id, body, actor_id)


@router.post("/usage/reset-all")
async def reset_all_usage(
    body: ResetRequest | None = None, actor_id: str = Depends(require_admin)
):
    force = body.force if body else True
    result = await _call(reset.reset_scheduler.maybe_run, force, actor_id=actor_id)
    return result.as_dict()


# --- scheduler --------------------------------------------------------------


class TriggerRequest(BaseModel):
    force: bool = False


def _recent_runs(limit: int) -> list[dict[str, Any]]:
    with db_module.SessionLocal() as db:
        return [
            {
                "reset_date": run.reset_date.isoformat(),
                "ran_at": ensure_utc(run.ran_at).isoformat(),
                "forced": run.forced,
                "run_count": run.run_count,
                **{name: getattr(run, name) for name in reset.STAT_FIELDS},
            }
            for run in reset.recent_runs(db, limit)
        ]


@router.get("/scheduler/status")
async def scheduler_status(actor_id: str = Depends(require_admin)):
    return await _call(reset.reset_scheduler.status)


@router.post("/scheduler/start")
async def scheduler_start(actor_id: str = Depends(require_admin)):
    await reset.reset_scheduler.start(actor_id=actor_id)
    return {"running": reset.reset_scheduler.running}


@router.post("/scheduler/stop")
async def scheduler_stop(actor_id: str = Depends(require_admin)):
    await reset.reset_scheduler.stop(actor_id=actor_id)
    return {"running": reset.reset_scheduler.running}


@router.post("/scheduler/trigger")
async def scheduler_trigger(
    body: TriggerRequest | None = None, actor_id: str = Depends(require_admin)
):
    force = body.force if body else False
    result = await _call(reset.reset_scheduler.maybe_run, force, actor_id=actor_id)
    return result.as_dict()


@router.get("/scheduler/runs")
async def scheduler_runs(
    limit: int = Query(30, ge=1, le=365), actor_id: str = Depends(require_admin)
):
    return await _call(_recent_runs, limit)

"""Single decision point for authenticated actions.

``decide`` never raises for policy outcomes: denials come back as a
``Decision`` carrying an ``ErrorCode`` and the details a client needs
(remaining quota, block evidence, retry window).
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from pydantic import BaseModel, Field
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from gatekeeper import db as db_module
from gatekeeper.config import Settings
from gatekeeper.metrics import gate_decisions_total, gate_latency_seconds
from gatekeeper.models import ErrorCode
from gatekeeper.services import (
    accounts,
    blocks,
    burst,
    fingerprints,
    quota,
    rate_config,
    sessions,
    sharing,
)
from gatekeeper.services.clock import ensure_utc
from gatekeeper.services.sessions import SessionStatus

settings = Settings()
logger = logging.getLogger(__name__)

AUTH_ACTIONS = ("login", "register")
MODULE_PREFIX = "module:"


class GateContext(BaseModel):
    session_token: str | None = None
    ip_address: str = ""
    user_agent: str = ""
    fingerprint: str | None = None
    fingerprint_confidence: float | None = None
    device_info: dict[str, Any] = Field(default_factory=dict)
    subscription_type: str | None = None
    item_count: int = Field(1, ge=1)
    request_id: str | None = None


class Decision(BaseModel):
    allowed: bool
    reason: ErrorCode | None = None
    message: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def allow(cls, **details: Any) -> "Decision":
        return cls(allowed=True, details=details)

    @classmethod
    def deny(cls, reason: ErrorCode, message: str, **details: Any) -> "Decision":
        return cls(allowed=False, reason=reason, message=message, details=details)


def action_kind(action: str) -> str:
    if action in AUTH_ACTIONS:
        return action
    if action.startswith(MODULE_PREFIX):
        return "module"
    return "other"


def _check_session(account_id: int, token: str) -> Decision | None:
    with db_module.SessionLocal() as db:
        result = sessions.check(db, token)
    if result.status is SessionStatus.NOT_FOUND or result.session.account_id != account_id:
        return Decision.deny(ErrorCode.AUTHENTICATION_FAILURE, "Unknown session")
    if result.status is SessionStatus.TERMINATED:
        return Decision.deny(
            ErrorCode.SESSION_TERMINATED,
            "Session ended because the account signed in elsewhere",
            logout_reason=result.session.logout_reason,
        )
    if result.status is SessionStatus.EXPIRED:
        return Decision.deny(ErrorCode.SESSION_EXPIRED, "Session expired after inactivity")
    return None


def _block_details(block) -> dict[str, Any]:
    return {
        "block_id": block.id,
        "block_type": block.block_type,
        "block_reason": block.block_reason,
        "status": block.status,
        "sharing_score": block.sharing_score,
        "evidence": block.evidence or {},
        "blocked_until": (
            ensure_utc(block.blocked_until).isoformat() if block.blocked_until else None
        ),
        "remaining_seconds": blocks.remaining_seconds(block),
        "can_appeal": block.appeal is None,
    }


def _auth_decision(account_id: int, action: str, context: GateContext) -> Decision:
    with db_module.SessionLocal() as db:
        if action == "register":
            accounts.register_account(db, account_id, subscription_type=context.subscription_type)
        elif accounts.get_account(db, account_id) is None:
            return Decision.deny(ErrorCode.AUTHENTICATION_FAILURE, "Unknown account")

        if context.fingerprint:
            try:
                fingerprints.record(
                    db,
                    account_id,
                    context.fingerprint,
                    ip_address=context.ip_address,
                    device_info=context.device_info,
                    confidence=context.fingerprint_confidence,
                )
            except SQLAlchemyError:
                # device tracking is best effort; login proceeds without it
                db.rollback()
                logger.warning("Fingerprint recording failed for account %s", account_id, exc_info=True)

        score = sharing.evaluate(db, account_id)
        blocks.apply_score(db, account_id, score)
        block = blocks.get_current_block(db, account_id)
        if block is not None:
            return Decision.deny(
                ErrorCode.ACCOUNT_BLOCKED,
                "Account is blocked",
                **_block_details(block),
            )
        return Decision.allow(sharing_score=score.score)


def _load_policy() -> rate_config.RateLimitPolicy:
    with db_module.SessionLocal() as db:
        return rate_config.get_policy(db)


def _consume_quota(account_id: int, module_id: str, context: GateContext) -> quota.QuotaCheck:
    with db_module.SessionLocal() as db:
        return quota.check_and_increment(
            db,
            account_id,
            module_id,
            context.item_count,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            request_id=context.request_id,
        )


async def _module_decision(account_id: int, module_id: str, context: GateContext) -> Decision:
    policy = await asyncio.to_thread(_load_policy)
    if not policy.is_enabled:
        return Decision.allow(restricted=False)
    if policy.maintenance_mode:
        return Decision.deny(ErrorCode.MAINTENANCE, policy.maintenance_message)

    if policy.burst_enabled and policy.module(module_id) is not None:
        window = await burst.hit(account_id, policy)
        if not window.allowed:
            return Decision.deny(
                ErrorCode.BURST_EXCEEDED,
                "Too many requests in a short period",
                limit=window.limit,
                window_seconds=window.window_seconds,
                retry_after=window.retry_after,
            )

    check = await asyncio.to_thread(_consume_quota, account_id, module_id, context)
    if check.admin_blocked:
        return Decision.deny(
            ErrorCode.USAGE_BLOCKED,
            f"Usage is blocked for today: {check.block_reason}",
            block_reason=check.block_reason,
            remaining=0.0,
            limit=check.daily_limit,
            total_usage=check.total_usage,
        )
    if not check.allowed:
        return Decision.deny(
            ErrorCode.QUOTA_EXCEEDED,
            "Daily quota exceeded",
            remaining=check.remaining,
            limit=check.daily_limit,
            total_usage=check.total_usage,
            percentage=check.percentage,
            weight=check.weight,
            reset_time=policy.reset_time,
            timezone=policy.timezone,
        )
    return Decision.allow(
        restricted=check.restricted,
        remaining=check.remaining,
        limit=check.daily_limit,
        total_usage=check.total_usage,
        percentage=check.percentage,
        warning=check.warning,
    )


async def _decide(account_id: int, action: str, context: GateContext) -> Decision:
    if context.session_token:
        denied = await asyncio.to_thread(_check_session, account_id, context.session_token)
        if denied is not None:
            return denied
    if action in AUTH_ACTIONS:
        return await asyncio.to_thread(_auth_decision, account_id, action, context)
    if action.startswith(MODULE_PREFIX):
        module_id = action[len(MODULE_PREFIX):]
        if not module_id:
            return Decision.deny(ErrorCode.BAD_REQUEST, "Missing module id")
        return await _module_decision(account_id, module_id, context)
    return Decision.allow()


async def decide(
    account_id: int, action: str, context: GateContext | None = None
) -> Decision:
    context = context or GateContext()
    kind = action_kind(action)
    started = time.perf_counter()
    try:
        decision = await _decide(account_id, action, context)
    except (SQLAlchemyError, RedisError) as exc:
        if settings.gate_fail_open:
            logger.warning(
                "Gate storage failure for account %s on %s, failing open: %s",
                account_id,
                action,
                exc,
            )
            decision = Decision.allow(degraded=True)
        else:
            logger.exception("Gate storage failure for account %s on %s", account_id, action)
            decision = Decision.deny(
                ErrorCode.SERVICE_UNAVAILABLE, "Policy storage unavailable"
            )
    gate_latency_seconds.observe(time.perf_counter() - started)
    gate_decisions_total.labels(
        action=kind, outcome="allow" if decision.allowed else "deny"
    ).inc()
    return decision

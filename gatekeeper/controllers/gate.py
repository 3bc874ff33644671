from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field

from gatekeeper.dependencies import client_ip, http_error, require_api_headers
from gatekeeper.models import ErrorCode
from gatekeeper.services import gateway
from gatekeeper.services.gateway import Decision, GateContext

router = APIRouter(prefix="/gate", tags=["gate"])

DENY_STATUS = {
    ErrorCode.AUTHENTICATION_FAILURE: 401,
    ErrorCode.SESSION_TERMINATED: 401,
    ErrorCode.SESSION_EXPIRED: 401,
    ErrorCode.ACCOUNT_BLOCKED: 403,
    ErrorCode.QUOTA_EXCEEDED: 429,
    ErrorCode.USAGE_BLOCKED: 429,
    ErrorCode.BURST_EXCEEDED: 429,
    ErrorCode.MAINTENANCE: 503,
    ErrorCode.SERVICE_UNAVAILABLE: 503,
    ErrorCode.BAD_REQUEST: 400,
}


class AuthGateRequest(BaseModel):
    action: Literal["login", "register"]
    fingerprint: str | None = Field(None, max_length=128)
    fingerprint_confidence: float | None = Field(None, ge=0, le=1)
    device_info: dict[str, Any] = Field(default_factory=dict)
    subscription_type: str | None = None


class ModuleGateRequest(BaseModel):
    item_count: int = Field(1, ge=1, le=1000)


class ModuleGateResponse(BaseModel):
    allowed: bool
    restricted: bool = False
    remaining: float | None = None
    limit: int | None = None
    total_usage: float | None = None
    percentage: int | None = None
    warning: str | None = None


def _raise_denied(decision: Decision) -> None:
    status = DENY_STATUS.get(decision.reason, 403)
    raise http_error(status, decision.reason, decision.message or "Denied", decision.details or None)


@router.post("/auth", response_model=Decision)
async def gate_auth(
    body: AuthGateRequest,
    request: Request,
    account_id: int = Depends(require_api_headers),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    user_agent: str = Header("", alias="User-Agent"),
):
    context = GateContext(
        session_token=x_session_token,
        ip_address=client_ip(request),
        user_agent=user_agent,
        fingerprint=body.fingerprint,
        fingerprint_confidence=body.fingerprint_confidence,
        device_info=body.device_info,
        subscription_type=body.subscription_type,
    )
    decision = await gateway.decide(account_id, body.action, context)
    if not decision.allowed:
        _raise_denied(decision)
    return decision


@router.post("/modules/{module_id}", response_model=ModuleGateResponse)
async def gate_module(
    module_id: str,
    request: Request,
    body: ModuleGateRequest | None = None,
    account_id: int = Depends(require_api_headers),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    x_request_id: str | None = Header(None, alias="X-Request-ID"),
    user_agent: str = Header("", alias="User-Agent"),
):
    context = GateContext(
        session_token=x_session_token,
        ip_address=client_ip(request),
        user_agent=user_agent,
        item_count=body.item_count if body else 1,
        request_id=x_request_id,
    )
    decision = await gateway.decide(account_id, f"{gateway.MODULE_PREFIX}{module_id}", context)
    if not decision.allowed:
        _raise_denied(decision)
    return ModuleGateResponse(allowed=True, **decision.details)

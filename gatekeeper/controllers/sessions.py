from __future__ import annotations

import asyncio
from datetime import datetime

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field

from gatekeeper import db as db_module
from gatekeeper.dependencies import client_ip, http_error, require_api_headers
from gatekeeper.models import AccountSession, ErrorCode
from gatekeeper.services import sessions as session_service
from gatekeeper.services.clock import ensure_utc
from gatekeeper.services.sessions import SessionStatus

router = APIRouter(prefix="/sessions", tags=["sessions"])

STATUS_ERRORS = {
    SessionStatus.TERMINATED: (ErrorCode.SESSION_TERMINATED, "Session ended by a newer login"),
    SessionStatus.EXPIRED: (ErrorCode.SESSION_EXPIRED, "Session expired after inactivity"),
    SessionStatus.NOT_FOUND: (ErrorCode.AUTHENTICATION_FAILURE, "Unknown session"),
}


class SessionCreateRequest(BaseModel):
    token: str | None = Field(None, min_length=16, max_length=128)
    fingerprint: str | None = Field(None, max_length=128)


class SessionOut(BaseModel):
    id: int
    account_id: int
    token: str | None = None
    ip_address: str
    user_agent: str
    active: bool
    login_at: datetime
    last_activity: datetime
    logout_at: datetime | None = None
    logout_reason: str | None = None


class SessionStatusResponse(BaseModel):
    status: SessionStatus
    logout_reason: str | None = None
    last_activity: datetime | None = None


class LogoutAllResponse(BaseModel):
    count: int


def session_out(record: AccountSession, *, with_token: bool = False) -> SessionOut:
    return SessionOut(
        id=record.id,
        account_id=record.account_id,
        token=record.token if with_token else None,
        ip_address=record.ip_address,
        user_agent=record.user_agent,
        active=record.active,
        login_at=ensure_utc(record.login_at),
        last_activity=ensure_utc(record.last_activity),
        logout_at=ensure_utc(record.logout_at),
        logout_reason=record.logout_reason,
    )


def _login(account_id: int, body: SessionCreateRequest, ip: str, user_agent: str) -> SessionOut:
    with db_module.SessionLocal() as db:
        record = session_service.login(
            db,
            account_id,
            body.token,
            ip_address=ip,
            user_agent=user_agent,
            fingerprint_hash=body.fingerprint,
        )
        return session_out(record, with_token=True)


def _status(account_id: int, token: str, bump: bool) -> SessionStatusResponse:
    with db_module.SessionLocal() as db:
        result = session_service.check(db, token)
        if result.session is not None and result.session.account_id != account_id:
            return SessionStatusResponse(status=SessionStatus.NOT_FOUND)
        if bump and result.status is SessionStatus.ACTIVE:
            session_service.heartbeat(db, token)
        record = result.session
        return SessionStatusResponse(
            status=result.status,
            logout_reason=record.logout_reason if record else None,
            last_activity=ensure_utc(record.last_activity) if record else None,
        )


def _logout_all(account_id: int) -> int:
    with db_module.SessionLocal() as db:
        return session_service.force_logout_all(db, account_id, actor_id=str(account_id))


@router.post("", response_model=SessionOut, status_code=201)
async def create_session(
    request: Request,
    body: SessionCreateRequest | None = None,
    account_id: int = Depends(require_api_headers),
    user_agent: str = Header("", alias="User-Agent"),
):
    """Open a session after the platform verified credentials."""
    return await asyncio.to_thread(
        _login, account_id, body or SessionCreateRequest(), client_ip(request), user_agent
    )


@router.post("/heartbeat", response_model=SessionStatusResponse)
async def heartbeat(
    account_id: int = Depends(require_api_headers),
    x_session_token: str = Header(..., alias="X-Session-Token"),
):
    result = await asyncio.to_thread(_status, account_id, x_session_token, True)
    if result.status is not SessionStatus.ACTIVE:
        code, message = STATUS_ERRORS[result.status]
        raise http_error(401, code, message)
    return result


@router.get("/status", response_model=SessionStatusResponse)
async def session_status(
    account_id: int = Depends(require_api_headers),
    x_session_token: str = Header(..., alias="X-Session-Token"),
):
    """Polled by clients to notice a displaced or expired session."""
    return await asyncio.to_thread(_status, account_id, x_session_token, False)


@router.post("/logout-all", response_model=LogoutAllResponse)
async def logout_all(account_id: int = Depends(require_api_headers)):
    count = await asyncio.to_thread(_logout_all, account_id)
    return LogoutAllResponse(count=count)

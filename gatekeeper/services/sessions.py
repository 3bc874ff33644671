from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gatekeeper.config import Settings
from gatekeeper.metrics import sessions_force_logout_total
from gatekeeper.models import AccountSession, DeviceFingerprint, LogoutReason
from gatekeeper.services import audit
from gatekeeper.services.clock import ensure_utc, utcnow
from gatekeeper.services.errors import NotFoundError

settings = Settings()
logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    TERMINATED = "TERMINATED"
    EXPIRED = "EXPIRED"
    NOT_FOUND = "NOT_FOUND"


@dataclass
class SessionCheck:
    status: SessionStatus
    session: AccountSession | None = None


def _idle_timeout() -> timedelta:
    return timedelta(minutes=settings.session_idle_timeout_min)


def _find(db: Session, token: str) -> AccountSession | None:
    if not token:
        return None
    return db.scalars(
        select(AccountSession)
        .where(AccountSession.token == token)
        .execution_options(populate_existing=True)
    ).one_or_none()


def login(
    db: Session,
    account_id: int,
    token: str | None = None,
    *,
    ip_address: str = "",
    user_agent: str = "",
    fingerprint_hash: str | None = None,
) -> AccountSession:
    """Start a new session, displacing any active one of the same account.

    The deactivate-then-insert pair runs in one transaction; the partial
    unique index on active sessions turns a concurrent login into an
    IntegrityError, which is retried.
    """
    device_id = None
    if fingerprint_hash:
        device_id = db.scalar(
            select(DeviceFingerprint.id).where(
                DeviceFingerprint.account_id == account_id,
                DeviceFingerprint.fingerprint_hash == fingerprint_hash,
            )
        )

    last_exc: IntegrityError | None = None
    for attempt in range(max(1, settings.session_login_retries)):
        now = utcnow()
        displaced = db.execute(
            update(AccountSession)
            .where(AccountSession.account_id == account_id, AccountSession.active.is_(True))
            .values(active=False, logout_at=now, logout_reason=LogoutReason.FORCE_LOGOUT.value)
            .execution_options(synchronize_session=False)
        ).rowcount
        record = AccountSession(
            account_id=account_id,
            token=token or secrets.token_urlsafe(32),
            ip_address=ip_address or "",
            user_agent=user_agent or "",
            device_fingerprint_id=device_id,
            login_at=now,
            last_activity=now,
            active=True,
        )
        db.add(record)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            last_exc = exc
            logger.warning("Concurrent login for account %s, retry %s", account_id, attempt + 1)
            continue
        if displaced:
            sessions_force_logout_total.labels(reason=LogoutReason.FORCE_LOGOUT.value).inc(displaced)
            logger.info("Account %s: %s session(s) displaced by new login", account_id, displaced)
        return record
    raise RuntimeError(f"Could not open session for account {account_id}") from last_exc


def check(db: Session, token: str, now: datetime | None = None) -> SessionCheck:
    """Resolve a token to its status, expiring it when idle too long."""
    record = _find(db, token)
    if record is None:
        return SessionCheck(SessionStatus.NOT_FOUND)
    if not record.active:
        if record.logout_reason == LogoutReason.SESSION_EXPIRED.value:
            return SessionCheck(SessionStatus.EXPIRED, record)
        return SessionCheck(SessionStatus.TERMINATED, record)
    now = now or utcnow()
    if now - ensure_utc(record.last_activity) > _idle_timeout():
        record.active = False
        record.logout_at = now
        record.logout_reason = LogoutReason.SESSION_EXPIRED.value
        db.commit()
        return SessionCheck(SessionStatus.EXPIRED, record)
    return SessionCheck(SessionStatus.ACTIVE, record)


def validate(db: Session, token: str, now: datetime | None = None) -> SessionStatus:
    return check(db, token, now).status


def heartbeat(db: Session, token: str, now: datetime | None = None) -> SessionStatus:
    result = check(db, token, now)
    if result.status is SessionStatus.ACTIVE:
        result.session.last_activity = now or utcnow()
        db.commit()
    return result.status


def force_logout_all(db: Session, account_id: int, *, actor_id: str) -> int:
    count = db.execute(
        update(AccountSession)
        .where(AccountSession.account_id == account_id, AccountSession.active.is_(True))
        .values(
            active=False,
            logout_at=utcnow(),
            logout_reason=LogoutReason.USER_REQUESTED.value,
        )
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()
    if count:
        sessions_force_logout_total.labels(reason=LogoutReason.USER_REQUESTED.value).inc(count)
    audit.emit(
        "SESSIONS_LOGGED_OUT",
        actor_id,
        f"Logged out {count} session(s) of account {account_id}",
        account_id=account_id,
        count=count,
    )
    return count


def terminate_session(
    db: Session,
    session_id: int,
    *,
    actor_id: str,
    reason: str = "",
) -> AccountSession:
    record = db.get(AccountSession, session_id)
    if record is None:
        raise NotFoundError(f"Session {session_id} not found")
    if record.active:
        record.active = False
        record.logout_at = utcnow()
        record.logout_reason = LogoutReason.ADMIN_TERMINATED.value
        db.commit()
        sessions_force_logout_total.labels(reason=LogoutReason.ADMIN_TERMINATED.value).inc()
    audit.emit(
        "SESSION_TERMINATED",
        actor_id,
        f"Session {session_id} of account {record.account_id} terminated",
        session_id=session_id,
        account_id=record.account_id,
        reason=reason,
    )
    return record


def get_active_session(db: Session, account_id: int) -> AccountSession | None:
    return db.scalars(
        select(AccountSession).where(
            AccountSession.account_id == account_id, AccountSession.active.is_(True)
        )
        .execution_options(populate_existing=True)
    ).first()


def count_active_sessions(db: Session, account_id: int, now: datetime | None = None) -> int:
    """Active sessions that have not gone idle past the timeout."""
    cutoff = (now or utcnow()) - _idle_timeout()
    return db.scalar(
        select(func.count(AccountSession.id)).where(
            AccountSession.account_id == account_id,
            AccountSession.active.is_(True),
            AccountSession.last_activity >= cutoff,
        )
    ) or 0


def list_sessions(
    db: Session,
    *,
    account_id: int | None = None,
    active: bool | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[AccountSession]:
    stmt = select(AccountSession)
    if account_id is not None:
        stmt = stmt.where(AccountSession.account_id == account_id)
    if active is not None:
        stmt = stmt.where(AccountSession.active.is_(active))
    stmt = stmt.order_by(AccountSession.login_at.desc(), AccountSession.id.desc())
    return list(
        db.scalars(stmt.limit(limit).offset(offset).execution_options(populate_existing=True))
    )


def prune_sessions(db: Session, cutoff: datetime) -> int:
    """Delete inactive sessions that ended before ``cutoff``; caller commits."""
    result = db.execute(
        delete(AccountSession)
        .where(AccountSession.active.is_(False), AccountSession.logout_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0

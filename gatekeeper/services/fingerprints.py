from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gatekeeper.config import Settings
from gatekeeper.models import SUSPICION_KINDS, DeviceFingerprint
from gatekeeper.services import audit
from gatekeeper.services.clock import utcnow
from gatekeeper.services.errors import NotFoundError

settings = Settings()
logger = logging.getLogger(__name__)


def record(
    db: Session,
    account_id: int,
    fingerprint_hash: str,
    ip_address: str = "",
    device_info: dict[str, Any] | None = None,
    confidence: float | None = None,
) -> DeviceFingerprint:
    """Record a device sighting, creating the device on first use."""
    if not fingerprint_hash:
        raise ValueError("fingerprint_hash is required")
    now = utcnow()
    values: dict[str, Any] = {
        "last_seen": now,
        "ip_address": ip_address or "",
        "session_count": DeviceFingerprint.session_count + 1,
        "is_active": True,
    }
    if device_info:
        values["device_info"] = device_info
    if confidence is not None:
        values["confidence"] = confidence

    def _bump() -> int:
        result = db.execute(
            update(DeviceFingerprint)
            .where(
                DeviceFingerprint.account_id == account_id,
                DeviceFingerprint.fingerprint_hash == fingerprint_hash,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    if not _bump():
        db.add(
            DeviceFingerprint(
                account_id=account_id,
                fingerprint_hash=fingerprint_hash,
                device_info=device_info or {},
                ip_address=ip_address or "",
                confidence=confidence,
                first_seen=now,
                last_seen=now,
                session_count=1,
            )
        )
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            _bump()
            db.commit()
        else:
            logger.info("New device for account %s", account_id)
    else:
        db.commit()

    return db.scalars(
        select(DeviceFingerprint).where(
            DeviceFingerprint.account_id == account_id,
            DeviceFingerprint.fingerprint_hash == fingerprint_hash,
        )
        .execution_options(populate_existing=True)
    ).one()


def increment_suspicion(
    db: Session, device_id: int, kind: str, *, actor_id: str
) -> DeviceFingerprint:
    if kind not in SUSPICION_KINDS:
        raise ValueError(f"Unknown suspicion kind: {kind}")
    column = getattr(DeviceFingerprint, kind)
    result = db.execute(
        update(DeviceFingerprint)
        .where(DeviceFingerprint.id == device_id)
        .values({column: column + 1})
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        db.rollback()
        raise NotFoundError(f"Device {device_id} not found")
    db.commit()
    device = db.get(DeviceFingerprint, device_id)
    db.refresh(device)
    audit.emit(
        "DEVICE_SUSPICION_RECORDED",
        actor_id,
        f"Suspicion signal {kind} on device {device_id} of account {device.account_id}",
        device_id=device_id,
        account_id=device.account_id,
        kind=kind,
        count=getattr(device, kind),
    )
    return device


def get_device(db: Session, device_id: int) -> DeviceFingerprint:
    device = db.get(DeviceFingerprint, device_id)
    if device is None:
        raise NotFoundError(f"Device {device_id} not found")
    return device


def list_for_account(db: Session, account_id: int) -> list[DeviceFingerprint]:
    return list(
        db.scalars(
            select(DeviceFingerprint)
            .where(DeviceFingerprint.account_id == account_id)
            .order_by(DeviceFingerprint.last_seen.desc(), DeviceFingerprint.id.desc())
        )
    )


def verify(db: Session, device_id: int, verified: bool, *, actor_id: str) -> DeviceFingerprint:
    device = get_device(db, device_id)
    device.is_verified = verified
    db.commit()
    audit.emit(
        "DEVICE_VERIFIED" if verified else "DEVICE_UNVERIFIED",
        actor_id,
        f"Device {device_id} of account {device.account_id} verified={verified}",
        device_id=device_id,
        account_id=device.account_id,
    )
    return device


def count_devices(db: Session, account_id: int, min_confidence: float | None = None) -> int:
    """Active devices of the account; low-confidence sightings are not counted."""
    threshold = settings.fingerprint_min_confidence if min_confidence is None else min_confidence
    stmt = select(func.count(DeviceFingerprint.id)).where(
        DeviceFingerprint.account_id == account_id,
        DeviceFingerprint.is_active.is_(True),
    )
    if threshold > 0:
        # unknown confidence counts as a device
        stmt = stmt.where(
            (DeviceFingerprint.confidence.is_(None))
            | (DeviceFingerprint.confidence >= threshold)
        )
    return db.scalar(stmt) or 0


def suspicion_total(db: Session, account_id: int) -> int:
    total = db.scalar(
        select(
            func.coalesce(
                func.sum(
                    DeviceFingerprint.rapid_location_changes
                    + DeviceFingerprint.unusual_usage_hours
                    + DeviceFingerprint.simultaneous_activity
                ),
                0,
            )
        ).where(DeviceFingerprint.account_id == account_id)
    )
    return int(total or 0)


def suspicion_breakdown(db: Session, account_id: int) -> dict[str, int]:
    row = db.execute(
        select(
            *(func.coalesce(func.sum(getattr(DeviceFingerprint, kind)), 0) for kind in SUSPICION_KINDS)
        ).where(DeviceFingerprint.account_id == account_id)
    ).one()
    return {kind: int(value or 0) for kind, value in zip(SUSPICION_KINDS, row)}


def ip_addresses(db: Session, account_id: int) -> list[str]:
    rows = db.scalars(
        select(DeviceFingerprint.ip_address)
        .where(DeviceFingerprint.account_id == account_id, DeviceFingerprint.ip_address != "")
        .distinct()
    )
    return sorted(rows)


def prune_devices(db: Session, cutoff: datetime) -> int:
    """Delete unverified devices not seen since ``cutoff``; caller commits."""
    result = db.execute(
        delete(DeviceFingerprint)
        .where(DeviceFingerprint.last_seen < cutoff, DeviceFingerprint.is_verified.is_(False))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0

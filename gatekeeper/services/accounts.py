from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gatekeeper.models import Account
from gatekeeper.services import audit
from gatekeeper.services.clock import utcnow
from gatekeeper.services.errors import NotFoundError

logger = logging.getLogger(__name__)


def get_account(db: Session, account_id: int) -> Account | None:
    return db.get(Account, account_id)


def require_account(db: Session, account_id: int) -> Account:
    account = db.get(Account, account_id)
    if account is None:
        raise NotFoundError(f"Account {account_id} not found")
    return account


def _insert(
    db: Session, account_id: int, subscription_type: str | None, actor_id: str
) -> Account | None:
    """Insert the account mirror; None when it was registered concurrently."""
    account = Account(id=account_id, subscription_type=subscription_type or "free")
    db.add(account)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return None
    logger.info("Account %s registered", account_id)
    audit.emit(
        "ACCOUNT_REGISTERED",
        actor_id,
        f"Account {account_id} registered",
        account_id=account_id,
        subscription_type=account.subscription_type,
    )
    return account


def register_account(
    db: Session,
    account_id: int,
    *,
    subscription_type: str | None = None,
    actor_id: str = "system",
) -> Account:
    """Create the account mirror; an existing account keeps its tier.

    Client registration only seeds the tier. Tier changes come through
    ``upsert_account`` from the platform sync.
    """
    account = db.get(Account, account_id)
    if account is None:
        created = _insert(db, account_id, subscription_type, actor_id)
        account = created or db.get(Account, account_id)
    return account


def upsert_account(
    db: Session,
    account_id: int,
    *,
    subscription_type: str | None = None,
    actor_id: str = "system",
) -> Account:
    """Create the account mirror or update its tier."""
    account = db.get(Account, account_id)
    if account is None:
        created = _insert(db, account_id, subscription_type, actor_id)
        if created is not None:
            return created
        account = db.get(Account, account_id)
    if subscription_type and account.subscription_type != subscription_type:
        previous = account.subscription_type
        account.subscription_type = subscription_type
        account.updated_at = utcnow()
        db.commit()
        audit.emit(
            "ACCOUNT_TIER_CHANGED",
            actor_id,
            f"Account {account_id} tier {previous} -> {subscription_type}",
            account_id=account_id,
        )
    return account


def set_active(db: Session, account_id: int, active: bool) -> None:
    """Flip ``is_active``; the caller owns the transaction."""
    account = db.get(Account, account_id)
    if account is None:
        return
    if account.is_active != active:
        account.is_active = active
        account.updated_at = utcnow()

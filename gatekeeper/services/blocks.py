"""Block and appeal lifecycle.

States: ACTIVE, EXPIRED, APPEALED, UNBLOCKED (terminal). A block is "in
force" while ACTIVE or APPEALED; the database allows one such block per
account. Every transition appends a ``BlockAction`` and emits an audit
record; rejected transitions are audited too and then raised as
``BlockTransitionError`` with nothing written.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gatekeeper.config import Settings
from gatekeeper.metrics import appeals_reviewed_total, blocks_created_total
from gatekeeper.models import (
    IN_FORCE_STATUSES,
    AccountBlock,
    AppealStatus,
    BlockAction,
    BlockActionType,
    BlockAppeal,
    BlockReason,
    BlockStatus,
    BlockType,
)
from gatekeeper.services import accounts, audit
from gatekeeper.services.clock import ensure_utc, utcnow
from gatekeeper.services.errors import BlockTransitionError, NotFoundError
from gatekeeper.services.sharing import SharingScore, block_type_for

settings = Settings()
logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


def _add_action(
    db: Session, block: AccountBlock, action: BlockActionType, actor_id: str, notes: str = ""
) -> BlockAction:
    entry = BlockAction(
        block_id=block.id,
        actor_id=str(actor_id),
        action=action.value,
        notes=notes,
        created_at=utcnow(),
    )
    db.add(entry)
    block.actions.append(entry)
    return entry


def _score_notes(score: SharingScore) -> str:
    return (
        f"Sharing score {score.score} (hardware {score.hardware_score}, "
        f"behavior {score.behavior_score}, session {score.session_score})"
    )


def _reject(block: AccountBlock, attempted: str, actor_id: str, detail: str) -> None:
    audit.emit(
        "BLOCK_TRANSITION_REJECTED",
        actor_id,
        f"{attempted} rejected for block {block.id}: {detail}",
        block_id=block.id,
        account_id=block.account_id,
        status=block.status,
        attempted=attempted,
    )
    raise BlockTransitionError(f"Cannot {attempted.lower().replace('_', ' ')}: {detail}")


def _is_due(block: AccountBlock, now: datetime) -> bool:
    return (
        block.status == BlockStatus.ACTIVE.value
        and block.block_type == BlockType.TEMPORARY.value
        and block.blocked_until is not None
        and now > ensure_utc(block.blocked_until)
    )


def _expire(db: Session, block: AccountBlock, now: datetime) -> None:
    block.status = BlockStatus.EXPIRED.value
    block.updated_at = now
    _add_action(db, block, BlockActionType.EXPIRED, SYSTEM_ACTOR, "Temporary block elapsed")
    accounts.set_active(db, block.account_id, True)


def remaining_seconds(block: AccountBlock, now: datetime | None = None) -> int | None:
    """Seconds until a temporary block lifts; None for open-ended blocks."""
    if block.blocked_until is None:
        return None
    delta = ensure_utc(block.blocked_until) - (now or utcnow())
    return max(0, int(delta.total_seconds()))


def get_block(db: Session, block_id: int) -> AccountBlock:
    block = db.get(AccountBlock, block_id)
    if block is None:
        raise NotFoundError(f"Block {block_id} not found")
    return block


def get_current_block(
    db: Session, account_id: int, now: datetime | None = None
) -> AccountBlock | None:
    """Block in force for the account, expiring an elapsed temporary block first."""
    now = now or utcnow()
    block = db.scalars(
        select(AccountBlock).where(
            AccountBlock.account_id == account_id,
            AccountBlock.status.in_(IN_FORCE_STATUSES),
        )
    ).first()
    if block is None:
        return None
    if _is_due(block, now):
        _expire(db, block, now)
        db.commit()
        audit.emit(
            "BLOCK_EXPIRED",
            SYSTEM_ACTOR,
            f"Block {block.id} of account {account_id} expired",
            block_id=block.id,
            account_id=account_id,
        )
        return None
    return block


def expire_due_blocks(db: Session, now: datetime | None = None) -> int:
    now = now or utcnow()
    due = list(
        db.scalars(
            select(AccountBlock).where(
                AccountBlock.status == BlockStatus.ACTIVE.value,
                AccountBlock.block_type == BlockType.TEMPORARY.value,
                AccountBlock.blocked_until.is_not(None),
                AccountBlock.blocked_until < now,
            )
        )
    )
    for block in due:
        _expire(db, block, now)
    db.commit()
    if due:
        logger.info("Expired %s temporary block(s)", len(due))
        audit.emit(
            "BLOCKS_EXPIRED",
            SYSTEM_ACTOR,
            f"Expired {len(due)} temporary block(s)",
            block_ids=[b.id for b in due],
        )
    return len(due)


def _create(
    db: Session,
    account_id: int,
    *,
    block_type: BlockType,
    reason: BlockReason,
    actor_id: str,
    notes: str,
    score: SharingScore | None = None,
    hours: int | None = None,
) -> AccountBlock | None:
    now = utcnow()
    blocked_until = None
    if block_type is not BlockType.PERMANENT:
        blocked_until = now + timedelta(hours=hours or settings.temporary_block_hours)
    block = AccountBlock(
        account_id=account_id,
        block_type=block_type.value,
        block_reason=reason.value,
        sharing_score=score.score if score else 0,
        hardware_score=score.hardware_score if score else 0,
        behavior_score=score.behavior_score if score else 0,
        session_score=score.session_score if score else 0,
        blocked_at=now,
        blocked_until=blocked_until,
        status=BlockStatus.ACTIVE.value,
        evidence=dict(score.evidence) if score else {},
        updated_at=now,
    )
    db.add(block)
    try:
        db.flush()
        _add_action(db, block, BlockActionType.BLOCK_CREATED, actor_id, notes)
        accounts.set_active(db, account_id, False)
        db.commit()
    except IntegrityError:
        # another worker placed a block first
        db.rollback()
        return None
    blocks_created_total.labels(block_type=block_type.value).inc()
    logger.warning(
        "Account %s blocked (%s, %s)", account_id, block_type.value, reason.value
    )
    audit.emit(
        "BLOCK_CREATED",
        actor_id,
        f"Account {account_id} blocked: {block_type.value} {reason.value}",
        block_id=block.id,
        account_id=account_id,
        sharing_score=block.sharing_score,
    )
    return block


def apply_score(
    db: Session, account_id: int, score: SharingScore, *, actor_id: str = SYSTEM_ACTOR
) -> AccountBlock | None:
    """Act on an evaluation: create a block, refresh evidence, or log the score."""
    current = get_current_block(db, account_id)
    block_type = block_type_for(score.score)

    if current is None:
        if block_type is None:
            return None
        created = _create(
            db,
            account_id,
            block_type=BlockType(block_type),
            reason=BlockReason.ACCOUNT_SHARING_DETECTED,
            actor_id=actor_id,
            notes=_score_notes(score),
            score=score,
        )
        return created or get_current_block(db, account_id)

    if block_type is None:
        _add_action(db, current, BlockActionType.SCORE_EVALUATED, actor_id, _score_notes(score))
        db.commit()
        return current

    current.evidence = dict(score.evidence)
    current.sharing_score = max(current.sharing_score or 0, score.score)
    current.hardware_score = score.hardware_score
    current.behavior_score = score.behavior_score
    current.session_score = score.session_score
    current.updated_at = utcnow()
    notes = _score_notes(score)
    if block_type == BlockType.PERMANENT.value and current.block_type == BlockType.TEMPORARY.value:
        current.block_type = BlockType.PERMANENT.value
        current.blocked_until = None
        notes += ", escalated to PERMANENT"
    _add_action(db, current, BlockActionType.EVIDENCE_UPDATED, actor_id, notes)
    db.commit()
    audit.emit(
        "BLOCK_EVIDENCE_UPDATED",
        actor_id,
        f"Block {current.id} evidence updated ({notes})",
        block_id=current.id,
        account_id=account_id,
    )
    return current


def create_manual_block(
    db: Session,
    account_id: int,
    block_type: BlockType,
    reason: str,
    hours: int | None = None,
    *,
    actor_id: str,
) -> AccountBlock:
    existing = get_current_block(db, account_id)
    if existing is not None:
        _reject(existing, "BLOCK_CREATE", actor_id, "account already has a block in force")
    block = _create(
        db,
        account_id,
        block_type=block_type,
        reason=BlockReason.MANUAL_ADMIN_ACTION,
        actor_id=actor_id,
        notes=reason,
        hours=hours,
    )
    if block is None:
        audit.emit(
            "BLOCK_TRANSITION_REJECTED",
            actor_id,
            f"BLOCK_CREATE rejected for account {account_id}: concurrent block",
            account_id=account_id,
        )
        raise BlockTransitionError("Account already has a block in force")
    return block


def file_appeal(
    db: Session,
    block_id: int,
    reason: str,
    *,
    actor_id: str,
    evidence: str | None = None,
) -> AccountBlock:
    block = get_block(db, block_id)
    if _is_due(block, utcnow()):
        _expire(db, block, utcnow())
        db.commit()
    if block.appeal is not None:
        _reject(block, "APPEAL_FILE", actor_id, "an appeal was already filed")
    if block.status not in (BlockStatus.ACTIVE.value, BlockStatus.EXPIRED.value):
        _reject(block, "APPEAL_FILE", actor_id, f"block is {block.status}")

    now = utcnow()
    previous = block.status
    block.appeal = BlockAppeal(
        block_id=block.id,
        appealed_at=now,
        reason=reason,
        evidence=evidence,
        status=AppealStatus.PENDING.value,
    )
    block.status = BlockStatus.APPEALED.value
    block.updated_at = now
    _add_action(db, block, BlockActionType.APPEAL_FILED, actor_id, reason)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        db.refresh(block)
        _reject(block, "APPEAL_FILE", actor_id, "another block is in force for the account")
    audit.emit(
        "APPEAL_FILED",
        actor_id,
        f"Appeal filed for block {block.id} ({previous} -> APPEALED)",
        block_id=block.id,
        account_id=block.account_id,
    )
    return block


def review_appeal(
    db: Session,
    block_id: int,
    approved: bool,
    notes: str = "",
    *,
    actor_id: str,
) -> AccountBlock:
    block = get_block(db, block_id)
    if block.status != BlockStatus.APPEALED.value:
        _reject(block, "APPEAL_REVIEW", actor_id, f"block is {block.status}")
    if block.appeal is None or block.appeal.status != AppealStatus.PENDING.value:
        _reject(block, "APPEAL_REVIEW", actor_id, "no pending appeal")

    now = utcnow()
    appeal = block.appeal
    appeal.status = AppealStatus.APPROVED.value if approved else AppealStatus.REJECTED.value
    appeal.reviewed_by = str(actor_id)
    appeal.reviewed_at = now
    appeal.review_notes = notes
    block.updated_at = now
    if approved:
        block.status = BlockStatus.UNBLOCKED.value
        accounts.set_active(db, block.account_id, True)
    else:
        block.status = BlockStatus.ACTIVE.value
        accounts.set_active(db, block.account_id, False)
    _add_action(
        db,
        block,
        BlockActionType.APPEAL_REVIEWED,
        actor_id,
        f"{appeal.status}: {notes}" if notes else appeal.status,
    )
    db.commit()
    appeals_reviewed_total.labels(outcome=appeal.status).inc()
    audit.emit(
        "APPEAL_REVIEWED",
        actor_id,
        f"Appeal for block {block.id} {appeal.status.lower()}",
        block_id=block.id,
        account_id=block.account_id,
        approved=approved,
    )
    return block


def admin_unblock(db: Session, block_id: int, reason: str, *, actor_id: str) -> AccountBlock:
    block = get_block(db, block_id)
    if block.status not in (BlockStatus.ACTIVE.value, BlockStatus.EXPIRED.value):
        _reject(block, "UNBLOCK", actor_id, f"block is {block.status}")
    previous = block.status
    block.status = BlockStatus.UNBLOCKED.value
    block.updated_at = utcnow()
    accounts.set_active(db, block.account_id, True)
    _add_action(db, block, BlockActionType.UNBLOCKED, actor_id, reason)
    db.commit()
    audit.emit(
        "BLOCK_UNBLOCKED",
        actor_id,
        f"Block {block.id} unblocked ({previous} -> UNBLOCKED): {reason}",
        block_id=block.id,
        account_id=block.account_id,
    )
    return block


def list_blocks(
    db: Session,
    *,
    status: str | None = None,
    account_id: int | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[AccountBlock], int]:
    expire_due_blocks(db)
    stmt = select(AccountBlock)
    count_stmt = select(func.count(AccountBlock.id))
    if status:
        stmt = stmt.where(AccountBlock.status == status)
        count_stmt = count_stmt.where(AccountBlock.status == status)
    if account_id is not None:
        stmt = stmt.where(AccountBlock.account_id == account_id)
        count_stmt = count_stmt.where(AccountBlock.account_id == account_id)
    total = db.scalar(count_stmt) or 0
    page = max(1, page)
    items = list(
        db.scalars(
            stmt.order_by(AccountBlock.blocked_at.desc(), AccountBlock.id.desc())
            .limit(page_size)
            .offset((page - 1) * page_size)
        )
    )
    return items, total


def block_stats(db: Session, now: datetime | None = None) -> dict[str, Any]:
    now = now or utcnow()
    by_status = dict(
        db.execute(
            select(AccountBlock.status, func.count(AccountBlock.id)).group_by(AccountBlock.status)
        ).all()
    )
    by_type = dict(
        db.execute(
            select(AccountBlock.block_type, func.count(AccountBlock.id))
            .where(AccountBlock.status.in_(IN_FORCE_STATUSES))
            .group_by(AccountBlock.block_type)
        ).all()
    )
    pending = db.scalar(
        select(func.count(BlockAppeal.id)).where(BlockAppeal.status == AppealStatus.PENDING.value)
    ) or 0
    last_day = db.scalar(
        select(func.count(AccountBlock.id)).where(AccountBlock.blocked_at >= now - timedelta(days=1))
    ) or 0
    last_week = db.scalar(
        select(func.count(AccountBlock.id)).where(AccountBlock.blocked_at >= now - timedelta(days=7))
    ) or 0
    return {
        "by_status": {s.value: by_status.get(s.value, 0) for s in BlockStatus},
        "in_force_by_type": {t.value: by_type.get(t.value, 0) for t in BlockType},
        "pending_appeals": pending,
        "created_last_24h": last_day,
        "created_last_7d": last_week,
    }

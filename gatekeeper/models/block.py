from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship

from .base import Base


class BlockType(str, Enum):
    TEMPORARY = "TEMPORARY"
    PERMANENT = "PERMANENT"
    RESTRICTED = "RESTRICTED"


class BlockStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    APPEALED = "APPEALED"
    UNBLOCKED = "UNBLOCKED"


class BlockReason(str, Enum):
    ACCOUNT_SHARING_DETECTED = "ACCOUNT_SHARING_DETECTED"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    MULTIPLE_DEVICE_VIOLATION = "MULTIPLE_DEVICE_VIOLATION"
    MANUAL_ADMIN_ACTION = "MANUAL_ADMIN_ACTION"


class AppealStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class BlockActionType(str, Enum):
    BLOCK_CREATED = "BLOCK_CREATED"
    EVIDENCE_UPDATED = "EVIDENCE_UPDATED"
    SCORE_EVALUATED = "SCORE_EVALUATED"
    EXPIRED = "EXPIRED"
    APPEAL_FILED = "APPEAL_FILED"
    APPEAL_REVIEWED = "APPEAL_REVIEWED"
    UNBLOCKED = "UNBLOCKED"


# statuses in which the block still denies access
IN_FORCE_STATUSES = (BlockStatus.ACTIVE.value, BlockStatus.APPEALED.value)


class AccountBlock(Base):
    """Account block with its evidence snapshot; never hard-deleted."""

    __tablename__ = "account_blocks"
    __table_args__ = (
        Index(
            "uq_account_blocks_one_in_force",
            "account_id",
            unique=True,
            sqlite_where=text("status IN ('ACTIVE', 'APPEALED')"),
            postgresql_where=text("status IN ('ACTIVE', 'APPEALED')"),
        ),
        Index("ix_account_blocks_status_until", "status", "blocked_until"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(BigInteger, nullable=False, index=True)
    block_type = Column(String(16), nullable=False, default=BlockType.TEMPORARY.value)
    block_reason = Column(String(64), nullable=False)
    sharing_score = Column(Integer, nullable=False, default=0)
    hardware_score = Column(Integer, nullable=False, default=0)
    behavior_score = Column(Integer, nullable=False, default=0)
    session_score = Column(Integer, nullable=False, default=0)
    blocked_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    blocked_until = Column(DateTime(timezone=True))
    status = Column(String(16), nullable=False, default=BlockStatus.ACTIVE.value)
    evidence = Column(JSON, nullable=False, default=dict)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    appeal = relationship(
        "BlockAppeal", uselist=False, back_populates="block", lazy="selectin"
    )
    actions = relationship(
        "BlockAction",
        back_populates="block",
        order_by="BlockAction.id",
        lazy="selectin",
    )

    @property
    def score_breakdown(self) -> dict[str, int]:
        return {
            "hardware_score": self.hardware_score,
            "behavior_score": self.behavior_score,
            "session_score": self.session_score,
        }


class BlockAppeal(Base):
    """Appeal filed against a block; at most one per block."""

    __tablename__ = "block_appeals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    block_id = Column(
        Integer, ForeignKey("account_blocks.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    appealed_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    reason = Column(Text, nullable=False)
    evidence = Column(Text)
    status = Column(String(16), nullable=False, default=AppealStatus.PENDING.value)
    reviewed_by = Column(String(128))
    reviewed_at = Column(DateTime(timezone=True))
    review_notes = Column(Text)

    block = relationship("AccountBlock", back_populates="appeal")


class BlockAction(Base):
    """Append-only trail of everything that happened to a block."""

    __tablename__ = "block_actions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    block_id = Column(
        Integer, ForeignKey("account_blocks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    actor_id = Column(String(128), nullable=False)
    action = Column(String(32), nullable=False)
    notes = Column(Text)
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    block = relationship("AccountBlock", back_populates="actions")


__all__ = [
    "AccountBlock",
    "AppealStatus",
    "BlockAction",
    "BlockActionType",
    "BlockAppeal",
    "BlockReason",
    "BlockStatus",
    "BlockType",
    "IN_FORCE_STATUSES",
]

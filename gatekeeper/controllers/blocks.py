from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from gatekeeper import db as db_module
from gatekeeper.dependencies import require_api_headers, service_error
from gatekeeper.models import AccountBlock
from gatekeeper.services import blocks as block_service
from gatekeeper.services.clock import ensure_utc
from gatekeeper.services.errors import GatekeeperError, NotFoundError

router = APIRouter(prefix="/blocks", tags=["blocks"])


class AppealOut(BaseModel):
    appealed_at: datetime
    reason: str
    evidence: str | None = None
    status: str
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    review_notes: str | None = None


class BlockActionOut(BaseModel):
    actor_id: str
    action: str
    notes: str | None = None
    created_at: datetime


class BlockOut(BaseModel):
    id: int
    account_id: int
    block_type: str
    block_reason: str
    status: str
    sharing_score: int
    score_breakdown: dict[str, int]
    blocked_at: datetime
    blocked_until: datetime | None = None
    remaining_seconds: int | None = None
    evidence: dict[str, Any]
    appeal: AppealOut | None = None
    actions: list[BlockActionOut] = Field(default_factory=list)


class CurrentBlockResponse(BaseModel):
    blocked: bool
    block: BlockOut | None = None


class AppealRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)
    evidence: str | None = Field(None, max_length=4000)


def block_out(block: AccountBlock) -> BlockOut:
    appeal = None
    if block.appeal is not None:
        a = block.appeal
        appeal = AppealOut(
            appealed_at=ensure_utc(a.appealed_at),
            reason=a.reason,
            evidence=a.evidence,
            status=a.status,
            reviewed_by=a.reviewed_by,
            reviewed_at=ensure_utc(a.reviewed_at),
            review_notes=a.review_notes,
        )
    return BlockOut(
        id=block.id,
        account_id=block.account_id,
        block_type=block.block_type,
        block_reason=block.block_reason,
        status=block.status,
        sharing_score=block.sharing_score,
        score_breakdown=block.score_breakdown,
        blocked_at=ensure_utc(block.blocked_at),
        blocked_until=ensure_utc(block.blocked_until),
        remaining_seconds=block_service.remaining_seconds(block),
        evidence=block.evidence or {},
        appeal=appeal,
        actions=[
            BlockActionOut(
                actor_id=act.actor_id,
                action=act.action,
                notes=act.notes,
                created_at=ensure_utc(act.created_at),
            )
            for act in block.actions
        ],
    )


def _current(account_id: int) -> CurrentBlockResponse:
    with db_module.SessionLocal() as db:
        block = block_service.get_current_block(db, account_id)
        if block is None:
            return CurrentBlockResponse(blocked=False)
        return CurrentBlockResponse(blocked=True, block=block_out(block))


def _appeal(account_id: int, block_id: int, body: AppealRequest) -> BlockOut:
    with db_module.SessionLocal() as db:
        block = block_service.get_block(db, block_id)
        if block.account_id != account_id:
            raise NotFoundError(f"Block {block_id} not found")
        block = block_service.file_appeal(
            db, block_id, body.reason, actor_id=str(account_id), evidence=body.evidence
        )
        return block_out(block)


@router.get("/current", response_model=CurrentBlockResponse)
async def current_block(account_id: int = Depends(require_api_headers)):
    return await asyncio.to_thread(_current, account_id)


@router.post("/{block_id}/appeal", response_model=BlockOut)
async def file_appeal(
    block_id: int,
    body: AppealRequest,
    account_id: int = Depends(require_api_headers),
):
    try:
        return await asyncio.to_thread(_appeal, account_id, block_id, body)
    except GatekeeperError as exc:
        raise service_error(exc) from exc

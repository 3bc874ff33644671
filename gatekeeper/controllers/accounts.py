from __future__ import annotations

import asyncio
from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from gatekeeper import db as db_module
from gatekeeper.dependencies import require_api_key
from gatekeeper.models import Account
from gatekeeper.services import accounts as account_service
from gatekeeper.services.clock import ensure_utc

router = APIRouter(prefix="/accounts", tags=["accounts"], dependencies=[Depends(require_api_key)])


class AccountSyncRequest(BaseModel):
    subscription_type: str = Field(..., min_length=1, max_length=32)


class AccountOut(BaseModel):
    id: int
    subscription_type: str
    is_active: bool
    created_at: datetime
    updated_at: datetime


def account_out(account: Account) -> AccountOut:
    return AccountOut(
        id=account.id,
        subscription_type=account.subscription_type,
        is_active=account.is_active,
        created_at=ensure_utc(account.created_at),
        updated_at=ensure_utc(account.updated_at),
    )


def _sync(account_id: int, body: AccountSyncRequest) -> AccountOut:
    with db_module.SessionLocal() as db:
        account = account_service.upsert_account(
            db, account_id, subscription_type=body.subscription_type, actor_id="platform"
        )
        return account_out(account)


@router.put("/{account_id}", response_model=AccountOut)
async def sync_account(account_id: int, body: AccountSyncRequest):
    """Mirror the platform's subscription tier for quota limits."""
    return await asyncio.to_thread(_sync, account_id, body)

from .base import Base
from .error_code import ErrorCode
from .account import Account
from .device import DeviceFingerprint, SUSPICION_KINDS
from .session import AccountSession, LogoutReason
from .block import (
    AccountBlock,
    AppealStatus,
    BlockAction,
    BlockActionType,
    BlockAppeal,
    BlockReason,
    BlockStatus,
    BlockType,
    IN_FORCE_STATUSES,
)
from .quota import QuotaModuleUsage, QuotaRecord, QuotaRequest, QuotaWarning
from .rate_limit_config import RateLimitConfig
from .reset_run import ResetRun

__all__ = [
    "Base",
    "ErrorCode",
    "Account",
    "AccountSession",
    "LogoutReason",
    "DeviceFingerprint",
    "SUSPICION_KINDS",
    "AccountBlock",
    "AppealStatus",
    "BlockAction",
    "BlockActionType",
    "BlockAppeal",
    "BlockReason",
    "BlockStatus",
    "BlockType",
    "IN_FORCE_STATUSES",
    "QuotaModuleUsage",
    "QuotaRecord",
    "QuotaRequest",
    "QuotaWarning",
    "RateLimitConfig",
    "ResetRun",
]

from enum import Enum


class ErrorCode(str, Enum):
    """Machine-readable codes carried in deny decisions and error payloads."""

    # gate outcomes
    AUTHENTICATION_FAILURE = "AUTHENTICATION_FAILURE"
    SESSION_TERMINATED = "SESSION_TERMINATED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    ACCOUNT_BLOCKED = "ACCOUNT_BLOCKED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    USAGE_BLOCKED = "USAGE_BLOCKED"
    BURST_EXCEEDED = "BURST_EXCEEDED"
    MAINTENANCE = "MAINTENANCE"

    # admin / transport
    CONFIG_VALIDATION_ERROR = "CONFIG_VALIDATION_ERROR"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    BAD_REQUEST = "BAD_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    UPGRADE_REQUIRED = "UPGRADE_REQUIRED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


__all__ = ["ErrorCode"]

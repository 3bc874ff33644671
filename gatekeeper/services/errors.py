from __future__ import annotations

from gatekeeper.models import ErrorCode


class GatekeeperError(Exception):
    """Base class for errors raised by admin-facing service calls."""

    code: ErrorCode = ErrorCode.BAD_REQUEST
    status_code: int = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(GatekeeperError):
    code = ErrorCode.NOT_FOUND
    status_code = 404


class BlockTransitionError(GatekeeperError):
    """Requested block/appeal transition is not legal from the current state."""

    code = ErrorCode.INVALID_TRANSITION
    status_code = 409


class ConfigValidationError(GatekeeperError):
    code = ErrorCode.CONFIG_VALIDATION_ERROR
    status_code = 422

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class ConfigConflictError(GatekeeperError):
    """Stored config version moved on since the caller read it."""

    code = ErrorCode.CONFLICT
    status_code = 409


__all__ = [
    "GatekeeperError",
    "NotFoundError",
    "BlockTransitionError",
    "ConfigValidationError",
    "ConfigConflictError",
]

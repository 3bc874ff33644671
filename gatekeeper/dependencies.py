from __future__ import annotations

import logging
from typing import Any

from fastapi import Depends, Header, HTTPException, Request
from pydantic import BaseModel

from gatekeeper.config import Settings
from gatekeeper.models import ErrorCode
from gatekeeper.services.errors import ConfigValidationError, GatekeeperError

settings = Settings()

logger = logging.getLogger(__name__)


class ErrorResponse(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


def http_error(
    status_code: int, code: ErrorCode | str, message: str, details: dict[str, Any] | None = None
) -> HTTPException:
    err = ErrorResponse(code=code, message=message, details=details)
    return HTTPException(status_code=status_code, detail=err.model_dump(exclude_none=True))


def service_error(exc: GatekeeperError) -> HTTPException:
    details = None
    if isinstance(exc, ConfigValidationError) and exc.errors:
        details = {"errors": exc.errors}
    return http_error(exc.status_code, exc.code, exc.message, details)


def _check_version(x_api_ver: str | None) -> None:
    if x_api_ver is None:
        raise http_error(426, ErrorCode.UPGRADE_REQUIRED, "Missing API version")
    if x_api_ver != "v1":
        raise http_error(426, ErrorCode.UPGRADE_REQUIRED, "Invalid API version")


async def require_api_key(
    x_api_key: str = Header(..., alias="X-API-Key"),
    x_api_ver: str | None = Header(None, alias="X-API-Ver"),
) -> None:
    _check_version(x_api_ver)
    if x_api_key != settings.api_key:
        raise http_error(401, ErrorCode.UNAUTHORIZED, "Invalid API key")


async def require_api_headers(
    _: None = Depends(require_api_key),
    x_account_id: int | None = Header(None, alias="X-Account-ID"),
) -> int:
    if x_account_id is None:
        raise http_error(401, ErrorCode.UNAUTHORIZED, "Missing account ID")
    return x_account_id


async def require_admin(
    x_admin_key: str = Header(..., alias="X-Admin-Key"),
    x_api_ver: str | None = Header(None, alias="X-API-Ver"),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
) -> str:
    """Admin endpoints need the admin key and an actor id for the audit trail."""
    _check_version(x_api_ver)
    if x_admin_key != settings.admin_api_key:
        raise http_error(401, ErrorCode.UNAUTHORIZED, "Invalid admin key")
    if not x_actor_id:
        raise http_error(401, ErrorCode.UNAUTHORIZED, "Missing actor ID")
    return x_actor_id


def client_ip(request: Request) -> str:
    return request.client.host if request.client else ""

from __future__ import annotations

from gatekeeper.config import Settings


def build_api_headers(
    account_id: int | str = 1,
    *,
    api_key: str | None = None,
    api_ver: str = "v1",
    session_token: str | None = None,
) -> dict[str, str]:
    settings = Settings()
    headers = {
        "X-API-Key": api_key or settings.api_key,
        "X-API-Ver": api_ver,
        "X-Account-ID": str(account_id),
    }
    if session_token:
        headers["X-Session-Token"] = session_token
    return headers


def build_admin_headers(actor_id: str = "admin-1", *, admin_key: str | None = None) -> dict[str, str]:
    settings = Settings()
    return {
        "X-Admin-Key": admin_key or settings.admin_api_key,
        "X-API-Ver": "v1",
        "X-Actor-ID": actor_id,
    }

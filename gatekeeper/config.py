from __future__ import annotations

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings

DEFAULT_TIMEZONE = "Asia/Ho_Chi_Minh"


class Settings(BaseSettings):
    """Application configuration loaded from environment variables.

    Deployment-level knobs only; the policy an administrator edits at
    runtime (tier limits, restricted modules, burst window, reset time)
    lives in the ``rate_limit_config`` table.
    """

    api_key: str = "test-api-key"
    admin_api_key: str = Field("test-admin-key", alias="ADMIN_API_KEY")

    database_url: str = Field("sqlite:////tmp/gatekeeper_test.db", alias="DATABASE_URL")
    db_create_all: bool = Field(False, alias="DB_CREATE_ALL")

    redis_url: str = Field("redis://localhost:6379", alias="REDIS_URL")

    # sessions
    session_idle_timeout_min: int = Field(30, alias="SESSION_IDLE_TIMEOUT_MIN")
    session_login_retries: int = 3

    # sharing score policy
    sharing_hardware_weight: float = Field(0.4, alias="SHARING_HARDWARE_WEIGHT")
    sharing_behavior_weight: float = Field(0.4, alias="SHARING_BEHAVIOR_WEIGHT")
    sharing_session_weight: float = Field(0.2, alias="SHARING_SESSION_WEIGHT")
    sharing_permanent_threshold: int = Field(85, alias="SHARING_PERMANENT_THRESHOLD")
    sharing_temporary_threshold: int = Field(60, alias="SHARING_TEMPORARY_THRESHOLD")
    temporary_block_hours: int = Field(72, alias="TEMPORARY_BLOCK_HOURS")
    fingerprint_min_confidence: float = Field(0.0, alias="FINGERPRINT_MIN_CONFIDENCE")

    # gating
    gate_fail_open: bool = Field(False, alias="GATE_FAIL_OPEN")
    config_cache_ttl_s: float = Field(5.0, alias="CONFIG_CACHE_TTL_S")
    request_history_size: int = 100

    # daily reset
    default_timezone: str = Field(DEFAULT_TIMEZONE, alias="DEFAULT_TIMEZONE")
    reset_scheduler_autostart: bool = Field(True, alias="RESET_SCHEDULER_AUTOSTART")
    reset_poll_interval_s: int = Field(60, alias="RESET_POLL_INTERVAL_S")
    session_retention_days: int = Field(30, alias="SESSION_RETENTION_DAYS")
    device_retention_days: int = Field(90, alias="DEVICE_RETENTION_DAYS")

    model_config = ConfigDict(
        extra="ignore",
        env_file=".env",
        case_sensitive=False,
        populate_by_name=True,
    )

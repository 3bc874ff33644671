from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import redis.asyncio as redis

from gatekeeper.config import Settings
from gatekeeper.metrics import burst_reject_total
from gatekeeper.services.rate_config import RateLimitPolicy

settings = Settings()
redis_client = redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)

logger = logging.getLogger(__name__)


@dataclass
class BurstCheck:
    allowed: bool
    count: int
    limit: int
    window_seconds: int
    retry_after: int


def _key(account_id: int, slot: int) -> str:
    return f"burst:{account_id}:{slot}"


async def hit(account_id: int, policy: RateLimitPolicy, now: float | None = None) -> BurstCheck:
    """Count one restricted call in the account's fixed burst window.

    Raises ``RedisError`` when Redis is unreachable; the caller decides
    whether that fails open or closed.
    """
    window = policy.burst_window_seconds
    ts = int(now if now is not None else time.time())
    key = _key(account_id, ts // window)
    pipe = redis_client.pipeline()
    pipe.incr(key)
    pipe.expire(key, window)
    count, _ = await pipe.execute()
    allowed = count <= policy.burst_limit
    if not allowed:
        burst_reject_total.inc()
        logger.info("Burst limit hit for account %s (%s/%s)", account_id, count, policy.burst_limit)
    return BurstCheck(
        allowed=allowed,
        count=count,
        limit=policy.burst_limit,
        window_seconds=window,
        retry_after=window - ts % window,
    )

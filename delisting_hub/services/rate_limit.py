from __future__ import annotations
import time
from dataclasses import dataclass

import redis.asyncio as redis


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }


class TokenRateLimiter:
    """Fixed-window counter in redis, one key per (name, window)."""

    def __init__(self, redis_url: str | None = None, *, client: redis.Redis | None = None, prefix: str = "dlh:rl"):
        if client is None and redis_url is None:
            raise ValueError("redis_url or client is required")
        self.r = client if client is not None else redis.from_url(redis_url, decode_responses=True)
        self.prefix = prefix

    async def allow(self, *, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        now = int(time.time())
        rkey = f"{self.prefix}:{key}:{now // window_seconds}"

        count = await self.r.incr(rkey)
        if count == 1:
            await self.r.expire(rkey, window_seconds)

        return RateLimitResult(
            allowed=count <= limit,
            limit=limit,
            remaining=max(0, limit - count),
            reset_seconds=window_seconds - (now % window_seconds),
        )

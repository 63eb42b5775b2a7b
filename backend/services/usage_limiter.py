"""
Module: usage_limiter.py
Description: Fixed-window daily quota for advisor chat messages.

Each user gets ``daily_limit`` messages per UTC day. The counter lives in
Redis under ``rate_limit:chat:<user_id>`` and expires at the next UTC
midnight, so the window resets without any sweeper job.

Reads never mutate the counter. Increments use one MULTI/EXEC round trip
(``SET NX EX`` then ``INCR``), so the first message of the day creates the
key with its expiry and later ones only bump it.

Usage:
    limiter = UsageLimiter(redis_client, daily_limit=25)
    status = await limiter.check_limit(user_id)
    if status.allowed:
        await limiter.increment_usage(user_id)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from redis.exceptions import RedisError

from .errors import UsageStoreUnavailableError
from .observability import logger, metrics


DAILY_MESSAGE_LIMIT = 25
KEY_PREFIX = "rate_limit:chat:"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def next_utc_midnight(now: datetime) -> datetime:
    """Start of the UTC day after ``now``."""
    now = now.astimezone(timezone.utc)
    return datetime(now.year, now.month, now.day, tzinfo=timezone.utc) + timedelta(days=1)


def seconds_until_utc_midnight(now: datetime) -> int:
    """Whole seconds left in the current quota window (at least 1)."""
    remaining = (next_utc_midnight(now) - now).total_seconds()
    return max(1, int(remaining))


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "resetAt": self.reset_at.isoformat().replace("+00:00", "Z"),
        }


class UsageLimiter:
    """
    Per-user daily message counter.

    When Redis is unreachable the limiter fails closed by default and raises
    UsageStoreUnavailableError; with ``fail_open=True`` it lets the request
    through with the full quota reported. A missing key always counts as 0.
    """

    def __init__(
        self,
        redis_client,
        daily_limit: int = DAILY_MESSAGE_LIMIT,
        fail_open: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.redis = redis_client
        self.daily_limit = daily_limit
        self.fail_open = fail_open
        self._clock = clock or _utc_now

    @staticmethod
    def key_for(user_id: str) -> str:
        return f"{KEY_PREFIX}{user_id}"

    async def check_limit(self, user_id: str) -> RateLimitResult:
        """Report whether ``user_id`` may send one more message today."""
        now = self._clock()
        reset_at = next_utc_midnight(now)

        try:
            raw = await self.redis.get(self.key_for(user_id))
        except RedisError as e:
            metrics.increment("usage_limiter.store_error")
            if self.fail_open:
                logger.warning("Usage store unreachable, allowing request", error=str(e))
                return RateLimitResult(allowed=True, remaining=self.daily_limit, reset_at=reset_at)
            logger.error("Usage store unreachable, rejecting request", error=str(e))
            raise UsageStoreUnavailableError("Usage limits are temporarily unavailable.") from e

        count = int(raw) if raw else 0

        return RateLimitResult(
            allowed=count < self.daily_limit,
            remaining=max(0, self.daily_limit - count),
            reset_at=reset_at,
        )

    async def increment_usage(self, user_id: str) -> int:
        """Count one message against today's quota and return the new count."""
        key = self.key_for(user_id)
        ttl = seconds_until_utc_midnight(self._clock())

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(key, 0, ex=ttl, nx=True)
                pipe.incr(key)
                _, count = await pipe.execute()
        except RedisError as e:
            metrics.increment("usage_limiter.store_error")
            if self.fail_open:
                logger.warning("Usage increment lost", user_id=user_id[:8], error=str(e))
                return 0
            logger.error("Usage increment failed", user_id=user_id[:8], error=str(e))
            raise UsageStoreUnavailableError("Usage limits are temporarily unavailable.") from e

        metrics.increment("usage_limiter.increments")
        return int(count)

"""
Test Module: test_usage_limiter.py
Description: Unit tests for the daily chat quota.

Tests:
    - Allowed/remaining reporting at and over the quota
    - Increment visibility and key expiry at UTC midnight
    - Counter-store outage policies
"""

import pytest
from datetime import datetime, timezone

from services.errors import QuotaExceededError, UsageStoreUnavailableError
from services.usage_limiter import (
    RateLimitResult,
    UsageLimiter,
    next_utc_midnight,
    seconds_until_utc_midnight,
)


NOW = datetime(2026, 3, 14, 21, 30, 0, tzinfo=timezone.utc)


def make_limiter(redis, limit=25, fail_open=False):
    return UsageLimiter(redis, daily_limit=limit, fail_open=fail_open, clock=lambda: NOW)


# =============================================================================
# Window Arithmetic
# =============================================================================

class TestWindow:
    """Tests for UTC-midnight window boundaries."""

    def test_next_midnight(self):
        assert next_utc_midnight(NOW) == datetime(2026, 3, 15, tzinfo=timezone.utc)

    def test_next_midnight_at_exact_midnight(self):
        midnight = datetime(2026, 3, 15, tzinfo=timezone.utc)
        assert next_utc_midnight(midnight) == datetime(2026, 3, 16, tzinfo=timezone.utc)

    def test_seconds_until_midnight(self):
        assert seconds_until_utc_midnight(NOW) == 2 * 3600 + 30 * 60

    def test_seconds_until_midnight_never_zero(self):
        almost = datetime(2026, 3, 14, 23, 59, 59, 999999, tzinfo=timezone.utc)
        assert seconds_until_utc_midnight(almost) >= 1


# =============================================================================
# Check / Increment
# =============================================================================

class TestCheckLimit:
    """Tests for the read-only quota check."""

    @pytest.mark.asyncio
    async def test_missing_key_counts_as_zero(self, fake_redis):
        result = await make_limiter(fake_redis).check_limit("u1")

        assert result.allowed is True
        assert result.remaining == 25
        assert result.reset_at == datetime(2026, 3, 15, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [25, 26, 100])
    async def test_at_or_over_quota_is_denied(self, fake_redis, count):
        fake_redis.store["rate_limit:chat:u1"] = str(count)

        result = await make_limiter(fake_redis).check_limit("u1")

        assert result.allowed is False
        assert result.remaining == 0

    @pytest.mark.asyncio
    async def test_check_does_not_mutate(self, fake_redis):
        limiter = make_limiter(fake_redis)
        await limiter.check_limit("u1")
        await limiter.check_limit("u1")

        assert fake_redis.store == {}

    def test_to_dict_uses_z_suffix(self):
        body = RateLimitResult(allowed=True, remaining=3, reset_at=next_utc_midnight(NOW)).to_dict()

        assert body == {"allowed": True, "remaining": 3, "resetAt": "2026-03-15T00:00:00Z"}

    def test_key_format(self):
        assert UsageLimiter.key_for("abc") == "rate_limit:chat:abc"


class TestIncrementUsage:
    """Tests for the atomic counter increment."""

    @pytest.mark.asyncio
    async def test_increment_reflected_in_check(self, fake_redis):
        limiter = make_limiter(fake_redis)
        before = await limiter.check_limit("u1")

        count = await limiter.increment_usage("u1")
        after = await limiter.check_limit("u1")

        assert count == 1
        assert after.remaining == before.remaining - 1

    @pytest.mark.asyncio
    async def test_expiry_set_to_next_utc_midnight(self, fake_redis):
        limiter = make_limiter(fake_redis)
        await limiter.increment_usage("u1")

        ttl = await fake_redis.ttl("rate_limit:chat:u1")
        assert 0 < ttl <= seconds_until_utc_midnight(NOW)

    @pytest.mark.asyncio
    async def test_later_increments_keep_existing_expiry(self, fake_redis):
        limiter = make_limiter(fake_redis)
        await limiter.increment_usage("u1")
        fake_redis.expiry["rate_limit:chat:u1"] = 60

        count = await limiter.increment_usage("u1")

        assert count == 2
        assert await fake_redis.ttl("rate_limit:chat:u1") == 60

    @pytest.mark.asyncio
    async def test_users_are_counted_separately(self, fake_redis):
        limiter = make_limiter(fake_redis, limit=2)
        await limiter.increment_usage("u1")
        await limiter.increment_usage("u1")

        assert (await limiter.check_limit("u1")).allowed is False
        assert (await limiter.check_limit("u2")).allowed is True


# =============================================================================
# Store Outage
# =============================================================================

class TestStoreOutage:
    """Tests for behavior when Redis is unreachable."""

    @pytest.mark.asyncio
    async def test_fails_closed_by_default(self, fake_redis):
        fake_redis.down = True

        with pytest.raises(UsageStoreUnavailableError) as exc_info:
            await make_limiter(fake_redis).check_limit("u1")
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_fail_open_allows_full_quota(self, fake_redis):
        fake_redis.down = True

        result = await make_limiter(fake_redis, fail_open=True).check_limit("u1")

        assert result.allowed is True
        assert result.remaining == 25

    @pytest.mark.asyncio
    async def test_increment_fails_closed(self, fake_redis):
        fake_redis.down = True

        with pytest.raises(UsageStoreUnavailableError):
            await make_limiter(fake_redis).increment_usage("u1")


def test_quota_error_body_carries_reset_time():
    error = QuotaExceededError(next_utc_midnight(NOW))
    body = error.to_body()

    assert error.status_code == 429
    assert body["code"] == "RATE_LIMIT_EXCEEDED"
    assert body["resetAt"] == "2026-03-15T00:00:00Z"

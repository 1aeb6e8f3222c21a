# tests/core/test_rate_limiter.py
"""
Тесты для ограничителя частоты.
"""

from __future__ import annotations

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.core.tracking.cache import TrackingCache
from src.core.tracking.rate_limiter import RateLimiter


class TestRateLimiter:
    """Тесты для RateLimiter."""

    @pytest.fixture
    def limiter(self, cache: TrackingCache) -> RateLimiter:
        return RateLimiter(cache)

    @pytest.mark.asyncio
    async def test_allows_up_to_limit(self, limiter: RateLimiter) -> None:
        """Лимит 3: три вызова проходят, четвёртый нет."""
        results = [await limiter.allow("update", 1, max_per_minute=3) for _ in range(4)]
        assert results == [True, True, True, False]

    @pytest.mark.asyncio
    async def test_window_resets(self, limiter: RateLimiter, fake_redis) -> None:
        for _ in range(4):
            await limiter.allow("update", 1, max_per_minute=3)

        fake_redis.advance(61)

        assert await limiter.allow("update", 1, max_per_minute=3) is True

    @pytest.mark.asyncio
    async def test_window_is_fixed(self, limiter: RateLimiter, fake_redis) -> None:
        """Окно отсчитывается от первого вызова, последующие его не продлевают."""
        await limiter.allow("update", 1, max_per_minute=2)
        fake_redis.advance(40)
        await limiter.allow("update", 1, max_per_minute=2)
        assert await limiter.allow("update", 1, max_per_minute=2) is False

        fake_redis.advance(21)
        assert await limiter.allow("update", 1, max_per_minute=2) is True

    @pytest.mark.asyncio
    async def test_actions_and_users_are_independent(self, limiter: RateLimiter) -> None:
        await limiter.allow("update", 1, max_per_minute=1)
        assert await limiter.allow("update", 1, max_per_minute=1) is False
        assert await limiter.allow("session", 1, max_per_minute=1) is True
        assert await limiter.allow("update", 2, max_per_minute=1) is True

    @pytest.mark.asyncio
    async def test_fail_open(self, mock_redis) -> None:
        """При недоступности Redis всё разрешается."""
        mock_redis.incr_window.side_effect = RedisConnectionError("down")
        limiter = RateLimiter(TrackingCache(mock_redis))

        for _ in range(20):
            assert await limiter.allow("update", 1, max_per_minute=1) is True

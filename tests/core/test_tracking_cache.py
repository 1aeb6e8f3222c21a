# tests/core/test_tracking_cache.py
"""
Тесты для кэша трекинга.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.config.loader import TrackingCacheTTLSettings
from src.core.tracking.cache import TrackingCache


class TestKeys:
    """Тесты для схемы ключей."""

    def test_key_families(self) -> None:
        assert TrackingCache.current_key(1) == "cur:1"
        assert TrackingCache.family_snapshot_key(10) == "family_cur:10"
        assert TrackingCache.live_key(10) == "live:10"
        assert TrackingCache.settings_key(10) == "settings:10"
        assert TrackingCache.rate_limit_key("update", 1) == "rl:update:1"
        assert TrackingCache.dedupe_key(1) == "dd:1"
        assert TrackingCache.session_key(1) == "session:1"
        assert TrackingCache.geofences_key(10) == "geo:10"
        assert TrackingCache.geofence_state_key(10, 1) == "geo_state:10:1"
        assert TrackingCache.places_key(10) == "places:10"
        assert TrackingCache.alert_rules_key(10) == "alerts:10"
        assert TrackingCache.alert_cooldown_key(10, 3, 1, 0) == "alerts_cd:10:3:1:0"

    def test_directions_key_is_hashed(self) -> None:
        key = TrackingCache.directions_key("walking", "30.5,50.4;30.6,50.5")
        assert key.startswith("dir:walking:")
        assert len(key.split(":")[-1]) == 40
        assert key == TrackingCache.directions_key("walking", "30.5,50.4;30.6,50.5")


class TestNamedFamilies:
    """Тесты для именованных семейств поверх in-memory Redis."""

    @pytest.mark.asyncio
    async def test_current_uses_ttl(self, cache: TrackingCache, fake_redis) -> None:
        await cache.set_current(1, {"lat": 1.0})
        assert await cache.get_current(1) == {"lat": 1.0}

        fake_redis.advance(cache.ttl.CURRENT_TTL)
        assert await cache.get_current(1) is None

    @pytest.mark.asyncio
    async def test_session_flag(self, cache: TrackingCache) -> None:
        assert await cache.get_session_flag(1) is None

        await cache.set_session_flag(1, False)
        assert await cache.get_session_flag(1) is False

        await cache.set_session_flag(1, True)
        assert await cache.get_session_flag(1) is True

        await cache.clear_session_flag(1)
        assert await cache.get_session_flag(1) is None

    @pytest.mark.asyncio
    async def test_set_once(self, cache: TrackingCache, fake_redis) -> None:
        assert await cache.set_once("alerts_cd:1", 900) is True
        assert await cache.set_once("alerts_cd:1", 900) is False
        fake_redis.advance(900)
        assert await cache.set_once("alerts_cd:1", 900) is True

    @pytest.mark.asyncio
    async def test_invalidate_geofence_state(self, cache: TrackingCache) -> None:
        await cache.set_json(cache.geofence_state_key(10, 1), {"5": True}, 600)
        await cache.set_json(cache.geofence_state_key(10, 2), {"5": False}, 600)

        await cache.invalidate_geofence_state(10, [1, 2])

        assert await cache.get_json(cache.geofence_state_key(10, 1)) is None
        assert await cache.get_json(cache.geofence_state_key(10, 2)) is None

    @pytest.mark.asyncio
    async def test_invalidate_geofence_state_empty(self, mock_redis) -> None:
        cache = TrackingCache(mock_redis, TrackingCacheTTLSettings())
        await cache.invalidate_geofence_state(10, [])
        mock_redis.delete.assert_not_called()


class TestFailOpen:
    """Любая ошибка Redis превращается в промах."""

    @pytest.fixture
    def broken_cache(self, mock_redis) -> TrackingCache:
        error = RedisConnectionError("down")
        mock_redis.get_json.side_effect = error
        mock_redis.set_json.side_effect = error
        mock_redis.delete.side_effect = error
        mock_redis.set.side_effect = error
        mock_redis.incr_window.side_effect = error
        mock_redis.lock = MagicMock(side_effect=RuntimeError("Redis клиент не инициализирован"))
        return TrackingCache(mock_redis, TrackingCacheTTLSettings())

    @pytest.mark.asyncio
    async def test_reads_miss(self, broken_cache: TrackingCache) -> None:
        assert await broken_cache.get_current(1) is None
        assert await broken_cache.get_family_snapshot(10) is None
        assert await broken_cache.get_session_flag(1) is None

    @pytest.mark.asyncio
    async def test_writes_report_failure(self, broken_cache: TrackingCache) -> None:
        assert await broken_cache.set_current(1, {}) is False
        assert await broken_cache.delete("x") == 0
        assert await broken_cache.incr_rate("update", 1) is None

    @pytest.mark.asyncio
    async def test_set_once_allows_action(self, broken_cache: TrackingCache) -> None:
        assert await broken_cache.set_once("alerts_cd:1", 900) is True

    def test_lock_unavailable(self, broken_cache: TrackingCache) -> None:
        assert broken_cache.lock("geofence_queue", 120) is None

    @pytest.mark.asyncio
    async def test_os_error_is_cache_error(self) -> None:
        redis = AsyncMock()
        redis.get_json = AsyncMock(side_effect=OSError("socket closed"))
        cache = TrackingCache(redis, TrackingCacheTTLSettings())
        assert await cache.get_json("x") is None

# tests/core/test_location_repository.py
"""
Тесты для репозитория позиций.
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import asyncpg
import pytest

from src.common.constants import FixDecision, FixSource
from src.common.exceptions import PersistenceError
from src.core.tracking.cache import TrackingCache
from src.core.tracking.models import GateResult, LocationFix
from src.core.tracking.repository import LocationRepository


@pytest.fixture
def repo(mock_db: AsyncMock, cache: TrackingCache) -> LocationRepository:
    return LocationRepository(mock_db, cache)


@pytest.fixture
def fix() -> LocationFix:
    return LocationFix(lat=50.46, lng=30.53, accuracy_m=8.0, battery_level=70, is_moving=True)


@pytest.fixture
def gate_result() -> GateResult:
    return GateResult(decision=FixDecision.PROMOTE, quality_score=100, source=FixSource.GPS, reason="accepted")


class TestGetCurrent:
    """Тесты для чтения текущей позиции."""

    @pytest.mark.asyncio
    async def test_db_miss(self, repo: LocationRepository) -> None:
        assert await repo.get_current(1) is None

    @pytest.mark.asyncio
    async def test_db_hit_repairs_cache(
        self, repo: LocationRepository, mock_db: AsyncMock, cache: TrackingCache, current_row: dict,
    ) -> None:
        """После промаха кэша запись из БД кладётся в кэш."""
        mock_db.fetchrow.return_value = current_row

        current = await repo.get_current(1)

        assert current is not None and current.lat == current_row["lat"]
        assert (await cache.get_current(1))["lat"] == current_row["lat"]

    @pytest.mark.asyncio
    async def test_cache_hit_skips_db(
        self, repo: LocationRepository, mock_db: AsyncMock, current_row: dict,
    ) -> None:
        mock_db.fetchrow.return_value = current_row
        await repo.get_current(1)
        mock_db.fetchrow.reset_mock()

        assert (await repo.get_current(1)).user_id == 1
        mock_db.fetchrow.assert_not_called()

    @pytest.mark.asyncio
    async def test_corrupt_cache_falls_back_to_db(
        self, repo: LocationRepository, mock_db: AsyncMock, cache: TrackingCache, current_row: dict,
    ) -> None:
        await cache.set_current(1, {"garbage": True})
        mock_db.fetchrow.return_value = current_row

        assert (await repo.get_current(1)).family_id == 10
        mock_db.fetchrow.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_db_error(self, repo: LocationRepository, mock_db: AsyncMock) -> None:
        mock_db.fetchrow.side_effect = asyncpg.PostgresConnectionError("down")
        with pytest.raises(PersistenceError):
            await repo.get_current(1)


class TestPromoteAndTouch:
    """Тесты для записи позиции."""

    @pytest.mark.asyncio
    async def test_promote_upserts_and_refreshes_cache(
        self,
        repo: LocationRepository,
        mock_db: AsyncMock,
        cache: TrackingCache,
        fix: LocationFix,
        gate_result: GateResult,
        current_row: dict,
    ) -> None:
        await cache.set_family_snapshot(10, [current_row | {"position_at": "x"}])
        mock_db.fetchrow.return_value = current_row | {"lat": fix.lat, "lng": fix.lng}

        current = await repo.promote(1, 10, fix, gate_result)

        query, *args = mock_db.fetchrow.call_args.args
        assert "ON CONFLICT (user_id) DO UPDATE" in query
        assert args[:4] == [1, 10, fix.lat, fix.lng]
        assert args[-1] == "gps"
        assert current.lat == fix.lat
        assert (await cache.get_current(1))["lat"] == fix.lat
        assert await cache.get_family_snapshot(10) is None

    @pytest.mark.asyncio
    async def test_promote_db_error(
        self, repo: LocationRepository, mock_db: AsyncMock, fix: LocationFix, gate_result: GateResult,
    ) -> None:
        mock_db.fetchrow.side_effect = OSError("connection reset")
        with pytest.raises(PersistenceError):
            await repo.promote(1, 10, fix, gate_result)

    @pytest.mark.asyncio
    async def test_touch_missing_record_is_noop(
        self, repo: LocationRepository, mock_db: AsyncMock, cache: TrackingCache, fix: LocationFix,
    ) -> None:
        assert await repo.touch(1, fix) is None
        assert await cache.get_current(1) is None

    @pytest.mark.asyncio
    async def test_touch_keeps_coordinates(
        self, repo: LocationRepository, mock_db: AsyncMock, fix: LocationFix, current_row: dict,
    ) -> None:
        """Heartbeat передаёт в БД только заряд и флаг движения."""
        mock_db.fetchrow.return_value = current_row

        current = await repo.touch(1, fix)

        query, *args = mock_db.fetchrow.call_args.args
        assert "SET updated_at = NOW()" in query
        assert "lat" not in query.split("RETURNING")[0]
        assert args == [1, fix.battery_level, fix.is_moving]
        assert current.lat == current_row["lat"]


class TestHistory:
    """Тесты для истории."""

    @pytest.mark.asyncio
    async def test_append_history(self, repo: LocationRepository, mock_db: AsyncMock, fix: LocationFix) -> None:
        mock_db.fetchval.return_value = 99
        assert await repo.append_history(1, 10, fix) == 99

    @pytest.mark.asyncio
    async def test_append_history_error(self, repo: LocationRepository, mock_db: AsyncMock, fix: LocationFix) -> None:
        mock_db.fetchval.side_effect = asyncpg.PostgresError("disk full")
        with pytest.raises(PersistenceError):
            await repo.append_history(1, 10, fix)

    @pytest.mark.asyncio
    async def test_get_history_clamps_limit(self, repo: LocationRepository, mock_db: AsyncMock) -> None:
        await repo.get_history(1, 10, limit=5000, offset=-3)
        args = mock_db.fetch.call_args.args
        assert args[-2:] == (1000, 0)

    @pytest.mark.asyncio
    async def test_get_history_maps_rows(self, repo: LocationRepository, mock_db: AsyncMock) -> None:
        now = datetime.now(timezone.utc)
        mock_db.fetch.return_value = [{
            "id": 1, "user_id": 1, "family_id": 10, "lat": 1.0, "lng": 2.0, "accuracy_m": None,
            "speed_mps": None, "heading_deg": None, "altitude_m": None, "battery_level": None,
            "is_moving": False, "recorded_at": now, "created_at": now,
        }]
        points = await repo.get_history(1, 10)
        assert [p.id for p in points] == [1]

    @pytest.mark.asyncio
    async def test_get_history_error_returns_empty(self, repo: LocationRepository, mock_db: AsyncMock) -> None:
        mock_db.fetch.side_effect = OSError("down")
        assert await repo.get_history(1, 10) == []

    @pytest.mark.asyncio
    async def test_family_history_defaults(self, repo: LocationRepository, mock_db: AsyncMock) -> None:
        """По умолчанию последний час и не больше 2000 точек."""
        before = datetime.now(timezone.utc)
        await repo.get_family_history(10, user_ids=[], limit=9999)

        _, family_id, start, end, user_ids, limit = mock_db.fetch.call_args.args
        assert family_id == 10
        assert 3590 < (before - start).total_seconds() < 3610
        assert end is None
        assert user_ids is None
        assert limit == 2000

    @pytest.mark.asyncio
    async def test_prune_history_uses_batches(self, repo: LocationRepository, mock_db: AsyncMock) -> None:
        mock_db.delete_in_batches = AsyncMock(return_value=12)

        assert await repo.prune_history(10, 30, batch_size=100, delay=0) == 12

        table, where, family_id, cutoff = mock_db.delete_in_batches.call_args.args
        assert table == "tracking_locations"
        assert family_id == 10
        assert mock_db.delete_in_batches.call_args.kwargs == {"batch_size": 100, "delay": 0}


class TestFamilySnapshot:
    """Тесты для снимка семьи."""

    @pytest.mark.asyncio
    async def test_snapshot_cached(
        self, repo: LocationRepository, mock_db: AsyncMock, current_row: dict,
    ) -> None:
        mock_db.fetch.return_value = [current_row, current_row | {"user_id": 2}]

        first = await repo.get_family_snapshot(10)
        second = await repo.get_family_snapshot(10)

        assert [c.user_id for c in first] == [1, 2]
        assert second == first
        mock_db.fetch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_snapshot_db_error(self, repo: LocationRepository, mock_db: AsyncMock) -> None:
        mock_db.fetch.side_effect = asyncpg.PostgresConnectionError("down")
        with pytest.raises(PersistenceError):
            await repo.get_family_snapshot(10)

    @pytest.mark.asyncio
    async def test_sharing_members_error_is_empty(self, repo: LocationRepository, mock_db: AsyncMock) -> None:
        mock_db.fetch.side_effect = OSError("down")
        assert await repo.list_sharing_members(10) == []

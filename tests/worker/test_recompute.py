# tests/worker/test_recompute.py
"""
Тесты для пересчёта состояний геозон.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock

import pytest

from src.core.tracking.cache import TrackingCache
from src.worker.recompute import recompute_geofence_states

GEOFENCE_ROW = {
    "id": 5, "family_id": 10, "name": "Home", "type": "circle",
    "center_lat": 50.4501, "center_lng": 30.5234, "radius_m": 200.0, "polygon": None,
    "notify_enter": True, "notify_exit": True, "active": True,
}


@pytest.fixture
def members(current_row: dict) -> list[dict]:
    fresh = datetime.now(timezone.utc)
    return [
        current_row | {"user_id": 1, "position_at": fresh},
        current_row | {"user_id": 2, "lat": 50.5, "position_at": fresh},
        # устаревшая позиция не пересчитывается
        current_row | {"user_id": 3, "position_at": fresh - timedelta(hours=2)},
    ]


@pytest.fixture
def routed_db(mock_db: AsyncMock, members: list[dict]) -> AsyncMock:
    """fetch отвечает по тексту запроса."""
    states: list[dict] = []

    async def fetch(query: str, *args: Any) -> list[dict]:
        if "DISTINCT family_id" in query:
            return [{"family_id": 10}]
        if "FROM tracking_geofence_state" in query:
            return states
        if "FROM tracking_geofences" in query:
            return [GEOFENCE_ROW]
        if "FROM tracking_current" in query:
            return members
        return []

    async def fetchval(query: str, *args: Any) -> Any:
        if "INSERT INTO tracking_geofence_state" in query:
            return 1
        return None

    mock_db.fetch.side_effect = fetch
    mock_db.fetchval.side_effect = fetchval
    return mock_db


class TestRecompute:
    """Тесты для recompute_geofence_states."""

    @pytest.mark.asyncio
    async def test_all_families(self, routed_db: AsyncMock, cache: TrackingCache) -> None:
        stats = await recompute_geofence_states(routed_db, cache)

        assert stats == {"families": 1, "pairs": 2, "changed": 1}
        # пишется только вход пользователя 1, пользователь 2 снаружи
        [call] = routed_db.fetchval.call_args_list
        assert call.args[1:] == (5, 1, 10, True)

    @pytest.mark.asyncio
    async def test_single_family_drops_stale_cache(
        self, routed_db: AsyncMock, cache: TrackingCache,
    ) -> None:
        await cache.set_json(cache.geofences_key(10), [], 600)
        await cache.set_json(cache.geofence_state_key(10, 1), {"5": True}, 600)

        stats = await recompute_geofence_states(routed_db, cache, family_id=10)

        assert stats["changed"] == 1
        queries = [c.args[0] for c in routed_db.fetch.call_args_list]
        assert not any("DISTINCT family_id" in q for q in queries)

    @pytest.mark.asyncio
    async def test_no_notifications(self, routed_db: AsyncMock, cache: TrackingCache) -> None:
        """Пересчёт не пишет журнал событий."""
        await recompute_geofence_states(routed_db, cache)
        queries = [c.args[0] for c in routed_db.fetchval.call_args_list]
        assert queries
        assert not any("INSERT INTO tracking_events" in q for q in queries)
        routed_db.execute.assert_not_called()

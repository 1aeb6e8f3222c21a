# tests/core/test_places_repository.py
"""
Тесты для репозитория мест семьи.
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from src.core.places.repository import PlaceRepository
from src.core.tracking.cache import TrackingCache


@pytest.fixture
def place_row() -> dict:
    return {
        "id": 3,
        "family_id": 10,
        "label": "Школа",
        "lat": 50.45,
        "lng": 30.52,
        "radius_m": 150.0,
        "created_by": 1,
        "created_at": datetime(2026, 5, 1, tzinfo=timezone.utc),
    }


@pytest.fixture
def repo(mock_db: AsyncMock, cache: TrackingCache) -> PlaceRepository:
    return PlaceRepository(mock_db, cache)


class TestPlaceRepository:
    """Тесты для PlaceRepository."""

    @pytest.mark.asyncio
    async def test_list_cached(self, repo: PlaceRepository, mock_db: AsyncMock, place_row: dict) -> None:
        mock_db.fetch.return_value = [place_row]

        first = await repo.list(10)
        second = await repo.list(10)

        assert first == second
        assert first[0].label == "Школа"
        assert "ORDER BY label" in mock_db.fetch.call_args.args[0]
        mock_db.fetch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_get_scoped_to_family(self, repo: PlaceRepository, mock_db: AsyncMock) -> None:
        assert await repo.get(10, 3) is None
        assert mock_db.fetchrow.call_args.args[1:] == (3, 10)

    @pytest.mark.asyncio
    async def test_create_invalidates_list(
        self, repo: PlaceRepository, mock_db: AsyncMock, cache: TrackingCache, place_row: dict,
    ) -> None:
        await cache.set_json(cache.places_key(10), [], 600)
        mock_db.fetchrow.return_value = place_row

        place = await repo.create(10, "Школа", 50.45, 30.52, radius_m=150.0, created_by=1)

        assert place.id == 3
        assert await cache.get_json(cache.places_key(10)) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,expected", [("DELETE 1", True), ("DELETE 0", False)])
    async def test_delete(
        self, repo: PlaceRepository, mock_db: AsyncMock, cache: TrackingCache, status: str, expected: bool,
    ) -> None:
        await cache.set_json(cache.places_key(10), [], 600)
        mock_db.execute.return_value = status

        assert await repo.delete(10, 3) is expected
        assert await cache.get_json(cache.places_key(10)) is None

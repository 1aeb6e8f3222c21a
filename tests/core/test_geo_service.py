# tests/core/test_geo_service.py
"""
Тесты для сервиса маршрутов.
"""

from __future__ import annotations

import httpx
import pytest

from src.common.constants import DirectionsProfile
from src.config.loader import DirectionsSettings
from src.core.geo.service import (
    DirectionsService,
    format_distance,
    format_duration,
    normalize_profile,
)
from src.core.tracking.cache import TrackingCache

ROUTE_RESPONSE = {
    "code": "Ok",
    "routes": [{
        "distance": 2345.4,
        "duration": 3720.2,
        "geometry": {"type": "LineString", "coordinates": [[30.52, 50.45], [30.53, 50.46]]},
    }],
}


def make_service(cache: TrackingCache, handler, api_key: str = "key") -> DirectionsService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return DirectionsService(cache, DirectionsSettings(MAPBOX_API_KEY=api_key), client)


class TestFormatting:
    """Тесты для форматирования расстояния и времени."""

    @pytest.mark.parametrize("meters,expected", [
        (0, "0 m"),
        (850, "850 m"),
        (999.4, "999 m"),
        (2345, "2.3 km"),
        (12_400, "12 km"),
    ])
    def test_format_distance(self, meters: float, expected: str) -> None:
        assert format_distance(meters) == expected

    @pytest.mark.parametrize("seconds,expected", [
        (45, "Less than 1 min"),
        (60, "1 min"),
        (1500, "25 min"),
        (3600, "1 hr"),
        (3720, "1 hr 2 min"),
    ])
    def test_format_duration(self, seconds: float, expected: str) -> None:
        assert format_duration(seconds) == expected

    def test_normalize_profile(self) -> None:
        assert normalize_profile("walking") == DirectionsProfile.WALKING
        assert normalize_profile(None) == DirectionsProfile.DRIVING
        assert normalize_profile("rocket") == DirectionsProfile.DRIVING


class TestDirectionsService:
    """Тесты для DirectionsService поверх MockTransport."""

    @pytest.mark.asyncio
    async def test_route_is_fetched_and_cached(self, cache: TrackingCache) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=ROUTE_RESPONSE)

        service = make_service(cache, handler)

        route = await service.get_route(50.45, 30.52, 50.46, 30.53, profile="walking")
        again = await service.get_route(50.45, 30.52, 50.46, 30.53, profile="walking")

        assert route["profile"] == "walking"
        assert route["distance_m"] == 2345
        assert route["duration_s"] == 3720
        assert route["distance_text"] == "2.3 km"
        assert route["duration_text"] == "1 hr 2 min"
        assert route["from"] == {"lat": 50.45, "lng": 30.52}
        assert again == route
        assert len(requests) == 1
        # Mapbox ожидает порядок lng,lat
        assert requests[0].url.path.endswith("/walking/30.520000,50.450000;30.530000,50.460000")
        assert requests[0].url.params["access_token"] == "key"
        await service.close()

    @pytest.mark.asyncio
    async def test_no_api_key(self, cache: TrackingCache, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("MAPBOX_API_KEY", raising=False)
        monkeypatch.delenv("MAPBOX_TOKEN", raising=False)

        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("запрос не должен уходить без ключа")

        service = make_service(cache, handler, api_key="")
        assert await service.get_route(0, 0, 1, 1) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(401, json={"message": "Not Authorized"}),
        httpx.Response(200, json={"code": "NoRoute", "routes": []}),
        httpx.Response(200, text="<html>"),
    ])
    async def test_bad_responses(self, cache: TrackingCache, response: httpx.Response) -> None:
        service = make_service(cache, lambda request: response)
        assert await service.get_route(0, 0, 1, 1) is None
        assert await cache.get_json(cache.directions_key("driving", "0.000000,0.000000;1.000000,1.000000")) is None

    @pytest.mark.asyncio
    async def test_transport_error(self, cache: TrackingCache) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        service = make_service(cache, handler)
        assert await service.get_route(0, 0, 1, 1) is None

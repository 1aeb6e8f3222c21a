# tests/worker/test_worker_base.py
"""
Тесты для базового воркера и lease-блокировки.
"""

from __future__ import annotations

import asyncio
from typing import List
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.core.tracking.cache import TrackingCache
from src.infra.event_bus import DomainEvent
from src.worker.base import BaseWorker, PeriodicJob, run_with_lease


class CountingWorker(BaseWorker):
    """Воркер с одной периодической задачей, первая попытка которой падает."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.calls = 0
        self.events: List[DomainEvent] = []

    @property
    def name(self) -> str:
        return "CountingWorker"

    @property
    def subscriptions(self) -> List[str]:
        return ["tracking.fix_queued"]

    def periodic_jobs(self) -> List[PeriodicJob]:
        return [(0.01, self.tick)]

    async def tick(self) -> None:
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("first run fails")

    async def handle_event(self, event: DomainEvent) -> None:
        if event.payload.get("explode"):
            raise ValueError("bad event")
        self.events.append(event)


@pytest.fixture
def worker(mock_event_bus: AsyncMock, mock_db: AsyncMock, fake_redis) -> CountingWorker:
    return CountingWorker(event_bus=mock_event_bus, db=mock_db, redis=fake_redis)


class TestRunWithLease:
    """Тесты для run_with_lease."""

    @pytest.mark.asyncio
    async def test_runs_and_releases(self, cache: TrackingCache, fake_redis) -> None:
        job = AsyncMock(return_value={"processed": 1})

        assert await run_with_lease(cache, "geofence_queue", 120, job) == {"processed": 1}
        assert fake_redis.locks == set()

    @pytest.mark.asyncio
    async def test_skips_when_held(self, cache: TrackingCache, fake_redis) -> None:
        """Второй процесс не запускает задачу, пока lease занят."""
        fake_redis.locks.add("geofence_queue")
        job = AsyncMock()

        assert await run_with_lease(cache, "geofence_queue", 120, job) is None
        job.assert_not_called()

    @pytest.mark.asyncio
    async def test_releases_on_error(self, cache: TrackingCache, fake_redis) -> None:
        job = AsyncMock(side_effect=RuntimeError("boom"))

        with pytest.raises(RuntimeError):
            await run_with_lease(cache, "geofence_queue", 120, job)
        assert fake_redis.locks == set()

    @pytest.mark.asyncio
    async def test_skips_without_redis(self, mock_redis) -> None:
        mock_redis.lock = MagicMock(side_effect=RuntimeError("Redis клиент не инициализирован"))
        job = AsyncMock()

        assert await run_with_lease(TrackingCache(mock_redis), "geofence_queue", 120, job) is None
        job.assert_not_called()

    @pytest.mark.asyncio
    async def test_skips_when_acquire_fails(self, mock_redis) -> None:
        lock = MagicMock()
        lock.acquire = AsyncMock(side_effect=RedisConnectionError("down"))
        mock_redis.lock = MagicMock(return_value=lock)
        job = AsyncMock()

        assert await run_with_lease(TrackingCache(mock_redis), "geofence_queue", 120, job) is None
        job.assert_not_called()


class TestBaseWorker:
    """Тесты для жизненного цикла воркера."""

    @pytest.mark.asyncio
    async def test_start_subscribes(self, worker: CountingWorker, mock_event_bus: AsyncMock) -> None:
        await worker.start()
        try:
            mock_event_bus.subscribe.assert_awaited_once_with(
                event_type="tracking.fix_queued", handler=worker._on_event,
            )
        finally:
            await worker.stop()

    @pytest.mark.asyncio
    async def test_periodic_job_survives_errors(self, worker: CountingWorker) -> None:
        await worker.start()
        await asyncio.sleep(0.1)
        await worker.stop()

        assert worker.calls >= 2
        assert worker._tasks == []

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, worker: CountingWorker, mock_event_bus: AsyncMock) -> None:
        await worker.start()
        await worker.start()
        await worker.stop()
        assert mock_event_bus.subscribe.await_count == 1

    @pytest.mark.asyncio
    async def test_event_errors_are_isolated(self, worker: CountingWorker) -> None:
        await worker.start()
        try:
            await worker._on_event(DomainEvent(event_type="tracking.fix_queued", payload={"explode": True}))
            await worker._on_event(DomainEvent(event_type="tracking.fix_queued", payload={"queue_id": 1}))
        finally:
            await worker.stop()

        assert [e.payload for e in worker.events] == [{"queue_id": 1}]

    @pytest.mark.asyncio
    async def test_events_ignored_when_stopped(self, worker: CountingWorker) -> None:
        await worker._on_event(DomainEvent(event_type="tracking.fix_queued", payload={}))
        assert worker.events == []

# tests/worker/test_geofence_queue.py
"""
Тесты для фоновой обработки очереди геозон.
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import asyncpg
import pytest

from src.common.constants import GeofenceAction, TrackingEventType
from src.common.exceptions import GeofenceEvaluationError
from src.config.loader import GeofenceQueueSettings, Settings
from src.core.alerts.engine import AlertsEngine
from src.core.audit.repository import AuditRepository
from src.core.geofences.engine import GeofenceEngine
from src.core.geofences.models import GeofenceTransition
from src.core.geofences.queue import GeofenceQueueRepository, QueueItem
from src.core.notifications.service import TrackingNotificationService
from src.core.settings import FamilySettingsRepository, FamilyTrackingSettings
from src.core.tracking.cache import TrackingCache
from src.core.tracking.service import TrackingService
from src.infra.event_bus import DomainEvent, EventTypes
from src.worker.geofence_queue import GeofenceQueueProcessor, GeofenceQueueWorker


def make_item(item_id: int, battery_level: int | None = 80) -> QueueItem:
    now = datetime.now(timezone.utc)
    return QueueItem(
        id=item_id, user_id=1, family_id=10, lat=50.45, lng=30.52,
        battery_level=battery_level, recorded_at=now, created_at=now,
    )


def build_processor(
    mock_db: AsyncMock,
    cache: TrackingCache,
    mock_event_bus: AsyncMock,
    config: GeofenceQueueSettings | None = None,
) -> GeofenceQueueProcessor:
    processor = GeofenceQueueProcessor(mock_db, cache, mock_event_bus, config or GeofenceQueueSettings())
    processor._queue = AsyncMock(spec=GeofenceQueueRepository)
    processor._queue.fetch_batch.return_value = []
    processor._queue.cleanup.return_value = 0
    processor._audit = AsyncMock(spec=AuditRepository)
    processor._audit.exists_recent.return_value = False
    processor._tracking = AsyncMock(spec=TrackingService)
    processor._tracking.evaluate_fix.return_value = ([], [])
    processor._notifications = AsyncMock(spec=TrackingNotificationService)
    return processor


def build_tracking(mock_db: AsyncMock, cache: TrackingCache, mock_event_bus: AsyncMock) -> TrackingService:
    """Настоящий TrackingService с замоканными геозонами, правилами и журналом."""
    tracking = TrackingService(mock_db, cache, mock_event_bus, Settings())
    tracking._family_settings = AsyncMock(spec=FamilySettingsRepository)
    tracking._family_settings.get.return_value = FamilyTrackingSettings(family_id=10)
    tracking._geofences = AsyncMock(spec=GeofenceEngine)
    tracking._geofences.evaluate.return_value = []
    tracking._alerts = AsyncMock(spec=AlertsEngine)
    tracking._alerts.evaluate.return_value = []
    tracking._audit = AsyncMock(spec=AuditRepository)
    tracking._notifications = AsyncMock(spec=TrackingNotificationService)
    return tracking


@pytest.fixture
def processor(mock_db: AsyncMock, cache: TrackingCache, mock_event_bus: AsyncMock) -> GeofenceQueueProcessor:
    return build_processor(mock_db, cache, mock_event_bus)


class TestGeofenceQueueProcessor:
    """Тесты для GeofenceQueueProcessor."""

    @pytest.mark.asyncio
    async def test_processed_and_failed(
        self, processor: GeofenceQueueProcessor, mock_db: AsyncMock, cache: TrackingCache, mock_event_bus: AsyncMock,
    ) -> None:
        """
        Ошибка БД при оценке геозон одного элемента помечает его failed
        и не мешает остальным. Оценка идёт через настоящий evaluate_fix.
        """
        processor._tracking = build_tracking(mock_db, cache, mock_event_bus)
        processor._tracking._geofences.evaluate.side_effect = [
            [], asyncpg.PostgresConnectionError("connection lost"), [],
        ]
        processor._queue.fetch_batch.return_value = [make_item(1), make_item(2), make_item(3)]
        processor._queue.cleanup.return_value = 4

        stats = await processor.run()

        assert stats == {"processed": 2, "failed": 1, "cleaned": 4}
        processor._queue.mark_failed.assert_awaited_once_with(2, "connection lost")
        assert [c.args[0] for c in processor._queue.mark_processed.call_args_list] == [1, 3]
        processor._queue.fetch_batch.assert_awaited_once_with(100, 3600)
        processor._queue.cleanup.assert_awaited_once_with(86400, 3600)
        # правила оповещений всё равно оценены для упавшего элемента
        assert processor._tracking._alerts.evaluate.await_count == 3

    @pytest.mark.asyncio
    async def test_partial_geofence_failure_marks_failed(
        self, processor: GeofenceQueueProcessor, mock_db: AsyncMock, cache: TrackingCache, mock_event_bus: AsyncMock,
    ) -> None:
        """Часть зон не оценилась: успешные переходы записаны, элемент уходит на повтор."""
        transition = GeofenceTransition(
            geofence_id=5, geofence_name="Home", user_id=1, family_id=10,
            action=GeofenceAction.ENTER, notify=True,
        )
        processor._tracking = build_tracking(mock_db, cache, mock_event_bus)
        processor._tracking._geofences.evaluate.side_effect = GeofenceEvaluationError(1, [6], [transition])
        processor._queue.fetch_batch.return_value = [make_item(1)]

        stats = await processor.run()

        assert stats["failed"] == 1
        processor._queue.mark_processed.assert_not_called()
        processor._queue.mark_failed.assert_awaited_once()
        processor._tracking._notifications.notify_geofence.assert_awaited_once_with(transition)

    @pytest.mark.asyncio
    async def test_item_is_evaluated_as_fix(self, processor: GeofenceQueueProcessor) -> None:
        processor._queue.fetch_batch.return_value = [make_item(1)]

        await processor.run()

        user_id, family_id, fix = processor._tracking.evaluate_fix.call_args.args
        assert (user_id, family_id, fix.lat, fix.lng) == (1, 10, 50.45, 30.52)
        assert processor._tracking.evaluate_fix.call_args.kwargs == {"raise_errors": True}

    @pytest.mark.asyncio
    async def test_runtime_limit(
        self, mock_db: AsyncMock, cache: TrackingCache, mock_event_bus: AsyncMock,
    ) -> None:
        processor = build_processor(
            mock_db, cache, mock_event_bus, GeofenceQueueSettings(MAX_RUNTIME_S=-1.0),
        )
        processor._queue.fetch_batch.return_value = [make_item(1), make_item(2)]

        stats = await processor.run()

        assert stats["processed"] == 0
        processor._tracking.evaluate_fix.assert_not_called()
        processor._queue.cleanup.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_skipped_when_locked(self, processor: GeofenceQueueProcessor, fake_redis) -> None:
        fake_redis.locks.add("geofence_queue")
        assert await processor.run() is None
        processor._queue.fetch_batch.assert_not_called()

    # --- низкий заряд ---

    @pytest.mark.asyncio
    async def test_low_battery_notifies(self, processor: GeofenceQueueProcessor) -> None:
        processor._queue.fetch_batch.return_value = [make_item(1, battery_level=9)]

        await processor.run()

        processor._audit.log.assert_awaited_once_with(
            10, 1, TrackingEventType.BATTERY_LOW, {"battery_level": 9},
        )
        processor._notifications.notify_battery_low.assert_awaited_once_with(1, 10, 9)

    @pytest.mark.asyncio
    async def test_low_battery_suppressed(self, processor: GeofenceQueueProcessor) -> None:
        processor._queue.fetch_batch.return_value = [make_item(1, battery_level=9)]
        processor._audit.exists_recent.return_value = True

        await processor.run()

        processor._audit.exists_recent.assert_awaited_once_with(1, TrackingEventType.BATTERY_LOW, 3600)
        processor._notifications.notify_battery_low.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("battery_level", [None, 16, 100])
    async def test_battery_ok(self, processor: GeofenceQueueProcessor, battery_level) -> None:
        processor._queue.fetch_batch.return_value = [make_item(1, battery_level=battery_level)]

        await processor.run()

        processor._audit.exists_recent.assert_not_called()
        processor._notifications.notify_battery_low.assert_not_called()


class TestGeofenceQueueWorker:
    """Тесты для GeofenceQueueWorker."""

    @pytest.fixture
    def worker(self, mock_event_bus: AsyncMock, mock_db: AsyncMock, fake_redis) -> GeofenceQueueWorker:
        return GeofenceQueueWorker(event_bus=mock_event_bus, db=mock_db, redis=fake_redis)

    def test_wiring(self, worker: GeofenceQueueWorker) -> None:
        assert worker.subscriptions == [EventTypes.FIX_QUEUED]
        [(interval, job)] = worker.periodic_jobs()
        assert interval == worker.processor.config.RUN_INTERVAL_S
        assert job == worker.processor.run

    @pytest.mark.asyncio
    async def test_event_triggers_run(self, worker: GeofenceQueueWorker) -> None:
        worker.processor.run = AsyncMock(return_value=None)
        await worker.handle_event(DomainEvent(event_type=EventTypes.FIX_QUEUED, payload={"queue_id": 1}))
        worker.processor.run.assert_awaited_once()

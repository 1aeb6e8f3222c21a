# src/worker/geofence_queue.py
"""
Фоновая обработка очереди геозон.

Используется, когда точки не оцениваются при приёме
(INLINE_EVALUATION = false). Один запуск на кластер под lease-блокировкой.
"""

from __future__ import annotations

import asyncio
from typing import List, Optional

from src.common.constants import TrackingEventType, TypeMsg
from src.common.logger import log_error, log_info
from src.config.loader import GeofenceQueueSettings
from src.core.audit.repository import AuditRepository
from src.core.geofences.queue import GeofenceQueueRepository, QueueItem
from src.core.notifications.service import TrackingNotificationService
from src.core.tracking.cache import TrackingCache
from src.core.tracking.service import TrackingService
from src.infra.database import DB_ERRORS, DatabaseManager
from src.infra.event_bus import DomainEvent, EventBus, EventTypes
from src.worker.base import BaseWorker, PeriodicJob, run_with_lease

LOCK_NAME = "geofence_queue"
MAX_ERROR_LENGTH = 500


class GeofenceQueueProcessor:
    """Один проход по очереди: пачка, ограниченная по размеру и времени."""

    def __init__(
        self,
        db: DatabaseManager,
        cache: TrackingCache,
        event_bus: EventBus,
        config: Optional[GeofenceQueueSettings] = None,
    ) -> None:
        if config is None:
            from src.config import settings
            config = settings.geofence_queue
        self.config = config
        self._cache = cache
        self._queue = GeofenceQueueRepository(db)
        self._audit = AuditRepository(db)
        self._tracking = TrackingService(db, cache, event_bus)
        self._notifications = TrackingNotificationService(event_bus)

    async def run(self) -> Optional[dict[str, int]]:
        """
        Обрабатывает очередь под блокировкой.

        Returns:
            Статистика прохода или None, если проход пропущен
        """
        return await run_with_lease(self._cache, LOCK_NAME, self.config.LOCK_TTL_S, self._process)

    async def _process(self) -> dict[str, int]:
        loop = asyncio.get_running_loop()
        started = loop.time()
        stats = {"processed": 0, "failed": 0, "cleaned": 0}

        items: List[QueueItem] = await self._queue.fetch_batch(
            self.config.BATCH_SIZE, self.config.FAILED_RETRY_WINDOW_S,
        )

        for item in items:
            if loop.time() - started > self.config.MAX_RUNTIME_S:
                await log_info(
                    f"Очередь геозон: лимит времени, осталось {len(items) - stats['processed'] - stats['failed']}",
                    type_msg=TypeMsg.WARNING,
                )
                break

            try:
                await self._process_item(item)
            except Exception as e:
                stats["failed"] += 1
                await log_error(f"Ошибка обработки элемента очереди {item.id}: {e}")
                try:
                    await self._queue.mark_failed(item.id, str(e)[:MAX_ERROR_LENGTH])
                except DB_ERRORS as db_error:
                    await log_error(f"Не удалось пометить элемент {item.id} как failed: {db_error}")
                continue

            await self._queue.mark_processed(item.id)
            stats["processed"] += 1

        stats["cleaned"] = await self._queue.cleanup(
            self.config.PROCESSED_RETENTION_S, self.config.FAILED_RETENTION_S,
        )

        if items:
            await log_info(
                f"Очередь геозон: обработано {stats['processed']}, ошибок {stats['failed']}, "
                f"удалено {stats['cleaned']}",
                type_msg=TypeMsg.INFO,
            )
        return stats

    async def _process_item(self, item: QueueItem) -> None:
        """
        Низкий заряд, затем геозоны и правила. Любая ошибка оценки доходит
        до _process, и элемент помечается failed для повтора в окне
        FAILED_RETRY_WINDOW_S. Уже сохранённые переходы при повторе не
        дублируются: состояние пары не меняется второй раз.
        """
        await self._check_battery(item)
        await self._tracking.evaluate_fix(item.user_id, item.family_id, item.to_fix(), raise_errors=True)

    async def _check_battery(self, item: QueueItem) -> None:
        """Низкий заряд: не чаще одного уведомления в LOW_BATTERY_SUPPRESS_S."""
        battery = item.battery_level
        if battery is None or battery > self.config.LOW_BATTERY_PERCENT:
            return

        if await self._audit.exists_recent(
            item.user_id, TrackingEventType.BATTERY_LOW, self.config.LOW_BATTERY_SUPPRESS_S,
        ):
            return

        await self._audit.log(
            item.family_id, item.user_id, TrackingEventType.BATTERY_LOW, {"battery_level": battery},
        )
        await self._notifications.notify_battery_low(item.user_id, item.family_id, battery)


class GeofenceQueueWorker(BaseWorker):
    """
    Будится событием tracking.fix_queued и раз в RUN_INTERVAL_S
    подбирает всё, что осталось в очереди.
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.processor = GeofenceQueueProcessor(self.db, self.cache, self.event_bus)

    @property
    def name(self) -> str:
        return "GeofenceQueueWorker"

    @property
    def subscriptions(self) -> List[str]:
        return [EventTypes.FIX_QUEUED]

    def periodic_jobs(self) -> List[PeriodicJob]:
        return [(self.processor.config.RUN_INTERVAL_S, self.processor.run)]

    async def handle_event(self, event: DomainEvent) -> None:
        await self.processor.run()

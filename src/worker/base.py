# src/worker/base.py
"""
Базовый класс для воркеров.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from redis.exceptions import RedisError

from src.infra.event_bus import EventBus, DomainEvent, get_event_bus
from src.infra.database import DatabaseManager, get_db
from src.infra.redis_client import RedisClient, get_redis
from src.core.tracking.cache import TrackingCache
from src.common.logger import log_info, log_error, log_warning
from src.common.constants import TypeMsg

PeriodicJob = Tuple[float, Callable[[], Awaitable[Any]]]


async def run_with_lease(
    cache: TrackingCache,
    lock_name: str,
    ttl: int,
    job: Callable[[], Awaitable[Any]],
) -> Optional[Any]:
    """
    Выполняет задачу под lease-блокировкой Redis (одна копия на кластер).

    Если блокировка занята или Redis недоступен, запуск пропускается.
    Lease истекает сам, если процесс упал, не освободив его.

    Returns:
        Результат задачи или None, если запуск пропущен
    """
    lock = cache.lock(lock_name, ttl)
    if lock is None:
        await log_warning(f"Задача {lock_name} пропущена: Redis не подключён")
        return None

    try:
        acquired = await lock.acquire()
    except RedisError as e:
        await log_warning(f"Задача {lock_name} пропущена: не удалось взять блокировку ({e})")
        return None

    if not acquired:
        await log_info(f"Задача {lock_name} уже выполняется другим процессом", type_msg=TypeMsg.DEBUG)
        return None

    try:
        return await job()
    finally:
        try:
            await lock.release()
        except RedisError as e:
            await log_warning(f"Блокировка {lock_name} не освобождена (lease истёк?): {e}")


class BaseWorker(ABC):
    """
    Базовый класс для всех воркеров.
    Подписывается на события и/или запускает периодические задачи.
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        db: Optional[DatabaseManager] = None,
        redis: Optional[RedisClient] = None,
    ) -> None:
        """
        Инициализирует воркер.

        Args:
            event_bus: Шина событий
            db: Менеджер БД
            redis: Redis клиент
        """
        self.event_bus = event_bus or get_event_bus()
        self.db = db or get_db()
        self.redis = redis or get_redis()
        self.cache = TrackingCache(self.redis)
        self._running = False
        self._tasks: List[asyncio.Task] = []

    @property
    @abstractmethod
    def name(self) -> str:
        """Имя воркера."""
        pass

    @property
    def subscriptions(self) -> List[str]:
        """Список типов событий для подписки."""
        return []

    def periodic_jobs(self) -> List[PeriodicJob]:
        """Периодические задачи: (интервал в секундах, корутина без аргументов)."""
        return []

    async def handle_event(self, event: DomainEvent) -> None:
        """
        Обрабатывает событие.

        Args:
            event: Доменное событие
        """
        pass

    async def start(self) -> None:
        """Запускает воркер."""
        if self._running:
            return

        self._running = True
        await log_info(f"Воркер {self.name} запускается...", type_msg=TypeMsg.INFO)

        # Подписываемся на события
        for event_type in self.subscriptions:
            await self.event_bus.subscribe(
                event_type=event_type,
                handler=self._on_event,
            )
            await log_info(
                f"Воркер {self.name} подписан на {event_type}",
                type_msg=TypeMsg.DEBUG,
            )

        for interval, job in self.periodic_jobs():
            self._tasks.append(asyncio.create_task(self._run_periodic(interval, job)))

        await log_info(f"Воркер {self.name} запущен", type_msg=TypeMsg.INFO)

    async def stop(self) -> None:
        """Останавливает воркер."""
        if not self._running:
            return

        self._running = False

        # Отменяем все задачи
        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self._tasks.clear()
        await log_info(f"Воркер {self.name} остановлен", type_msg=TypeMsg.INFO)

    async def _run_periodic(self, interval: float, job: Callable[[], Awaitable[Any]]) -> None:
        """Цикл периодической задачи. Ошибка одного запуска не останавливает цикл."""
        job_name = getattr(job, "__name__", repr(job))
        while self._running:
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await log_error(f"Ошибка периодической задачи {self.name}.{job_name}: {e}")
            await asyncio.sleep(interval)

    async def _on_event(self, event: DomainEvent) -> None:
        """
        Обработчик события.

        Args:
            event: Доменное событие
        """
        if not self._running:
            return

        try:
            await log_info(
                f"Воркер {self.name} получил событие {event.event_type}",
                type_msg=TypeMsg.DEBUG,
            )
            await self.handle_event(event)
        except Exception as e:
            await log_error(
                f"Ошибка в воркере {self.name}: {e}",
                extra={"event_type": event.event_type, "payload": event.payload},
            )

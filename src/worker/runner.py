# src/worker/runner.py
"""
Запускалка всех воркеров.
"""

from __future__ import annotations

import asyncio
from typing import List

from src.worker.base import BaseWorker
from src.worker.geofence_queue import GeofenceQueueWorker
from src.worker.maintenance import MaintenanceWorker
from src.infra.database import init_db, close_db
from src.infra.redis_client import init_redis, close_redis
from src.infra.event_bus import init_event_bus, close_event_bus
from src.common.logger import log_info, log_error
from src.common.constants import TypeMsg


async def run_workers(init_infra: bool = True) -> None:
    """
    Запускает фоновые воркеры трекинга.

    Args:
        init_infra: Если True, инициализирует инфраструктуру (БД, Redis, RabbitMQ).
                    При запуске через main.py в режиме all передаётся False,
                    так как инфраструктура уже инициализирована.

    Note:
        WORKER_INSTANCES_COUNT из конфига используется для горизонтального
        масштабирования (количество контейнеров). Задачи с блокировкой
        выполняются одной копией.
    """
    await log_info("Запуск воркеров трекинга...", type_msg=TypeMsg.INFO)

    # Инициализация инфраструктуры (если нужно)
    if init_infra:
        await log_info("Инициализация инфраструктуры для воркеров...", type_msg=TypeMsg.DEBUG)
        await init_db()
        await init_redis()
        await init_event_bus()

    workers: List[BaseWorker] = [
        GeofenceQueueWorker(),
        MaintenanceWorker(),
    ]

    try:
        for worker in workers:
            await worker.start()

        await log_info(
            f"Запущено {len(workers)} воркеров",
            type_msg=TypeMsg.INFO,
        )

        # Ждём завершения (Ctrl+C)
        while True:
            await asyncio.sleep(1)

    except asyncio.CancelledError:
        await log_info("Получен сигнал остановки", type_msg=TypeMsg.INFO)
    except Exception as e:
        await log_error(f"Критическая ошибка: {e}")
    finally:
        for worker in workers:
            await worker.stop()

        if init_infra:
            await close_event_bus()
            await close_redis()
            await close_db()

        await log_info("Воркеры остановлены", type_msg=TypeMsg.INFO)


def main() -> None:
    """Точка входа."""
    try:
        asyncio.run(run_workers())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()

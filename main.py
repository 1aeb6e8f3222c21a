#!/usr/bin/env python3
# main.py
"""
Главная точка входа приложения Family Tracking.
Запускает Tracking API, воркеры или разовый пересчёт геозон.

Использование:
    python main.py [tracking_api|worker|recompute|all]
    python main.py recompute [family_id]
"""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import Optional

from src.config import settings
from src.common.logger import setup_logging, log_info, log_error
from src.common.constants import TypeMsg
from src.infra.database import init_db, close_db
from src.infra.redis_client import init_redis, close_redis
from src.infra.event_bus import init_event_bus, close_event_bus

VALID_MODES = ("tracking_api", "worker", "recompute", "all")

# Глобальный флаг для graceful shutdown
_shutdown_event: asyncio.Event | None = None
_running_tasks: list[asyncio.Task] = []


def setup_signal_handlers() -> None:
    """Настраивает обработчики сигналов для graceful shutdown."""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    def signal_handler(sig: int) -> None:
        """Обработчик сигналов SIGINT и SIGTERM."""
        if _shutdown_event and not _shutdown_event.is_set():
            print(f"\nПолучен сигнал остановки (sig={sig}), завершаем работу...")
            _shutdown_event.set()
            for task in _running_tasks:
                if not task.done():
                    task.cancel()

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
    except NotImplementedError:
        # Windows не поддерживает add_signal_handler
        signal.signal(signal.SIGINT, lambda s, f: signal_handler(s))
        signal.signal(signal.SIGTERM, lambda s, f: signal_handler(s))


async def init_infrastructure() -> None:
    """Инициализирует все подключения к инфраструктуре."""
    await log_info("Инициализация инфраструктуры...", type_msg=TypeMsg.INFO)

    await init_db()
    await init_redis()
    await init_event_bus()

    await log_info("Инфраструктура инициализирована", type_msg=TypeMsg.INFO)


async def close_infrastructure() -> None:
    """Закрывает все подключения."""
    await log_info("Закрытие подключений...", type_msg=TypeMsg.INFO)

    await close_event_bus()
    await close_redis()
    await close_db()

    await log_info("Подключения закрыты", type_msg=TypeMsg.INFO)


async def run_tracking_api() -> None:
    """Запускает Tracking API (uvicorn, инфраструктура поднимается в lifespan)."""
    import uvicorn

    host = settings.deployment.TRACKING_API_HOST
    port = settings.deployment.TRACKING_API_PORT
    await log_info(f"Запуск Tracking API на {host}:{port}...", type_msg=TypeMsg.INFO)

    config = uvicorn.Config(
        "src.services.tracking.app:app",
        host=host,
        port=port,
        log_level="debug" if settings.system.DEBUG else "info",
    )

    server = uvicorn.Server(config)
    try:
        await server.serve()
    except asyncio.CancelledError:
        await log_info("Tracking API: graceful shutdown", type_msg=TypeMsg.DEBUG)
        await server.shutdown()


async def run_worker() -> None:
    """Запускает фоновые воркеры (очередь геозон, обслуживание)."""
    from src.worker.runner import run_workers

    # Инфраструктура уже инициализирована в main()
    await run_workers(init_infra=False)


async def run_recompute(family_id: Optional[int] = None) -> dict[str, int]:
    """Разовый пересчёт состояний геозон."""
    from src.core.tracking.cache import TrackingCache
    from src.infra.database import get_db
    from src.infra.redis_client import get_redis
    from src.worker.recompute import recompute_geofence_states

    scope = f"семьи {family_id}" if family_id is not None else "всех семей"
    await log_info(f"Пересчёт геозон для {scope}...", type_msg=TypeMsg.INFO)

    return await recompute_geofence_states(get_db(), TrackingCache(get_redis()), family_id)


def parse_args(argv: list[str]) -> tuple[str | None, Optional[int]]:
    """
    Разбирает аргументы командной строки.

    Returns:
        (режим или None, family_id для recompute)
    """
    mode = argv[1] if len(argv) > 1 else None
    family_id: Optional[int] = None
    if mode == "recompute" and len(argv) > 2:
        try:
            family_id = int(argv[2])
        except ValueError:
            raise SystemExit(f"family_id должен быть числом: {argv[2]}")
    return mode, family_id


async def main(mode: str | None = None, family_id: Optional[int] = None) -> None:
    """
    Главная функция запуска.

    Args:
        mode: Режим запуска (tracking_api, worker, recompute, all).
              Если None, берётся COMPONENT_MODE из настроек.
        family_id: Семья для recompute (None = все)
    """
    global _running_tasks

    setup_logging()
    setup_signal_handlers()

    if mode is None:
        mode = settings.system.COMPONENT_MODE

    if mode not in VALID_MODES:
        await log_error(f"Неизвестный режим: {mode}. Допустимые: {', '.join(VALID_MODES)}")
        return

    await log_info(
        f"Family Tracking v{settings.system.VERSION} - запуск в режиме '{mode}'",
        type_msg=TypeMsg.INFO,
    )

    # API поднимает инфраструктуру сам в lifespan
    manage_infra = mode != "tracking_api"

    try:
        if manage_infra:
            await init_infrastructure()

        if mode == "tracking_api":
            await run_tracking_api()
        elif mode == "worker":
            await run_worker()
        elif mode == "recompute":
            stats = await run_recompute(family_id)
            print(f"Готово: {stats}")
        elif mode == "all":
            await log_info("Запуск API и воркеров параллельно...", type_msg=TypeMsg.INFO)
            _running_tasks = [
                asyncio.create_task(run_tracking_api()),
                asyncio.create_task(run_worker()),
            ]
            try:
                await asyncio.gather(*_running_tasks, return_exceptions=True)
            except asyncio.CancelledError:
                await log_info("Отмена всех задач...", type_msg=TypeMsg.INFO)
                for task in _running_tasks:
                    if not task.done():
                        task.cancel()
                await asyncio.gather(*_running_tasks, return_exceptions=True)
                raise

    except KeyboardInterrupt:
        await log_info("Получен сигнал остановки (Ctrl+C)", type_msg=TypeMsg.INFO)
    except asyncio.CancelledError:
        await log_info("Задача отменена, выполняется graceful shutdown", type_msg=TypeMsg.INFO)
    except Exception as e:
        await log_error(f"Критическая ошибка: {e}")
        raise
    finally:
        if _running_tasks:
            for task in _running_tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*_running_tasks, return_exceptions=True)
            _running_tasks.clear()

        if manage_infra:
            await close_infrastructure()


if __name__ == "__main__":
    cli_mode, cli_family_id = parse_args(sys.argv)
    try:
        asyncio.run(main(mode=cli_mode, family_id=cli_family_id))
    except KeyboardInterrupt:
        pass

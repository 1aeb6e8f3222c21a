#!/usr/bin/env python3
# entrypoint_tracking_api.py
"""
Entrypoint для Tracking API.

Запуск:
    python entrypoints/entrypoint_tracking_api.py

Порт по умолчанию: 8090
"""

import sys
from pathlib import Path

# Добавляем корневую директорию проекта в путь
project_root = Path(__file__).parent.parent.resolve()
sys.path.insert(0, str(project_root))

import uvicorn

from src.config import settings


def main() -> None:
    """Запустить Tracking API."""
    uvicorn.run(
        "src.services.tracking.app:app",
        host=settings.deployment.TRACKING_API_HOST,
        port=settings.deployment.TRACKING_API_PORT,
        workers=settings.deployment.TRACKING_API_INSTANCES_COUNT,
        log_level=settings.system.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()

# src/services/__init__.py
"""
HTTP сервисы приложения.

Архитектура:
- Сервис - FastAPI-приложение поверх ядра src/core
- PostgreSQL как источник истины
- Redis для кэша, лимитов и блокировок
- RabbitMQ для событий (фоновая очередь геозон, уведомления)

Сервисы:
- tracking: приём координат, сессии, позиции, места, маршруты
"""

__all__: list[str] = []

# src/services/tracking/__init__.py
"""
Tracking API - HTTP сервис семейного трекинга.

Обеспечивает:
- Приём координат устройств
- Управление live-сессиями
- Чтение позиций, истории и журнала событий
- Места семьи и маршруты
"""

# src/core/__init__.py
"""
Доменный слой (Core Domain) подсистемы трекинга.

Подпакеты:
- tracking: приём точек, фильтр качества, дедупликация, лимиты, позиции
- sessions: live-сессии
- geofences: геозоны и их фоновая очередь
- alerts: правила оповещений
- settings, audit, places, geo, notifications: вспомогательные домены
"""

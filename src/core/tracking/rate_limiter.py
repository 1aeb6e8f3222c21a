# src/core/tracking/rate_limiter.py
"""
Ограничение частоты действий пользователя (фиксированное окно 60 секунд).
"""

from __future__ import annotations

from src.common.logger import log_debug
from src.core.tracking.cache import TrackingCache

DEFAULT_MAX_PER_MINUTE = 10


class RateLimiter:
    """
    Счётчик действий на ключе rl:{action}:{user_id}.

    Первый вызов в окне создаёт счётчик с TTL окна. Границы окон не
    сглаживаются. При недоступности Redis всё разрешается.
    """

    def __init__(self, cache: TrackingCache) -> None:
        self._cache = cache

    async def allow(
        self,
        action: str,
        user_id: int,
        max_per_minute: int = DEFAULT_MAX_PER_MINUTE,
    ) -> bool:
        """
        Регистрирует действие и сообщает, укладывается ли оно в лимит.

        Returns:
            True если действие разрешено
        """
        count = await self._cache.incr_rate(action, user_id)
        if count is None:
            return True

        if count > max_per_minute:
            await log_debug(
                f"Лимит '{action}' превышен для пользователя {user_id}: {count}/{max_per_minute}",
            )
            return False
        return True

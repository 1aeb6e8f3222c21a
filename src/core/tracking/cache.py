# src/core/tracking/cache.py
"""
Кэш подсистемы трекинга поверх RedisClient.

Все ключи лежат в namespace клиента (по умолчанию "trk:"), у каждого
семейства ключей свой TTL из settings.tracking_cache.

Кэш никогда не является источником истины: любая ошибка Redis логируется
как предупреждение и превращается в "промах" (fail-open).
"""

from __future__ import annotations

import hashlib
from typing import Any, Optional

from redis.asyncio.lock import Lock
from redis.exceptions import RedisError

from src.common.logger import log_warning
from src.config.loader import TrackingCacheTTLSettings
from src.infra.redis_client import RedisClient

# Ошибки, при которых кэш считается недоступным
CACHE_ERRORS: tuple[type[BaseException], ...] = (RedisError, OSError, RuntimeError)


class TrackingCache:
    """
    Обёртка над RedisClient с именованными семействами ключей.

    Клиент передаётся через конструктор: один общий экземпляр на процесс
    создаётся в точке сборки приложения.
    """

    def __init__(
        self,
        redis: RedisClient,
        ttl: Optional[TrackingCacheTTLSettings] = None,
    ) -> None:
        """
        Args:
            redis: Клиент Redis
            ttl: TTL семейств ключей (по умолчанию из конфигурации)
        """
        if ttl is None:
            from src.config import settings
            ttl = settings.tracking_cache
        self._redis = redis
        self.ttl = ttl

    # =========================================================================
    # КЛЮЧИ
    # =========================================================================

    @staticmethod
    def current_key(user_id: int) -> str:
        return f"cur:{user_id}"

    @staticmethod
    def family_snapshot_key(family_id: int) -> str:
        return f"family_cur:{family_id}"

    @staticmethod
    def live_key(family_id: int) -> str:
        return f"live:{family_id}"

    @staticmethod
    def settings_key(family_id: int) -> str:
        return f"settings:{family_id}"

    @staticmethod
    def rate_limit_key(action: str, user_id: int) -> str:
        return f"rl:{action}:{user_id}"

    @staticmethod
    def dedupe_key(user_id: int) -> str:
        return f"dd:{user_id}"

    @staticmethod
    def session_key(user_id: int) -> str:
        return f"session:{user_id}"

    @staticmethod
    def geofences_key(family_id: int) -> str:
        return f"geo:{family_id}"

    @staticmethod
    def geofence_state_key(family_id: int, user_id: int) -> str:
        return f"geo_state:{family_id}:{user_id}"

    @staticmethod
    def places_key(family_id: int) -> str:
        return f"places:{family_id}"

    @staticmethod
    def directions_key(profile: str, coords: str) -> str:
        digest = hashlib.sha1(coords.encode("utf-8")).hexdigest()
        return f"dir:{profile}:{digest}"

    @staticmethod
    def alert_rules_key(family_id: int) -> str:
        return f"alerts:{family_id}"

    @staticmethod
    def alert_cooldown_key(family_id: int, rule_id: int, user_id: int, target_id: int) -> str:
        return f"alerts_cd:{family_id}:{rule_id}:{user_id}:{target_id}"

    # =========================================================================
    # БАЗОВЫЕ ОПЕРАЦИИ (FAIL-OPEN)
    # =========================================================================

    async def get_json(self, key: str) -> Any:
        """Читает JSON значение. При недоступности Redis возвращает None."""
        try:
            return await self._redis.get_json(key)
        except CACHE_ERRORS as e:
            await log_warning(f"Кэш недоступен (get {key}): {e}")
            return None

    async def set_json(self, key: str, data: Any, ttl: int) -> bool:
        """Записывает JSON значение с TTL. При недоступности Redis возвращает False."""
        try:
            return await self._redis.set_json(key, data, ttl=ttl)
        except CACHE_ERRORS as e:
            await log_warning(f"Кэш недоступен (set {key}): {e}")
            return False

    async def delete(self, *keys: str) -> int:
        """Удаляет ключи. Ошибки Redis игнорируются с предупреждением."""
        try:
            return await self._redis.delete(*keys)
        except CACHE_ERRORS as e:
            await log_warning(f"Кэш недоступен (delete {', '.join(keys)}): {e}")
            return 0

    async def set_once(self, key: str, ttl: int) -> bool:
        """
        Атомарно ставит маркер, если его ещё нет (SET NX EX).

        Returns:
            True если маркер поставлен этим вызовом. При недоступности
            Redis тоже True: повторное действие безопаснее пропущенного.
        """
        try:
            return await self._redis.set(key, "1", ttl=ttl, nx=True)
        except CACHE_ERRORS as e:
            await log_warning(f"Кэш недоступен (set nx {key}): {e}")
            return True

    async def incr_window(self, key: str, window: int) -> Optional[int]:
        """
        Увеличивает счётчик фиксированного окна.

        Returns:
            Значение счётчика или None, если Redis недоступен
        """
        try:
            return await self._redis.incr_window(key, window)
        except CACHE_ERRORS as e:
            await log_warning(f"Кэш недоступен (incr {key}): {e}")
            return None

    def lock(self, name: str, ttl: int) -> Optional[Lock]:
        """Возвращает lease-блокировку или None, если клиент не подключён."""
        try:
            return self._redis.lock(name, ttl)
        except CACHE_ERRORS:
            return None

    # =========================================================================
    # ИМЕНОВАННЫЕ СЕМЕЙСТВА
    # =========================================================================

    async def get_current(self, user_id: int) -> Optional[dict[str, Any]]:
        return await self.get_json(self.current_key(user_id))

    async def set_current(self, user_id: int, data: dict[str, Any]) -> bool:
        return await self.set_json(self.current_key(user_id), data, self.ttl.CURRENT_TTL)

    async def get_family_snapshot(self, family_id: int) -> Optional[list[dict[str, Any]]]:
        return await self.get_json(self.family_snapshot_key(family_id))

    async def set_family_snapshot(self, family_id: int, data: list[dict[str, Any]]) -> bool:
        return await self.set_json(
            self.family_snapshot_key(family_id), data, self.ttl.FAMILY_SNAPSHOT_TTL,
        )

    async def invalidate_family_snapshot(self, family_id: int) -> None:
        await self.delete(self.family_snapshot_key(family_id))

    async def get_session_flag(self, user_id: int) -> Optional[bool]:
        """
        Флаг активной сессии.

        Returns:
            True/False из кэша или None при промахе
        """
        value = await self.get_json(self.session_key(user_id))
        if value is None:
            return None
        return bool(value)

    async def set_session_flag(self, user_id: int, active: bool) -> bool:
        return await self.set_json(
            self.session_key(user_id), 1 if active else 0, self.ttl.SESSION_LIVENESS_TTL,
        )

    async def clear_session_flag(self, user_id: int) -> None:
        await self.delete(self.session_key(user_id))

    async def get_dedupe(self, user_id: int) -> Optional[dict[str, Any]]:
        return await self.get_json(self.dedupe_key(user_id))

    async def set_dedupe(self, user_id: int, data: dict[str, Any]) -> bool:
        return await self.set_json(self.dedupe_key(user_id), data, self.ttl.DEDUPE_TTL)

    async def incr_rate(self, action: str, user_id: int) -> Optional[int]:
        return await self.incr_window(
            self.rate_limit_key(action, user_id), self.ttl.RATE_LIMIT_WINDOW,
        )

    async def invalidate_geofences(self, family_id: int) -> None:
        await self.delete(self.geofences_key(family_id))

    async def invalidate_geofence_state(self, family_id: int, user_ids: list[int]) -> None:
        if user_ids:
            await self.delete(*(self.geofence_state_key(family_id, uid) for uid in user_ids))

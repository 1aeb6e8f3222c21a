# src/infra/redis_client.py
"""
Клиент Redis для кэширования, счётчиков и распределённых блокировок.
Значения хранятся строками и JSON.
"""

from __future__ import annotations

import json
from typing import Any

import redis.asyncio as redis
from redis.asyncio.lock import Lock

from src.common.logger import log_error, log_info
from src.common.constants import TypeMsg


class RedisClient:
    """
    Асинхронный клиент Redis.
    Поддерживает:
    - get/set строк и JSON
    - Счётчики с фиксированным окном (rate limiting)
    - Lease-блокировки с TTL для фоновых задач

    Экземпляр создаётся в точке сборки приложения и передаётся
    компонентам через конструктор.
    """

    def __init__(self, namespace: str = "trk") -> None:
        self._client: redis.Redis | None = None
        self._namespace = namespace

    @property
    def client(self) -> redis.Redis:
        """Возвращает клиент Redis."""
        if self._client is None:
            raise RuntimeError("Redis клиент не инициализирован. Вызовите connect() сначала.")
        return self._client

    @property
    def is_connected(self) -> bool:
        """Установлено ли соединение."""
        return self._client is not None

    def _make_key(self, key: str) -> str:
        """Добавляет namespace к ключу."""
        return f"{self._namespace}:{key}"

    async def connect(
        self,
        url: str | None = None,
        max_connections: int = 50,
        socket_timeout: float | None = None,
    ) -> None:
        """
        Подключается к Redis.

        Args:
            url: URL Redis (если None, берётся из конфига)
            max_connections: Максимальное количество соединений
            socket_timeout: Таймаут операций (секунды)
        """
        if self._client is not None:
            return

        if url is None:
            from src.config import settings
            url = settings.redis.url
            max_connections = settings.redis.REDIS_MAX_CONNECTIONS
            socket_timeout = settings.redis.REDIS_SOCKET_TIMEOUT
            self._namespace = settings.redis.REDIS_NAMESPACE

        await log_info("Подключение к Redis...", type_msg=TypeMsg.INFO)

        self._client = redis.from_url(
            url,
            max_connections=max_connections,
            socket_timeout=socket_timeout,
            decode_responses=True,
        )

        await self._client.ping()

        await log_info("Подключение к Redis установлено", type_msg=TypeMsg.INFO)

    async def disconnect(self) -> None:
        """Закрывает соединение с Redis."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            await log_info("Соединение с Redis закрыто", type_msg=TypeMsg.INFO)

    # =========================================================================
    # БАЗОВЫЕ ОПЕРАЦИИ
    # =========================================================================

    async def get(self, key: str) -> str | None:
        """Получает значение по ключу."""
        return await self.client.get(self._make_key(key))

    async def set(
        self,
        key: str,
        value: str,
        ttl: int | None = None,
        nx: bool = False,
    ) -> bool:
        """
        Устанавливает значение.

        Args:
            key: Ключ
            value: Значение
            ttl: Время жизни в секундах
            nx: Записать только если ключа ещё нет

        Returns:
            True если значение записано
        """
        result = await self.client.set(
            self._make_key(key),
            value,
            ex=ttl,
            nx=nx,
        )
        return bool(result)

    async def delete(self, *keys: str) -> int:
        """Удаляет ключи."""
        if not keys:
            return 0
        return await self.client.delete(*(self._make_key(k) for k in keys))

    async def exists(self, key: str) -> bool:
        """Проверяет существование ключа."""
        return await self.client.exists(self._make_key(key)) > 0

    async def expire(self, key: str, ttl: int) -> bool:
        """Устанавливает TTL для ключа."""
        return await self.client.expire(self._make_key(key), ttl)

    async def ttl(self, key: str) -> int:
        """Возвращает оставшееся время жизни ключа."""
        return await self.client.ttl(self._make_key(key))

    # =========================================================================
    # СЧЁТЧИКИ
    # =========================================================================

    async def incr_window(self, key: str, window: int) -> int:
        """
        Атомарно увеличивает счётчик фиксированного окна.

        Первый вызов в окне создаёт ключ со значением 0 и TTL=window,
        затем INCR. INCR не сбрасывает TTL, поэтому окно заканчивается
        ровно через window секунд после первого вызова.

        Args:
            key: Ключ счётчика
            window: Длина окна в секундах

        Returns:
            Значение счётчика после увеличения
        """
        full_key = self._make_key(key)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.set(full_key, 0, ex=window, nx=True)
            pipe.incr(full_key)
            _, count = await pipe.execute()
        return int(count)

    # =========================================================================
    # БЛОКИРОВКИ
    # =========================================================================

    def lock(self, name: str, ttl: int) -> Lock:
        """
        Возвращает lease-блокировку с ограниченным временем жизни.

        Блокировка освобождается сама по истечении ttl, если владелец упал.
        Освобождение проверяет токен владельца.

        Args:
            name: Имя блокировки
            ttl: Время жизни lease в секундах
        """
        return self.client.lock(
            self._make_key(f"lock:{name}"),
            timeout=ttl,
            blocking=False,
        )

    # =========================================================================
    # JSON ОПЕРАЦИИ
    # =========================================================================

    async def get_json(self, key: str) -> Any:
        """Получает и парсит JSON."""
        data = await self.get(key)
        if data is None:
            return None

        try:
            return json.loads(data)
        except json.JSONDecodeError:
            return None

    async def set_json(
        self,
        key: str,
        data: Any,
        ttl: int | None = None,
    ) -> bool:
        """Сериализует и сохраняет JSON."""
        return await self.set(key, json.dumps(data, ensure_ascii=False, default=str), ttl=ttl)

    # =========================================================================
    # HEALTH CHECK
    # =========================================================================

    async def health_check(self) -> bool:
        """
        Проверяет здоровье подключения к Redis.

        Returns:
            True если подключение работает
        """
        try:
            return await self.client.ping()
        except Exception as e:
            await log_error(f"Health check Redis failed: {e}")
            return False


# Экземпляр процесса (создаётся в точке сборки)
_redis_client: RedisClient | None = None


def get_redis() -> RedisClient:
    """
    Возвращает экземпляр RedisClient процесса.

    Returns:
        RedisClient
    """
    global _redis_client
    if _redis_client is None:
        _redis_client = RedisClient()
    return _redis_client


async def init_redis() -> RedisClient:
    """
    Инициализирует подключение к Redis.
    Использует настройки из конфигурации.
    """
    from src.config import settings

    redis_client = get_redis()
    redis_client._namespace = settings.redis.REDIS_NAMESPACE
    await redis_client.connect(
        url=settings.redis.url,
        max_connections=settings.redis.REDIS_MAX_CONNECTIONS,
        socket_timeout=settings.redis.REDIS_SOCKET_TIMEOUT,
    )
    await log_info(
        f"Redis подключён: {settings.redis.REDIS_HOST}:{settings.redis.REDIS_PORT}/{settings.redis.REDIS_DB}",
        type_msg=TypeMsg.INFO,
    )
    return redis_client


async def close_redis() -> None:
    """Закрывает подключение к Redis."""
    redis_client = get_redis()
    await redis_client.disconnect()
    await log_info("Redis отключён", type_msg=TypeMsg.INFO)

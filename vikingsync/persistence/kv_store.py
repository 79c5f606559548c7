from __future__ import annotations

import logging
from typing import Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vikingsync.core.config import Settings
from vikingsync.core.errors import StorageFull
from vikingsync.domain.models import KeyValueEntry


logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def keys(self, prefix: str) -> list[str]: ...


def _escape_like(prefix: str) -> str:
    return prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SqlKeyValueStore:
    """Hot tier stored in the local database next to the normalized tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, key: str) -> str | None:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(KeyValueEntry.value).where(KeyValueEntry.key == key))
                return result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            logger.warning("kv_read_failed key=%s error=%s", key, exc)
            return None

    async def set(self, key: str, value: str) -> None:
        try:
            async with self._session_factory() as session:
                await session.merge(KeyValueEntry(key=key, value=value))
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error("kv_write_failed key=%s", key, exc_info=exc)
            raise StorageFull(f"Failed to persist cache key {key}: {exc}") from exc

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        async with self._session_factory() as session:
            result = await session.execute(delete(KeyValueEntry).where(KeyValueEntry.key.in_(keys)))
            await session.commit()
            return int(result.rowcount or 0)

    async def keys(self, prefix: str) -> list[str]:
        stmt = select(KeyValueEntry.key).where(KeyValueEntry.key.like(f"{_escape_like(prefix)}%", escape="\\"))
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return sorted(result.scalars().all())
        except SQLAlchemyError as exc:
            logger.warning("kv_scan_failed prefix=%s error=%s", prefix, exc)
            return []


class RedisKeyValueStore:
    """Hot tier shared through Redis when several processes sync the same account."""

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def get(self, key: str) -> str | None:
        try:
            value = await self._redis.get(key)
        except RedisError as exc:
            logger.warning("kv_read_failed key=%s error=%s", key, exc)
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str) -> None:
        try:
            await self._redis.set(key, value)
        except RedisError as exc:
            logger.error("kv_write_failed key=%s", key, exc_info=exc)
            raise StorageFull(f"Failed to persist cache key {key}: {exc}") from exc

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._redis.delete(*keys))

    async def keys(self, prefix: str) -> list[str]:
        found: list[str] = []
        try:
            async for key in self._redis.scan_iter(match=f"{prefix}*"):
                found.append(key.decode("utf-8") if isinstance(key, bytes) else key)
        except RedisError as exc:
            logger.warning("kv_scan_failed prefix=%s error=%s", prefix, exc)
            return []
        return sorted(found)


def build_kv_store(settings: Settings, session_factory: async_sessionmaker[AsyncSession]) -> KeyValueStore:
    if settings.cache_backend == "redis":
        redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        return RedisKeyValueStore(redis)
    return SqlKeyValueStore(session_factory)

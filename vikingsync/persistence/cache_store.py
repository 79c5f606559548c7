from __future__ import annotations

import enum
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from vikingsync.core.config import Settings
from vikingsync.core.errors import InvalidData
from vikingsync.persistence.kv_store import KeyValueStore
from vikingsync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

CACHE_TIMESTAMP_FIELD = "_cacheTimestamp"
KEY_PREFIX = "viking_"
KEY_SUFFIX = "_offline"
DEMO_PREFIX = "demo_"


class CacheCategory(str, enum.Enum):
    FLEXI_LIST = "flexi_lists"
    FLEXI_STRUCTURE = "flexi_structure"
    FLEXI_DATA = "flexi_data"
    EVENTS = "events"
    ATTENDANCE = "attendance"
    SHARED_ATTENDANCE = "shared_attendance"
    SHARED_METADATA = "shared_metadata"
    MEMBERS = "members"
    TERMS = "terms"
    USER_ROLES = "user_roles"
    STARTUP_DATA = "startup_data"


# Zero TTL means "refresh whenever online"; the entry still serves offline and stale fallbacks.
_TTL_SETTINGS: dict[CacheCategory, str | None] = {
    CacheCategory.FLEXI_LIST: "ttl_flexi_list_s",
    CacheCategory.FLEXI_STRUCTURE: "ttl_flexi_structure_s",
    CacheCategory.FLEXI_DATA: "ttl_flexi_data_s",
    CacheCategory.EVENTS: "ttl_events_s",
    CacheCategory.ATTENDANCE: None,
    CacheCategory.SHARED_ATTENDANCE: "ttl_shared_attendance_s",
    CacheCategory.SHARED_METADATA: None,
    CacheCategory.MEMBERS: "ttl_members_s",
    CacheCategory.TERMS: "ttl_terms_s",
    CacheCategory.USER_ROLES: None,
    CacheCategory.STARTUP_DATA: None,
}


def ttls_from_settings(settings: Settings) -> dict[CacheCategory, int]:
    return {
        category: int(getattr(settings, name)) if name else 0
        for category, name in _TTL_SETTINGS.items()
    }


@dataclass(frozen=True)
class CacheEntry:
    key: str
    payload: dict[str, Any]
    timestamp_ms: int

    def age_s(self, now_ms: int) -> float:
        return max(0.0, (now_ms - self.timestamp_ms) / 1000.0)

    @property
    def items(self) -> list[Any]:
        items = self.payload.get("items")
        return list(items) if isinstance(items, list) else []

    def data(self) -> dict[str, Any]:
        return {k: v for k, v in self.payload.items() if k != CACHE_TIMESTAMP_FIELD}


class CacheStore:
    """Keyed JSON documents stamped with _cacheTimestamp, with per-category TTLs."""

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        demo_mode: bool = False,
        ttls: dict[CacheCategory, int] | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._kv = kv
        self._demo_mode = demo_mode
        self._ttls = {category: 0 for category in CacheCategory}
        self._ttls.update(ttls or {})
        self._time = time_source or time.time

    @classmethod
    def from_settings(cls, kv: KeyValueStore, settings: Settings, **kwargs: Any) -> "CacheStore":
        return cls(kv, demo_mode=settings.demo_mode, ttls=ttls_from_settings(settings), **kwargs)

    @property
    def demo_mode(self) -> bool:
        return self._demo_mode

    def now_ms(self) -> int:
        return int(self._time() * 1000)

    def ttl_s(self, category: CacheCategory) -> int:
        return self._ttls[category]

    def key(self, category: CacheCategory, *ids: Any) -> str:
        parts = [str(part) for part in ids]
        body = "_".join([category.value, *parts])
        key = f"{KEY_PREFIX}{body}{KEY_SUFFIX}"
        return f"{DEMO_PREFIX}{key}" if self._demo_mode else key

    async def read(self, category: CacheCategory, *ids: Any) -> CacheEntry | None:
        return await self.read_key(self.key(category, *ids))

    async def read_key(self, key: str) -> CacheEntry | None:
        # Missing or unreadable entries are a cache miss, never an exception.
        raw = await self._kv.get(key)
        if raw is None:
            return None
        try:
            payload = json.loads(raw)
        except ValueError:
            logger.warning("cache_entry_corrupt key=%s", key)
            increment_counter("cache_corrupt_total")
            return None
        if not isinstance(payload, dict):
            payload = {"items": payload} if isinstance(payload, list) else {"value": payload}
        stamp = payload.get(CACHE_TIMESTAMP_FIELD)
        timestamp_ms = int(stamp) if isinstance(stamp, (int, float)) else 0
        return CacheEntry(key=key, payload=payload, timestamp_ms=timestamp_ms)

    def is_fresh(self, entry: CacheEntry, category: CacheCategory) -> bool:
        ttl = self.ttl_s(category)
        if ttl <= 0 or entry.timestamp_ms <= 0:
            return False
        return entry.age_s(self.now_ms()) < ttl

    async def read_fresh(self, category: CacheCategory, *ids: Any) -> CacheEntry | None:
        entry = await self.read(category, *ids)
        if entry is None or not self.is_fresh(entry, category):
            return None
        increment_counter(f"cache_hit_total.{category.value}")
        return entry

    async def write(self, category: CacheCategory, ids: tuple[Any, ...], payload: dict[str, Any] | list[Any]) -> CacheEntry:
        return await self.write_key(self.key(category, *ids), payload)

    async def write_key(self, key: str, payload: dict[str, Any] | list[Any]) -> CacheEntry:
        document = {"items": list(payload)} if isinstance(payload, list) else dict(payload)
        document[CACHE_TIMESTAMP_FIELD] = self.now_ms()
        try:
            encoded = json.dumps(document)
        except (TypeError, ValueError) as exc:
            raise InvalidData(f"Cache payload for {key} is not JSON serialisable: {exc}") from exc
        await self._kv.set(key, encoded)
        increment_counter("cache_write_total")
        return CacheEntry(key=key, payload=document, timestamp_ms=document[CACHE_TIMESTAMP_FIELD])

    async def patch(
        self,
        category: CacheCategory,
        ids: tuple[Any, ...],
        mutate: Callable[[dict[str, Any]], None],
    ) -> CacheEntry | None:
        # Patch in place and re-stamp; a missing entry stays missing.
        entry = await self.read(category, *ids)
        if entry is None:
            return None
        document = entry.data()
        mutate(document)
        return await self.write_key(entry.key, document)

    async def invalidate(self, category: CacheCategory, *ids: Any) -> None:
        await self._kv.delete(self.key(category, *ids))

    async def keys(self, category: CacheCategory | None = None) -> list[str]:
        prefix = f"{KEY_PREFIX}{category.value}" if category else KEY_PREFIX
        if self._demo_mode:
            prefix = f"{DEMO_PREFIX}{prefix}"
        return await self._kv.keys(prefix)

    async def clear_flexi(self) -> int:
        prefix = f"{KEY_PREFIX}flexi_"
        keys = await self._kv.keys(prefix) + await self._kv.keys(f"{DEMO_PREFIX}{prefix}")
        removed = await self._kv.delete(*keys)
        logger.info("cache_flexi_cleared removed=%s", removed)
        return removed

    async def clear_all(self) -> int:
        keys = await self._kv.keys(KEY_PREFIX) + await self._kv.keys(f"{DEMO_PREFIX}{KEY_PREFIX}")
        removed = await self._kv.delete(*keys)
        logger.info("cache_cleared removed=%s", removed)
        return removed

from __future__ import annotations

import pytest

from vikingsync.core.errors import InvalidData
from vikingsync.persistence.cache_store import CACHE_TIMESTAMP_FIELD, CacheCategory, CacheStore
from vikingsync.services.telemetry import get_counter
from vikingsync.tests.utils.fake_osm import Clock


class MemoryKeyValueStore:
    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    async def keys(self, prefix: str) -> list[str]:
        return sorted(key for key in self.data if key.startswith(prefix))


def _store(clock: Clock, **kwargs) -> tuple[CacheStore, MemoryKeyValueStore]:
    kv = MemoryKeyValueStore()
    ttls = {CacheCategory.EVENTS: 600, CacheCategory.FLEXI_DATA: 300}
    return CacheStore(kv, ttls=ttls, time_source=clock, **kwargs), kv


def test_key_format() -> None:
    store, _ = _store(Clock())
    assert store.key(CacheCategory.EVENTS, "123") == "viking_events_123_offline"
    assert store.key(CacheCategory.FLEXI_DATA, "9", "1", "t1") == "viking_flexi_data_9_1_t1_offline"
    assert store.key(CacheCategory.USER_ROLES) == "viking_user_roles_offline"

    demo, _ = _store(Clock(), demo_mode=True)
    assert demo.key(CacheCategory.EVENTS, "123") == "demo_viking_events_123_offline"


@pytest.mark.asyncio
async def test_write_stamps_and_freshness_follows_ttl() -> None:
    clock = Clock()
    store, kv = _store(clock)
    await store.write(CacheCategory.EVENTS, ("123",), {"termid": "456", "items": [{"eventid": "1"}]})

    entry = await store.read(CacheCategory.EVENTS, "123")
    assert entry is not None
    assert entry.timestamp_ms == int(clock.now * 1000)
    assert entry.items == [{"eventid": "1"}]
    assert CACHE_TIMESTAMP_FIELD not in entry.data()
    assert CACHE_TIMESTAMP_FIELD in kv.data["viking_events_123_offline"]

    clock.advance(599)
    assert await store.read_fresh(CacheCategory.EVENTS, "123") is not None
    assert get_counter("cache_hit_total.events") == 1
    clock.advance(2)
    assert await store.read_fresh(CacheCategory.EVENTS, "123") is None
    # Stale entries are still readable for offline fallbacks.
    assert await store.read(CacheCategory.EVENTS, "123") is not None


@pytest.mark.asyncio
async def test_zero_ttl_is_never_fresh() -> None:
    store, _ = _store(Clock())
    await store.write(CacheCategory.USER_ROLES, (), [{"sectionid": 1}])
    entry = await store.read(CacheCategory.USER_ROLES)
    assert entry is not None
    assert entry.items == [{"sectionid": 1}]
    assert not store.is_fresh(entry, CacheCategory.USER_ROLES)


@pytest.mark.asyncio
async def test_corrupt_entry_is_a_miss() -> None:
    store, kv = _store(Clock())
    kv.data["viking_events_1_offline"] = "{broken"
    assert await store.read(CacheCategory.EVENTS, "1") is None
    assert get_counter("cache_corrupt_total") == 1


@pytest.mark.asyncio
async def test_unserialisable_payload_is_rejected() -> None:
    store, kv = _store(Clock())
    with pytest.raises(InvalidData):
        await store.write(CacheCategory.EVENTS, ("1",), {"items": [object()]})
    assert kv.data == {}


@pytest.mark.asyncio
async def test_patch_restamps_and_missing_stays_missing() -> None:
    clock = Clock()
    store, _ = _store(clock)
    await store.write(CacheCategory.FLEXI_DATA, ("9", "1", "t1"), {"items": [{"scoutid": "1", "f_1": "a"}]})
    clock.advance(100)

    def _mutate(document: dict) -> None:
        document["items"][0]["f_1"] = "b"

    patched = await store.patch(CacheCategory.FLEXI_DATA, ("9", "1", "t1"), _mutate)
    assert patched is not None
    assert patched.timestamp_ms == int(clock.now * 1000)
    entry = await store.read(CacheCategory.FLEXI_DATA, "9", "1", "t1")
    assert entry.items[0]["f_1"] == "b"
    assert await store.patch(CacheCategory.FLEXI_DATA, ("9", "2", "t1"), _mutate) is None


@pytest.mark.asyncio
async def test_clear_scopes() -> None:
    store, kv = _store(Clock())
    await store.write(CacheCategory.FLEXI_LIST, ("1",), {"items": []})
    await store.write(CacheCategory.FLEXI_STRUCTURE, ("9",), {"name": "x"})
    await store.write(CacheCategory.EVENTS, ("1",), {"items": []})
    kv.data["demo_viking_events_1_offline"] = "{}"
    kv.data["unrelated"] = "keep"

    assert await store.keys(CacheCategory.EVENTS) == ["viking_events_1_offline"]
    assert await store.clear_flexi() == 2
    assert await store.keys() == ["viking_events_1_offline"]

    assert await store.clear_all() == 2
    assert kv.data == {"unrelated": "keep"}


@pytest.mark.asyncio
async def test_invalidate_removes_one_key() -> None:
    store, kv = _store(Clock())
    await store.write(CacheCategory.EVENTS, ("1",), {"items": []})
    await store.write(CacheCategory.EVENTS, ("2",), {"items": []})
    await store.invalidate(CacheCategory.EVENTS, "1")
    assert sorted(kv.data) == ["viking_events_2_offline"]

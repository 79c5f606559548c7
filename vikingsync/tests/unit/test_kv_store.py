from __future__ import annotations

import fnmatch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from vikingsync.core.config import Settings
from vikingsync.core.errors import StorageFull
from vikingsync.persistence.db import build_engine, build_session_factory, init_models
from vikingsync.persistence.kv_store import RedisKeyValueStore, SqlKeyValueStore, build_kv_store


class StubRedis:
    def __init__(self, *, fail_writes: bool = False, fail_reads: bool = False) -> None:
        self.store: dict[str, str] = {}
        self.fail_writes = fail_writes
        self.fail_reads = fail_reads

    async def get(self, key: str) -> bytes | None:
        if self.fail_reads:
            raise RedisConnectionError("redis down")
        value = self.store.get(key)
        return value.encode("utf-8") if value is not None else None

    async def set(self, key: str, value: str) -> None:
        if self.fail_writes:
            raise RedisConnectionError("redis down")
        self.store[key] = value

    async def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self.store.pop(key, None) is not None)

    async def scan_iter(self, match: str):
        if self.fail_reads:
            raise RedisConnectionError("redis down")
        for key in list(self.store):
            if fnmatch.fnmatchcase(key, match):
                yield key.encode("utf-8")


@pytest.mark.asyncio
async def test_sql_store_round_trip_and_literal_prefix(tmp_path) -> None:
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'kv.db'}")
    await init_models(engine)
    store = SqlKeyValueStore(build_session_factory(engine))
    try:
        await store.set("viking_events_1_offline", '{"a": 1}')
        await store.set("viking_events_1_offline", '{"a": 2}')
        await store.set("vikingXevents_2_offline", "{}")
        await store.set("demo_viking_events_1_offline", "{}")

        assert await store.get("viking_events_1_offline") == '{"a": 2}'
        assert await store.get("missing") is None
        # "_" is literal, not a LIKE wildcard.
        assert await store.keys("viking_") == ["viking_events_1_offline"]
        assert await store.delete("viking_events_1_offline", "missing") == 1
        assert await store.delete() == 0
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_redis_store_decodes_and_scans() -> None:
    redis = StubRedis()
    store = RedisKeyValueStore(redis)  # type: ignore[arg-type]
    await store.set("viking_terms_offline", "{}")
    await store.set("other", "{}")

    assert await store.get("viking_terms_offline") == "{}"
    assert await store.keys("viking_") == ["viking_terms_offline"]
    assert await store.delete("viking_terms_offline") == 1


@pytest.mark.asyncio
async def test_redis_write_failure_is_storage_full() -> None:
    store = RedisKeyValueStore(StubRedis(fail_writes=True))  # type: ignore[arg-type]
    with pytest.raises(StorageFull):
        await store.set("k", "v")


@pytest.mark.asyncio
async def test_redis_read_failure_is_a_miss() -> None:
    redis = StubRedis()
    store = RedisKeyValueStore(redis)  # type: ignore[arg-type]
    await store.set("viking_terms_offline", "{}")
    redis.fail_reads = True

    assert await store.get("viking_terms_offline") is None
    assert await store.keys("viking_") == []


@pytest.mark.asyncio
async def test_sql_read_failure_is_a_miss(tmp_path) -> None:
    # No tables created: every query fails inside the database driver.
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'kv.db'}")
    store = SqlKeyValueStore(build_session_factory(engine))
    try:
        assert await store.get("viking_events_1_offline") is None
        assert await store.keys("viking_") == []
    finally:
        await engine.dispose()

def test_backend_selection(tmp_path) -> None:
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'kv.db'}")
    factory = build_session_factory(engine)
    assert isinstance(build_kv_store(Settings(_env_file=None), factory), SqlKeyValueStore)
    assert isinstance(build_kv_store(Settings(_env_file=None, cache_backend="redis"), factory), RedisKeyValueStore)

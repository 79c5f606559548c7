from __future__ import annotations

from typing import AsyncIterator, Iterator

import httpx
import pytest

from vikingsync.core.config import Settings, get_settings
from vikingsync.services.client import OsmClient, create_client
from vikingsync.services.telemetry import reset_telemetry
from vikingsync.tests.utils.fake_osm import Clock, FakeOsm


TEST_TOKEN = "test-token"


@pytest.fixture(autouse=True)
def reset_process_state() -> Iterator[None]:
    # Counters and cached settings are process-wide; keep tests independent.
    reset_telemetry()
    get_settings.cache_clear()
    yield
    reset_telemetry()
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path) -> Settings:
    # Fast pacing so queue and bulk-clear tests stay quick; one sqlite file per test.
    return Settings(
        _env_file=None,
        backend_url="http://osm.test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'vikingsync.db'}",
        queue_base_delay_ms=10,
        queue_max_delay_ms=2000,
        queue_success_gap_ms=0,
        queue_resume_padding_ms=0,
        sign_in_clear_gap_ms=20,
        network_probe_interval_s=0,
    )


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def fake_osm() -> FakeOsm:
    return FakeOsm()


@pytest.fixture
def connectivity() -> dict[str, bool]:
    return {"online": True}


@pytest.fixture
async def client(
    settings: Settings,
    fake_osm: FakeOsm,
    clock: Clock,
    connectivity: dict[str, bool],
) -> AsyncIterator[OsmClient]:
    async def probe() -> bool:
        return connectivity["online"]

    http = httpx.AsyncClient(transport=fake_osm.transport())
    osm = await create_client(settings, http_client=http, probe=probe, time_source=clock)
    osm.auth_gate.set_token(TEST_TOKEN)
    yield osm
    await osm.aclose()

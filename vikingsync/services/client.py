from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from vikingsync.core.config import Settings, get_settings
from vikingsync.persistence.cache_store import CacheStore
from vikingsync.persistence.db import build_engine, build_session_factory, init_models
from vikingsync.persistence.kv_store import build_kv_store
from vikingsync.providers.osm_client import OsmHttpAdapter
from vikingsync.services.auth_gate import AuthGate
from vikingsync.services.network import NetworkMonitor, Probe, http_health_probe
from vikingsync.services.rate_limit_queue import QueueConfig, RateLimitQueue


logger = logging.getLogger(__name__)


@dataclass
class OsmClient:
    """Everything a fetcher, mutation or cascade needs, passed explicitly."""

    settings: Settings
    network: NetworkMonitor
    auth_gate: AuthGate
    queue: RateLimitQueue
    http: OsmHttpAdapter
    cache: CacheStore
    session_factory: async_sessionmaker[AsyncSession]
    engine: AsyncEngine | None = None

    @property
    def demo_mode(self) -> bool:
        return self.settings.demo_mode

    def resolve_token(self, token: str | None = None) -> str | None:
        return token if token is not None else self.auth_gate.get_token()

    async def aclose(self) -> None:
        self.queue.clear("client closed")
        await self.http.aclose()
        if self.engine is not None:
            await self.engine.dispose()


async def create_client(
    settings: Settings | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
    probe: Probe | None = None,
    time_source: Callable[[], float] | None = None,
    on_auth_error: Callable[[int], None] | None = None,
) -> OsmClient:
    settings = settings or get_settings()
    engine = build_engine(settings.database_url)
    await init_models(engine)
    session_factory = build_session_factory(engine)

    auth_gate = AuthGate(demo_mode=settings.demo_mode, on_auth_error=on_auth_error, time_source=time_source)
    queue = RateLimitQueue(QueueConfig.from_settings(settings))
    http = OsmHttpAdapter(auth_gate=auth_gate, queue=queue, settings=settings, client=http_client)
    network = NetworkMonitor(
        probe or http_health_probe(settings.backend_url, client=http_client),
        probe_interval_s=settings.network_probe_interval_s,
    )
    cache = CacheStore.from_settings(
        build_kv_store(settings, session_factory),
        settings,
        time_source=time_source or time.time,
    )
    logger.info(
        "osm_client_created backend_url=%s demo_mode=%s cache_backend=%s",
        settings.backend_url,
        settings.demo_mode,
        settings.cache_backend,
    )
    return OsmClient(
        settings=settings,
        network=network,
        auth_gate=auth_gate,
        queue=queue,
        http=http,
        cache=cache,
        session_factory=session_factory,
        engine=engine,
    )

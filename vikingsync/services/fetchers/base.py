from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from vikingsync.core.errors import AuthExpired, AuthForbidden, InvalidData, VikingSyncError
from vikingsync.persistence.cache_store import CacheCategory, CacheEntry
from vikingsync.services.client import OsmClient
from vikingsync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

T = TypeVar("T")

_INVALID_ID_LITERALS = frozenset({"", "undefined", "null", "none"})


def canonical_id(value: Any, name: str = "id") -> str:
    if value is None or isinstance(value, bool):
        raise InvalidData(f"Invalid {name}: {value!r}")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    if text.lower() in _INVALID_ID_LITERALS:
        raise InvalidData(f"Invalid {name}: {value!r}")
    return text


def items_of(entry: CacheEntry) -> list[Any]:
    return entry.items


def document_of(entry: CacheEntry) -> dict[str, Any]:
    return entry.data()


@dataclass
class ReadPlan(Generic[T]):
    """One cached resource: where it lives, how to fetch it and how to shape what comes back."""

    operation: str
    category: CacheCategory
    ids: tuple[str, ...]
    # Upstream call returning the document to cache (lists are wrapped as {"items": [...]}).
    fetch: Callable[[str], Awaitable[dict[str, Any] | list[Any]]]
    empty: Callable[[], T]
    unwrap: Callable[[CacheEntry], T]
    store: Callable[[AsyncSession, T], Awaitable[Any]] | None = None
    cold: Callable[[AsyncSession], Awaitable[T | None]] | None = None
    force_refresh: bool = False
    accept: Callable[[CacheEntry], bool] | None = None
    # Auth failures must reach the auth flow instead of being masked by cached data.
    stale_on_auth: bool = True


def _accepted(plan: ReadPlan[Any], entry: CacheEntry | None) -> bool:
    if entry is None:
        return False
    return plan.accept is None or plan.accept(entry)


async def _read_cold(client: OsmClient, plan: ReadPlan[T]) -> T | None:
    if plan.cold is None:
        return None
    try:
        async with client.session_factory() as session:
            value = await plan.cold(session)
    except SQLAlchemyError:
        logger.exception("cold_store_read_failed operation=%s", plan.operation)
        return None
    return value or None


async def _mirror_cold(client: OsmClient, plan: ReadPlan[T], value: T) -> None:
    if plan.store is None:
        return
    try:
        async with client.session_factory() as session:
            await plan.store(session, value)
            await session.commit()
    except SQLAlchemyError:
        # The hot tier already holds the fresh copy; the next sync rewrites the cold rows.
        logger.exception("cold_store_write_failed operation=%s", plan.operation)
        increment_counter("cold_store_write_failed_total")


async def _serve_local(client: OsmClient, plan: ReadPlan[T], reason: str) -> T:
    entry = await client.cache.read(plan.category, *plan.ids)
    if _accepted(plan, entry):
        increment_counter(f"cache_served_total.{reason}")
        logger.debug("cache_served operation=%s reason=%s key=%s", plan.operation, reason, entry.key)
        return plan.unwrap(entry)
    value = await _read_cold(client, plan)
    if value is not None:
        logger.debug("cold_store_served operation=%s reason=%s", plan.operation, reason)
        return value
    logger.debug("empty_default_served operation=%s reason=%s", plan.operation, reason)
    return plan.empty()


async def read_through(client: OsmClient, plan: ReadPlan[T], token: str | None = None) -> T:
    cache = client.cache
    if client.demo_mode:
        entry = await cache.read(plan.category, *plan.ids)
        return plan.unwrap(entry) if _accepted(plan, entry) else plan.empty()

    token = client.resolve_token(token)
    if not client.auth_gate.has_usable_token(token):
        return await _serve_local(client, plan, "no_token")
    if not await client.network.is_online():
        return await _serve_local(client, plan, "offline")
    if not client.auth_gate.should_make_api_call():
        return await _serve_local(client, plan, "auth_breaker")

    if not plan.force_refresh:
        entry = await cache.read_fresh(plan.category, *plan.ids)
        if _accepted(plan, entry):
            return plan.unwrap(entry)

    try:
        document = await plan.fetch(token or "")
    except Exception as exc:
        kind = exc.kind if isinstance(exc, VikingSyncError) else type(exc).__name__
        if not plan.stale_on_auth and isinstance(exc, (AuthExpired, AuthForbidden)):
            raise
        entry = await cache.read(plan.category, *plan.ids)
        if _accepted(plan, entry):
            increment_counter(f"cache_stale_fallback_total.{plan.category.value}")
            logger.warning(
                "cache_stale_fallback operation=%s key=%s age_s=%.0f error_kind=%s",
                plan.operation,
                entry.key,
                entry.age_s(cache.now_ms()),
                kind,
            )
            return plan.unwrap(entry)
        value = await _read_cold(client, plan)
        if value is not None:
            logger.warning("cold_store_fallback operation=%s error_kind=%s", plan.operation, kind)
            return value
        raise

    entry = await cache.write(plan.category, plan.ids, document)
    value = plan.unwrap(entry)
    await _mirror_cold(client, plan, value)
    return value

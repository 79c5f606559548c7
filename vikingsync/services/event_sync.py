from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

from vikingsync.core.errors import VikingSyncError, scout_message
from vikingsync.persistence.repos.sections import list_sections
from vikingsync.services.client import OsmClient
from vikingsync.services.fetchers.events import (
    fetch_event_attendance,
    fetch_shared_attendance,
    load_events_from_cache,
    shared_event_metadata,
)
from vikingsync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _start_of(event: dict[str, Any]) -> datetime | None:
    raw = event.get("startdate")
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        parsed = datetime.fromisoformat(raw.strip())
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class EventSyncService:
    """Bulk attendance refresh for events in the displayable window."""

    def __init__(self, client: OsmClient, *, time_source: Callable[[], float] | None = None) -> None:
        self._client = client
        self._time = time_source or time.time
        self._task: asyncio.Task | None = None
        self._last_sync_at: float | None = None
        self.metrics: dict[str, Any] = {
            "last_sync_duration_ms": None,
            "total_api_calls": 0,
            "successful_syncs": 0,
            "failed_syncs": 0,
        }

    @property
    def last_sync_at(self) -> float | None:
        return self._last_sync_at

    def recently_synced(self) -> bool:
        if self._last_sync_at is None:
            return False
        return (self._time() - self._last_sync_at) < self._client.settings.event_sync_min_interval_s

    async def sync_all_attendance(
        self,
        force: bool = False,
        *,
        events: Iterable[dict[str, Any]] | None = None,
        token: str | None = None,
    ) -> dict[str, Any]:
        if not force and self.recently_synced():
            return {"success": True, "message": "Recently synced - using cached data", "details": {"skipped": True}}
        # Concurrent callers share the running sync.
        if self._task is not None and not self._task.done():
            logger.info("event_sync_coalesced")
            return await asyncio.shield(self._task)
        task = asyncio.get_running_loop().create_task(self._sync(list(events) if events is not None else None, token))
        self._task = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._task is task and task.done():
                self._task = None

    def in_window(self, event: dict[str, Any]) -> bool:
        start = _start_of(event)
        if start is None:
            return False
        now = datetime.fromtimestamp(self._time(), tz=timezone.utc)
        settings = self._client.settings
        return now - timedelta(days=settings.event_sync_past_days) <= start <= now + timedelta(
            days=settings.event_sync_future_days
        )

    async def _cached_events(self) -> list[dict[str, Any]]:
        async with self._client.session_factory() as session:
            sections = await list_sections(session)
        return await load_events_from_cache(self._client, sections)

    async def _sync(self, events: list[dict[str, Any]] | None, token: str | None) -> dict[str, Any]:
        started = time.monotonic()
        token = self._client.resolve_token(token)
        if not self._client.auth_gate.has_usable_token(token):
            return {"success": False, "message": "Your session has expired. Please log in again to sync events."}
        try:
            all_events = events if events is not None else await self._cached_events()
            if not all_events:
                return {
                    "success": False,
                    "message": "No Scout events found to sync. Check that you have events scheduled in OSM.",
                }
            valid = [e for e in all_events if e.get("sectionid") and e.get("eventid") and e.get("termid")]
            if not valid:
                return {"success": False, "message": "No valid events found to sync."}
            displayable = [event for event in valid if self.in_window(event)]

            synced, failed, errors = 0, 0, []
            for event in displayable:
                try:
                    await fetch_event_attendance(
                        self._client, event["sectionid"], event["eventid"], event["termid"], token
                    )
                    synced += 1
                except VikingSyncError as exc:
                    failed += 1
                    errors.append({"eventId": event["eventid"], "eventName": event.get("name"), "error": exc.message})
                    logger.warning(
                        "event_attendance_sync_failed event_id=%s error_kind=%s detail=%s",
                        event["eventid"],
                        exc.kind,
                        exc.detail,
                    )
            shared = await self._sync_shared(displayable, token)
        except VikingSyncError as exc:
            self.metrics["failed_syncs"] += 1
            logger.error("event_sync_failed error_kind=%s detail=%s", exc.kind, exc.detail)
            return {"success": False, "message": scout_message(exc, "sync event attendance")}

        duration_ms = (time.monotonic() - started) * 1000.0
        api_calls = len(displayable) + shared["api_calls"]
        self._last_sync_at = self._time()
        self.metrics["last_sync_duration_ms"] = round(duration_ms, 1)
        self.metrics["total_api_calls"] += api_calls
        self.metrics["successful_syncs"] += 1
        increment_counter("event_sync_runs_total")
        skipped = len(valid) - len(displayable)
        logger.info(
            "event_sync_completed events=%s synced=%s failed=%s skipped=%s shared=%s duration_ms=%.0f",
            len(displayable),
            synced,
            failed,
            skipped,
            shared["synced"],
            duration_ms,
        )
        return {
            "success": True,
            "message": f"Synced {synced}/{len(displayable)} displayable events ({skipped} skipped)",
            "details": {
                "totalEvents": len(all_events),
                "validEvents": len(valid),
                "displayableEvents": len(displayable),
                "skippedEvents": skipped,
                "syncedEvents": synced,
                "failedEvents": failed,
                "sharedEvents": shared["synced"],
                "errors": errors,
                "apiCalls": api_calls,
                "durationMs": round(duration_ms, 1),
            },
        }

    async def _sync_shared(self, events: list[dict[str, Any]], token: str | None) -> dict[str, int]:
        synced, api_calls = 0, 0
        for event in events:
            metadata = await shared_event_metadata(self._client, event["eventid"])
            if not metadata or not metadata.get("_isSharedEvent"):
                continue
            # Only the owning section can read the combined attendance.
            if str(metadata.get("_ownerSection")) != str(event["sectionid"]):
                continue
            api_calls += 1
            try:
                await fetch_shared_attendance(self._client, event["eventid"], event["sectionid"], token)
                synced += 1
            except VikingSyncError as exc:
                logger.warning(
                    "shared_attendance_sync_failed event_id=%s error_kind=%s",
                    event["eventid"],
                    exc.kind,
                )
        return {"synced": synced, "api_calls": api_calls}

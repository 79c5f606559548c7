from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from vikingsync.core.errors import AuthExpired, NetworkError
from vikingsync.persistence.cache_store import CacheCategory, CacheEntry
from vikingsync.persistence.repos.events import list_attendance, list_events, save_attendance, save_events
from vikingsync.persistence.repos.members import (
    infer_person_type,
    member_ids_in_section,
    memberships_for,
    upsert_core_member,
    upsert_member_section,
)
from vikingsync.persistence.repos.sections import get_section
from vikingsync.services.client import OsmClient
from vikingsync.services.fetchers.base import ReadPlan, canonical_id, document_of, items_of, read_through


logger = logging.getLogger(__name__)

DEMO_EVENT_PREFIX = "demo_event_"


def _items(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, dict) and isinstance(payload.get("items"), list):
        return [item for item in payload["items"] if isinstance(item, dict)]
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    return []


def _is_demo_event(event: dict[str, Any]) -> bool:
    event_id = event.get("eventid")
    return isinstance(event_id, str) and event_id.startswith(DEMO_EVENT_PREFIX)


async def fetch_events(
    client: OsmClient,
    section_id: Any,
    term_id: Any,
    token: str | None = None,
    *,
    force_refresh: bool = False,
) -> list[dict[str, Any]]:
    sid = canonical_id(section_id, "sectionid")
    tid = canonical_id(term_id, "termid")

    async def _fetch(auth: str) -> dict[str, Any]:
        payload = await client.http.request(
            "GET",
            "/get-events",
            token=auth,
            params={"sectionid": sid, "termid": tid},
            operation="getEvents",
        )
        events = [
            {**event, "sectionid": sid, "termid": tid}
            for event in _items(payload)
            if not _is_demo_event(event)
        ]
        return {"termid": tid, "items": events}

    async def _store(session: AsyncSession, events: list[dict[str, Any]]) -> None:
        await save_events(session, sid, tid, events)

    async def _cold(session: AsyncSession) -> list[dict[str, Any]]:
        return await list_events(session, sid, tid)

    plan: ReadPlan[list[dict[str, Any]]] = ReadPlan(
        operation="getEvents",
        category=CacheCategory.EVENTS,
        ids=(sid,),
        fetch=_fetch,
        empty=list,
        unwrap=items_of,
        store=_store,
        cold=_cold,
        force_refresh=force_refresh,
        # One entry per section; a listing for another term is a miss.
        accept=lambda entry: str(entry.payload.get("termid", tid)) == tid,
    )
    return await read_through(client, plan, token)


async def fetch_event_attendance(
    client: OsmClient,
    section_id: Any,
    event_id: Any,
    term_id: Any,
    token: str | None = None,
    *,
    force_refresh: bool = True,
) -> list[dict[str, Any]]:
    sid = canonical_id(section_id, "sectionid")
    eid = canonical_id(event_id, "eventid")
    tid = canonical_id(term_id, "termid")

    async def _fetch(auth: str) -> list[dict[str, Any]]:
        payload = await client.http.request(
            "GET",
            "/get-event-attendance",
            token=auth,
            params={"sectionid": sid, "termid": tid, "eventid": eid},
            operation="getEventAttendance",
        )
        return [{**row, "eventid": row.get("eventid", eid)} for row in _items(payload)]

    async def _store(session: AsyncSession, rows: list[dict[str, Any]]) -> None:
        # An empty listing never wipes rows captured on an earlier sync.
        if rows:
            await save_attendance(session, eid, rows, owner_section_id=sid)

    async def _cold(session: AsyncSession) -> list[dict[str, Any]]:
        return await list_attendance(session, eid)

    plan: ReadPlan[list[dict[str, Any]]] = ReadPlan(
        operation="getEventAttendance",
        category=CacheCategory.ATTENDANCE,
        ids=(eid,),
        fetch=_fetch,
        empty=list,
        unwrap=items_of,
        store=_store,
        cold=_cold,
        force_refresh=force_refresh,
    )
    return await read_through(client, plan, token)


async def _direct_get(
    client: OsmClient,
    path: str,
    params: dict[str, str],
    token: str | None,
    operation: str,
) -> Any:
    # Metadata lookups are never cached; missing prerequisites are errors for the caller.
    token = client.resolve_token(token)
    if not client.auth_gate.has_usable_token(token):
        raise AuthExpired(f"{operation}: no authentication token available (NO_TOKEN)", status_code=401)
    if not await client.network.is_online():
        raise NetworkError(f"{operation}: no network connection available")
    if not client.auth_gate.should_make_api_call():
        raise AuthExpired(f"{operation}: authentication failed earlier this session", status_code=401)
    return await client.http.request("GET", path, token=token, params=params, operation=operation)


async def fetch_event_summary(client: OsmClient, event_id: Any, token: str | None = None) -> dict[str, Any] | None:
    eid = canonical_id(event_id, "eventid")
    if client.demo_mode:
        return {"eventId": eid, "attendees": 0, "invited": 0, "confirmed": 0}
    payload = await _direct_get(client, "/get-event-summary", {"eventid": eid}, token, "getEventSummary")
    return payload or None


async def fetch_event_sharing_status(
    client: OsmClient,
    event_id: Any,
    section_id: Any,
    token: str | None = None,
) -> dict[str, Any]:
    eid = canonical_id(event_id, "eventid")
    sid = canonical_id(section_id, "sectionid")
    if client.demo_mode:
        return {"items": []}
    payload = await _direct_get(
        client,
        "/get-event-sharing-status",
        {"eventid": eid, "sectionid": sid},
        token,
        "getEventSharingStatus",
    )
    return payload or {"items": []}


def shared_attendance_rows(document: dict[str, Any] | None) -> list[dict[str, Any]]:
    if not document:
        return []
    rows = document.get("combined_attendance")
    if isinstance(rows, list):
        return [row for row in rows if isinstance(row, dict)]
    return _items(document)


async def upsert_shared_attendees(session: AsyncSession, owner_section_id: str, rows: Iterable[dict[str, Any]]) -> int:
    """Index attendees from other sections under the owning section.

    Returns the number of member_section rows created.
    """
    attendees: dict[str, dict[str, Any]] = {}
    for row in rows:
        scout_id = row.get("scoutid")
        if scout_id not in (None, ""):
            attendees.setdefault(str(scout_id), row)
    if not attendees:
        return 0

    indexed = await member_ids_in_section(session, owner_section_id)
    missing = [scout_id for scout_id in attendees if scout_id not in indexed]
    if not missing:
        return 0

    section = await get_section(session, owner_section_id)
    existing = await memberships_for(session, missing)
    for scout_id in missing:
        row = attendees[scout_id]
        await upsert_core_member(
            session,
            scout_id,
            {
                "firstname": row.get("firstname"),
                "lastname": row.get("lastname"),
                "age": row.get("age"),
                "photo_guid": row.get("photo_guid"),
            },
            overwrite=False,
        )
        await upsert_member_section(
            session,
            scout_id,
            owner_section_id,
            person_type=infer_person_type(existing.get(scout_id, [])),
            section_name=section.section_name if section else None,
            from_shared_event=True,
        )
    logger.info("shared_attendees_indexed section_id=%s created=%s", owner_section_id, len(missing))
    return len(missing)


async def fetch_shared_attendance(
    client: OsmClient,
    event_id: Any,
    section_id: Any,
    token: str | None = None,
    *,
    force_refresh: bool = False,
) -> dict[str, Any]:
    eid = canonical_id(event_id, "eventid")
    sid = canonical_id(section_id, "sectionid")

    async def _fetch(auth: str) -> dict[str, Any]:
        payload = await client.http.request(
            "GET",
            "/get-shared-event-attendance",
            token=auth,
            params={"eventid": eid, "sectionid": sid},
            operation="getSharedEventAttendance",
        )
        if not isinstance(payload, dict) or not payload:
            return {"combined_attendance": [], "summary": {}, "sections": []}
        return payload

    async def _store(session: AsyncSession, document: dict[str, Any]) -> None:
        rows = shared_attendance_rows(document)
        if not rows:
            return
        await upsert_shared_attendees(session, sid, rows)
        await save_attendance(session, eid, rows, owner_section_id=sid, shared=True)

    plan: ReadPlan[dict[str, Any]] = ReadPlan(
        operation="getSharedEventAttendance",
        category=CacheCategory.SHARED_ATTENDANCE,
        ids=(eid, sid),
        fetch=_fetch,
        empty=lambda: {"combined_attendance": [], "summary": {}, "sections": []},
        unwrap=document_of,
        store=_store,
        force_refresh=force_refresh,
    )
    return await read_through(client, plan, token)


async def detect_shared_events(client: OsmClient, section_events: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    """Group events by name and start date across sections and record shared metadata.

    ``section_events`` holds ``{"sectionid", "sectionname", "events"}`` per section; the first
    section listing an event is taken as its owner.
    """
    groups: dict[str, list[dict[str, Any]]] = {}
    for result in section_events:
        for event in result.get("events") or []:
            key = f"{event.get('name')}|{event.get('startdate')}"
            groups.setdefault(key, []).append(
                {**event, "_sectionId": result.get("sectionid"), "_sectionName": result.get("sectionname")}
            )

    detected: list[dict[str, Any]] = []
    detected_at = datetime.now(timezone.utc).isoformat()
    for instances in groups.values():
        if len(instances) < 2:
            continue
        owner = instances[0]
        participants = [
            {"sectionid": item["_sectionId"], "sectionname": item["_sectionName"], "eventid": item.get("eventid")}
            for item in instances
        ]
        for instance in instances:
            metadata = {
                "eventid": str(instance.get("eventid")),
                "_isSharedEvent": True,
                "_ownerSection": owner["_sectionId"],
                "_sharedWithSections": len(participants),
                "_allSections": participants,
                "_detectedAt": detected_at,
                "eventName": instance.get("name"),
                "eventDate": instance.get("startdate"),
            }
            await client.cache.write(CacheCategory.SHARED_METADATA, (metadata["eventid"],), metadata)
            detected.append(metadata)
        logger.info(
            "shared_event_detected name=%s date=%s sections=%s",
            owner.get("name"),
            owner.get("startdate"),
            len(participants),
        )
    return detected


async def shared_event_metadata(client: OsmClient, event_id: Any) -> dict[str, Any] | None:
    entry: CacheEntry | None = await client.cache.read(CacheCategory.SHARED_METADATA, canonical_id(event_id, "eventid"))
    return entry.data() if entry else None


async def load_events_from_cache(client: OsmClient, sections: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    events: list[dict[str, Any]] = []
    for section in sections:
        sid = str(section.get("sectionid"))
        entry = await client.cache.read(CacheCategory.EVENTS, sid)
        if entry is not None:
            rows = entry.items
        else:
            async with client.session_factory() as session:
                rows = await list_events(session, sid)
        events.extend({**event, "sectionname": section.get("sectionname")} for event in rows)
    return events

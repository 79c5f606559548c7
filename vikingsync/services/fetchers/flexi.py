from __future__ import annotations

import logging
from typing import Any, Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from vikingsync.core.errors import InvalidData, VikingSyncError
from vikingsync.persistence.cache_store import CacheCategory, CacheEntry
from vikingsync.persistence.repos.flexi import (
    get_flexi_structure,
    list_flexi_data,
    list_flexi_list,
    save_flexi_data,
    save_flexi_list,
    save_flexi_structure,
    save_viking_event_data,
)
from vikingsync.persistence.repos.sections import list_sections
from vikingsync.services.client import OsmClient
from vikingsync.services.fetchers.base import ReadPlan, canonical_id, read_through
from vikingsync.services.fetchers.reference import fetch_most_recent_term_id
from vikingsync.services.flexi_schema import (
    VIKING_EVENT_MGMT,
    VIKING_SECTION_MOVERS,
    CollectionValidation,
    FlexiContext,
    RecordType,
    consolidate,
    extract_record_context,
    extract_viking_event_fields,
    find_record,
    mapping_to_dict,
    parse_structure,
    validate_collection,
)


logger = logging.getLogger(__name__)


def _is_live(item: dict[str, Any]) -> bool:
    return str(item.get("archived", "0")) != "1" and str(item.get("soft_deleted", "0")) != "1"


def _live_list(document: dict[str, Any]) -> dict[str, Any]:
    items = document.get("items") if isinstance(document.get("items"), list) else []
    return {
        "identifier": document.get("identifier"),
        "label": document.get("label"),
        "items": [item for item in items if isinstance(item, dict) and _is_live(item)],
    }


async def fetch_flexi_list(
    client: OsmClient,
    section_id: Any,
    token: str | None = None,
    *,
    archived: str = "n",
    force_refresh: bool = False,
) -> dict[str, Any]:
    sid = canonical_id(section_id, "sectionid")

    async def _fetch(auth: str) -> dict[str, Any]:
        payload = await client.http.request(
            "GET",
            "/get-flexi-records",
            token=auth,
            params={"sectionid": sid, "archived": archived},
            operation="getFlexiRecords",
        )
        return _live_list(payload if isinstance(payload, dict) else {"items": payload})

    async def _store(session: AsyncSession, document: dict[str, Any]) -> None:
        await save_flexi_list(session, sid, document["items"])

    async def _cold(session: AsyncSession) -> dict[str, Any] | None:
        items = await list_flexi_list(session, sid)
        return {"identifier": None, "label": None, "items": items} if items else None

    plan: ReadPlan[dict[str, Any]] = ReadPlan(
        operation="getFlexiRecords",
        category=CacheCategory.FLEXI_LIST,
        ids=(sid,),
        fetch=_fetch,
        empty=lambda: {"identifier": None, "label": None, "items": []},
        unwrap=lambda entry: _live_list(entry.data()),
        store=_store,
        cold=_cold,
        force_refresh=force_refresh,
    )
    return await read_through(client, plan, token)


def _structure_or_none(entry: CacheEntry) -> dict[str, Any] | None:
    return entry.data() or None


async def fetch_flexi_structure(
    client: OsmClient,
    extraid: Any,
    section_id: Any,
    term_id: Any,
    token: str | None = None,
    *,
    force_refresh: bool = False,
) -> dict[str, Any] | None:
    eid = canonical_id(extraid, "flexirecordid")
    sid = canonical_id(section_id, "sectionid")
    tid = canonical_id(term_id, "termid")

    async def _fetch(auth: str) -> dict[str, Any]:
        payload = await client.http.request(
            "GET",
            "/get-flexi-structure",
            token=auth,
            params={"flexirecordid": eid, "sectionid": sid, "termid": tid},
            operation="getFlexiStructure",
        )
        if not isinstance(payload, dict):
            raise InvalidData(f"getFlexiStructure: unexpected payload for flexirecord {eid}")
        return payload

    async def _store(session: AsyncSession, structure: dict[str, Any] | None) -> None:
        if not structure:
            return
        await save_flexi_structure(
            session,
            eid,
            name=structure.get("name"),
            section_id=sid,
            field_mapping=mapping_to_dict(parse_structure(structure)),
            payload=structure,
        )

    async def _cold(session: AsyncSession) -> dict[str, Any] | None:
        record = await get_flexi_structure(session, eid)
        return dict(record.payload) if record and record.payload else None

    plan: ReadPlan[dict[str, Any] | None] = ReadPlan(
        operation="getFlexiStructure",
        category=CacheCategory.FLEXI_STRUCTURE,
        ids=(eid,),
        fetch=_fetch,
        empty=lambda: None,
        unwrap=_structure_or_none,
        store=_store,
        cold=_cold,
        force_refresh=force_refresh,
    )
    return await read_through(client, plan, token)


async def fetch_flexi_data(
    client: OsmClient,
    extraid: Any,
    section_id: Any,
    term_id: Any,
    token: str | None = None,
    *,
    force_refresh: bool = True,
) -> dict[str, Any]:
    eid = canonical_id(extraid, "flexirecordid")
    sid = canonical_id(section_id, "sectionid")
    tid = canonical_id(term_id, "termid")

    async def _fetch(auth: str) -> dict[str, Any]:
        payload = await client.http.request(
            "GET",
            "/get-single-flexi-record",
            token=auth,
            params={"flexirecordid": eid, "sectionid": sid, "termid": tid},
            operation="getSingleFlexiRecord",
        )
        if not isinstance(payload, dict):
            return {"identifier": None, "items": payload if isinstance(payload, list) else []}
        return payload

    async def _store(session: AsyncSession, document: dict[str, Any]) -> None:
        items = document.get("items")
        if isinstance(items, list):
            await save_flexi_data(session, eid, sid, tid, items)

    async def _cold(session: AsyncSession) -> dict[str, Any] | None:
        items = await list_flexi_data(session, eid, sid, tid)
        return {"identifier": None, "items": items} if items else None

    plan: ReadPlan[dict[str, Any]] = ReadPlan(
        operation="getSingleFlexiRecord",
        category=CacheCategory.FLEXI_DATA,
        ids=(eid, sid, tid),
        fetch=_fetch,
        empty=lambda: {"identifier": None, "items": []},
        unwrap=lambda entry: entry.data(),
        store=_store,
        cold=_cold,
        force_refresh=force_refresh,
    )
    return await read_through(client, plan, token)


async def fetch_consolidated_flexi_record(
    client: OsmClient,
    section_id: Any,
    extraid: Any,
    term_id: Any,
    token: str | None = None,
    *,
    force_refresh: bool = False,
) -> dict[str, Any]:
    sid = canonical_id(section_id, "sectionid")
    eid = canonical_id(extraid, "flexirecordid")
    tid = canonical_id(term_id, "termid")

    # Structure changes rarely, so only the data honours force_refresh.
    structure = await fetch_flexi_structure(client, eid, sid, tid, token)
    if not structure:
        raise InvalidData(f"Failed to retrieve flexirecord structure for {eid}")
    data = await fetch_flexi_data(client, eid, sid, tid, token, force_refresh=force_refresh)
    mapping = parse_structure(structure)
    return consolidate(structure, data, mapping, section_id=sid, extraid=str(structure.get("extraid") or eid))


async def _named_record(
    client: OsmClient,
    record_type: RecordType,
    section_id: str,
    term_id: str,
    token: str | None,
    force_refresh: bool,
) -> dict[str, Any] | None:
    listing = await fetch_flexi_list(client, section_id, token, force_refresh=force_refresh)
    entry = find_record(listing["items"], record_type)
    if entry is None:
        logger.info(
            "flexi_record_not_found section_id=%s record=%s available=%s",
            section_id,
            record_type.name,
            ",".join(str(item.get("name")) for item in listing["items"]),
        )
        return None
    return await fetch_consolidated_flexi_record(
        client, section_id, entry["extraid"], term_id, token, force_refresh=force_refresh
    )


async def fetch_viking_event_data(
    client: OsmClient,
    section_id: Any,
    term_id: Any,
    token: str | None = None,
    *,
    force_refresh: bool = False,
) -> dict[str, Any] | None:
    sid = canonical_id(section_id, "sectionid")
    tid = canonical_id(term_id, "termid")
    consolidated = await _named_record(client, VIKING_EVENT_MGMT, sid, tid, token, force_refresh)
    if consolidated is None:
        return None
    rows = extract_viking_event_fields(consolidated)
    async with client.session_factory() as session:
        await save_viking_event_data(session, sid, tid, consolidated["_structure"]["extraid"], rows)
        await session.commit()
    return consolidated


async def fetch_viking_section_movers_data(
    client: OsmClient,
    section_id: Any,
    term_id: Any,
    token: str | None = None,
    *,
    force_refresh: bool = False,
) -> dict[str, Any] | None:
    sid = canonical_id(section_id, "sectionid")
    tid = canonical_id(term_id, "termid")
    return await _named_record(client, VIKING_SECTION_MOVERS, sid, tid, token, force_refresh)


async def fetch_viking_event_data_for_events(
    client: OsmClient,
    events: Iterable[dict[str, Any]],
    token: str | None = None,
    *,
    force_refresh: bool = True,
) -> dict[str, dict[str, Any] | None]:
    pairs: dict[tuple[str, str], None] = {}
    for event in events:
        pairs.setdefault((str(event.get("sectionid")), str(event.get("termid"))), None)

    by_section: dict[str, dict[str, Any] | None] = {}
    for section_id, term_id in pairs:
        try:
            by_section[section_id] = await fetch_viking_event_data(
                client, section_id, term_id, token, force_refresh=force_refresh
            )
        except VikingSyncError as exc:
            logger.warning(
                "viking_event_data_failed section_id=%s term_id=%s error_kind=%s detail=%s",
                section_id,
                term_id,
                exc.kind,
                exc.detail,
            )
            by_section[section_id] = None
    return by_section


async def discover_section_movers_records(
    client: OsmClient,
    token: str | None = None,
    *,
    force_refresh: bool = False,
) -> list[dict[str, Any]]:
    async with client.session_factory() as session:
        sections = await list_sections(session)

    discovered: list[dict[str, Any]] = []
    for section in sections:
        section_id = str(section["sectionid"])
        try:
            listing = await fetch_flexi_list(client, section_id, token, force_refresh=force_refresh)
        except VikingSyncError as exc:
            logger.warning("section_movers_discovery_failed section_id=%s error_kind=%s", section_id, exc.kind)
            continue
        entry = find_record(listing["items"], VIKING_SECTION_MOVERS)
        if entry is None:
            continue
        discovered.append(
            {
                "sectionid": section_id,
                "sectionname": section.get("sectionname") or "Unknown Section",
                "extraid": str(entry["extraid"]),
                "name": entry.get("name"),
                "section": section,
            }
        )
    logger.info("section_movers_discovered sections=%s found=%s", len(sections), len(discovered))
    return discovered


async def validate_section_movers_records(
    client: OsmClient,
    token: str | None = None,
    *,
    force_refresh: bool = False,
) -> CollectionValidation:
    discovered = await discover_section_movers_records(client, token, force_refresh=force_refresh)
    contexts: list[FlexiContext | None] = []
    records: list[dict[str, Any]] = []
    for record in discovered:
        context: FlexiContext | None = None
        try:
            term_id = await fetch_most_recent_term_id(client, record["sectionid"], token)
            if term_id is None:
                record = {**record, "error": "no term available"}
            else:
                data = await fetch_consolidated_flexi_record(
                    client, record["sectionid"], record["extraid"], term_id, token, force_refresh=force_refresh
                )
                context = extract_record_context(
                    data,
                    VIKING_SECTION_MOVERS,
                    record["sectionid"],
                    term_id,
                    record["sectionname"],
                    section_type=record["section"].get("section"),
                )
        except VikingSyncError as exc:
            record = {**record, "error": exc.detail}
        records.append(record)
        contexts.append(context)
    return validate_collection(records, contexts)

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime
from typing import Any, Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from vikingsync.persistence.cache_store import CacheCategory, CacheEntry
from vikingsync.persistence.repos.members import (
    LEADERS,
    YOUNG_LEADERS,
    YOUNG_PEOPLE,
    list_members,
    save_members,
)
from vikingsync.persistence.repos.sections import get_current_term, list_sections, list_terms, save_sections, save_terms
from vikingsync.services.client import OsmClient
from vikingsync.services.fetchers.base import ReadPlan, canonical_id, items_of, read_through


logger = logging.getLogger(__name__)

# Checked in order: "Explorer Scouts" and "Cubs Waiting List" must not land in the wrong bucket.
_SECTION_KINDS = (
    ("waiting", "waiting"),
    ("explorer", "explorers"),
    ("beaver", "beavers"),
    ("cub", "cubs"),
    ("network", "adults"),
    ("adult", "adults"),
    ("scout", "scouts"),
)

PATROL_PERSON_TYPES = {-2: LEADERS, -3: YOUNG_LEADERS}


def section_kind(*names: str | None) -> str:
    for name in names:
        lowered = (name or "").lower()
        for needle, kind in _SECTION_KINDS:
            if needle in lowered:
                return kind
    return "unknown"


def parse_user_roles(payload: Any) -> list[dict[str, Any]]:
    # Sections arrive keyed by their numeric position; non-numeric keys are envelope fields.
    if isinstance(payload, list):
        raw_items = [(str(index), item) for index, item in enumerate(payload)]
    elif isinstance(payload, dict):
        raw_items = [(key, value) for key, value in payload.items() if key.strip().lstrip("-").isdigit()]
    else:
        logger.warning("user_roles_invalid_payload type=%s", type(payload).__name__)
        return []

    sections: list[dict[str, Any]] = []
    for key, item in raw_items:
        if not isinstance(item, dict):
            continue
        raw_id = item.get("sectionid")
        if raw_id in (None, ""):
            raw_id = item.get("section_id") or item.get("id") or key
        try:
            section_id = int(str(raw_id))
        except ValueError:
            logger.warning("user_roles_invalid_section_id raw_id=%s key=%s", raw_id, key)
            continue
        name = item.get("sectionname") or f"Section {section_id}"
        section_type = item.get("section") or item.get("sectionname")
        sections.append(
            {
                "sectionid": section_id,
                "sectionname": name,
                "section": section_type,
                "sectiontype": section_type,
                "section_kind": section_kind(section_type, name),
                "isDefault": item.get("isDefault") in ("1", 1, True),
                "permissions": item.get("permissions") or {},
            }
        )
    return sections


async def fetch_user_roles(client: OsmClient, token: str | None = None) -> list[dict[str, Any]]:
    async def _fetch(auth: str) -> list[dict[str, Any]]:
        payload = await client.http.request("GET", "/get-user-roles", token=auth, operation="getUserRoles")
        sections = parse_user_roles(payload)
        logger.info("user_roles_loaded sections=%s", len(sections))
        return sections

    async def _store(session: AsyncSession, sections: list[dict[str, Any]]) -> None:
        if sections:
            await save_sections(session, sections)

    plan: ReadPlan[list[dict[str, Any]]] = ReadPlan(
        operation="getUserRoles",
        category=CacheCategory.USER_ROLES,
        ids=(),
        fetch=_fetch,
        empty=list,
        unwrap=items_of,
        store=_store,
        cold=list_sections,
    )
    return await read_through(client, plan, token)


def _parse_date(value: Any) -> date | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.strip()).date()
    except ValueError:
        return None


def most_recent_term(terms: Iterable[dict[str, Any]] | None) -> dict[str, Any] | None:
    latest: dict[str, Any] | None = None
    latest_end: date | None = None
    for term in terms or []:
        if not isinstance(term, dict):
            continue
        end = _parse_date(term.get("enddate"))
        if end is None:
            continue
        if latest_end is None or end > latest_end:
            latest, latest_end = term, end
    return latest


def _terms_by_section(document: dict[str, Any]) -> dict[str, list[dict[str, Any]]]:
    return {
        str(key): list(value)
        for key, value in document.items()
        if not str(key).startswith("_") and isinstance(value, list)
    }


async def _cold_terms(session: AsyncSession) -> dict[str, list[dict[str, Any]]]:
    grouped: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for record in await list_terms(session):
        grouped[record.section_id].append(
            {
                "termid": record.term_id,
                "sectionid": record.section_id,
                "name": record.name,
                "startdate": record.start_date,
                "enddate": record.end_date,
            }
        )
    return dict(grouped)


async def fetch_terms(
    client: OsmClient,
    token: str | None = None,
    *,
    force_refresh: bool = False,
) -> dict[str, list[dict[str, Any]]]:
    async def _fetch(auth: str) -> dict[str, Any]:
        payload = await client.http.request("GET", "/get-terms", token=auth, operation="getTerms")
        return _terms_by_section(payload if isinstance(payload, dict) else {})

    async def _store(session: AsyncSession, terms: dict[str, list[dict[str, Any]]]) -> None:
        for section_id, section_terms in terms.items():
            if not section_terms:
                continue
            current = most_recent_term(section_terms)
            await save_terms(session, section_id, section_terms, str(current["termid"]) if current else None)

    plan: ReadPlan[dict[str, list[dict[str, Any]]]] = ReadPlan(
        operation="getTerms",
        category=CacheCategory.TERMS,
        ids=(),
        fetch=_fetch,
        empty=dict,
        unwrap=lambda entry: _terms_by_section(entry.data()),
        store=_store,
        cold=_cold_terms,
        force_refresh=force_refresh,
    )
    return await read_through(client, plan, token)


def current_term_id(terms: dict[str, list[dict[str, Any]]], section_id: Any) -> str | None:
    term = most_recent_term(terms.get(str(section_id)))
    return str(term["termid"]) if term and term.get("termid") is not None else None


async def fetch_most_recent_term_id(client: OsmClient, section_id: Any, token: str | None = None) -> str | None:
    sid = canonical_id(section_id, "sectionid")
    term_id = current_term_id(await fetch_terms(client, token), sid)
    if term_id is not None:
        return term_id
    async with client.session_factory() as session:
        record = await get_current_term(session, sid)
    return record.term_id if record else None


def _startup_document(entry: CacheEntry) -> dict[str, Any] | None:
    data = entry.data()
    return data or None


async def fetch_startup_data(client: OsmClient, token: str | None = None) -> dict[str, Any] | None:
    async def _fetch(auth: str) -> dict[str, Any]:
        payload = await client.http.request("GET", "/get-startup-data", token=auth, operation="getStartupData")
        return payload if isinstance(payload, dict) else {}

    plan: ReadPlan[dict[str, Any] | None] = ReadPlan(
        operation="getStartupData",
        category=CacheCategory.STARTUP_DATA,
        ids=(),
        fetch=_fetch,
        empty=lambda: None,
        unwrap=_startup_document,
        stale_on_auth=False,
    )
    return await read_through(client, plan, token)


def extract_user_info(startup: dict[str, Any] | None) -> dict[str, Any] | None:
    if not startup:
        return None
    source = startup.get("globals") if isinstance(startup.get("globals"), dict) else startup
    first, last = source.get("firstname"), source.get("lastname")
    if not (first or last or source.get("userid")):
        return None
    return {
        "userid": source.get("userid"),
        "firstname": first,
        "lastname": last,
        "fullname": " ".join(part for part in (first, last) if part),
        "email": source.get("email"),
    }


def person_type_for(member: dict[str, Any]) -> str:
    try:
        patrol_id = int(member.get("patrol_id", member.get("patrolid")))
    except (TypeError, ValueError):
        patrol_id = None
    if patrol_id in PATROL_PERSON_TYPES:
        return PATROL_PERSON_TYPES[patrol_id]
    return member.get("person_type") or YOUNG_PEOPLE


def dedupe_members(rows: Iterable[dict[str, Any]], sections: dict[str, dict[str, Any]]) -> list[dict[str, Any]]:
    # One entry per scout; Young Leaders wins over the role seen first.
    merged: dict[str, dict[str, Any]] = {}
    for row in rows:
        if not isinstance(row, dict) or row.get("scoutid") in (None, ""):
            continue
        scout_id = str(row["scoutid"])
        section_id = str(row.get("sectionid") or "")
        section = sections.get(section_id, {})
        person_type = person_type_for(row)
        membership = {
            "sectionid": section_id or None,
            "sectionname": row.get("sectionname") or section.get("sectionname"),
            "person_type": person_type,
            "patrol": row.get("patrol"),
            "patrol_id": row.get("patrol_id", row.get("patrolid")),
        }
        existing = merged.get(scout_id)
        if existing is None:
            merged[scout_id] = {
                **row,
                "scoutid": scout_id,
                "person_type": person_type,
                "sectionname": membership["sectionname"],
                "section": section.get("section"),
                "sections": [membership],
            }
            continue
        if not any(m["sectionid"] == membership["sectionid"] for m in existing["sections"]):
            existing["sections"].append(membership)
        if person_type == YOUNG_LEADERS:
            existing["person_type"] = YOUNG_LEADERS
            existing["sectionname"] = membership["sectionname"]
    return list(merged.values())


def _member_rows(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("items", "members", "data"):
            if isinstance(payload.get(key), list):
                return payload[key]
    return []


async def fetch_members(
    client: OsmClient,
    sections: Iterable[dict[str, Any] | Any],
    token: str | None = None,
    *,
    force_refresh: bool = False,
) -> list[dict[str, Any]]:
    by_id: dict[str, dict[str, Any]] = {}
    for section in sections:
        raw = section.get("sectionid") if isinstance(section, dict) else section
        if raw in (None, ""):
            logger.warning("members_section_without_id section=%s", section)
            continue
        sid = canonical_id(raw, "sectionid")
        by_id[sid] = section if isinstance(section, dict) else {"sectionid": sid}
    if not by_id:
        return []
    section_ids = sorted(by_id)

    async def _fetch(auth: str) -> list[dict[str, Any]]:
        payload = await client.http.request(
            "GET",
            "/get-members",
            token=auth,
            params=[("sections[]", sid) for sid in section_ids],
            operation="getListOfMembers",
        )
        members = dedupe_members(_member_rows(payload), by_id)
        logger.info("members_loaded sections=%s members=%s", len(section_ids), len(members))
        return members

    async def _store(session: AsyncSession, members: list[dict[str, Any]]) -> None:
        await save_members(session, members)

    async def _cold(session: AsyncSession) -> list[dict[str, Any]]:
        return await list_members(session, section_ids)

    plan: ReadPlan[list[dict[str, Any]]] = ReadPlan(
        operation="getListOfMembers",
        category=CacheCategory.MEMBERS,
        ids=("-".join(section_ids),),
        fetch=_fetch,
        empty=list,
        unwrap=items_of,
        store=_store,
        cold=_cold,
        force_refresh=force_refresh,
    )
    return await read_through(client, plan, token)

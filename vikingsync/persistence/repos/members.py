from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vikingsync.domain.models import CoreMember, MemberSection


YOUNG_PEOPLE = "Young People"
LEADERS = "Leaders"
YOUNG_LEADERS = "Young Leaders"

# Higher wins when one person holds several roles across sections.
PERSON_TYPE_PRIORITY = {YOUNG_LEADERS: 3, LEADERS: 2, YOUNG_PEOPLE: 1}


async def get_member(session: AsyncSession, scout_id: str) -> CoreMember | None:
    result = await session.execute(select(CoreMember).where(CoreMember.scout_id == scout_id))
    return result.scalar_one_or_none()


async def upsert_core_member(session: AsyncSession, scout_id: str, fields: dict[str, Any], *, overwrite: bool = True) -> CoreMember:
    existing = await get_member(session, scout_id)
    if fields.get("age") is not None:
        fields = {**fields, "age": str(fields["age"])}
    if existing is None:
        member = CoreMember(
            scout_id=scout_id,
            first_name=fields.get("firstname"),
            last_name=fields.get("lastname"),
            date_of_birth=fields.get("date_of_birth"),
            age=fields.get("age"),
            photo_guid=fields.get("photo_guid"),
            has_photo=bool(fields.get("has_photo")),
            payload=dict(fields.get("payload") or {}),
        )
        session.add(member)
        return member
    # Minimal rows from shared attendance must not blank out richer member-grid data.
    for attr, key in (
        ("first_name", "firstname"),
        ("last_name", "lastname"),
        ("date_of_birth", "date_of_birth"),
        ("age", "age"),
        ("photo_guid", "photo_guid"),
    ):
        value = fields.get(key)
        if value is not None and (overwrite or getattr(existing, attr) is None):
            setattr(existing, attr, value)
    if overwrite and fields.get("payload"):
        existing.payload = dict(fields["payload"])
        existing.has_photo = bool(fields.get("has_photo"))
    return existing


async def get_membership(session: AsyncSession, scout_id: str, section_id: str) -> MemberSection | None:
    result = await session.execute(
        select(MemberSection).where(MemberSection.scout_id == scout_id, MemberSection.section_id == section_id)
    )
    return result.scalar_one_or_none()


async def upsert_member_section(
    session: AsyncSession,
    scout_id: str,
    section_id: str,
    *,
    person_type: str,
    patrol: str | None = None,
    patrol_id: int | None = None,
    section_name: str | None = None,
    from_shared_event: bool = False,
) -> MemberSection:
    existing = await get_membership(session, scout_id, section_id)
    if existing is None:
        row = MemberSection(
            scout_id=scout_id,
            section_id=section_id,
            person_type=person_type,
            patrol=patrol,
            patrol_id=patrol_id,
            section_name=section_name,
            active=True,
            from_shared_event=from_shared_event,
        )
        session.add(row)
        return row
    existing.person_type = person_type
    if patrol is not None:
        existing.patrol = patrol
    if patrol_id is not None:
        existing.patrol_id = patrol_id
    if section_name is not None:
        existing.section_name = section_name
    return existing


async def memberships_for(session: AsyncSession, scout_ids: Iterable[str]) -> dict[str, list[MemberSection]]:
    ids = list(scout_ids)
    if not ids:
        return {}
    result = await session.execute(select(MemberSection).where(MemberSection.scout_id.in_(ids)))
    grouped: dict[str, list[MemberSection]] = {}
    for row in result.scalars().all():
        grouped.setdefault(row.scout_id, []).append(row)
    return grouped


async def member_ids_in_section(session: AsyncSession, section_id: str) -> set[str]:
    result = await session.execute(select(MemberSection.scout_id).where(MemberSection.section_id == section_id))
    return set(result.scalars().all())


def infer_person_type(memberships: Iterable[MemberSection]) -> str:
    best = YOUNG_PEOPLE
    for row in memberships:
        if PERSON_TYPE_PRIORITY.get(row.person_type, 0) > PERSON_TYPE_PRIORITY[best]:
            best = row.person_type
    return best


async def list_members(session: AsyncSession, section_ids: Iterable[str]) -> list[dict[str, Any]]:
    ids = [str(section_id) for section_id in section_ids]
    if not ids:
        return []
    result = await session.execute(
        select(MemberSection, CoreMember)
        .join(CoreMember, CoreMember.scout_id == MemberSection.scout_id)
        .where(MemberSection.section_id.in_(ids))
        .order_by(CoreMember.last_name, CoreMember.first_name)
    )
    members: dict[str, dict[str, Any]] = {}
    for membership, core in result.all():
        entry = members.get(core.scout_id)
        if entry is None:
            entry = {
                **(core.payload or {}),
                "scoutid": core.scout_id,
                "firstname": core.first_name,
                "lastname": core.last_name,
                "date_of_birth": core.date_of_birth,
                "age": core.age,
                "sectionid": membership.section_id,
                "sectionname": membership.section_name,
                "person_type": membership.person_type,
                "patrol": membership.patrol,
                "patrol_id": membership.patrol_id,
                "sections": [],
            }
            members[core.scout_id] = entry
        entry["sections"].append(
            {"sectionid": membership.section_id, "sectionname": membership.section_name, "person_type": membership.person_type}
        )
        if PERSON_TYPE_PRIORITY.get(membership.person_type, 0) > PERSON_TYPE_PRIORITY.get(entry["person_type"], 0):
            entry["person_type"] = membership.person_type
    return list(members.values())


async def save_members(session: AsyncSession, members: Iterable[dict[str, Any]]) -> int:
    saved = 0
    for member in members:
        scout_id = str(member.get("scoutid") or "")
        if not scout_id:
            continue
        await upsert_core_member(
            session,
            scout_id,
            {
                "firstname": member.get("firstname"),
                "lastname": member.get("lastname"),
                "date_of_birth": member.get("date_of_birth") or member.get("dob"),
                "age": member.get("age"),
                "photo_guid": member.get("photo_guid"),
                "has_photo": member.get("has_photo") or member.get("photo_guid"),
                "payload": member,
            },
        )
        for membership in member.get("sections") or []:
            section_id = membership.get("sectionid")
            if section_id is None:
                continue
            await upsert_member_section(
                session,
                scout_id,
                str(section_id),
                person_type=membership.get("person_type") or YOUNG_PEOPLE,
                patrol=membership.get("patrol"),
                patrol_id=membership.get("patrol_id"),
                section_name=membership.get("sectionname"),
            )
        saved += 1
    return saved

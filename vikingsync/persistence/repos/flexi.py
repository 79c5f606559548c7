from __future__ import annotations

from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from vikingsync.domain.models import (
    FlexiDataRecord,
    FlexiListRecord,
    FlexiStructureRecord,
    VikingEventDataRecord,
)


def _flag(value: Any) -> bool:
    return str(value) in {"1", "true", "True", "y"}


async def save_flexi_list(session: AsyncSession, section_id: str, items: list[dict[str, Any]]) -> int:
    await session.execute(delete(FlexiListRecord).where(FlexiListRecord.section_id == section_id))
    for item in items:
        session.add(
            FlexiListRecord(
                section_id=section_id,
                extraid=str(item.get("extraid")),
                name=str(item.get("name") or ""),
                archived=_flag(item.get("archived")),
                soft_deleted=_flag(item.get("soft_deleted")),
            )
        )
    return len(items)


async def list_flexi_list(session: AsyncSession, section_id: str) -> list[dict[str, Any]]:
    result = await session.execute(
        select(FlexiListRecord).where(
            FlexiListRecord.section_id == section_id,
            FlexiListRecord.archived.is_(False),
            FlexiListRecord.soft_deleted.is_(False),
        )
    )
    return [
        {"extraid": record.extraid, "name": record.name, "archived": "0", "soft_deleted": "0"}
        for record in result.scalars().all()
    ]


async def save_flexi_structure(
    session: AsyncSession,
    extraid: str,
    *,
    name: str | None,
    section_id: str | None,
    field_mapping: dict[str, Any],
    payload: dict[str, Any],
) -> None:
    await session.merge(
        FlexiStructureRecord(
            extraid=extraid,
            name=name,
            section_id=section_id,
            field_mapping=field_mapping,
            payload=payload,
        )
    )


async def get_flexi_structure(session: AsyncSession, extraid: str) -> FlexiStructureRecord | None:
    result = await session.execute(select(FlexiStructureRecord).where(FlexiStructureRecord.extraid == extraid))
    return result.scalar_one_or_none()


async def save_flexi_data(
    session: AsyncSession,
    extraid: str,
    section_id: str,
    term_id: str,
    items: list[dict[str, Any]],
) -> int:
    await session.execute(
        delete(FlexiDataRecord).where(
            FlexiDataRecord.extraid == extraid,
            FlexiDataRecord.section_id == section_id,
            FlexiDataRecord.term_id == term_id,
        )
    )
    stored = 0
    for item in items:
        scout_id = str(item.get("scoutid") or "")
        if not scout_id:
            continue
        session.add(
            FlexiDataRecord(extraid=extraid, section_id=section_id, term_id=term_id, scout_id=scout_id, payload=item)
        )
        stored += 1
    return stored


async def list_flexi_data(session: AsyncSession, extraid: str, section_id: str, term_id: str) -> list[dict[str, Any]]:
    result = await session.execute(
        select(FlexiDataRecord).where(
            FlexiDataRecord.extraid == extraid,
            FlexiDataRecord.section_id == section_id,
            FlexiDataRecord.term_id == term_id,
        )
    )
    return [dict(record.payload or {}) for record in result.scalars().all()]


async def save_viking_event_data(
    session: AsyncSession,
    section_id: str,
    term_id: str,
    extraid: str | None,
    rows: list[dict[str, Any]],
) -> int:
    await session.execute(
        delete(VikingEventDataRecord).where(
            VikingEventDataRecord.section_id == section_id,
            VikingEventDataRecord.term_id == term_id,
        )
    )
    stored = 0
    for row in rows:
        scout_id = str(row.get("scoutid") or "")
        if not scout_id:
            continue
        session.add(
            VikingEventDataRecord(
                section_id=section_id,
                term_id=term_id,
                scout_id=scout_id,
                extraid=extraid,
                camp_group=row.get("CampGroup"),
                signed_in_by=row.get("SignedInBy"),
                signed_in_when=row.get("SignedInWhen"),
                signed_out_by=row.get("SignedOutBy"),
                signed_out_when=row.get("SignedOutWhen"),
                payload=row,
            )
        )
        stored += 1
    return stored


async def list_viking_event_data(session: AsyncSession, section_id: str, term_id: str) -> list[dict[str, Any]]:
    result = await session.execute(
        select(VikingEventDataRecord).where(
            VikingEventDataRecord.section_id == section_id,
            VikingEventDataRecord.term_id == term_id,
        )
    )
    return [dict(record.payload or {}) for record in result.scalars().all()]


async def members_in_camp_group(session: AsyncSession, camp_group: str, section_id: str | None = None) -> list[str]:
    stmt = select(VikingEventDataRecord.scout_id).where(VikingEventDataRecord.camp_group == camp_group)
    if section_id is not None:
        stmt = stmt.where(VikingEventDataRecord.section_id == section_id)
    result = await session.execute(stmt)
    return sorted(set(result.scalars().all()))

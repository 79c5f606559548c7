from __future__ import annotations

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from vikingsync.domain.models import (
    AttendanceRecord,
    CoreMember,
    EventRecord,
    FlexiDataRecord,
    FlexiListRecord,
    FlexiStructureRecord,
    MemberSection,
    SectionRecord,
    TermRecord,
    VikingEventDataRecord,
)


_TABLES = {
    "sections": SectionRecord,
    "terms": TermRecord,
    "members": CoreMember,
    "member_section": MemberSection,
    "events": EventRecord,
    "attendance": AttendanceRecord,
    "flexi_lists": FlexiListRecord,
    "flexi_structures": FlexiStructureRecord,
    "flexi_data": FlexiDataRecord,
    "viking_event_data": VikingEventDataRecord,
}


async def sync_stats(session: AsyncSession) -> dict[str, int]:
    counts: dict[str, int] = {}
    for name, model in _TABLES.items():
        result = await session.execute(select(func.count()).select_from(model))
        counts[name] = int(result.scalar_one())
    return counts


async def has_offline_data(session: AsyncSession) -> bool:
    # Sections are the root of every offline view; without them nothing is browsable.
    result = await session.execute(select(func.count()).select_from(SectionRecord))
    return int(result.scalar_one()) > 0


async def clear_all_data(session: AsyncSession) -> None:
    for model in _TABLES.values():
        await session.execute(delete(model))

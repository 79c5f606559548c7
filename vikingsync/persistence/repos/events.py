from __future__ import annotations

from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from vikingsync.domain.models import AttendanceRecord, EventRecord


async def save_events(session: AsyncSession, section_id: str, term_id: str, events: list[dict[str, Any]]) -> int:
    # A fresh listing is authoritative for its section and term.
    await session.execute(delete(EventRecord).where(EventRecord.section_id == section_id, EventRecord.term_id == term_id))
    for event in events:
        await session.merge(
            EventRecord(
                event_id=str(event["eventid"]),
                section_id=section_id,
                term_id=term_id,
                name=event.get("name"),
                start_date=event.get("startdate"),
                end_date=event.get("enddate"),
                location=event.get("location"),
                payload=event,
            )
        )
    return len(events)


async def list_events(session: AsyncSession, section_id: str, term_id: str | None = None) -> list[dict[str, Any]]:
    stmt = select(EventRecord).where(EventRecord.section_id == section_id)
    if term_id is not None:
        stmt = stmt.where(EventRecord.term_id == term_id)
    result = await session.execute(stmt.order_by(EventRecord.start_date))
    return [dict(record.payload or {}) for record in result.scalars().all()]


async def get_event(session: AsyncSession, event_id: str) -> EventRecord | None:
    result = await session.execute(select(EventRecord).where(EventRecord.event_id == event_id))
    return result.scalar_one_or_none()


async def save_attendance(
    session: AsyncSession,
    event_id: str,
    rows: list[dict[str, Any]],
    *,
    owner_section_id: str,
    shared: bool = False,
) -> int:
    await session.execute(delete(AttendanceRecord).where(AttendanceRecord.event_id == event_id))
    seen: set[str] = set()
    for row in rows:
        scout_id = str(row.get("scoutid") or "")
        if not scout_id or scout_id in seen:
            continue
        seen.add(scout_id)
        section_id = str(row.get("sectionid") or owner_section_id)
        session.add(
            AttendanceRecord(
                event_id=event_id,
                scout_id=scout_id,
                section_id=section_id,
                attending=row.get("attending"),
                first_name=row.get("firstname"),
                last_name=row.get("lastname"),
                is_shared_section=shared and section_id != owner_section_id,
                payload=row,
            )
        )
    return len(seen)


async def list_attendance(session: AsyncSession, event_id: str) -> list[dict[str, Any]]:
    result = await session.execute(
        select(AttendanceRecord).where(AttendanceRecord.event_id == event_id).order_by(AttendanceRecord.last_name)
    )
    return [dict(record.payload or {}) for record in result.scalars().all()]


async def attendance_for_member(session: AsyncSession, scout_id: str) -> list[AttendanceRecord]:
    result = await session.execute(select(AttendanceRecord).where(AttendanceRecord.scout_id == scout_id))
    return list(result.scalars().all())


async def delete_attendance(session: AsyncSession, event_id: str) -> int:
    result = await session.execute(delete(AttendanceRecord).where(AttendanceRecord.event_id == event_id))
    return int(result.rowcount or 0)

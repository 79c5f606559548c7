from __future__ import annotations

from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from vikingsync.domain.models import SectionRecord, TermRecord


async def save_sections(session: AsyncSession, sections: list[dict[str, Any]]) -> int:
    for section in sections:
        await session.merge(
            SectionRecord(
                section_id=str(section["sectionid"]),
                section_name=section.get("sectionname") or f"Section {section['sectionid']}",
                section_type=section.get("section") or section.get("sectiontype"),
                section_kind=section.get("section_kind") or "unknown",
                is_default=bool(section.get("isDefault")),
                permissions=section.get("permissions") or {},
            )
        )
    return len(sections)


def section_to_dict(record: SectionRecord) -> dict[str, Any]:
    return {
        "sectionid": record.section_id,
        "sectionname": record.section_name,
        "section": record.section_type,
        "sectiontype": record.section_type,
        "section_kind": record.section_kind,
        "isDefault": record.is_default,
        "permissions": record.permissions or {},
    }


async def list_sections(session: AsyncSession) -> list[dict[str, Any]]:
    result = await session.execute(select(SectionRecord).order_by(SectionRecord.section_name))
    return [section_to_dict(record) for record in result.scalars().all()]


async def get_section(session: AsyncSession, section_id: str) -> SectionRecord | None:
    result = await session.execute(select(SectionRecord).where(SectionRecord.section_id == section_id))
    return result.scalar_one_or_none()


async def save_terms(session: AsyncSession, section_id: str, terms: list[dict[str, Any]], current_term_id: str | None) -> int:
    await session.execute(delete(TermRecord).where(TermRecord.section_id == section_id))
    for term in terms:
        term_id = str(term.get("termid"))
        session.add(
            TermRecord(
                term_id=term_id,
                section_id=section_id,
                name=term.get("name"),
                start_date=term.get("startdate"),
                end_date=term.get("enddate"),
                term_type=term.get("term_type"),
                year=term.get("year"),
                is_current=term_id == current_term_id,
            )
        )
    return len(terms)


async def list_terms(session: AsyncSession, section_id: str | None = None) -> list[TermRecord]:
    stmt = select(TermRecord)
    if section_id is not None:
        stmt = stmt.where(TermRecord.section_id == section_id)
    result = await session.execute(stmt.order_by(TermRecord.section_id, TermRecord.end_date))
    return list(result.scalars().all())


async def get_current_term(session: AsyncSession, section_id: str) -> TermRecord | None:
    result = await session.execute(
        select(TermRecord).where(TermRecord.section_id == section_id, TermRecord.is_current.is_(True))
    )
    return result.scalars().first()

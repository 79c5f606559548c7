from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class KeyValueEntry(Base):
    # Hot tier when the cache backend is "sql"; values are JSON text with _cacheTimestamp.
    __tablename__ = "kv_cache"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class SectionRecord(Base):
    __tablename__ = "sections"

    section_id: Mapped[str] = mapped_column(String, primary_key=True)
    section_name: Mapped[str] = mapped_column(String)
    # Free-form upstream label, e.g. "cubs" or "Thursday Beavers".
    section_type: Mapped[str | None] = mapped_column(String, nullable=True)
    # Closed enum derived from section_type/section_name by name matching.
    section_kind: Mapped[str] = mapped_column(String, default="unknown")
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    permissions: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class TermRecord(Base):
    __tablename__ = "terms"

    term_id: Mapped[str] = mapped_column(String, primary_key=True)
    section_id: Mapped[str] = mapped_column(String, primary_key=True, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    start_date: Mapped[str | None] = mapped_column(String, nullable=True)
    end_date: Mapped[str | None] = mapped_column(String, nullable=True)
    # Spring, Summer or Autumn when it can be inferred from the name or dates.
    term_type: Mapped[str | None] = mapped_column(String, nullable=True)
    year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_current: Mapped[bool] = mapped_column(Boolean, default=False)


class CoreMember(Base):
    __tablename__ = "members"

    scout_id: Mapped[str] = mapped_column(String, primary_key=True)
    first_name: Mapped[str | None] = mapped_column(String, nullable=True)
    last_name: Mapped[str | None] = mapped_column(String, nullable=True)
    date_of_birth: Mapped[str | None] = mapped_column(String, nullable=True)
    # Upstream reports age as "years / months" text.
    age: Mapped[str | None] = mapped_column(String, nullable=True)
    photo_guid: Mapped[str | None] = mapped_column(String, nullable=True)
    has_photo: Mapped[bool] = mapped_column(Boolean, default=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class MemberSection(Base):
    __tablename__ = "member_section"
    __table_args__ = (
        Index("ix_member_section_member", "scout_id"),
        Index("ix_member_section_section", "section_id"),
    )

    scout_id: Mapped[str] = mapped_column(String, primary_key=True)
    section_id: Mapped[str] = mapped_column(String, primary_key=True)
    person_type: Mapped[str] = mapped_column(String, default="Young People")
    patrol: Mapped[str | None] = mapped_column(String, nullable=True)
    patrol_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    section_name: Mapped[str | None] = mapped_column(String, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    # Rows created from shared attendance rather than the section's own member grid.
    from_shared_event: Mapped[bool] = mapped_column(Boolean, default=False)


class EventRecord(Base):
    __tablename__ = "events"
    __table_args__ = (Index("ix_events_section_term", "section_id", "term_id"),)

    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    section_id: Mapped[str] = mapped_column(String, index=True)
    term_id: Mapped[str | None] = mapped_column(String, nullable=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    start_date: Mapped[str | None] = mapped_column(String, nullable=True)
    end_date: Mapped[str | None] = mapped_column(String, nullable=True)
    location: Mapped[str | None] = mapped_column(String, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class AttendanceRecord(Base):
    __tablename__ = "attendance"
    __table_args__ = (
        Index("ix_attendance_member", "scout_id"),
        Index("ix_attendance_section", "section_id"),
    )

    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    scout_id: Mapped[str] = mapped_column(String, primary_key=True)
    section_id: Mapped[str] = mapped_column(String)
    attending: Mapped[str | None] = mapped_column(String, nullable=True)
    first_name: Mapped[str | None] = mapped_column(String, nullable=True)
    last_name: Mapped[str | None] = mapped_column(String, nullable=True)
    is_shared_section: Mapped[bool] = mapped_column(Boolean, default=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)


class FlexiListRecord(Base):
    __tablename__ = "flexi_lists"

    section_id: Mapped[str] = mapped_column(String, primary_key=True)
    extraid: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, index=True)
    archived: Mapped[bool] = mapped_column(Boolean, default=False)
    soft_deleted: Mapped[bool] = mapped_column(Boolean, default=False)


class FlexiStructureRecord(Base):
    __tablename__ = "flexi_structures"

    extraid: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    section_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    field_mapping: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)


class FlexiDataRecord(Base):
    __tablename__ = "flexi_data"
    __table_args__ = (
        Index("ix_flexi_data_member", "scout_id"),
        Index("ix_flexi_data_section", "section_id"),
    )

    extraid: Mapped[str] = mapped_column(String, primary_key=True)
    section_id: Mapped[str] = mapped_column(String, primary_key=True)
    term_id: Mapped[str] = mapped_column(String, primary_key=True)
    scout_id: Mapped[str] = mapped_column(String, primary_key=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)


class VikingEventDataRecord(Base):
    __tablename__ = "viking_event_data"
    __table_args__ = (
        Index("ix_viking_event_data_member", "scout_id"),
        Index("ix_viking_event_data_camp_group", "camp_group"),
        Index("ix_viking_event_data_section", "section_id"),
    )

    section_id: Mapped[str] = mapped_column(String, primary_key=True)
    term_id: Mapped[str] = mapped_column(String, primary_key=True)
    scout_id: Mapped[str] = mapped_column(String, primary_key=True)
    extraid: Mapped[str | None] = mapped_column(String, nullable=True)
    camp_group: Mapped[str | None] = mapped_column(String, nullable=True)
    signed_in_by: Mapped[str | None] = mapped_column(String, nullable=True)
    signed_in_when: Mapped[str | None] = mapped_column(String, nullable=True)
    signed_out_by: Mapped[str | None] = mapped_column(String, nullable=True)
    signed_out_when: Mapped[str | None] = mapped_column(String, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

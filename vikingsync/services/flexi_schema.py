from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Sequence

from vikingsync.core.errors import InvalidData
from vikingsync.services.sentinels import is_field_cleared


logger = logging.getLogger(__name__)

FIELD_ID_RE = re.compile(r"^f_\d+$")
DEFAULT_CONFIG_WIDTH = "150"
DEFAULT_ROW_WIDTH = "150px"
UNASSIGNED_GROUP = "Group Unassigned"
EXCLUDED_PERSON_TYPES = frozenset({"Leaders", "Young Leaders"})

SIGN_IN_FIELDS = ("SignedInBy", "SignedInWhen", "SignedOutBy", "SignedOutWhen")
VIKING_EVENT_FIELDS = ("CampGroup", *SIGN_IN_FIELDS)
CORE_MEMBER_FIELDS = ("scoutid", "firstname", "lastname", "dob", "age", "patrol", "patrolid", "photo_guid")


def is_field_id(value: Any) -> bool:
    return isinstance(value, str) and FIELD_ID_RE.match(value) is not None


@dataclass(frozen=True)
class FieldDescriptor:
    field_id: str
    name: str
    width: str = DEFAULT_ROW_WIDTH
    editable: bool = False
    formatter: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "fieldId": self.field_id,
            "columnId": self.field_id,
            "name": self.name,
            "width": self.width,
            "editable": self.editable,
            "formatter": self.formatter,
        }

    @classmethod
    def from_dict(cls, field_id: str, raw: dict[str, Any]) -> "FieldDescriptor":
        return cls(
            field_id=str(raw.get("fieldId") or raw.get("columnId") or field_id),
            name=str(raw.get("name") or ""),
            width=str(raw.get("width") or DEFAULT_ROW_WIDTH),
            editable=bool(raw.get("editable")),
            formatter=raw.get("formatter"),
        )


FieldMapping = dict[str, FieldDescriptor]


def parse_structure(structure: dict[str, Any]) -> FieldMapping:
    """Merge the JSON ``config`` array and ``structure[].rows[]`` into one field mapping.

    Rows take precedence for metadata; entries whose id is not ``f_<n>`` are ignored.
    """
    if not isinstance(structure, dict):
        raise InvalidData("Invalid FlexiRecord structure: expected an object")

    mapping: FieldMapping = {}
    config = structure.get("config")
    if config:
        try:
            entries = json.loads(config) if isinstance(config, str) else config
        except ValueError:
            logger.warning("flexi_structure_config_unparseable extraid=%s", structure.get("extraid"))
            entries = []
        if isinstance(entries, list):
            for entry in entries:
                if not isinstance(entry, dict):
                    continue
                field_id, name = entry.get("id"), entry.get("name")
                if is_field_id(field_id) and name:
                    mapping[field_id] = FieldDescriptor(
                        field_id=field_id,
                        name=str(name),
                        width=str(entry.get("width") or DEFAULT_CONFIG_WIDTH),
                    )

    for section in structure.get("structure") or []:
        if not isinstance(section, dict):
            continue
        for row in section.get("rows") or []:
            if not isinstance(row, dict) or not is_field_id(row.get("field")):
                continue
            field_id = row["field"]
            existing = mapping.get(field_id)
            name = row.get("name") or (existing.name if existing else None)
            if not name:
                continue
            mapping[field_id] = FieldDescriptor(
                field_id=field_id,
                name=str(name),
                width=str(row.get("width") or (existing.width if existing else DEFAULT_ROW_WIDTH)),
                editable=bool(row.get("editable")),
                formatter=row.get("formatter"),
            )
    return mapping


def serialize_structure(mapping: FieldMapping, **extra: Any) -> dict[str, Any]:
    config = [{"id": fid, "name": d.name, "width": d.width} for fid, d in mapping.items()]
    rows = [
        {"field": fid, "name": d.name, "width": d.width, "editable": d.editable, "formatter": d.formatter}
        for fid, d in mapping.items()
    ]
    return {**extra, "config": json.dumps(config), "structure": [{"rows": rows}]}


def mapping_to_dict(mapping: FieldMapping) -> dict[str, dict[str, Any]]:
    return {fid: descriptor.as_dict() for fid, descriptor in mapping.items()}


def mapping_from_dict(raw: dict[str, Any]) -> FieldMapping:
    return {
        fid: FieldDescriptor.from_dict(fid, value)
        for fid, value in (raw or {}).items()
        if is_field_id(fid) and isinstance(value, dict)
    }


def field_id_for(mapping: FieldMapping, name: str) -> str | None:
    for fid, descriptor in mapping.items():
        if descriptor.name == name:
            return fid
    return None


def transform_data(
    data: dict[str, Any],
    mapping: FieldMapping,
    *,
    transformed_at: str | None = None,
) -> dict[str, Any]:
    # Mirror every mapped f_N under its name and keep the raw value as _original_f_N.
    if not isinstance(data, dict):
        raise InvalidData("Invalid FlexiRecord data: expected an object")
    field_mapping = mapping_to_dict(mapping)
    items = data.get("items")
    if not isinstance(items, list):
        logger.warning("flexi_data_without_items type=%s", type(items).__name__)
        return {**data, "items": [], "fieldMapping": field_mapping}

    transformed_items: list[dict[str, Any]] = []
    for item in items:
        row = dict(item)
        for fid, descriptor in mapping.items():
            if fid in item:
                row[descriptor.name] = item[fid]
                row[f"_original_{fid}"] = item[fid]
        transformed_items.append(row)

    return {
        **data,
        "items": transformed_items,
        "fieldMapping": field_mapping,
        "_metadata": {
            "originalFieldCount": len(mapping),
            "transformedAt": transformed_at or datetime.now(timezone.utc).isoformat(),
            "totalItems": len(transformed_items),
        },
    }


def consolidate(
    structure: dict[str, Any],
    data: dict[str, Any],
    mapping: FieldMapping,
    *,
    section_id: str,
    extraid: str,
    transformed_at: str | None = None,
) -> dict[str, Any]:
    if not mapping:
        raise InvalidData(f"FlexiRecord {extraid} structure has no f_N fields")
    consolidated = transform_data(data, mapping, transformed_at=transformed_at)
    consolidated["_structure"] = {
        "name": structure.get("name"),
        "extraid": extraid,
        "flexirecordid": extraid,
        "sectionid": section_id,
        "archived": str(structure.get("archived")) == "1",
        "softDeleted": str(structure.get("soft_deleted")) == "1",
        "fieldMapping": mapping_to_dict(mapping),
    }
    return consolidated


@dataclass(frozen=True)
class RecordType:
    """Named FlexiRecord kind with the named fields its callers depend on."""

    name: str
    required_fields: tuple[str, ...] = ()
    optional_fields: tuple[str, ...] = ()
    predicate: Callable[[dict[str, Any]], bool] | None = None

    def matches(self, entry: dict[str, Any]) -> bool:
        if self.predicate is not None:
            return self.predicate(entry)
        return str(entry.get("name") or "") == self.name


VIKING_EVENT_MGMT = RecordType("Viking Event Mgmt", optional_fields=VIKING_EVENT_FIELDS)
SIGN_IN_TRACKING = RecordType("Viking Event Mgmt", required_fields=SIGN_IN_FIELDS, optional_fields=("CampGroup",))
VIKING_SECTION_MOVERS = RecordType(
    "Viking Section Movers",
    required_fields=("AssignedSection",),
    optional_fields=(
        "AssignedTerm",
        "AssignmentOverride",
        "AssignmentDate",
        "AssignedBy",
        "Member ID",
        "Date of Birth",
        "Current Section",
        "Target Section",
        "Assignment Term",
    ),
)


def find_record(entries: Iterable[dict[str, Any]], record_type: RecordType) -> dict[str, Any] | None:
    for entry in entries:
        if str(entry.get("archived")) == "1" or str(entry.get("soft_deleted")) == "1":
            continue
        if record_type.matches(entry):
            return entry
    return None


@dataclass(frozen=True)
class FlexiContext:
    flexirecordid: str
    sectionid: str
    termid: str
    section_name: str | None
    field_ids: dict[str, str]
    field_mapping: FieldMapping
    missing_optional: tuple[str, ...] = ()
    sectiontype: str | None = None

    def field_id(self, name: str) -> str | None:
        return self.field_ids.get(name)

    def as_dict(self) -> dict[str, Any]:
        return {
            "flexirecordid": self.flexirecordid,
            "sectionid": self.sectionid,
            "termid": self.termid,
            "section": self.section_name,
            "sectiontype": self.sectiontype,
            "fields": dict(self.field_ids),
            "fieldMapping": mapping_to_dict(self.field_mapping),
        }


def _mapping_of(payload: dict[str, Any]) -> tuple[FieldMapping, str | None]:
    structure = payload.get("_structure")
    if isinstance(structure, dict):
        extraid = structure.get("extraid") or structure.get("flexirecordid")
        return mapping_from_dict(structure.get("fieldMapping") or {}), str(extraid) if extraid else None
    extraid = payload.get("extraid") or payload.get("flexirecordid")
    return parse_structure(payload), str(extraid) if extraid else None


def missing_fields(mapping: FieldMapping, names: Iterable[str]) -> list[str]:
    available = {descriptor.name for descriptor in mapping.values()}
    return [name for name in names if name not in available]


def extract_context(
    record_payload: dict[str, Any] | None,
    section_id: str,
    term_id: str,
    section_name: str | None,
    required_fields: Sequence[str],
    optional_fields: Sequence[str] = (),
    *,
    section_type: str | None = None,
) -> FlexiContext | None:
    if not isinstance(record_payload, dict):
        logger.warning("flexi_context_missing_payload section_id=%s", section_id)
        return None
    try:
        mapping, extraid = _mapping_of(record_payload)
    except InvalidData:
        logger.warning("flexi_context_invalid_structure section_id=%s", section_id)
        return None
    if not mapping:
        logger.warning("flexi_context_empty_structure section_id=%s extraid=%s", section_id, extraid)
        return None
    missing = missing_fields(mapping, required_fields)
    if missing:
        logger.warning(
            "flexi_context_missing_fields section_id=%s section=%s missing=%s",
            section_id,
            section_name,
            ",".join(missing),
        )
        return None
    field_ids: dict[str, str] = {}
    for name in (*required_fields, *optional_fields):
        fid = field_id_for(mapping, name)
        if fid is not None:
            field_ids[name] = fid
    return FlexiContext(
        flexirecordid=extraid or "",
        sectionid=str(section_id),
        termid=str(term_id),
        section_name=section_name,
        field_ids=field_ids,
        field_mapping=mapping,
        missing_optional=tuple(missing_fields(mapping, optional_fields)),
        sectiontype=section_type,
    )


def extract_record_context(
    record_payload: dict[str, Any] | None,
    record_type: RecordType,
    section_id: str,
    term_id: str,
    section_name: str | None = None,
    *,
    section_type: str | None = None,
) -> FlexiContext | None:
    return extract_context(
        record_payload,
        section_id,
        term_id,
        section_name,
        record_type.required_fields,
        record_type.optional_fields,
        section_type=section_type,
    )


@dataclass
class CollectionValidation:
    valid: list[dict[str, Any]] = field(default_factory=list)
    invalid: list[dict[str, Any]] = field(default_factory=list)
    results: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return bool(self.valid) and not self.invalid

    @property
    def summary(self) -> dict[str, int]:
        return {"total": len(self.results), "valid": len(self.valid), "invalid": len(self.invalid)}

    def as_dict(self) -> dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "valid": self.valid,
            "invalid": self.invalid,
            "validationResults": self.results,
            "summary": self.summary,
        }


def validate_collection(
    discovered: Sequence[dict[str, Any]],
    contexts: Sequence[FlexiContext | None],
) -> CollectionValidation:
    # Records and contexts are paired by position; a missing context marks the record invalid.
    outcome = CollectionValidation()
    for index, record in enumerate(discovered):
        context = contexts[index] if index < len(contexts) else None
        result = {
            "sectionid": record.get("sectionid"),
            "sectionname": record.get("sectionname"),
            "extraid": record.get("extraid"),
            "isValid": context is not None,
        }
        if context is not None:
            outcome.valid.append({**record, "context": context})
        else:
            reason = record.get("error") or "missing required fields"
            result["error"] = reason
            outcome.invalid.append({**record, "error": reason})
        outcome.results.append(result)
    return outcome


def extract_viking_event_fields(consolidated: dict[str, Any] | None) -> list[dict[str, Any]]:
    if not consolidated or not isinstance(consolidated.get("items"), list):
        return []
    rows: list[dict[str, Any]] = []
    for scout in consolidated["items"]:
        row = {name: scout.get(name) for name in CORE_MEMBER_FIELDS}
        for name in VIKING_EVENT_FIELDS:
            if name in scout:
                row[name] = scout[name]
        rows.append(row)
    return rows


def _camp_group_of(member: dict[str, Any]) -> Any:
    event_data = member.get("vikingEventData")
    if isinstance(event_data, dict) and "CampGroup" in event_data:
        return event_data.get("CampGroup")
    return member.get("CampGroup")


def _group_sort_key(name: str) -> tuple[int, float, str]:
    if name == UNASSIGNED_GROUP:
        return (2, 0.0, name)
    suffix = name.removeprefix("Group ")
    try:
        return (0, float(suffix), name)
    except ValueError:
        return (1, 0.0, name)


def _member_sort_key(member: dict[str, Any]) -> str:
    return f"{member.get('lastname') or ''} {member.get('firstname') or ''}".strip().lower()


def organize_by_camp_groups(members: Iterable[dict[str, Any]] | None) -> dict[str, Any]:
    if members is None:
        return {"groups": {}, "summary": {"totalGroups": 0, "totalMembers": 0}}

    groups: dict[str, dict[str, Any]] = {}
    processed = 0
    all_have_event_data = True
    for member in members:
        if member is None or member.get("person_type") in EXCLUDED_PERSON_TYPES:
            continue
        camp_group = _camp_group_of(member)
        assigned = not is_field_cleared(camp_group) if isinstance(camp_group, str) else camp_group not in (None, 0)
        group_name = f"Group {camp_group}" if assigned else UNASSIGNED_GROUP
        group = groups.get(group_name)
        if group is None:
            try:
                number = float(camp_group) if assigned else None
            except (TypeError, ValueError):
                number = None
            group = {
                "name": group_name,
                "number": int(number) if number is not None and number.is_integer() else number,
                "leaders": [],
                "youngPeople": [],
                "totalMembers": 0,
            }
            groups[group_name] = group
        group["youngPeople"].append({**member, "campGroup": camp_group if assigned else None, "groupName": group_name})
        group["totalMembers"] += 1
        all_have_event_data = all_have_event_data and bool(member.get("vikingEventData") or "CampGroup" in member)
        processed += 1

    sorted_groups: dict[str, dict[str, Any]] = {}
    for name in sorted(groups, key=_group_sort_key):
        group = groups[name]
        group["youngPeople"].sort(key=_member_sort_key)
        sorted_groups[name] = group

    summary = {
        "totalGroups": len(sorted_groups),
        "totalMembers": processed,
        "totalLeaders": sum(len(group["leaders"]) for group in sorted_groups.values()),
        "totalYoungPeople": sum(len(group["youngPeople"]) for group in sorted_groups.values()),
        "hasUnassigned": UNASSIGNED_GROUP in sorted_groups,
        "vikingEventDataAvailable": all_have_event_data and processed > 0,
    }
    return {"groups": sorted_groups, "summary": summary}

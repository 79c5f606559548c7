from __future__ import annotations

import json

import pytest

from vikingsync.core.errors import InvalidData
from vikingsync.services.flexi_schema import (
    SIGN_IN_TRACKING,
    UNASSIGNED_GROUP,
    VIKING_SECTION_MOVERS,
    consolidate,
    extract_record_context,
    extract_viking_event_fields,
    find_record,
    organize_by_camp_groups,
    parse_structure,
    serialize_structure,
    transform_data,
    validate_collection,
)


STAMP = "2025-06-01T10:00:00+00:00"


def _structure(*extra_rows: dict) -> dict:
    return {
        "extraid": "9",
        "name": "Viking Event Mgmt",
        "config": json.dumps(
            [
                {"id": "f_1", "name": "CampGroup", "width": "120"},
                {"id": "f_2", "name": "SignedInBy"},
                {"id": "total", "name": "Total"},
            ]
        ),
        "structure": [
            {
                "rows": [
                    {"field": "f_2", "name": "SignedInBy", "width": "80px", "editable": True},
                    {"field": "f_3", "name": "SignedInWhen"},
                    {"field": "firstname", "name": "First name"},
                    *extra_rows,
                ]
            }
        ],
    }


def test_parse_structure_merges_config_and_rows() -> None:
    mapping = parse_structure(_structure())
    assert sorted(mapping) == ["f_1", "f_2", "f_3"]
    assert mapping["f_1"].name == "CampGroup"
    assert mapping["f_1"].width == "120"
    # Rows override config metadata.
    assert mapping["f_2"].width == "80px"
    assert mapping["f_2"].editable is True
    assert mapping["f_3"].width == "150px"


def test_parse_structure_tolerates_bad_config() -> None:
    mapping = parse_structure({"config": "{not json", "structure": [{"rows": [{"field": "f_4", "name": "Notes"}]}]})
    assert list(mapping) == ["f_4"]
    with pytest.raises(InvalidData):
        parse_structure(["not", "a", "structure"])  # type: ignore[arg-type]


def test_serialized_structure_parses_back_to_same_mapping() -> None:
    mapping = parse_structure(_structure())
    assert parse_structure(serialize_structure(mapping, extraid="9")) == mapping


def test_transform_data_mirrors_fields_and_keeps_originals() -> None:
    mapping = parse_structure(_structure())
    data = {"identifier": "scoutid", "items": [{"scoutid": "1", "firstname": "Ann", "f_1": "2", "f_2": "Leader A"}]}

    transformed = transform_data(data, mapping, transformed_at=STAMP)

    item = transformed["items"][0]
    assert item["CampGroup"] == "2"
    assert item["_original_f_1"] == "2"
    assert item["SignedInBy"] == "Leader A"
    assert "SignedInWhen" not in item
    assert transformed["_metadata"] == {"originalFieldCount": 3, "transformedAt": STAMP, "totalItems": 1}
    assert transformed["fieldMapping"]["f_2"]["name"] == "SignedInBy"
    # The input is left untouched and a second pass changes nothing.
    assert "CampGroup" not in data["items"][0]
    assert transform_data(transformed, mapping, transformed_at=STAMP) == transformed


def test_transform_data_without_items() -> None:
    transformed = transform_data({"identifier": "scoutid"}, parse_structure(_structure()))
    assert transformed["items"] == []


def test_consolidate_rejects_structure_without_fields() -> None:
    with pytest.raises(InvalidData):
        consolidate({"name": "Empty"}, {"items": []}, {}, section_id="1", extraid="9")


def test_context_requires_named_fields() -> None:
    structure = _structure()
    mapping = parse_structure(structure)
    consolidated = consolidate(structure, {"items": []}, mapping, section_id="1", extraid="9", transformed_at=STAMP)
    assert extract_record_context(consolidated, SIGN_IN_TRACKING, "1", "t1", "Beavers") is None

    complete = _structure({"field": "f_5", "name": "SignedOutBy"}, {"field": "f_6", "name": "SignedOutWhen"})
    consolidated = consolidate(
        complete, {"items": []}, parse_structure(complete), section_id="1", extraid="9", transformed_at=STAMP
    )
    context = extract_record_context(consolidated, SIGN_IN_TRACKING, "1", "t1", "Beavers")
    assert context is not None
    assert context.flexirecordid == "9"
    assert context.field_id("SignedInBy") == "f_2"
    assert context.field_id("SignedOutWhen") == "f_6"
    assert context.field_id("CampGroup") == "f_1"
    assert context.missing_optional == ()


def test_context_from_raw_structure() -> None:
    raw = {"extraid": "44", "structure": [{"rows": [{"field": "f_1", "name": "AssignedSection"}]}]}
    context = extract_record_context(raw, VIKING_SECTION_MOVERS, "7", "t2", "Cubs")
    assert context is not None
    assert context.flexirecordid == "44"
    assert "AssignedTerm" in context.missing_optional


def test_find_record_skips_archived_and_deleted() -> None:
    entries = [
        {"extraid": "1", "name": "Viking Section Movers", "archived": "1"},
        {"extraid": "2", "name": "Viking Section Movers", "soft_deleted": "1"},
        {"extraid": "3", "name": "Viking Section Movers", "archived": "0"},
    ]
    assert find_record(entries, VIKING_SECTION_MOVERS)["extraid"] == "3"
    assert find_record(entries[:2], VIKING_SECTION_MOVERS) is None


def test_validate_collection_pairs_records_with_contexts() -> None:
    raw = {"extraid": "44", "structure": [{"rows": [{"field": "f_1", "name": "AssignedSection"}]}]}
    context = extract_record_context(raw, VIKING_SECTION_MOVERS, "7", "t2", "Cubs")
    records = [
        {"sectionid": "7", "sectionname": "Cubs", "extraid": "44"},
        {"sectionid": "8", "sectionname": "Scouts", "extraid": "45"},
    ]

    outcome = validate_collection(records, [context, None])

    assert not outcome.is_valid
    assert outcome.summary == {"total": 2, "valid": 1, "invalid": 1}
    assert outcome.valid[0]["context"] is context
    assert outcome.invalid[0]["error"] == "missing required fields"
    assert [result["isValid"] for result in outcome.as_dict()["validationResults"]] == [True, False]


def test_extract_viking_event_fields() -> None:
    rows = extract_viking_event_fields(
        {"items": [{"scoutid": "1", "firstname": "Ann", "CampGroup": "3", "SignedInBy": "X", "f_1": "3"}]}
    )
    assert rows[0]["scoutid"] == "1"
    assert rows[0]["CampGroup"] == "3"
    assert "SignedOutBy" not in rows[0]
    assert "f_1" not in rows[0]
    assert extract_viking_event_fields(None) == []


def test_organize_by_camp_groups() -> None:
    members = [
        {"scoutid": "1", "firstname": "Zed", "lastname": "Young", "person_type": "Young People", "CampGroup": "10"},
        {"scoutid": "2", "firstname": "Amy", "lastname": "Able", "person_type": "Young People", "CampGroup": "2"},
        {"scoutid": "3", "firstname": "Bo", "lastname": "Best", "person_type": "Young People", "CampGroup": "---"},
        {"scoutid": "4", "firstname": "Cy", "lastname": "Cole", "vikingEventData": {"CampGroup": "2"}},
        {"scoutid": "5", "firstname": "Lee", "lastname": "Lead", "person_type": "Leaders", "CampGroup": "1"},
        {"scoutid": "6", "firstname": "Dan", "lastname": "Dunn", "person_type": "Young People"},
    ]

    organized = organize_by_camp_groups(members)

    assert list(organized["groups"]) == ["Group 2", "Group 10", UNASSIGNED_GROUP]
    group_two = organized["groups"]["Group 2"]
    assert group_two["number"] == 2
    assert [m["scoutid"] for m in group_two["youngPeople"]] == ["2", "4"]
    assert [m["scoutid"] for m in organized["groups"][UNASSIGNED_GROUP]["youngPeople"]] == ["3", "6"]
    assert organized["summary"]["totalMembers"] == 5
    assert organized["summary"]["hasUnassigned"] is True
    assert organized["summary"]["vikingEventDataAvailable"] is False
    assert organize_by_camp_groups(None)["summary"]["totalGroups"] == 0


def test_empty_member_records_land_in_unassigned() -> None:
    organized = organize_by_camp_groups([{}, {"scoutid": "1", "CampGroup": "3"}, None])
    assert organized["groups"][UNASSIGNED_GROUP]["totalMembers"] == 1
    assert organized["summary"]["totalMembers"] == 2

from __future__ import annotations

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from vikingsync.core.errors import ApplicationFailure, AuthExpired, InvalidData
from vikingsync.persistence.cache_store import CacheCategory
from vikingsync.persistence.repos.flexi import list_flexi_data, members_in_camp_group
from vikingsync.services import mutations
from vikingsync.services.client import create_client
from vikingsync.services.flexi_schema import SIGN_IN_TRACKING, FlexiContext, extract_record_context
from vikingsync.services.mutations import MutationService, is_failed_envelope, normalize_value
from vikingsync.services.telemetry import get_counter
from vikingsync.tests.utils.fake_osm import json_body
from vikingsync.tests.utils.flexi import VIKING_FIELD_IDS, viking_data, viking_structure


def _sign_in_context() -> FlexiContext:
    context = extract_record_context(viking_structure(), SIGN_IN_TRACKING, "1", "t1", "Beavers")
    assert context is not None
    return context


def test_value_normalization() -> None:
    assert normalize_value("Unassigned") == ""
    assert normalize_value(None) == ""
    assert normalize_value(3) == "3"
    assert normalize_value("---") == "---"


def test_failed_envelope_detection() -> None:
    assert is_failed_envelope(None)
    assert is_failed_envelope({"ok": False})
    assert is_failed_envelope({"status": "error"})
    assert is_failed_envelope({"data": {"success": False}})
    assert not is_failed_envelope({"ok": True, "data": {"success": True}})


@pytest.mark.asyncio
async def test_rate_limited_bulk_clear_runs_every_field_in_order(client, fake_osm) -> None:
    fake_osm.add(
        "/multi-update-flexi-record",
        (429, {"error": "Rate limited", "rateLimitInfo": {"retryAfter": 0.2}}),
        {"ok": True},
    )

    result = await MutationService(client).bulk_clear_sign_in([1, 2, 3], _sign_in_context())

    assert result.success is True
    assert result.partial is False
    assert result.cleared_fields == 4
    assert result.as_dict()["clearedFields"] == 4
    calls = fake_osm.calls("/multi-update-flexi-record")
    bodies = [json_body(request) for request in calls]
    assert [body["columnid"] for body in bodies] == ["f_2", "f_2", "f_3", "f_4", "f_5"]
    assert [body["value"] for body in bodies[1:]] == ["---", " ", "---", " "]
    assert bodies[0]["scouts"] == ["1", "2", "3"]
    assert bodies[0]["flexirecordid"] == "9"

    times = fake_osm.call_times("/multi-update-flexi-record")
    gaps = [later - earlier for earlier, later in zip(times, times[1:])]
    assert gaps[0] >= 0.19
    assert all(gap >= 0.015 for gap in gaps[1:])


@pytest.mark.asyncio
async def test_bulk_clear_reports_partial_success(client, fake_osm) -> None:
    fake_osm.add(
        "/multi-update-flexi-record",
        {"ok": True},
        (500, {"error": "Internal Server Error"}),
        {"ok": True},
    )

    result = await MutationService(client).bulk_clear_sign_in(["1"], _sign_in_context())

    assert result.success is True
    assert result.partial is True
    assert (result.cleared_fields, result.failed_fields) == (3, 1)
    assert result.results[1]["field"] == "SignedInWhen"
    assert result.results[1]["errorKind"] == "server_error"


@pytest.mark.asyncio
async def test_bulk_clear_without_fields_fails_every_step(client, fake_osm) -> None:
    context = FlexiContext(
        flexirecordid="9", sectionid="1", termid="t1", section_name=None, field_ids={}, field_mapping={}
    )
    result = await MutationService(client).bulk_clear_sign_in(["1"], context)
    assert result.success is False
    assert result.partial is False
    assert result.failed_fields == 4
    assert fake_osm.requests == []


@pytest.mark.asyncio
async def test_expired_token_refuses_writes_before_queueing(client, fake_osm, clock) -> None:
    client.auth_gate.set_token("tok", expires_in_s=60)
    clock.advance(61)
    service = MutationService(client)

    with pytest.raises(AuthExpired):
        await service.bulk_clear_sign_in(["1"], _sign_in_context())
    with pytest.raises(AuthExpired):
        await service.update_field("1", "1", "9", "f_1", "2", "t1")
    assert fake_osm.requests == []
    assert client.queue.status().total_requests == 0


@pytest.mark.asyncio
async def test_invalid_column_is_rejected_locally(client, fake_osm) -> None:
    with pytest.raises(InvalidData) as excinfo:
        await MutationService(client).update_field("1", "1", "9", "CampGroup", "2", "t1")
    assert excinfo.value.status_code == 400
    with pytest.raises(InvalidData):
        await MutationService(client).multi_update_field("1", [], "2", "f_1", "9")
    assert fake_osm.requests == []


@pytest.mark.asyncio
async def test_update_field_sends_normalized_value(client, fake_osm) -> None:
    fake_osm.add("/update-flexi-record", {"ok": True})
    await MutationService(client).update_field("1", 42, "9", "f_1", "Unassigned", "t1", section_name="beavers")
    body = json_body(fake_osm.requests[0])
    assert body == {
        "sectionid": "1",
        "scoutid": "42",
        "flexirecordid": "9",
        "columnid": "f_1",
        "value": "",
        "termid": "t1",
        "section": "beavers",
    }


@pytest.mark.asyncio
async def test_rejected_multi_update_raises(client, fake_osm) -> None:
    fake_osm.add("/multi-update-flexi-record", {"data": {"success": False}})
    with pytest.raises(ApplicationFailure):
        await MutationService(client).multi_update_field("1", ["1"], "2", "f_1", "9", term_id="t1")


@pytest.mark.asyncio
async def test_multi_update_patches_cache_and_cold_rows(client, fake_osm) -> None:
    await client.cache.write(CacheCategory.FLEXI_STRUCTURE, ("9",), viking_structure())
    for term in ("t1", "t2"):
        await client.cache.write(
            CacheCategory.FLEXI_DATA,
            ("9", "1", term),
            viking_data({"scoutid": "1", "CampGroup": "1"}, {"scoutid": "2", "CampGroup": "1"}),
        )
    fake_osm.add("/multi-update-flexi-record", {"ok": True})

    await MutationService(client).multi_update_field("1", ["1"], "5", VIKING_FIELD_IDS["CampGroup"], "9")

    assert json_body(fake_osm.requests[0])["value"] == "5"
    for term in ("t1", "t2"):
        entry = await client.cache.read(CacheCategory.FLEXI_DATA, "9", "1", term)
        by_scout = {item["scoutid"]: item for item in entry.items}
        assert by_scout["1"]["f_1"] == "5"
        assert by_scout["1"]["CampGroup"] == "5"
        assert by_scout["2"]["f_1"] == "1"
    async with client.session_factory() as session:
        assert await members_in_camp_group(session, "5", "1") == ["1"]
        assert len(await list_flexi_data(session, "9", "1", "t2")) == 2


@pytest.mark.asyncio
async def test_cold_store_failure_does_not_fail_applied_writes(client, fake_osm, monkeypatch) -> None:
    await client.cache.write(CacheCategory.FLEXI_DATA, ("9", "1", "t1"), viking_data({"scoutid": "1"}))
    fake_osm.add("/multi-update-flexi-record", {"ok": True})

    async def locked(*args, **kwargs):
        raise OperationalError("INSERT INTO flexi_data", {}, Exception("database is locked"))

    monkeypatch.setattr(mutations, "save_flexi_data", locked)
    result = await MutationService(client).bulk_clear_sign_in(["1"], _sign_in_context())

    assert result.cleared_fields == 4
    assert result.failed_fields == 0
    assert len(fake_osm.calls("/multi-update-flexi-record")) == 4
    entry = await client.cache.read(CacheCategory.FLEXI_DATA, "9", "1", "t1")
    assert entry.items[0][VIKING_FIELD_IDS["SignedInBy"]] == "---"
    assert get_counter("cold_store_write_failed_total") == 4

@pytest.mark.asyncio
async def test_record_and_column_creation_invalidate_caches(client, fake_osm) -> None:
    await client.cache.write(CacheCategory.FLEXI_LIST, ("1",), {"items": []})
    await client.cache.write(CacheCategory.FLEXI_STRUCTURE, ("9",), viking_structure())
    fake_osm.add("/create-flexi-record", {"ok": True, "extraid": "10"})
    fake_osm.add("/add-flexi-column", {"ok": True})
    service = MutationService(client)

    await service.create_flexi_record("1", "Viking Event Mgmt")
    assert await client.cache.read(CacheCategory.FLEXI_LIST, "1") is None

    await client.cache.write(CacheCategory.FLEXI_LIST, ("1",), {"items": []})
    await service.add_flexi_column("1", "9", "CampGroup")
    assert await client.cache.read(CacheCategory.FLEXI_LIST, "1") is None
    assert await client.cache.read(CacheCategory.FLEXI_STRUCTURE, "9") is None
    assert json_body(fake_osm.calls("/add-flexi-column")[0])["columnName"] == "CampGroup"


@pytest.mark.asyncio
async def test_demo_mode_simulates_writes(settings, fake_osm) -> None:
    demo = await create_client(
        settings.model_copy(update={"demo_mode": True}),
        http_client=httpx.AsyncClient(transport=fake_osm.transport()),
    )
    try:
        await demo.cache.write(CacheCategory.FLEXI_DATA, ("9", "1", "t1"), viking_data({"scoutid": "1", "CampGroup": "1"}))
        response = await MutationService(demo).update_field("1", "1", "9", "f_1", "4", "t1")
        assert response["success"] is True
        entry = await demo.cache.read(CacheCategory.FLEXI_DATA, "9", "1", "t1")
        assert entry.key.startswith("demo_")
        assert entry.items[0]["f_1"] == "4"
        assert fake_osm.requests == []
    finally:
        await demo.aclose()

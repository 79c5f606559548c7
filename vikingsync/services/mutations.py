from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

from sqlalchemy.exc import SQLAlchemyError

from vikingsync.core.errors import ApplicationFailure, AuthExpired, InvalidData, VikingSyncError
from vikingsync.persistence.cache_store import KEY_SUFFIX, CacheCategory
from vikingsync.persistence.repos.flexi import save_flexi_data, save_viking_event_data
from vikingsync.services.client import OsmClient
from vikingsync.services.fetchers.base import canonical_id
from vikingsync.services.flexi_schema import (
    SIGN_IN_FIELDS,
    VIKING_EVENT_MGMT,
    FieldMapping,
    FlexiContext,
    extract_viking_event_fields,
    is_field_id,
    mapping_from_dict,
    parse_structure,
    transform_data,
)
from vikingsync.services.sentinels import CLEAR_STRING_SENTINEL, CLEAR_TIME_SENTINEL, sentinel_for_field
from vikingsync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

UNASSIGNED_VALUES = (None, "", "Unassigned")
CLEAR_SENTINELS = (CLEAR_STRING_SENTINEL, CLEAR_TIME_SENTINEL)


def normalize_value(value: Any) -> str:
    # Upstream clears a field with an empty string; "Unassigned" is a display label only.
    if value in UNASSIGNED_VALUES:
        return ""
    return str(value)


def _validate_column(column_id: Any) -> str:
    if not is_field_id(column_id):
        raise InvalidData(f"Invalid column id format: {column_id!r}", status_code=400)
    return column_id


def is_failed_envelope(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return payload is None
    for block in (payload, payload.get("data")):
        if not isinstance(block, dict):
            continue
        if block.get("ok") is False or block.get("status") == "error":
            return True
        if block.get("success") is False or block.get("error") is True:
            return True
    return False


def _demo_envelope(message: str, **extra: Any) -> dict[str, Any]:
    return {"ok": True, "success": True, "message": f"Demo mode: {message}", **extra}


@dataclass
class BulkClearResult:
    success: bool
    partial: bool
    scout_ids: list[str]
    cleared_fields: int
    failed_fields: int
    results: list[dict[str, Any]] = field(default_factory=list)
    duration_ms: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "partial": self.partial,
            "scoutIds": self.scout_ids,
            "clearedFields": self.cleared_fields,
            "failedFields": self.failed_fields,
            "results": self.results,
            "durationMs": self.duration_ms,
        }


class MutationService:
    """FlexiRecord writes: upstream first, then patch the cached copy in place."""

    def __init__(self, client: OsmClient) -> None:
        self._client = client

    def _require_token(self, token: str | None, operation: str) -> str:
        # Expired sessions are refused before anything is queued.
        self._client.auth_gate.check_write_permission()
        resolved = self._client.resolve_token(token)
        if not self._client.auth_gate.has_usable_token(resolved):
            raise AuthExpired(f"{operation}: no authentication token available (NO_TOKEN)", status_code=401)
        return resolved or ""

    async def update_field(
        self,
        section_id: Any,
        scout_id: Any,
        extraid: Any,
        column_id: str,
        value: Any,
        term_id: Any,
        *,
        section_name: str | None = None,
        token: str | None = None,
    ) -> dict[str, Any]:
        sid = canonical_id(section_id, "sectionid")
        scout = canonical_id(scout_id, "scoutid")
        eid = canonical_id(extraid, "flexirecordid")
        tid = canonical_id(term_id, "termid")
        column = _validate_column(column_id)
        normalized = normalize_value(value)

        if self._client.demo_mode:
            await self._patch_cached_data(eid, sid, tid, [scout], column, normalized)
            return _demo_envelope("FlexiRecord update simulated")

        auth = self._require_token(token, "updateFlexiRecord")
        payload = await self._client.http.request(
            "POST",
            "/update-flexi-record",
            token=auth,
            json={
                "sectionid": sid,
                "scoutid": scout,
                "flexirecordid": eid,
                "columnid": column,
                "value": normalized,
                "termid": tid,
                "section": section_name,
            },
            operation="updateFlexiRecord",
        )
        if is_failed_envelope(payload):
            raise ApplicationFailure(f"updateFlexiRecord: upstream rejected update of {column} for {scout}")
        await self._patch_cached_data(eid, sid, tid, [scout], column, normalized)
        logger.info("flexi_field_updated section_id=%s extraid=%s column=%s scout_id=%s", sid, eid, column, scout)
        return payload

    async def multi_update_field(
        self,
        section_id: Any,
        scout_ids: Iterable[Any],
        value: Any,
        column_id: str,
        extraid: Any,
        *,
        term_id: Any = None,
        token: str | None = None,
    ) -> dict[str, Any]:
        sid = canonical_id(section_id, "sectionid")
        eid = canonical_id(extraid, "flexirecordid")
        column = _validate_column(column_id)
        scouts = [canonical_id(scout, "scoutid") for scout in scout_ids or []]
        if not scouts:
            raise InvalidData("Scouts list is required and must not be empty", status_code=400)
        tid = canonical_id(term_id, "termid") if term_id is not None else None
        # Sentinels are sent verbatim; only ordinary values are normalized.
        outgoing = value if value in CLEAR_SENTINELS else normalize_value(value)

        if self._client.demo_mode:
            await self._patch_cached_data(eid, sid, tid, scouts, column, outgoing)
            return _demo_envelope(f"Multi-update simulated for {len(scouts)} scouts")

        auth = self._require_token(token, "multiUpdateFlexiRecord")
        payload = await self._client.http.request(
            "POST",
            "/multi-update-flexi-record",
            token=auth,
            json={
                "sectionid": sid,
                "scouts": scouts,
                "value": outgoing,
                "column": column,
                "columnid": column,
                "flexirecordid": eid,
            },
            operation="multiUpdateFlexiRecord",
        )
        # Partial application upstream counts as failure for the whole batch.
        if is_failed_envelope(payload):
            raise ApplicationFailure(
                f"multiUpdateFlexiRecord: upstream did not apply {column} to all {len(scouts)} scouts"
            )
        await self._patch_cached_data(eid, sid, tid, scouts, column, outgoing)
        logger.info(
            "flexi_field_multi_updated section_id=%s extraid=%s column=%s scouts=%s",
            sid,
            eid,
            column,
            len(scouts),
        )
        return payload

    async def bulk_clear_sign_in(
        self,
        scout_ids: Iterable[Any],
        context: FlexiContext,
        *,
        token: str | None = None,
    ) -> BulkClearResult:
        scouts = [canonical_id(scout, "scoutid") for scout in scout_ids or []]
        if not scouts:
            raise InvalidData("Scouts list is required and must not be empty", status_code=400)
        if not self._client.demo_mode:
            self._require_token(token, "bulkClearSignInData")

        started = time.monotonic()
        gap_s = self._client.settings.sign_in_clear_gap_ms / 1000.0
        results: list[dict[str, Any]] = []
        for index, field_name in enumerate(SIGN_IN_FIELDS):
            if index:
                await asyncio.sleep(gap_s)
            column = context.field_id(field_name)
            outcome: dict[str, Any] = {"field": field_name, "fieldId": column, "success": False}
            if column is None:
                outcome["error"] = f"Field {field_name} not found in FlexiRecord"
                results.append(outcome)
                continue
            try:
                await self.multi_update_field(
                    context.sectionid,
                    scouts,
                    sentinel_for_field(field_name),
                    column,
                    context.flexirecordid,
                    term_id=context.termid,
                    token=token,
                )
            except VikingSyncError as exc:
                logger.warning(
                    "sign_in_clear_field_failed field=%s column=%s error_kind=%s detail=%s",
                    field_name,
                    column,
                    exc.kind,
                    exc.detail,
                )
                outcome["error"] = exc.message
                outcome["errorKind"] = exc.kind
            else:
                outcome["success"] = True
            results.append(outcome)

        cleared = sum(1 for result in results if result["success"])
        failed = len(results) - cleared
        result = BulkClearResult(
            success=cleared > 0,
            partial=0 < cleared < len(results),
            scout_ids=scouts,
            cleared_fields=cleared,
            failed_fields=failed,
            results=results,
            duration_ms=round((time.monotonic() - started) * 1000.0, 1),
        )
        log = logger.warning if failed else logger.info
        log("sign_in_bulk_clear scouts=%s cleared=%s failed=%s", len(scouts), cleared, failed)
        return result

    async def create_flexi_record(
        self,
        section_id: Any,
        name: str,
        *,
        dob: str = "1",
        age: str = "1",
        patrol: str = "1",
        record_type: str = "none",
        token: str | None = None,
    ) -> dict[str, Any]:
        sid = canonical_id(section_id, "sectionid")
        if not name or not name.strip():
            raise InvalidData("FlexiRecord name is required", status_code=400)
        if self._client.demo_mode:
            return _demo_envelope("FlexiRecord creation simulated", name=name)

        auth = self._require_token(token, "createFlexiRecord")
        payload = await self._client.http.request(
            "POST",
            "/create-flexi-record",
            token=auth,
            json={"sectionid": sid, "name": name, "dob": dob, "age": age, "patrol": patrol, "type": record_type},
            operation="createFlexiRecord",
        )
        if is_failed_envelope(payload):
            raise ApplicationFailure(f"createFlexiRecord: upstream rejected {name!r}")
        await self._client.cache.invalidate(CacheCategory.FLEXI_LIST, sid)
        logger.info("flexi_record_created section_id=%s name=%s", sid, name)
        return payload

    async def add_flexi_column(
        self,
        section_id: Any,
        extraid: Any,
        column_name: str,
        *,
        token: str | None = None,
    ) -> dict[str, Any]:
        sid = canonical_id(section_id, "sectionid")
        eid = canonical_id(extraid, "flexirecordid")
        if not column_name or not column_name.strip():
            raise InvalidData("Column name is required", status_code=400)
        if self._client.demo_mode:
            return _demo_envelope("FlexiRecord column creation simulated", name=column_name)

        auth = self._require_token(token, "addFlexiColumn")
        payload = await self._client.http.request(
            "POST",
            "/add-flexi-column",
            token=auth,
            json={"sectionid": sid, "flexirecordid": eid, "columnName": column_name},
            operation="addFlexiColumn",
        )
        if is_failed_envelope(payload):
            raise ApplicationFailure(f"addFlexiColumn: upstream rejected column {column_name!r}")
        await self._client.cache.invalidate(CacheCategory.FLEXI_LIST, sid)
        await self._client.cache.invalidate(CacheCategory.FLEXI_STRUCTURE, eid)
        logger.info("flexi_column_added section_id=%s extraid=%s name=%s", sid, eid, column_name)
        return payload

    async def _mapping_for(self, extraid: str, document: dict[str, Any]) -> tuple[FieldMapping, str | None]:
        structure = await self._client.cache.read(CacheCategory.FLEXI_STRUCTURE, extraid)
        if structure is not None:
            data = structure.data()
            return parse_structure(data), data.get("name")
        return mapping_from_dict(document.get("fieldMapping") or {}), None

    async def _patch_cached_data(
        self,
        extraid: str,
        section_id: str,
        term_id: str | None,
        scout_ids: list[str],
        column: str,
        value: str,
    ) -> None:
        cache = self._client.cache
        if term_id is not None:
            keys = [(cache.key(CacheCategory.FLEXI_DATA, extraid, section_id, term_id), term_id)]
        else:
            # Without a term every cached term of this record is patched.
            prefix = cache.key(CacheCategory.FLEXI_DATA, extraid, section_id).removesuffix(KEY_SUFFIX) + "_"
            keys = [
                (key, key[len(prefix):].removesuffix(KEY_SUFFIX))
                for key in await cache.keys(CacheCategory.FLEXI_DATA)
                if key.startswith(prefix)
            ]

        targets = set(scout_ids)
        for key, key_term in keys:
            entry = await cache.read_key(key)
            if entry is None:
                continue
            document = entry.data()
            mapping, record_name = await self._mapping_for(extraid, document)
            name = mapping[column].name if column in mapping else None
            patched = 0
            for item in document.get("items") or []:
                if str(item.get("scoutid")) not in targets:
                    continue
                item[column] = value
                if f"_original_{column}" in item:
                    item[f"_original_{column}"] = value
                if name:
                    item[name] = value
                patched += 1
            await cache.write_key(key, document)
            await self._refresh_cold(extraid, section_id, key_term, document, mapping, record_name)
            logger.debug("flexi_cache_patched key=%s column=%s patched=%s", key, column, patched)

    async def _refresh_cold(
        self,
        extraid: str,
        section_id: str,
        term_id: str,
        document: dict[str, Any],
        mapping: FieldMapping,
        record_name: str | None,
    ) -> None:
        items = document.get("items") or []
        try:
            async with self._client.session_factory() as session:
                await save_flexi_data(session, extraid, section_id, term_id, items)
                # Camp group and sign-in rows are derived from the Viking Event Mgmt record only.
                if record_name == VIKING_EVENT_MGMT.name and mapping:
                    rows = extract_viking_event_fields(transform_data(document, mapping))
                    await save_viking_event_data(session, section_id, term_id, extraid, rows)
                await session.commit()
        except SQLAlchemyError:
            # Upstream already applied the write; the next flexi sync rewrites these rows.
            logger.exception("flexi_cold_refresh_failed extraid=%s section_id=%s term_id=%s", extraid, section_id, term_id)
            increment_counter("cold_store_write_failed_total")

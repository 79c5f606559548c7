from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from vikingsync.core.errors import VikingSyncError
from vikingsync.persistence.repos.sections import list_sections
from vikingsync.services.client import OsmClient
from vikingsync.services.event_sync import EventSyncService
from vikingsync.services.fetchers.events import detect_shared_events, fetch_events
from vikingsync.services.fetchers.flexi import fetch_flexi_list, fetch_flexi_structure
from vikingsync.services.fetchers.reference import (
    current_term_id,
    extract_user_info,
    fetch_members,
    fetch_most_recent_term_id,
    fetch_startup_data,
    fetch_terms,
    fetch_user_roles,
)
from vikingsync.services.flexi_schema import VIKING_EVENT_MGMT, VIKING_SECTION_MOVERS
from vikingsync.services.network import NetworkMonitor
from vikingsync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

CASCADE_STEPS = ("reference", "events", "attendance", "flexiRecords")
VIKING_RECORD_TYPES = (VIKING_EVENT_MGMT, VIKING_SECTION_MOVERS)


@dataclass
class LoadResult:
    success: bool
    has_errors: bool
    errors: list[dict[str, Any]]
    results: dict[str, Any]
    summary: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "hasErrors": self.has_errors,
            "errors": self.errors,
            "results": self.results,
            "summary": self.summary,
        }


def _error_entry(category: str, error_type: str, exc: BaseException) -> dict[str, Any]:
    if isinstance(exc, VikingSyncError):
        return {"type": error_type, "category": category, "message": exc.message, "detail": exc.detail}
    return {"type": error_type, "category": category, "message": str(exc), "detail": repr(exc)}


class DataLoadingOrchestrator:
    """Post-login cascade: reference data, events, attendance, then FlexiRecords."""

    def __init__(self, client: OsmClient, *, event_sync: EventSyncService | None = None) -> None:
        self._client = client
        self._event_sync = event_sync or EventSyncService(client)
        self._load_task: asyncio.Task | None = None
        self._refresh_task: asyncio.Task | None = None
        self._resync_task: asyncio.Task | None = None

    @property
    def loading(self) -> bool:
        return self._load_task is not None and not self._load_task.done()

    async def _coalesce(self, attr: str, factory: Callable[[], Awaitable[LoadResult]]) -> LoadResult:
        # A second caller awaits the cascade already running instead of starting another.
        running: asyncio.Task | None = getattr(self, attr)
        if running is not None and not running.done():
            increment_counter(f"orchestrator_coalesced_total.{attr.strip('_')}")
            logger.info("orchestrator_call_coalesced task=%s", attr.strip("_"))
            return await asyncio.shield(running)
        task = asyncio.get_running_loop().create_task(factory())
        setattr(self, attr, task)
        try:
            return await asyncio.shield(task)
        finally:
            if getattr(self, attr) is task and task.done():
                setattr(self, attr, None)

    async def load_all(self, token: str | None = None) -> LoadResult:
        return await self._coalesce("_load_task", lambda: self._run_cascade(token))

    async def refresh_events(self, token: str | None = None) -> LoadResult:
        return await self._coalesce("_refresh_task", lambda: self._run_refresh(token))

    def attach_network(self, monitor: NetworkMonitor) -> Callable[[], None]:
        async def _on_transition(online: bool) -> None:
            if not online or self.loading:
                return
            logger.info("orchestrator_resync_scheduled reason=back_online")
            task = asyncio.get_running_loop().create_task(self.load_all())
            task.add_done_callback(self._resync_finished)
            self._resync_task = task

        return monitor.subscribe(_on_transition)

    def _resync_finished(self, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.info("orchestrator_resync_cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error("orchestrator_resync_failed error=%s", exc, exc_info=exc)
            increment_counter("orchestrator_resync_failed_total")
            return
        logger.info("orchestrator_resync_completed success=%s", task.result().success)

    def _no_token_result(self, steps: tuple[str, ...]) -> LoadResult:
        return LoadResult(
            success=False,
            has_errors=True,
            errors=[
                {
                    "type": "auth",
                    "category": "auth",
                    "message": "No authentication token available",
                    "detail": "NO_TOKEN",
                }
            ],
            results={step: None for step in steps},
            summary={
                "total": len(steps),
                "successful": 0,
                "failed": len(steps),
                "duration_ms": 0.0,
                "categories": {step: False for step in steps},
            },
        )

    async def _run_cascade(self, token: str | None) -> LoadResult:
        token = self._client.resolve_token(token)
        if not self._client.auth_gate.has_usable_token(token):
            logger.warning("orchestrator_no_token")
            return self._no_token_result(CASCADE_STEPS)

        started = time.monotonic()
        errors: list[dict[str, Any]] = []
        results: dict[str, Any] = {step: None for step in CASCADE_STEPS}
        failed: set[str] = set()

        async def _step(name: str, call: Callable[[], Awaitable[dict[str, Any]]]) -> None:
            try:
                outcome = await call()
            except Exception as exc:  # noqa: BLE001 - one failed step must not abort the cascade
                if not isinstance(exc, VikingSyncError):
                    logger.exception("orchestrator_step_crashed step=%s", name)
                else:
                    logger.warning("orchestrator_step_failed step=%s error_kind=%s", name, exc.kind)
                errors.append(_error_entry(name, name, exc))
                failed.add(name)
                return
            results[name] = outcome
            step_errors = outcome.pop("errors", [])
            errors.extend(step_errors)
            if not outcome.get("success"):
                failed.add(name)
                if not step_errors:
                    message = outcome.get("message") or f"{name} step failed"
                    errors.append({"type": name, "category": name, "message": message, "detail": message})

        await _step("reference", lambda: self._load_reference(token))
        sections = (results["reference"] or {}).get("userRoles") or []
        terms = (results["reference"] or {}).get("terms") or {}
        if sections:
            await _step("events", lambda: self._load_events(sections, terms, token))
        else:
            logger.info("orchestrator_no_sections skipping=events,attendance,flexiRecords")

        events = [
            event
            for section in (results["events"] or {}).get("sections", [])
            for event in section.get("events", [])
        ]
        if events:
            await _step("attendance", lambda: self._load_attendance(events, token))
        if sections:
            await _step("flexiRecords", lambda: self._load_flexi(sections, terms, token))

        return self._finish(CASCADE_STEPS, results, errors, failed, started)

    async def _run_refresh(self, token: str | None) -> LoadResult:
        steps = ("events", "attendance")
        token = self._client.resolve_token(token)
        if not self._client.auth_gate.has_usable_token(token):
            return self._no_token_result(steps)
        started = time.monotonic()
        errors: list[dict[str, Any]] = []
        results: dict[str, Any] = {step: None for step in steps}
        failed: set[str] = set()

        async with self._client.session_factory() as session:
            sections = await list_sections(session)
        if sections:
            try:
                results["events"] = await self._load_events(sections, {}, token)
                errors.extend(results["events"].pop("errors", []))
                if not results["events"]["success"]:
                    failed.add("events")
            except VikingSyncError as exc:
                errors.append(_error_entry("events", "events", exc))
                failed.add("events")
        events = [
            event
            for section in (results["events"] or {}).get("sections", [])
            for event in section.get("events", [])
        ]
        try:
            results["attendance"] = await self._load_attendance(events or None, token, force=True)
            if not results["attendance"]["success"]:
                failed.add("attendance")
                errors.append(
                    {
                        "type": "attendance",
                        "category": "attendance",
                        "message": results["attendance"].get("message"),
                        "detail": results["attendance"].get("message"),
                    }
                )
        except VikingSyncError as exc:
            errors.append(_error_entry("attendance", "attendance", exc))
            failed.add("attendance")
        return self._finish(steps, results, errors, failed, started)

    def _finish(
        self,
        steps: tuple[str, ...],
        results: dict[str, Any],
        errors: list[dict[str, Any]],
        failed: set[str],
        started: float,
    ) -> LoadResult:
        # Skipped steps are neither successes nor failures of their own.
        successful = len(steps) - len(failed)
        duration_ms = round((time.monotonic() - started) * 1000.0, 1)
        categories = {step: step not in failed and results.get(step) is not None for step in steps}
        ran = sum(1 for step in steps if results.get(step) is not None or step in failed)
        success = ran == 0 or len(failed) < ran
        if failed:
            logger.warning(
                "orchestrator_completed_with_errors failed=%s errors=%s duration_ms=%.0f",
                ",".join(sorted(failed)),
                len(errors),
                duration_ms,
            )
        else:
            logger.info("orchestrator_completed steps=%s duration_ms=%.0f", ran, duration_ms)
        return LoadResult(
            success=success,
            has_errors=bool(errors),
            errors=errors,
            results=results,
            summary={
                "total": len(steps),
                "successful": successful,
                "failed": len(failed),
                "duration_ms": duration_ms,
                "categories": categories,
            },
        )

    async def _load_reference(self, token: str) -> dict[str, Any]:
        outcome: dict[str, Any] = {"errors": []}
        successes = 0

        async def _sub(name: str, call: Callable[[], Awaitable[Any]]) -> Any:
            nonlocal successes
            try:
                value = await call()
            except VikingSyncError as exc:
                logger.warning("reference_load_failed part=%s error_kind=%s", name, exc.kind)
                outcome["errors"].append(_error_entry("reference", name, exc))
                return None
            successes += 1
            return value

        outcome["terms"] = await _sub("terms", lambda: fetch_terms(self._client, token)) or {}
        outcome["userRoles"] = await _sub("userRoles", lambda: fetch_user_roles(self._client, token)) or []
        startup = await _sub("startupData", lambda: fetch_startup_data(self._client, token))
        outcome["startupData"] = startup
        outcome["userInfo"] = extract_user_info(startup)
        if outcome["userRoles"]:
            outcome["members"] = (
                await _sub("members", lambda: fetch_members(self._client, outcome["userRoles"], token)) or []
            )
        else:
            outcome["members"] = []
        outcome["success"] = successes > 0
        return outcome

    async def _load_events(
        self,
        sections: list[dict[str, Any]],
        terms: dict[str, list[dict[str, Any]]],
        token: str,
    ) -> dict[str, Any]:
        section_results: list[dict[str, Any]] = []
        errors: list[dict[str, Any]] = []
        for section in sections:
            section_id = str(section["sectionid"])
            try:
                term_id = current_term_id(terms, section_id) or await fetch_most_recent_term_id(
                    self._client, section_id, token
                )
                if term_id is None:
                    logger.info("events_section_without_term section_id=%s", section_id)
                    continue
                events = await fetch_events(self._client, section_id, term_id, token)
            except VikingSyncError as exc:
                errors.append(_error_entry("events", f"section:{section_id}", exc))
                continue
            section_results.append(
                {
                    "sectionid": section_id,
                    "sectionname": section.get("sectionname"),
                    "termid": term_id,
                    "events": events,
                }
            )
        shared = await detect_shared_events(self._client, section_results)
        return {
            "success": bool(section_results) or not errors,
            "sections": section_results,
            "sharedEvents": len(shared),
            "errors": errors,
        }

    async def _load_attendance(
        self,
        events: list[dict[str, Any]] | None,
        token: str,
        *,
        force: bool = False,
    ) -> dict[str, Any]:
        return await self._event_sync.sync_all_attendance(force, events=events, token=token)

    async def _load_flexi(
        self,
        sections: list[dict[str, Any]],
        terms: dict[str, list[dict[str, Any]]],
        token: str,
    ) -> dict[str, Any]:
        loaded: list[dict[str, Any]] = []
        errors: list[dict[str, Any]] = []
        for section in sections:
            section_id = str(section["sectionid"])
            try:
                listing = await fetch_flexi_list(self._client, section_id, token)
                structures = 0
                term_id = current_term_id(terms, section_id)
                for item in listing["items"]:
                    if term_id is None or not any(kind.matches(item) for kind in VIKING_RECORD_TYPES):
                        continue
                    if await fetch_flexi_structure(self._client, item["extraid"], section_id, term_id, token):
                        structures += 1
            except VikingSyncError as exc:
                errors.append(_error_entry("flexiRecords", f"section:{section_id}", exc))
                continue
            loaded.append({"sectionid": section_id, "records": len(listing["items"]), "structures": structures})
        return {"success": bool(loaded) or not errors, "sections": loaded, "errors": errors}

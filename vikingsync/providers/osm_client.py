from __future__ import annotations

import logging
import math
import re
import time
from typing import Any, Mapping

import httpx

from vikingsync.core.config import Settings, get_settings
from vikingsync.core.errors import (
    ApplicationFailure,
    AuthExpired,
    AuthForbidden,
    InvalidData,
    NetworkError,
    NotFound,
    RateLimited,
    ServerError,
    VikingSyncError,
)
from vikingsync.services.auth_gate import AuthGate, oauth_login_url
from vikingsync.services.rate_limit_queue import RateLimitQueue
from vikingsync.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

_WAIT_SECONDS_RE = re.compile(r"wait (\d+) seconds?", re.IGNORECASE)


def _retry_after_seconds(headers: Mapping[str, str] | None) -> float | None:
    if not headers:
        return None
    retry_after = headers.get("Retry-After")
    if retry_after:
        try:
            return float(retry_after)
        except ValueError:
            return None
    retry_ms = headers.get("X-RateLimit-Retry-After-Ms")
    if retry_ms:
        try:
            return float(retry_ms) / 1000.0
        except ValueError:
            return None
    return None


def _body_retry_after(payload: Any) -> float | None:
    # OSM reports under rateLimitInfo, the backend's own limiter under rateLimit.
    if not isinstance(payload, dict):
        return None
    for block in (payload.get("rateLimitInfo"), payload.get("rateLimit"), payload):
        if isinstance(block, dict):
            value = block.get("retryAfter")
            if isinstance(value, (int, float)) and value > 0:
                return float(value)
            if isinstance(value, str) and value.strip().isdigit():
                return float(value)
    return None


def _error_message(payload: Any, fallback: str) -> str:
    if isinstance(payload, dict):
        for key in ("message", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
            if isinstance(value, dict) and isinstance(value.get("message"), str):
                return value["message"]
    return fallback


def _is_rate_limit_message(message: str) -> bool:
    lowered = message.lower()
    return "rate limit" in lowered or _WAIT_SECONDS_RE.search(message) is not None


def _wait_seconds(message: str) -> float | None:
    match = _WAIT_SECONDS_RE.search(message)
    return float(match.group(1)) if match else None


class OsmHttpAdapter:
    """One upstream call: token check, queue submission, response classification."""

    def __init__(
        self,
        *,
        auth_gate: AuthGate,
        queue: RateLimitQueue,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._auth_gate = auth_gate
        self._queue = queue
        self._client = client
        self._base_url = self._settings.backend_url.rstrip("/")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client for connection pooling.
        self._client = httpx.AsyncClient(timeout=self._settings.http_timeout_ms / 1000.0)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    def _validate_token(self, token: str | None, operation: str) -> None:
        if not isinstance(token, str) or not token.strip():
            raise AuthExpired(f"{operation}: no authentication token available (NO_TOKEN)", status_code=401)
        if self._auth_gate.expired and not self._auth_gate.demo_mode:
            raise AuthExpired(f"{operation}: authentication token has expired", status_code=401)

    def _check_breaker(self, operation: str) -> None:
        if not self._auth_gate.should_make_api_call():
            increment_counter("osm_calls_suppressed_total")
            raise AuthExpired(f"{operation}: skipped, authentication already failed this session", status_code=401)

    async def request(
        self,
        method: str,
        path: str,
        *,
        token: str | None,
        params: Mapping[str, Any] | list[tuple[str, Any]] | None = None,
        json: Any = None,
        priority: int = 0,
        timeout_ms: int | None = None,
        operation: str | None = None,
    ) -> Any:
        operation = operation or path.strip("/")
        self._validate_token(token, operation)
        self._check_breaker(operation)

        async def _call() -> Any:
            # The breaker may trip while this call waits behind others.
            self._check_breaker(operation)
            return await self._send(method, path, token=token or "", params=params, json=json, operation=operation)

        return await self._queue.submit(_call, priority=priority, timeout_ms=timeout_ms)

    async def _send(
        self,
        method: str,
        path: str,
        *,
        token: str,
        params: Mapping[str, Any] | list[tuple[str, Any]] | None,
        json: Any,
        operation: str,
    ) -> Any:
        client = self._get_client()
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        start = time.monotonic()
        success = False
        try:
            try:
                response = await client.request(method, f"{self._base_url}{path}", params=params, json=json, headers=headers)
            except httpx.TimeoutException as exc:
                raise NetworkError(f"{operation}: request timed out: {exc}") from exc
            except httpx.HTTPError as exc:
                raise NetworkError(f"{operation}: network request failed: {exc}") from exc
            payload = self._classify(response, operation, write_path=method.upper() != "GET")
            success = True
            return payload
        finally:
            record_external_call(
                integration=f"osm.{operation}",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=success,
            )

    def _classify(self, response: httpx.Response, operation: str, *, write_path: bool) -> Any:
        status = response.status_code
        payload: Any
        try:
            payload = response.json() if response.content else {}
            parsed = True
        except ValueError:
            payload = None
            parsed = False

        if status == 429:
            retry_after = _body_retry_after(payload) or _retry_after_seconds(response.headers)
            message = _error_message(payload, "Rate limited")
            retry_after = retry_after or _wait_seconds(message)
            wait = f" Please wait {math.ceil(retry_after)} seconds." if retry_after else ""
            logger.warning("osm_rate_limited operation=%s retry_after_s=%s", operation, retry_after)
            raise RateLimited(f"{operation}: {message}.{wait}", retry_after_seconds=retry_after)

        if self._auth_gate.classify_response(status, write_path=write_path):
            message = _error_message(payload, f"HTTP {status}")
            error_cls: type[VikingSyncError] = AuthExpired if status == 401 else AuthForbidden
            raise error_cls(f"{operation}: HTTP {status} {message}", status_code=status)

        if not response.is_success:
            message = _error_message(payload, f"HTTP {status}")
            if "blocked" in message.lower():
                self._auth_gate.mark_blocked()
            if _is_rate_limit_message(message):
                raise RateLimited(f"{operation}: {message}", retry_after_seconds=_wait_seconds(message), status_code=status)
            detail = f"{operation}: HTTP {status} {message}"
            if status == 404:
                raise NotFound(detail, status_code=status)
            if status in (400, 422):
                raise InvalidData(detail, status_code=status)
            if status >= 500:
                raise ServerError(detail, status_code=status)
            raise ApplicationFailure(detail, status_code=status)

        if not parsed:
            raise InvalidData(f"{operation}: invalid JSON in upstream response", status_code=status)

        if isinstance(payload, dict):
            self._log_rate_limit_info(payload.pop("_rateLimitInfo", None), operation)
            if payload.get("ok") is False or payload.get("status") == "error":
                message = _error_message(payload, "request failed")
                if _is_rate_limit_message(message):
                    raise RateLimited(f"{operation}: {message}", retry_after_seconds=_wait_seconds(message))
                raise ApplicationFailure(f"{operation}: {message}", status_code=status)
        return payload

    def _log_rate_limit_info(self, info: Any, operation: str) -> None:
        if not isinstance(info, dict):
            return
        osm = info.get("osm") if isinstance(info.get("osm"), dict) else info
        remaining = osm.get("remaining")
        if not isinstance(remaining, (int, float)):
            return
        if remaining < self._settings.rate_limit_error_remaining:
            logger.error("osm_quota_critical operation=%s remaining=%s limit=%s", operation, remaining, osm.get("limit"))
        elif remaining < self._settings.rate_limit_warn_remaining:
            logger.warning("osm_quota_low operation=%s remaining=%s limit=%s", operation, remaining, osm.get("limit"))

    async def check_health(self) -> bool:
        try:
            response = await self._get_client().get(f"{self._base_url}/health")
        except httpx.HTTPError as exc:
            logger.info("osm_backend_unreachable error=%s", exc)
            return False
        return response.is_success

    def oauth_url(self) -> str:
        return oauth_login_url(self._base_url, self._settings.frontend_url, self._settings.oauth_state)

from __future__ import annotations

import logging

import httpx
import pytest

from vikingsync.core.config import Settings
from vikingsync.core.errors import (
    ApplicationFailure,
    AuthExpired,
    AuthForbidden,
    InvalidData,
    NetworkError,
    NotFound,
    RateLimited,
    ServerError,
)
from vikingsync.providers.osm_client import OsmHttpAdapter
from vikingsync.services.auth_gate import AuthGate
from vikingsync.services.rate_limit_queue import QueueConfig, RateLimitQueue
from vikingsync.services.telemetry import external_call_stats, get_counter
from vikingsync.tests.utils.fake_osm import FakeOsm


def _adapter(fake: FakeOsm, gate: AuthGate | None = None) -> tuple[OsmHttpAdapter, AuthGate]:
    gate = gate or AuthGate()
    gate.set_token("tok")
    # One attempt per request so classification is observed directly.
    queue = RateLimitQueue(QueueConfig(max_retries=1, success_gap_ms=0))
    adapter = OsmHttpAdapter(
        auth_gate=gate,
        queue=queue,
        settings=Settings(_env_file=None, backend_url="http://osm.test/"),
        client=httpx.AsyncClient(transport=fake.transport()),
    )
    return adapter, gate


@pytest.mark.asyncio
async def test_success_sends_bearer_token_and_records_latency() -> None:
    fake = FakeOsm().add("/get-terms", {"1": [{"termid": "t1"}]})
    adapter, _ = _adapter(fake)

    payload = await adapter.request("GET", "/get-terms", token="tok", params={"a": "b"}, operation="getTerms")

    assert payload == {"1": [{"termid": "t1"}]}
    request = fake.requests[0]
    assert request.headers["Authorization"] == "Bearer tok"
    assert str(request.url) == "http://osm.test/get-terms?a=b"
    assert external_call_stats(60)["osm.getTerms"]["calls"] == 1


@pytest.mark.asyncio
async def test_missing_token_never_reaches_upstream() -> None:
    fake = FakeOsm().add("/get-terms", {})
    adapter, _ = _adapter(fake)
    with pytest.raises(AuthExpired) as excinfo:
        await adapter.request("GET", "/get-terms", token="  ")
    assert "NO_TOKEN" in excinfo.value.detail
    assert fake.requests == []


@pytest.mark.asyncio
async def test_429_carries_retry_after_from_body() -> None:
    fake = FakeOsm().add("/get-events", (429, {"error": "Too many", "rateLimitInfo": {"retryAfter": 30}}))
    adapter, _ = _adapter(fake)
    with pytest.raises(RateLimited) as excinfo:
        await adapter.request("GET", "/get-events", token="tok", operation="getEvents")
    assert excinfo.value.retry_after_seconds == 30
    assert "wait 30 seconds" in excinfo.value.detail


@pytest.mark.asyncio
async def test_429_falls_back_to_header() -> None:
    fake = FakeOsm().add("/get-events", httpx.Response(429, headers={"Retry-After": "7"}, json={}))
    adapter, _ = _adapter(fake)
    with pytest.raises(RateLimited) as excinfo:
        await adapter.request("GET", "/get-events", token="tok")
    assert excinfo.value.retry_after_seconds == 7


@pytest.mark.asyncio
async def test_401_trips_breaker_and_suppresses_following_calls() -> None:
    notified: list[int] = []
    fake = FakeOsm().add("/get-events", (401, {"error": "Unauthorized"}))
    adapter, gate = _adapter(fake, AuthGate(on_auth_error=notified.append))

    with pytest.raises(AuthExpired):
        await adapter.request("GET", "/get-events", token="tok")
    assert gate.breaker_tripped
    assert not gate.expired

    with pytest.raises(AuthExpired):
        await adapter.request("GET", "/get-events", token="tok")
    assert len(fake.requests) == 1
    assert notified == [401]
    assert get_counter("osm_calls_suppressed_total") == 1


@pytest.mark.asyncio
async def test_403_on_write_expires_token() -> None:
    fake = FakeOsm().add("/update-flexi-record", (403, {"message": "Forbidden"}))
    adapter, gate = _adapter(fake)
    with pytest.raises(AuthForbidden):
        await adapter.request("POST", "/update-flexi-record", token="tok", json={})
    assert gate.expired


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "error_cls"),
    [(404, NotFound), (400, InvalidData), (500, ServerError), (502, ServerError), (503, ServerError), (418, ApplicationFailure)],
)
async def test_status_classification(status: int, error_cls: type) -> None:
    fake = FakeOsm().add("/get-events", (status, {"error": "nope"}))
    adapter, gate = _adapter(fake)
    with pytest.raises(error_cls):
        await adapter.request("GET", "/get-events", token="tok")
    assert not gate.breaker_tripped


@pytest.mark.asyncio
async def test_wait_message_is_a_rate_limit_on_any_status() -> None:
    fake = FakeOsm().add("/get-events", (500, {"error": "Please wait 20 seconds before retrying"}))
    adapter, _ = _adapter(fake)
    with pytest.raises(RateLimited) as excinfo:
        await adapter.request("GET", "/get-events", token="tok")
    assert excinfo.value.retry_after_seconds == 20


@pytest.mark.asyncio
async def test_blocked_application_stops_all_calls() -> None:
    fake = FakeOsm().add("/get-events", (400, {"error": "Your application has been blocked"}))
    adapter, gate = _adapter(fake)
    with pytest.raises(InvalidData):
        await adapter.request("GET", "/get-events", token="tok")
    assert gate.blocked
    assert not gate.should_make_api_call()


@pytest.mark.asyncio
async def test_failed_envelope_on_200() -> None:
    fake = FakeOsm().add(
        "/multi-update-flexi-record",
        {"ok": False, "error": "column locked"},
        {"status": "error", "message": "Rate limit exceeded"},
    )
    adapter, _ = _adapter(fake)
    with pytest.raises(ApplicationFailure):
        await adapter.request("POST", "/multi-update-flexi-record", token="tok", json={})
    with pytest.raises(RateLimited):
        await adapter.request("POST", "/multi-update-flexi-record", token="tok", json={})


@pytest.mark.asyncio
async def test_invalid_json_body() -> None:
    fake = FakeOsm().add("/get-events", httpx.Response(200, content=b"<html>oops</html>"))
    adapter, _ = _adapter(fake)
    with pytest.raises(InvalidData):
        await adapter.request("GET", "/get-events", token="tok")


@pytest.mark.asyncio
async def test_transport_failure_is_network_error() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    fake = FakeOsm().add("/get-events", refuse)
    adapter, _ = _adapter(fake)
    with pytest.raises(NetworkError):
        await adapter.request("GET", "/get-events", token="tok", operation="getEvents")
    assert external_call_stats(60)["osm.getEvents"]["failures"] == 1


@pytest.mark.asyncio
async def test_quota_info_is_stripped_and_logged(caplog) -> None:
    fake = FakeOsm().add("/get-events", {"items": [], "_rateLimitInfo": {"osm": {"remaining": 5, "limit": 1000}}})
    adapter, _ = _adapter(fake)
    with caplog.at_level(logging.WARNING, logger="vikingsync.providers.osm_client"):
        payload = await adapter.request("GET", "/get-events", token="tok")
    assert payload == {"items": []}
    assert any("osm_quota_critical" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_health_and_oauth_url() -> None:
    fake = FakeOsm().add("/health", {"status": "ok"})
    adapter, _ = _adapter(fake)
    assert await adapter.check_health()
    assert adapter.oauth_url().startswith("http://osm.test/oauth/login?state=prod")

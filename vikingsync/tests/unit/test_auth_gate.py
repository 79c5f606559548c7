from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest

from vikingsync.core.errors import AuthExpired
from vikingsync.services.auth_gate import DEMO_TOKEN, AuthGate, oauth_login_url
from vikingsync.services.telemetry import get_counter
from vikingsync.tests.utils.fake_osm import Clock


def test_first_auth_failure_trips_breaker_and_notifies_once() -> None:
    notified: list[int] = []
    gate = AuthGate(on_auth_error=notified.append)
    gate.set_token("tok")

    assert gate.classify_response(200) is False
    assert gate.should_make_api_call()

    assert gate.classify_response(401) is True
    assert gate.classify_response(403) is True
    assert gate.breaker_tripped
    assert not gate.should_make_api_call()
    assert notified == [401]
    assert get_counter("auth_failures_total.401") == 1
    # Read-path failures keep the token so cached views still work.
    assert not gate.expired
    assert gate.get_token() == "tok"


def test_write_path_failure_marks_token_expired() -> None:
    gate = AuthGate()
    gate.set_token("tok")
    gate.classify_response(401, write_path=True)
    assert gate.expired
    assert gate.get_token() is None
    with pytest.raises(AuthExpired):
        gate.check_write_permission()
    gate.mark_token_valid()
    assert not gate.expired


def test_token_expires_with_time() -> None:
    clock = Clock()
    gate = AuthGate(time_source=clock)
    gate.set_token("tok", expires_in_s=60)
    assert gate.has_usable_token()
    assert gate.token_expires_at == clock.now + 60

    clock.advance(61)
    assert gate.expired
    assert not gate.has_usable_token()
    assert not gate.has_usable_token("tok")
    with pytest.raises(AuthExpired):
        gate.check_write_permission()


def test_new_token_resets_breaker() -> None:
    notified: list[int] = []
    gate = AuthGate(on_auth_error=notified.append)
    gate.set_token("old")
    gate.classify_response(401)
    gate.mark_blocked()
    assert gate.blocked

    gate.set_token("new")
    assert gate.should_make_api_call()
    assert not gate.blocked
    gate.classify_response(401)
    assert notified == [401, 401]


def test_broken_callback_does_not_escape() -> None:
    def explode(_status: int) -> None:
        raise RuntimeError("ui crashed")

    gate = AuthGate(on_auth_error=explode)
    assert gate.classify_response(403) is True


def test_demo_mode_always_has_a_token() -> None:
    gate = AuthGate(demo_mode=True)
    assert gate.get_token() == DEMO_TOKEN
    assert gate.has_usable_token()
    assert not gate.has_usable_token("   ")


def test_oauth_login_url() -> None:
    url = oauth_login_url("http://backend.test/", "http://app.test", state="dev")
    parsed = urlparse(url)
    assert parsed.path == "/oauth/login"
    assert parse_qs(parsed.query) == {"state": ["dev"], "frontend_url": ["http://app.test"]}

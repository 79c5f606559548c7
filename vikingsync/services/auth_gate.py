from __future__ import annotations

import logging
import time
from typing import Callable
from urllib.parse import urlencode

from vikingsync.core.errors import AuthExpired
from vikingsync.services.resilience import CircuitBreaker, CircuitBreakerConfig
from vikingsync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

DEMO_TOKEN = "demo-mode-token"

AUTH_FAILURE_STATUSES = frozenset({401, 403})


class AuthGate:
    """Session token holder with a latched breaker tripped by the first auth failure."""

    def __init__(
        self,
        *,
        demo_mode: bool = False,
        on_auth_error: Callable[[int], None] | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._demo_mode = demo_mode
        self._on_auth_error = on_auth_error
        self._time = time_source or time.time
        self._token: str | None = None
        self._expires_at: float | None = None
        self._expired = False
        self._notified = False
        self._blocked = False
        self._breaker = CircuitBreaker(
            "osm.auth",
            config=CircuitBreakerConfig(failure_threshold=1, open_seconds=None),
        )

    @property
    def demo_mode(self) -> bool:
        return self._demo_mode

    @property
    def expired(self) -> bool:
        if self._expired:
            return True
        if self._expires_at is not None and self._time() >= self._expires_at:
            self._expired = True
        return self._expired

    @property
    def breaker_tripped(self) -> bool:
        return self._breaker.is_open

    @property
    def blocked(self) -> bool:
        return self._blocked

    @property
    def token_expires_at(self) -> float | None:
        return self._expires_at

    def get_token(self) -> str | None:
        if self._demo_mode:
            return DEMO_TOKEN
        if self.expired:
            return None
        return self._token

    def has_usable_token(self, token: str | None = None) -> bool:
        # An expired session also disqualifies tokens handed in by the caller.
        if not self._demo_mode and self.expired:
            return False
        candidate = token if token is not None else self.get_token()
        return isinstance(candidate, str) and candidate.strip() != ""

    def set_token(self, token: str, *, expires_in_s: float | None = None) -> None:
        self._token = token
        self._expires_at = self._time() + expires_in_s if expires_in_s else None
        self._expired = False
        self.reset()
        logger.info("auth_token_set expires_in_s=%s", expires_in_s)

    def clear_token(self) -> None:
        self._token = None
        self._expires_at = None
        self._expired = False
        self.reset()
        logger.info("auth_token_cleared")

    def mark_token_expired(self) -> None:
        if not self._expired:
            logger.warning("auth_token_marked_expired")
        self._expired = True

    def mark_token_valid(self) -> None:
        self._expired = False

    def classify_response(self, status: int, *, write_path: bool = False) -> bool:
        # Returns True when the status is an auth failure and the breaker has been tripped.
        if status not in AUTH_FAILURE_STATUSES:
            self._breaker.record_success()
            return False
        # Threshold is one, so the first auth failure opens the breaker.
        self._breaker.record_failure()
        # Expiry is sticky only for writes; reads keep degrading to cache.
        if write_path:
            self.mark_token_expired()
        increment_counter(f"auth_failures_total.{status}")
        if not self._notified:
            self._notified = True
            logger.warning("auth_failure_first status=%s", status)
            if self._on_auth_error is not None:
                try:
                    self._on_auth_error(status)
                except Exception:  # noqa: BLE001 - UI callbacks must not break the request path
                    logger.exception("auth_error_callback_failed status=%s", status)
        return True

    def mark_blocked(self) -> None:
        # Upstream blocked the application; nothing more should be sent this session.
        if not self._blocked:
            logger.error("osm_application_blocked")
        self._blocked = True
        self._breaker.trip()

    def should_make_api_call(self) -> bool:
        return self._breaker.allow()

    def check_write_permission(self) -> None:
        if self.expired:
            raise AuthExpired(
                "Write operations are not allowed while in offline mode with expired token",
                status_code=401,
            )

    def reset(self) -> None:
        self._notified = False
        self._blocked = False
        self._breaker.reset()


def oauth_login_url(backend_url: str, frontend_url: str, state: str = "prod") -> str:
    query = urlencode({"state": state, "frontend_url": frontend_url})
    return f"{backend_url.rstrip('/')}/oauth/login?{query}"

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from vikingsync.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    # None latches the breaker open until an explicit reset.
    open_seconds: float | None


@dataclass
class CircuitBreakerState:
    state: str
    failures: int
    opened_at: float | None


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
        on_transition: Callable[[str, str], None] | None = None,
    ) -> None:
        self._name = name
        self._config = config or CircuitBreakerConfig(failure_threshold=1, open_seconds=None)
        self._time = time_source or time.monotonic
        self._on_transition = on_transition
        self._state = CircuitBreakerState("closed", 0, None)

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> str:
        self._maybe_close()
        return self._state.state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def _transition(self, target: str) -> None:
        # Emit logs on state transitions for operator visibility.
        previous = self._state.state
        self._state = CircuitBreakerState(target, 0, self._time() if target == "open" else None)
        if previous == target:
            return
        logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, previous, target)
        increment_counter(f"circuit_breaker_transition_total.{self._name}.{target}")
        set_gauge(f"circuit_breaker_state.{self._name}", 1.0 if target == "open" else 0.0)
        if self._on_transition is not None:
            try:
                self._on_transition(self._name, target)
            except Exception:  # noqa: BLE001 - observers must not break breaker bookkeeping
                logger.exception("circuit_breaker_observer_failed name=%s", self._name)

    def _maybe_close(self) -> None:
        state = self._state
        if state.state != "open" or self._config.open_seconds is None or state.opened_at is None:
            return
        if (self._time() - state.opened_at) >= self._config.open_seconds:
            self._transition("closed")

    def allow(self) -> bool:
        return not self.is_open

    def record_success(self) -> None:
        if self._state.state == "closed":
            self._state.failures = 0

    def record_failure(self) -> None:
        if self._state.state == "open":
            return
        failures = self._state.failures + 1
        if failures >= max(self._config.failure_threshold, 1):
            self._transition("open")
        else:
            self._state.failures = failures

    def trip(self) -> None:
        self._transition("open")

    def reset(self) -> None:
        self._transition("closed")

from __future__ import annotations

from vikingsync.services.resilience import CircuitBreaker, CircuitBreakerConfig
from vikingsync.services.telemetry import get_counter


def test_circuit_breaker_transitions() -> None:
    now = {"t": 0.0}
    seen: list[tuple[str, str]] = []

    breaker = CircuitBreaker(
        "test.integration",
        config=CircuitBreakerConfig(failure_threshold=2, open_seconds=10),
        time_source=lambda: now["t"],
        on_transition=lambda name, state: seen.append((name, state)),
    )
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()
    assert breaker.allow()

    breaker.record_failure()
    assert breaker.is_open
    assert not breaker.allow()

    now["t"] = 11.0
    assert breaker.state == "closed"
    assert seen == [("test.integration", "open"), ("test.integration", "closed")]
    assert get_counter("circuit_breaker_transition_total.test.integration.open") == 1


def test_latched_breaker_stays_open_until_reset() -> None:
    now = {"t": 0.0}
    breaker = CircuitBreaker("auth", time_source=lambda: now["t"])
    breaker.trip()
    now["t"] = 10_000.0
    assert breaker.is_open
    breaker.record_failure()
    breaker.reset()
    assert breaker.allow()


def test_observer_failure_does_not_block_transition() -> None:
    def explode(name: str, state: str) -> None:
        raise RuntimeError("observer down")

    breaker = CircuitBreaker("noisy", on_transition=explode)
    breaker.trip()
    assert breaker.is_open

"""
Circuit Breaker — per-provider failure-threshold short-circuiting.

States:
    CLOSED    → requests flow normally; consecutive failures are counted
    OPEN      → requests are rejected until the cooldown elapses
    HALF_OPEN → after cooldown, exactly one trial request is allowed

Transitions:
    closed → open          failures reach the threshold
    open → half_open       cooldown elapsed (observed on allow())
    half_open → closed     the trial succeeds
    half_open → open       the trial fails; cooldown restarts

Usage:
    breakers = CircuitBreakerRegistry(config.circuit_breaker, clock)

    breakers.check("anthropic")        # raises CircuitOpenError if open
    try:
        result = await call()
        breakers.record_success("anthropic")
    except TransientProviderError:
        breakers.record_failure("anthropic")
        raise
"""
import logging
import math
from enum import Enum
from typing import Any

from forge_engine.clock import Clock, SystemClock
from forge_engine.config import CircuitBreakerSettings
from forge_engine.exceptions import CircuitOpenError

logger = logging.getLogger("forge.engine.circuit_breaker")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_STATE_GAUGE = {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}


class CircuitBreaker:
    """Circuit breaker for one provider.

    For asyncio single-threaded event loops; no locking needed.
    """

    __slots__ = (
        "name",
        "threshold",
        "cooldown_ms",
        "_clock",
        "_state",
        "_failures",
        "_last_failure_ms",
        "_open_until_ms",
        "_trial_in_flight",
        "_on_change",
    )

    def __init__(
        self,
        name: str = "default",
        threshold: int = 5,
        cooldown_ms: int = 60_000,
        clock: Clock | None = None,
        on_change=None,
    ):
        self.name = name
        self.threshold = threshold
        self.cooldown_ms = cooldown_ms
        self._clock = clock or SystemClock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_ms: float | None = None
        self._open_until_ms: float | None = None
        self._trial_in_flight = False
        self._on_change = on_change

    # ── State queries ────────────────────────────────────────────

    def allow(self) -> bool:
        """Return True if a call may be attempted now."""
        if self._state is CircuitState.CLOSED:
            return True

        if self._state is CircuitState.OPEN:
            now = self._clock.monotonic_ms()
            if self._open_until_ms is not None and now >= self._open_until_ms:
                self._transition(CircuitState.HALF_OPEN)
                self._trial_in_flight = True
                logger.info("Circuit breaker %s half-open — allowing one trial call", self.name)
                return True
            return False

        # HALF_OPEN: only the single trial call
        if self._trial_in_flight:
            return False
        self._trial_in_flight = True
        return True

    @property
    def state(self) -> CircuitState:
        """Current state; an expired cooldown reads as half-open."""
        if (
            self._state is CircuitState.OPEN
            and self._open_until_ms is not None
            and self._clock.monotonic_ms() >= self._open_until_ms
        ):
            return CircuitState.HALF_OPEN
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    @property
    def last_failure_ms(self) -> float | None:
        return self._last_failure_ms

    def cooldown_remaining_ms(self) -> int:
        if self._state is not CircuitState.OPEN or self._open_until_ms is None:
            return 0
        return max(0, math.ceil(self._open_until_ms - self._clock.monotonic_ms()))

    # ── Outcome recording ────────────────────────────────────────

    def record_success(self) -> None:
        """Reset the failure counter; a successful trial closes the circuit."""
        self._failures = 0
        self._trial_in_flight = False
        if self._state is not CircuitState.CLOSED:
            self._open_until_ms = None
            self._transition(CircuitState.CLOSED)
            logger.info("Circuit breaker %s closed after successful trial", self.name)

    def record_failure(self) -> None:
        """Count a failure; open on threshold, or immediately from half-open."""
        now = self._clock.monotonic_ms()
        self._last_failure_ms = now
        self._failures += 1

        if self._state is CircuitState.HALF_OPEN:
            self._trial_in_flight = False
            self._open(now)
            logger.warning("Circuit breaker %s trial failed — OPEN again", self.name)
            return

        if self._state is CircuitState.CLOSED and self._failures >= self.threshold:
            self._open(now)
            logger.warning(
                "Circuit breaker %s OPEN after %d consecutive failures",
                self.name,
                self._failures,
            )

    def _open(self, now: float) -> None:
        self._open_until_ms = now + self.cooldown_ms
        self._transition(CircuitState.OPEN)

    def _transition(self, state: CircuitState) -> None:
        self._state = state
        if self._on_change is not None:
            self._on_change(self.name, state)

    # ── Reset ────────────────────────────────────────────────────

    def reset(self) -> None:
        """Force-reset the circuit breaker to CLOSED state."""
        self._failures = 0
        self._open_until_ms = None
        self._trial_in_flight = False
        self._transition(CircuitState.CLOSED)

    def __repr__(self) -> str:
        return (
            f"CircuitBreaker(name={self.name!r}, state={self.state.value!r}, "
            f"failures={self._failures}/{self.threshold})"
        )


class CircuitBreakerRegistry:
    """One breaker per provider, created on first use."""

    def __init__(
        self,
        settings: CircuitBreakerSettings | None = None,
        clock: Clock | None = None,
        metrics: Any | None = None,
    ):
        self._settings = settings or CircuitBreakerSettings()
        self._clock = clock or SystemClock()
        self._metrics = metrics
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, provider: str) -> CircuitBreaker:
        breaker = self._breakers.get(provider)
        if breaker is None:
            breaker = CircuitBreaker(
                name=provider,
                threshold=self._settings.failure_threshold,
                cooldown_ms=self._settings.cooldown_ms,
                clock=self._clock,
                on_change=self._report_state,
            )
            self._breakers[provider] = breaker
        return breaker

    def allow(self, provider: str) -> bool:
        return self.get(provider).allow()

    def check(self, provider: str) -> None:
        """Raise CircuitOpenError unless a call to ``provider`` may proceed."""
        breaker = self.get(provider)
        if not breaker.allow():
            raise CircuitOpenError(provider, breaker.cooldown_remaining_ms())

    def record_success(self, provider: str) -> None:
        self.get(provider).record_success()

    def record_failure(self, provider: str) -> None:
        self.get(provider).record_failure()

    def release_trial(self, provider: str) -> None:
        """Give back a half-open trial slot that was granted but never used."""
        breaker = self._breakers.get(provider)
        if breaker is not None and breaker._trial_in_flight:
            breaker._trial_in_flight = False

    def cooldown_remaining_ms(self, provider: str) -> int:
        return self.get(provider).cooldown_remaining_ms()

    def reset(self, provider: str) -> None:
        self.get(provider).reset()

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {
            name: {
                "state": breaker.state.value,
                "failures": breaker.failure_count,
                "cooldown_remaining_ms": breaker.cooldown_remaining_ms(),
            }
            for name, breaker in self._breakers.items()
        }

    def _report_state(self, provider: str, state: CircuitState) -> None:
        if self._metrics is not None:
            self._metrics.circuit_state.labels(provider=provider).set(_STATE_GAUGE[state])

"""
Retry/Backoff Executor — bounded exponential backoff with jitter.

Wraps a fallible async operation. Transient failures (timeouts, 5xx-like
provider errors, connection resets) are retried up to ``max_attempts``;
anything else is surfaced immediately without consuming a retry.

Delay before attempt n+1:

    max(floor, min(base * 2^(n-1), cap) ± jitter)

Exhausting all attempts raises RetryExhaustedError wrapping the last error.
Built on tenacity's AsyncRetrying; sleeping goes through the injected Clock.
"""
import asyncio
import logging
import random
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.wait import wait_base

from forge_engine.clock import Clock, SystemClock
from forge_engine.config import RetrySettings
from forge_engine.exceptions import (
    FatalProviderError,
    PolicyDenialError,
    RetryExhaustedError,
    TransientProviderError,
)

logger = logging.getLogger("forge.engine.retry")

T = TypeVar("T")

TRANSIENT = "transient"
FATAL = "fatal"

# Message patterns for exceptions outside our taxonomy.
# A retryable provider status is checked first, whatever else the message says.
_TRANSIENT_STATUS = re.compile(
    r"^\W*(?:429|5\d\d)\b|\b(?:http|status|code)\W{0,3}(?:429|5\d\d)\b|"
    r"service unavailable|bad gateway|gateway time-?out|too many requests|overloaded",
    re.IGNORECASE,
)
_TRANSIENT_PATTERNS = re.compile(
    r"timed? ?out|timeout|econnreset|connection (reset|refused|aborted)|"
    r"socket hang up|network|rate.?limit|\b429\b|\b5\d\d\b|temporar",
    re.IGNORECASE,
)
_FATAL_PATTERNS = re.compile(
    r"auth|unauthori[sz]ed|forbidden|\b401\b|\b403\b|invalid|malformed|"
    r"validation|bad request|\b400\b|not found|\b404\b",
    re.IGNORECASE,
)


def classify_failure(exc: BaseException) -> str:
    """Return ``"transient"`` or ``"fatal"`` for an operation failure."""
    if isinstance(exc, TransientProviderError):
        return TRANSIENT
    if isinstance(exc, (FatalProviderError, PolicyDenialError)):
        return FATAL
    if isinstance(exc, (asyncio.TimeoutError, ConnectionError)):
        return TRANSIENT

    message = str(exc)
    if _TRANSIENT_STATUS.search(message):
        return TRANSIENT
    if _FATAL_PATTERNS.search(message):
        return FATAL
    if _TRANSIENT_PATTERNS.search(message):
        return TRANSIENT
    # Unknown failures are not retried
    return FATAL


def is_transient(exc: BaseException) -> bool:
    return classify_failure(exc) == TRANSIENT


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff shape for one ``execute`` call."""

    max_attempts: int = 3
    base_backoff_ms: int = 2000
    min_backoff_ms: int = 500
    max_backoff_ms: int = 30000
    jitter_ratio: float = 0.1

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_backoff_ms=settings.base_backoff_ms,
            min_backoff_ms=settings.min_backoff_ms,
            max_backoff_ms=settings.max_backoff_ms,
            jitter_ratio=settings.jitter_ratio,
        )

    def base_delay_ms(self, attempt: int) -> float:
        """Delay after failed ``attempt`` (1-based), before jitter."""
        return float(min(self.base_backoff_ms * 2 ** (attempt - 1), self.max_backoff_ms))

    def compute_delay_ms(self, attempt: int, rng: random.Random | None = None) -> float:
        delay = self.base_delay_ms(attempt)
        if self.jitter_ratio:
            rng = rng or random
            delay += delay * rng.uniform(-self.jitter_ratio, self.jitter_ratio)
        return max(float(self.min_backoff_ms), delay)

    def worst_case_ms(self, timeout_ms: int) -> int:
        """Upper bound on wall time for ``max_attempts`` calls of ``timeout_ms`` each."""
        backoff = 0.0
        for attempt in range(1, self.max_attempts):
            backoff += self.base_delay_ms(attempt) * (1 + self.jitter_ratio)
        return int(timeout_ms * self.max_attempts + backoff)


@dataclass
class RetryOutcome(Generic[T]):
    """Successful result plus the attempts it took."""

    value: T
    attempts: int = 1
    delays_ms: list[float] = field(default_factory=list)

    @property
    def total_delay_ms(self) -> float:
        return sum(self.delays_ms)


class _wait_policy(wait_base):
    """tenacity wait strategy that follows a RetryPolicy and records each delay."""

    def __init__(self, policy: RetryPolicy, rng: random.Random | None, delays: list[float]):
        self.policy = policy
        self.rng = rng
        self.delays = delays

    def __call__(self, retry_state: RetryCallState) -> float:
        delay_ms = self.policy.compute_delay_ms(retry_state.attempt_number, self.rng)
        self.delays.append(delay_ms)
        return delay_ms / 1000.0


class RetryExecutor:
    """
    Runs an async operation under a RetryPolicy.

    Usage:
        executor = RetryExecutor(clock)
        outcome = await executor.execute(lambda: provider.invoke(pid, req), policy)
        outcome.value, outcome.attempts
    """

    def __init__(
        self,
        clock: Clock | None = None,
        rng: random.Random | None = None,
        metrics: Any | None = None,
    ):
        self._clock = clock or SystemClock()
        self._rng = rng
        self._metrics = metrics

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None = None,
        label: str = "operation",
    ) -> RetryOutcome[T]:
        """
        Call ``operation`` until it succeeds, fails fatally, or attempts run out.

        Args:
            operation: Zero-argument callable returning a fresh awaitable per attempt
            policy: Attempt budget and backoff; defaults to RetryPolicy()
            label: Name used in logs and the retries metric (usually the provider id)

        Returns:
            RetryOutcome with the value, attempt count and the delays slept

        Raises:
            RetryExhaustedError: Every attempt failed transiently
            Exception: The first non-transient failure, unchanged
        """
        policy = policy or RetryPolicy()
        delays: list[float] = []
        attempts = 0

        def _before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "%s attempt %d/%d failed (%s) — retrying in %.0fms",
                label,
                retry_state.attempt_number,
                policy.max_attempts,
                exc,
                delays[-1] if delays else 0,
            )
            if self._metrics is not None:
                self._metrics.retries.labels(provider=label).inc()

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=_wait_policy(policy, self._rng, delays),
            retry=retry_if_exception(is_transient),
            sleep=self._clock.sleep,
            before_sleep=_before_sleep,
            reraise=False,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    value = await operation()
        except RetryError as e:
            last = e.last_attempt.exception()
            logger.warning("%s failed after %d attempt(s): %s", label, attempts, last)
            raise RetryExhaustedError(last, attempts) from last

        return RetryOutcome(value=value, attempts=attempts, delays_ms=delays)

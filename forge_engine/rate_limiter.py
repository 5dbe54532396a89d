"""
Rate Limiter — per-category admission control.

One bucket per (category, identity) pair. Each category has its own ceiling
and block duration (tool calls, sampling requests, command executions,
config accesses, LLM API calls, default).

On acquire:
- a blocked bucket denies until its block-until time passes, then resets
- a bucket whose window has elapsed resets count and window start
- the call is counted; exceeding the ceiling blocks the bucket

This is a pure gate: it never retries or queues on the caller's behalf.
Buckets are mutated synchronously on the event loop, so each key is
updated atomically without a lock and unrelated keys never contend.
"""
import logging
import math
from dataclasses import dataclass
from typing import Any

from forge_engine.clock import Clock, SystemClock
from forge_engine.config import DEFAULT_CATEGORY, EngineConfig, RateLimitRule
from forge_engine.exceptions import RateLimitExceededError

logger = logging.getLogger("forge.engine.rate_limiter")


@dataclass
class RateLimitBucket:
    """Fixed-window counter for a single (category, identity) key."""

    count: int = 0
    window_start_ms: float = 0.0
    blocked_until_ms: float | None = None
    last_request_ms: float = 0.0

    def is_blocked(self, now_ms: float) -> bool:
        return self.blocked_until_ms is not None and now_ms < self.blocked_until_ms

    def reset(self, now_ms: float) -> None:
        self.count = 0
        self.window_start_ms = now_ms
        self.blocked_until_ms = None


@dataclass(frozen=True)
class AdmissionDecision:
    """Result of ``RateLimiter.try_acquire``."""

    allowed: bool
    retry_after_ms: int = 0
    remaining: int = 0

    def __bool__(self) -> bool:
        return self.allowed


class RateLimiter:
    """
    Per-category fixed-window rate limiter with blocking.

    Usage:
        limiter = RateLimiter(config.rate_limits, clock)

        decision = limiter.try_acquire("mcp_tool_call", "anthropic")
        if not decision:
            ...  # retry after decision.retry_after_ms

        # or raise RateLimitExceededError on denial:
        limiter.acquire("llm_api_call", "openai")
    """

    def __init__(
        self,
        rules: dict[str, RateLimitRule] | None = None,
        clock: Clock | None = None,
        metrics: Any | None = None,
    ):
        self._rules: dict[str, RateLimitRule] = dict(
            rules if rules is not None else EngineConfig().rate_limits
        )
        if DEFAULT_CATEGORY not in self._rules:
            raise ValueError("rate limit rules must include a 'default' rule")
        self._clock = clock or SystemClock()
        self._metrics = metrics
        self._buckets: dict[tuple[str, str], RateLimitBucket] = {}

    # ── Rules ─────────────────────────────────────────────────

    def rule_for(self, category: str) -> RateLimitRule:
        """Rule for a category; unknown categories use the default rule."""
        return self._rules.get(category) or self._rules[DEFAULT_CATEGORY]

    def update_rule(self, category: str, rule: RateLimitRule) -> None:
        self._rules[category] = rule

    @property
    def rules(self) -> dict[str, RateLimitRule]:
        return dict(self._rules)

    # ── Admission ─────────────────────────────────────────────

    def try_acquire(self, category: str, identity: str) -> AdmissionDecision:
        """Count one call against the bucket and report whether it is admitted."""
        rule = self.rule_for(category)
        now = self._clock.monotonic_ms()
        key = (category, identity)

        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = RateLimitBucket(window_start_ms=now)
            self._buckets[key] = bucket
        bucket.last_request_ms = now

        if bucket.blocked_until_ms is not None:
            if now < bucket.blocked_until_ms:
                return self._deny(category, identity, bucket.blocked_until_ms - now)
            # Block served: start over with an empty window
            bucket.reset(now)

        if now - bucket.window_start_ms >= rule.window_ms:
            bucket.reset(now)

        if bucket.count >= rule.max_requests:
            if rule.block_duration_ms > 0:
                bucket.blocked_until_ms = now + rule.block_duration_ms
                logger.warning(
                    "Rate limit exceeded for %s/%s: %d/%d per %dms — blocked for %dms",
                    category, identity, bucket.count, rule.max_requests,
                    rule.window_ms, rule.block_duration_ms,
                )
                return self._deny(category, identity, rule.block_duration_ms)
            return self._deny(
                category, identity, bucket.window_start_ms + rule.window_ms - now
            )

        bucket.count += 1
        return AdmissionDecision(
            allowed=True, remaining=rule.max_requests - bucket.count
        )

    def acquire(self, category: str, identity: str) -> None:
        """Like ``try_acquire`` but raises RateLimitExceededError on denial."""
        decision = self.try_acquire(category, identity)
        if not decision.allowed:
            raise RateLimitExceededError(
                f"Rate limit exceeded for {category}/{identity}; "
                f"retry after {decision.retry_after_ms}ms",
                retry_after_ms=decision.retry_after_ms,
                category=category,
            )

    def _deny(self, category: str, identity: str, retry_after_ms: float) -> AdmissionDecision:
        if self._metrics is not None:
            self._metrics.rate_limit_denials.labels(category=category).inc()
        logger.debug("Denied %s/%s, retry after %.0fms", category, identity, retry_after_ms)
        return AdmissionDecision(
            allowed=False, retry_after_ms=max(1, math.ceil(retry_after_ms))
        )

    # ── Introspection / housekeeping ──────────────────────────

    def status(self, category: str, identity: str) -> dict[str, Any]:
        """Current bucket status without counting a call."""
        rule = self.rule_for(category)
        now = self._clock.monotonic_ms()
        bucket = self._buckets.get((category, identity))
        if bucket is None:
            return {
                "allowed": True,
                "remaining": rule.max_requests,
                "blocked_until_ms": None,
                "reset_in_ms": rule.window_ms,
            }

        blocked = bucket.is_blocked(now)
        window_live = now - bucket.window_start_ms < rule.window_ms
        count = bucket.count if window_live else 0
        remaining = max(0, rule.max_requests - count)
        reset_in = (
            bucket.window_start_ms + rule.window_ms - now if window_live else rule.window_ms
        )
        return {
            "allowed": not blocked and remaining > 0,
            "remaining": remaining,
            "blocked_until_ms": bucket.blocked_until_ms if blocked else None,
            "reset_in_ms": max(0, math.ceil(reset_in)),
        }

    def reset(self, category: str, identity: str) -> None:
        self._buckets.pop((category, identity), None)

    def cleanup(self) -> int:
        """
        Drop idle buckets.

        A bucket is idle when it has not been touched for twice the largest
        window and is not blocked.

        Returns:
            Number of buckets removed.
        """
        now = self._clock.monotonic_ms()
        max_window = max(rule.window_ms for rule in self._rules.values())
        cutoff = now - max_window * 2
        stale = [
            key for key, bucket in self._buckets.items()
            if bucket.last_request_ms < cutoff and not bucket.is_blocked(now)
        ]
        for key in stale:
            del self._buckets[key]
        if stale:
            logger.debug("Cleaned %d idle rate limit buckets", len(stale))
        return len(stale)

    def stats(self) -> dict[str, Any]:
        now = self._clock.monotonic_ms()
        return {
            "categories": sorted(self._rules),
            "buckets": len(self._buckets),
            "blocked": sum(1 for b in self._buckets.values() if b.is_blocked(now)),
        }

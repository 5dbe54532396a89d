"""
Unit tests for forge_engine.rate_limiter.

Tests:
- Per-category ceilings (N-th allowed, N+1-th denied)
- Block duration and reset after the block
- Window rollover
- Identity isolation and default-rule fallback
- Housekeeping (status, cleanup, stats)
"""
from unittest.mock import MagicMock

import pytest

from forge_engine.clock import ManualClock
from forge_engine.config import (
    COMMAND_EXECUTION,
    CONFIG_ACCESS,
    DEFAULT_CATEGORY,
    LLM_API_CALL,
    SAMPLING,
    TOOL_CALL,
    RateLimitRule,
    default_rate_limits,
)
from forge_engine.exceptions import RateLimitExceededError
from forge_engine.rate_limiter import RateLimiter


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def limiter(clock) -> RateLimiter:
    return RateLimiter(default_rate_limits(), clock)


ALL_CATEGORIES = [TOOL_CALL, SAMPLING, COMMAND_EXECUTION, CONFIG_ACCESS, LLM_API_CALL, DEFAULT_CATEGORY]


# ============================================================================
# Ceilings
# ============================================================================

class TestCeilings:

    @pytest.mark.parametrize("category", ALL_CATEGORIES)
    def test_nth_allowed_next_denied(self, limiter: RateLimiter, category: str):
        ceiling = limiter.rule_for(category).max_requests

        for i in range(ceiling):
            decision = limiter.try_acquire(category, "claude")
            assert decision.allowed, f"call {i + 1} of {ceiling} should be allowed"

        denied = limiter.try_acquire(category, "claude")
        assert not denied.allowed
        assert denied.retry_after_ms == limiter.rule_for(category).block_duration_ms

    def test_remaining_counts_down(self, limiter: RateLimiter):
        first = limiter.try_acquire(SAMPLING, "claude")
        second = limiter.try_acquire(SAMPLING, "claude")
        assert first.remaining == 9
        assert second.remaining == 8

    def test_decision_is_truthy_when_allowed(self, limiter: RateLimiter):
        assert limiter.try_acquire(TOOL_CALL, "claude")

    def test_identities_have_separate_buckets(self, limiter: RateLimiter):
        for _ in range(10):
            limiter.try_acquire(SAMPLING, "claude")
        assert not limiter.try_acquire(SAMPLING, "claude").allowed
        assert limiter.try_acquire(SAMPLING, "gpt").allowed

    def test_categories_have_separate_buckets(self, limiter: RateLimiter):
        for _ in range(11):
            limiter.try_acquire(SAMPLING, "claude")
        assert limiter.try_acquire(TOOL_CALL, "claude").allowed

    def test_unknown_category_uses_default_rule(self, limiter: RateLimiter):
        assert limiter.rule_for("mystery") == limiter.rule_for(DEFAULT_CATEGORY)
        for _ in range(20):
            assert limiter.try_acquire("mystery", "claude").allowed
        assert not limiter.try_acquire("mystery", "claude").allowed

    def test_rules_require_default(self, clock):
        with pytest.raises(ValueError, match="default"):
            RateLimiter({TOOL_CALL: RateLimitRule(max_requests=1)}, clock)


# ============================================================================
# Blocking and windows
# ============================================================================

class TestBlocking:

    def test_block_lasts_exactly_block_duration(self, limiter: RateLimiter, clock: ManualClock):
        for _ in range(10):
            limiter.try_acquire(SAMPLING, "claude")
        assert not limiter.try_acquire(SAMPLING, "claude").allowed  # blocked for 120s

        clock.advance(119.0)
        still_blocked = limiter.try_acquire(SAMPLING, "claude")
        assert not still_blocked.allowed
        assert still_blocked.retry_after_ms == 1000

        clock.advance(1.0)
        decision = limiter.try_acquire(SAMPLING, "claude")
        assert decision.allowed
        # Fresh window after the block
        assert decision.remaining == 9

    def test_window_rollover_does_not_lift_block(self, limiter: RateLimiter, clock: ManualClock):
        for _ in range(31):
            limiter.try_acquire(TOOL_CALL, "claude")
        clock.advance(61.0)
        decision = limiter.try_acquire(TOOL_CALL, "claude")
        assert not decision.allowed
        assert decision.retry_after_ms == 239_000

    def test_window_rollover_resets_count(self, limiter: RateLimiter, clock: ManualClock):
        for _ in range(10):
            assert limiter.try_acquire(SAMPLING, "claude").allowed
        clock.advance(60.0)
        decision = limiter.try_acquire(SAMPLING, "claude")
        assert decision.allowed
        assert decision.remaining == 9

    def test_no_block_duration_denies_until_window_end(self, clock: ManualClock):
        rules = {DEFAULT_CATEGORY: RateLimitRule(max_requests=2, window_ms=10_000)}
        limiter = RateLimiter(rules, clock)
        limiter.try_acquire("x", "p")
        clock.advance(4.0)
        limiter.try_acquire("x", "p")
        denied = limiter.try_acquire("x", "p")
        assert not denied.allowed
        assert denied.retry_after_ms == 6000
        clock.advance(6.0)
        assert limiter.try_acquire("x", "p").allowed

    def test_tool_call_burst_of_31(self, limiter: RateLimiter, clock: ManualClock):
        decisions = [limiter.try_acquire(TOOL_CALL, "claude") for _ in range(31)]
        assert all(d.allowed for d in decisions[:30])
        assert not decisions[30].allowed
        assert decisions[30].retry_after_ms > 0

        clock.advance(300.0)
        assert limiter.try_acquire(TOOL_CALL, "claude").allowed


# ============================================================================
# acquire() and metrics
# ============================================================================

class TestAcquire:

    def test_acquire_raises_with_retry_hint(self, limiter: RateLimiter):
        for _ in range(10):
            limiter.acquire(SAMPLING, "claude")
        with pytest.raises(RateLimitExceededError) as exc_info:
            limiter.acquire(SAMPLING, "claude")
        assert exc_info.value.retry_after_ms == 120_000
        assert exc_info.value.category == SAMPLING
        assert exc_info.value.outcome == "denied"

    def test_denials_are_counted(self, clock: ManualClock):
        metrics = MagicMock()
        limiter = RateLimiter(default_rate_limits(), clock, metrics=metrics)
        for _ in range(11):
            limiter.try_acquire(SAMPLING, "claude")
        metrics.rate_limit_denials.labels.assert_called_once_with(category=SAMPLING)
        metrics.rate_limit_denials.labels.return_value.inc.assert_called_once()

    def test_update_rule_applies_to_next_call(self, limiter: RateLimiter):
        limiter.update_rule(SAMPLING, RateLimitRule(max_requests=1))
        assert limiter.try_acquire(SAMPLING, "claude").allowed
        assert not limiter.try_acquire(SAMPLING, "claude").allowed


# ============================================================================
# Housekeeping
# ============================================================================

class TestHousekeeping:

    def test_status_without_bucket(self, limiter: RateLimiter):
        status = limiter.status(TOOL_CALL, "claude")
        assert status["allowed"] is True
        assert status["remaining"] == 30

    def test_status_reports_block(self, limiter: RateLimiter):
        for _ in range(11):
            limiter.try_acquire(SAMPLING, "claude")
        status = limiter.status(SAMPLING, "claude")
        assert status["allowed"] is False
        assert status["blocked_until_ms"] == 120_000

    def test_status_does_not_count(self, limiter: RateLimiter):
        limiter.try_acquire(SAMPLING, "claude")
        limiter.status(SAMPLING, "claude")
        assert limiter.status(SAMPLING, "claude")["remaining"] == 9

    def test_reset_clears_bucket(self, limiter: RateLimiter):
        for _ in range(11):
            limiter.try_acquire(SAMPLING, "claude")
        limiter.reset(SAMPLING, "claude")
        assert limiter.try_acquire(SAMPLING, "claude").allowed

    def test_cleanup_drops_idle_buckets(self, limiter: RateLimiter, clock: ManualClock):
        limiter.try_acquire(TOOL_CALL, "idle")
        clock.advance(121.0)
        limiter.try_acquire(TOOL_CALL, "busy")
        assert limiter.cleanup() == 1
        assert limiter.stats()["buckets"] == 1

    def test_cleanup_keeps_blocked_buckets(self, limiter: RateLimiter, clock: ManualClock):
        for _ in range(31):
            limiter.try_acquire(TOOL_CALL, "claude")
        clock.advance(121.0)
        assert limiter.cleanup() == 0
        assert limiter.stats()["blocked"] == 1

"""Engine configuration — every tunable the orchestration core consumes.

The core never reads the environment; callers build an ``EngineConfig``
(directly, or through ``forge_engine.config_loader``) and inject it.
"""
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator

# Categories with their own ceilings
TOOL_CALL = "mcp_tool_call"
SAMPLING = "mcp_sampling"
COMMAND_EXECUTION = "command_execution"
CONFIG_ACCESS = "config_access"
LLM_API_CALL = "llm_api_call"
DEFAULT_CATEGORY = "default"

RATE_LIMIT_WINDOW_MS = 60 * 1000


class RateLimitRule(BaseModel):
    """Ceiling and block duration for one rate-limit category."""

    max_requests: int
    window_ms: int = RATE_LIMIT_WINDOW_MS
    block_duration_ms: int = 0

    @field_validator("max_requests")
    @classmethod
    def validate_max_requests(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_requests must be >= 1, got {v}")
        return v

    @field_validator("window_ms")
    @classmethod
    def validate_window(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"window_ms must be positive, got {v}")
        return v

    @field_validator("block_duration_ms")
    @classmethod
    def validate_block(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"block_duration_ms must be >= 0, got {v}")
        return v


def default_rate_limits() -> dict[str, RateLimitRule]:
    return {
        TOOL_CALL: RateLimitRule(max_requests=30, block_duration_ms=5 * 60 * 1000),
        SAMPLING: RateLimitRule(max_requests=10, block_duration_ms=2 * 60 * 1000),
        COMMAND_EXECUTION: RateLimitRule(max_requests=60, block_duration_ms=60 * 1000),
        CONFIG_ACCESS: RateLimitRule(max_requests=120, block_duration_ms=30 * 1000),
        LLM_API_CALL: RateLimitRule(max_requests=60, block_duration_ms=2 * 60 * 1000),
        DEFAULT_CATEGORY: RateLimitRule(max_requests=20, block_duration_ms=2 * 60 * 1000),
    }


class CircuitBreakerSettings(BaseModel):
    failure_threshold: int = 5
    cooldown_ms: int = 60 * 1000

    @field_validator("failure_threshold", "cooldown_ms")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be >= 1, got {v}")
        return v


class RetrySettings(BaseModel):
    """Bounded exponential backoff with jitter."""

    max_attempts: int = 3
    base_backoff_ms: int = 2 * 1000
    min_backoff_ms: int = 500
    max_backoff_ms: int = 30 * 1000
    jitter_ratio: float = 0.1

    @field_validator("max_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1 or v > 20:
            raise ValueError(f"max_attempts must be 1-20, got {v}")
        return v

    @field_validator("jitter_ratio")
    @classmethod
    def validate_jitter(cls, v: float) -> float:
        if not 0.0 <= v < 1.0:
            raise ValueError(f"jitter_ratio must be in [0, 1), got {v}")
        return v

    @model_validator(mode="after")
    def validate_bounds(self) -> "RetrySettings":
        if not 0 <= self.min_backoff_ms <= self.base_backoff_ms <= self.max_backoff_ms:
            raise ValueError(
                "expected 0 <= min_backoff_ms <= base_backoff_ms <= max_backoff_ms"
            )
        return self


class DebounceSettings(BaseModel):
    base_ms: int = 1000
    extended_ms: int = 5000
    rapid_window_ms: int = 10 * 1000
    # Worst-case staleness of a pending write
    max_staleness_ms: int = 15 * 1000

    @model_validator(mode="after")
    def validate_intervals(self) -> "DebounceSettings":
        if self.base_ms <= 0:
            raise ValueError(f"base_ms must be positive, got {self.base_ms}")
        if self.extended_ms < self.base_ms:
            raise ValueError("extended_ms must be >= base_ms")
        if self.max_staleness_ms < self.extended_ms:
            raise ValueError("max_staleness_ms must be >= extended_ms")
        return self


class IdempotencySettings(BaseModel):
    lease_ms: int = 2 * 1000

    @field_validator("lease_ms")
    @classmethod
    def validate_lease(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"lease_ms must be positive, got {v}")
        return v


class SessionSettings(BaseModel):
    sessions_dir: Path = Path(".forge/sessions")
    encrypt: bool = False
    # Externally supplied secret; required when encrypt is on
    secret: str | None = Field(default=None, repr=False)
    writer_lease_ms: int = 5 * 60 * 1000

    @model_validator(mode="after")
    def validate_secret(self) -> "SessionSettings":
        if self.encrypt and not self.secret:
            raise ValueError("session encryption enabled but no secret supplied")
        return self


class RetentionSettings(BaseModel):
    enabled: bool = True
    max_age_days: int = 90
    max_count: int = 100
    archive_after_days: int = 7
    cleanup_interval_hours: int = 24

    @model_validator(mode="after")
    def validate_ages(self) -> "RetentionSettings":
        if self.archive_after_days > self.max_age_days:
            raise ValueError("archive_after_days must not exceed max_age_days")
        if self.max_count < 1 or self.cleanup_interval_hours < 1:
            raise ValueError("max_count and cleanup_interval_hours must be >= 1")
        return self


class EngineConfig(BaseModel):
    """Runtime configuration for the orchestration core (validated via Pydantic)."""

    model_config = {"extra": "ignore"}

    rate_limits: dict[str, RateLimitRule] = Field(default_factory=default_rate_limits)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    debounce: DebounceSettings = Field(default_factory=DebounceSettings)
    idempotency: IdempotencySettings = Field(default_factory=IdempotencySettings)
    sessions: SessionSettings = Field(default_factory=SessionSettings)
    retention: RetentionSettings = Field(default_factory=RetentionSettings)

    # Parallel stages per pipeline run
    max_concurrency: int = 4

    @field_validator("rate_limits")
    @classmethod
    def validate_rate_limits(cls, v: dict[str, RateLimitRule]) -> dict[str, RateLimitRule]:
        # Partial overrides keep the remaining defaults
        merged = default_rate_limits()
        merged.update(v)
        return merged

    @field_validator("max_concurrency")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        if v < 1 or v > 64:
            raise ValueError(f"max_concurrency must be 1-64, got {v}")
        return v

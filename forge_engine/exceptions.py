"""Engine-specific exceptions."""


class EngineError(Exception):
    """Base exception for forge_engine."""

    # How the executor reports this error: "denied", "failed" or "aborted".
    outcome = "failed"


# ── Provider call outcomes ────────────────────────────────────


class ProviderError(EngineError):
    """LLM provider call errors."""

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message)
        self.provider = provider


class TransientProviderError(ProviderError):
    """Timeouts, 5xx-equivalent errors, connection resets. Retried."""
    pass


class FatalProviderError(ProviderError):
    """Authentication or malformed-request errors. Never retried."""
    pass


class UnknownProviderError(FatalProviderError):
    """No provider registered under the requested id."""
    pass


class StageTimeoutError(TransientProviderError):
    """A stage call exceeded its per-stage timeout."""

    def __init__(self, stage: str, timeout_ms: int):
        super().__init__(f"Stage {stage!r} timed out after {timeout_ms}ms")
        self.stage = stage
        self.timeout_ms = timeout_ms


class RetryExhaustedError(ProviderError):
    """All retry attempts failed; wraps the last error."""

    def __init__(self, last_error: BaseException, attempts: int):
        super().__init__(
            f"Operation failed after {attempts} attempt(s): {last_error}",
            provider=getattr(last_error, "provider", None),
        )
        self.last_error = last_error
        self.attempts = attempts


# ── Policy denials (pre-flight, never retried) ────────────────


class PolicyDenialError(EngineError):
    """Admission denied by a resilience policy."""

    outcome = "denied"


class RateLimitExceededError(PolicyDenialError):
    """Raised when a rate-limit bucket rejects a call."""

    def __init__(self, message: str, retry_after_ms: int, category: str = "default"):
        super().__init__(message)
        self.retry_after_ms = retry_after_ms
        self.category = category


class CircuitOpenError(PolicyDenialError):
    """Raised when a provider's circuit breaker is open."""

    def __init__(self, provider: str, cooldown_remaining_ms: int):
        super().__init__(
            f"Circuit open for provider {provider!r} "
            f"({cooldown_remaining_ms}ms cooldown remaining)"
        )
        self.provider = provider
        self.cooldown_remaining_ms = cooldown_remaining_ms


class OperationInProgressError(PolicyDenialError):
    """Another holder owns the idempotency lock for this fingerprint."""

    def __init__(self, fingerprint: str, holder: str | None = None):
        super().__init__(
            f"Operation {fingerprint} already in progress"
            + (f" (held by {holder})" if holder else "")
        )
        self.fingerprint = fingerprint
        self.holder = holder


# ── Sessions ──────────────────────────────────────────────────


class SessionError(EngineError):
    """Session management errors."""

    def __init__(self, message: str, session_id: str | None = None):
        super().__init__(message)
        self.session_id = session_id


class SessionNotFoundError(SessionError):
    """No persisted session exists for the id."""
    pass


class DuplicateSessionError(SessionError):
    """A session with the id already exists."""
    pass


class SessionLockedError(SessionError):
    """Another process holds the single-writer lease for the session."""

    def __init__(self, session_id: str, holder: str | None = None):
        super().__init__(
            f"Session {session_id} is locked"
            + (f" by {holder}" if holder else ""),
            session_id=session_id,
        )
        self.holder = holder


class SessionCorruptError(SessionError):
    """Persisted document failed to decrypt or parse. Never auto-repaired."""
    pass


class InvalidTransitionError(SessionError):
    """Requested status change is not allowed by the lifecycle."""
    pass


# ── Pipelines ─────────────────────────────────────────────────


class PipelineError(EngineError):
    """Pipeline definition and execution errors."""
    pass


class PipelineDefinitionError(PipelineError):
    """Invalid stage graph (duplicate names, forward or unknown dependencies)."""
    pass


class PipelineAbortedError(PipelineError):
    """A required stage failed or the run was cancelled."""

    outcome = "aborted"

    def __init__(self, message: str, stage: str | None = None, reason: str = "failed"):
        super().__init__(message)
        self.stage = stage
        self.reason = reason

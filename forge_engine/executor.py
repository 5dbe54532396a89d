"""
Pipeline Executor — runs a stage graph against a session.

Per run:
- resolve or create the session (terminal sessions are refused)
- start one task per stage; a stage waits for the stages it depends on,
  then for a slot under ``max_concurrency``
- per stage: idempotency guard → rate limiter → circuit breaker →
  provider call under the retry executor, with the stage timeout on
  every attempt
- success merges the output into session context and appends history;
  failure records a breaker failure and a history entry
- a required stage that fails or is denied aborts the run: in-flight
  siblings are cancelled (results discarded), unstarted stages skipped
- an external cancel event aborts the same way
- finally the session is completed or failed and flushed synchronously

Policy denials never reach the retry executor. Failures become data only
at the stage boundary; the caller gets a PipelineResult.
"""
import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

import structlog

from forge_engine.circuit_breaker import CircuitBreakerRegistry
from forge_engine.clock import Clock, SystemClock
from forge_engine.config import EngineConfig
from forge_engine.exceptions import (
    CircuitOpenError,
    InvalidTransitionError,
    PipelineAbortedError,
    PolicyDenialError,
    RateLimitExceededError,
    RetryExhaustedError,
    SessionLockedError,
    StageTimeoutError,
)
from forge_engine.idempotency import IdempotencyGuard, compute_fingerprint
from forge_engine.lifecycle import SessionLifecycle
from forge_engine.llm_gateway import ProviderRegistry
from forge_engine.models import SessionStatus
from forge_engine.logging_config import correlation_id_var, new_correlation_id
from forge_engine.pipeline import PipelineDefinition, StageSpec
from forge_engine.rate_limiter import RateLimiter
from forge_engine.retry import RetryExecutor, RetryOutcome, RetryPolicy

logger = logging.getLogger("forge.engine.executor")


class StageStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DENIED = "denied"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class PipelineStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


# Why a run failed, as reported to callers
DENIED_BY_POLICY = "denied_by_policy"
FAILED_AFTER_RETRIES = "failed_after_retries"
ABORTED = "aborted"

_OUTCOME_KINDS = {
    "denied": DENIED_BY_POLICY,
    "failed": FAILED_AFTER_RETRIES,
    "aborted": ABORTED,
}


@dataclass
class StageResult:
    """Outcome of one stage in one run."""

    name: str
    status: StageStatus
    required: bool = True
    output: Any = None
    error: str | None = None
    error_type: str | None = None
    failure_kind: str | None = None
    attempts: int = 0
    duration_ms: float = 0.0
    retry_after_ms: int | None = None

    @property
    def ok(self) -> bool:
        return self.status is StageStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class PipelineResult:
    """Structured result of a pipeline run."""

    pipeline: str
    session_id: str
    status: PipelineStatus
    stages: dict[str, StageResult] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    failure_kind: str | None = None
    failed_stage: str | None = None
    error: str | None = None
    correlation_id: str = ""
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status is PipelineStatus.COMPLETED

    def raise_for_status(self) -> None:
        """Raise PipelineAbortedError unless the run completed."""
        if not self.succeeded:
            raise PipelineAbortedError(
                self.error or f"Pipeline {self.pipeline} failed",
                stage=self.failed_stage,
                reason=self.failure_kind or FAILED_AFTER_RETRIES,
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipeline": self.pipeline,
            "session_id": self.session_id,
            "status": self.status.value,
            "failure_kind": self.failure_kind,
            "failed_stage": self.failed_stage,
            "error": self.error,
            "correlation_id": self.correlation_id,
            "duration_ms": self.duration_ms,
            "stages": {name: r.to_dict() for name, r in self.stages.items()},
            "context": self.context,
        }


class _Run:
    """Mutable state of one pipeline run."""

    def __init__(self, definition: PipelineDefinition, session_id: str, payload: Any):
        self.definition = definition
        self.session_id = session_id
        self.payload = payload
        self.tasks: dict[str, asyncio.Task] = {}
        self.started: set[str] = set()
        self.aborted = False
        self.failure_kind: str | None = None
        self.failed_stage: str | None = None
        self.error: str | None = None

    def abort(self, kind: str, stage: str | None, error: str) -> None:
        """Stop the run: cancel every unfinished stage task except the caller."""
        if self.aborted:
            return
        self.aborted = True
        self.failure_kind = kind
        self.failed_stage = stage
        self.error = error
        current = asyncio.current_task()
        for task in self.tasks.values():
            if task is not current and not task.done():
                task.cancel()


def _normalize_output(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    return value


class PipelineExecutor:
    """
    Executes PipelineDefinitions with every resilience policy applied.

    Usage:
        executor = PipelineExecutor(config, lifecycle, providers, clock=clock)
        result = await executor.run(definition, "session-1", {"ticket": "ABC-1"})
        result.raise_for_status()
    """

    def __init__(
        self,
        config: EngineConfig,
        lifecycle: SessionLifecycle,
        providers: ProviderRegistry,
        rate_limiter: RateLimiter | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        guard: IdempotencyGuard | None = None,
        retry: RetryExecutor | None = None,
        clock: Clock | None = None,
        metrics: Any | None = None,
    ):
        self.config = config
        self.lifecycle = lifecycle
        self.providers = providers
        self._clock = clock or SystemClock()
        self._metrics = metrics
        self.rate_limiter = rate_limiter or RateLimiter(config.rate_limits, self._clock, metrics)
        self.breakers = breakers or CircuitBreakerRegistry(
            config.circuit_breaker, self._clock, metrics
        )
        self.guard = guard or IdempotencyGuard(self._clock, config.idempotency.lease_ms)
        self.retry = retry or RetryExecutor(self._clock, metrics=metrics)
        self.policy = RetryPolicy.from_settings(config.retry)
        self._running: set[str] = set()

    # ── Run ──────────────────────────────────────────────────────

    async def run(
        self,
        definition: PipelineDefinition,
        session_id: str,
        payload: Any = None,
        cancel_event: asyncio.Event | None = None,
        initial_context: Mapping[str, Any] | None = None,
    ) -> PipelineResult:
        """
        Run ``definition`` against ``session_id``.

        Raises:
            InvalidTransitionError: The session is already terminal
            SessionLockedError: Another process is writing the session, or took
                over the writer lease during the run
            SessionCorruptError: The stored session can't be read
        """
        if session_id in self._running:
            raise SessionLockedError(session_id, "a pipeline run in this process")

        correlation_id = new_correlation_id()
        token = correlation_id_var.set(correlation_id)
        started_at = self._clock.monotonic()
        self._running.add(session_id)
        try:
            session = await self.lifecycle.get_or_create(session_id, dict(initial_context or {}))
            if session.is_terminal or session.status is SessionStatus.ARCHIVED:
                self.lifecycle.close(session_id)
                raise InvalidTransitionError(
                    f"Session {session_id} is {session.status.value}; start a new session",
                    session_id=session_id,
                )

            logger.info(
                "Running pipeline %s (%d stages) on session %s",
                definition.name, len(definition), session_id,
            )
            run = _Run(definition, session_id, payload)
            semaphore = asyncio.Semaphore(self.config.max_concurrency)
            for stage in definition.stages:
                run.tasks[stage.name] = asyncio.create_task(
                    self._run_stage(run, stage, semaphore),
                    name=f"{definition.name}:{stage.name}",
                )

            watcher = (
                asyncio.create_task(self._watch_cancel(run, cancel_event))
                if cancel_event is not None
                else None
            )
            keepalive = asyncio.create_task(self._keep_writer_lease(run))
            try:
                await asyncio.wait(run.tasks.values())
            except asyncio.CancelledError:
                run.abort(ABORTED, None, "Pipeline run cancelled")
                await asyncio.wait(run.tasks.values())
                await self._finish(run, started_at, correlation_id)
                raise
            finally:
                keepalive.cancel()
                if watcher is not None:
                    watcher.cancel()

            return await self._finish(run, started_at, correlation_id)
        finally:
            self._running.discard(session_id)
            correlation_id_var.reset(token)

    async def _watch_cancel(self, run: _Run, cancel_event: asyncio.Event) -> None:
        await cancel_event.wait()
        logger.warning("Pipeline %s cancelled by caller", run.definition.name)
        run.abort(ABORTED, None, "Pipeline run cancelled")

    async def _keep_writer_lease(self, run: _Run) -> None:
        # A single stage can outlast the writer lease
        interval = self.lifecycle.store.settings.writer_lease_ms / 3000.0
        while True:
            await self._clock.deadline(interval)
            try:
                self.lifecycle.store.renew_writer(run.session_id)
            except SessionLockedError as e:
                logger.error("Pipeline %s lost session %s: %s", run.definition.name, run.session_id, e)
                run.abort(ABORTED, None, str(e))
                return

    async def _finish(self, run: _Run, started_at: float, correlation_id: str) -> PipelineResult:
        stages = self._collect(run)
        session_id = run.session_id
        status = PipelineStatus.FAILED if run.aborted else PipelineStatus.COMPLETED

        try:
            if status is PipelineStatus.COMPLETED:
                await self.lifecycle.complete(
                    session_id, {"pipeline": run.definition.name}
                )
            else:
                await self.lifecycle.fail(
                    session_id,
                    run.error or "pipeline failed",
                    {
                        "pipeline": run.definition.name,
                        "failed_stage": run.failed_stage,
                        "failure_kind": run.failure_kind,
                        "cancelled": run.failure_kind == ABORTED,
                    },
                )
            context = dict(self.lifecycle.get(session_id).context)
        finally:
            # Terminal state is flushed, not debounced
            self.lifecycle.close(session_id)

        duration_ms = (self._clock.monotonic() - started_at) * 1000
        result = PipelineResult(
            pipeline=run.definition.name,
            session_id=session_id,
            status=status,
            stages=stages,
            context=context,
            failure_kind=run.failure_kind,
            failed_stage=run.failed_stage,
            error=run.error,
            correlation_id=correlation_id,
            duration_ms=duration_ms,
        )

        if self._metrics is not None:
            self._metrics.pipeline_total.labels(
                pipeline=run.definition.name, status=status.value
            ).inc()
        structlog.get_logger("forge.engine.executor").info(
            "pipeline_run",
            pipeline=run.definition.name,
            session_id=session_id,
            status=status.value,
            failure_kind=run.failure_kind,
            failed_stage=run.failed_stage,
            stages={name: r.status.value for name, r in stages.items()},
            duration_ms=round(duration_ms, 1),
        )
        return result

    def _collect(self, run: _Run) -> dict[str, StageResult]:
        stages: dict[str, StageResult] = {}
        for stage in run.definition.stages:
            task = run.tasks[stage.name]
            if task.cancelled():
                # Cancelled before its coroutine ever ran
                status = StageStatus.CANCELLED if stage.name in run.started else StageStatus.SKIPPED
                stages[stage.name] = StageResult(stage.name, status, stage.required)
                continue
            error = task.exception()
            if error is None:
                stages[stage.name] = task.result()
                continue
            logger.error("Stage %s crashed: %r", stage.name, error)
            stages[stage.name] = StageResult(
                stage.name,
                StageStatus.FAILED,
                stage.required,
                error=str(error),
                error_type=type(error).__name__,
                failure_kind=FAILED_AFTER_RETRIES,
            )
            run.abort(FAILED_AFTER_RETRIES, stage.name, f"Stage {stage.name!r} crashed: {error}")
        return stages

    # ── Stages ───────────────────────────────────────────────────

    async def _run_stage(
        self, run: _Run, stage: StageSpec, semaphore: asyncio.Semaphore
    ) -> StageResult:
        try:
            inputs: dict[str, Any] = {}
            for dep in stage.depends_on:
                dep_task = run.tasks[dep]
                # asyncio.wait so cancelling this stage never cancels the producer
                await asyncio.wait([dep_task])
                dep_result: StageResult = dep_task.result()
                if not dep_result.ok:
                    return self._skip_for_dependency(run, stage, dep_result)
                inputs[dep] = dep_result.output

            if run.aborted:
                return StageResult(stage.name, StageStatus.SKIPPED, stage.required)

            async with semaphore:
                if run.aborted:
                    return StageResult(stage.name, StageStatus.SKIPPED, stage.required)
                run.started.add(stage.name)
                result = await self._execute_stage(run, stage, inputs)
        except asyncio.CancelledError:
            if not run.aborted:
                raise
            status = StageStatus.CANCELLED if stage.name in run.started else StageStatus.SKIPPED
            if status is StageStatus.CANCELLED:
                logger.info("Stage %s cancelled; result discarded", stage.name)
            return StageResult(stage.name, status, stage.required)

        if not result.ok and stage.required:
            run.abort(
                result.failure_kind or FAILED_AFTER_RETRIES,
                stage.name,
                f"Required stage {stage.name!r} {result.status.value}: {result.error}",
            )
        return result

    def _skip_for_dependency(
        self, run: _Run, stage: StageSpec, dep_result: StageResult
    ) -> StageResult:
        result = StageResult(
            stage.name,
            StageStatus.SKIPPED,
            stage.required,
            error=f"dependency {dep_result.name!r} {dep_result.status.value}",
        )
        if stage.required and not run.aborted:
            # An optional producer failed, so this required stage can never run
            run.abort(
                dep_result.failure_kind or FAILED_AFTER_RETRIES,
                stage.name,
                f"Required stage {stage.name!r} skipped: {result.error}",
            )
        return result

    def _stage_request(self, run: _Run, stage: StageSpec, inputs: dict[str, Any]) -> dict[str, Any]:
        request = dict(stage.request)
        request["input"] = run.payload
        if inputs:
            request["context"] = inputs
        return request

    def _stage_lease_ms(self, stage: StageSpec) -> int:
        return max(self.config.idempotency.lease_ms, self.policy.worst_case_ms(stage.timeout_ms))

    async def _execute_stage(
        self, run: _Run, stage: StageSpec, inputs: dict[str, Any]
    ) -> StageResult:
        request = self._stage_request(run, stage, inputs)
        fingerprint = compute_fingerprint(
            run.definition.name, run.session_id, stage.name, request
        )
        start = self._clock.monotonic()

        try:
            outcome: RetryOutcome = await self.guard.with_lock(
                fingerprint,
                lambda: self._call_provider(stage, request),
                lease_ms=self._stage_lease_ms(stage),
            )
        except PolicyDenialError as e:
            result = self._failure(stage, e, StageStatus.DENIED, attempts=0)
            logger.warning("Stage %s denied: %s", stage.name, e)
        except RetryExhaustedError as e:
            result = self._failure(stage, e.last_error, StageStatus.FAILED, attempts=e.attempts)
            result.failure_kind = FAILED_AFTER_RETRIES
            logger.warning("Stage %s failed after %d attempt(s)", stage.name, e.attempts)
        except Exception as e:
            # Non-transient: surfaced on the first attempt
            result = self._failure(stage, e, StageStatus.FAILED, attempts=1)
            logger.warning("Stage %s failed: %s", stage.name, e)
        else:
            result = StageResult(
                stage.name,
                StageStatus.SUCCEEDED,
                stage.required,
                output=_normalize_output(outcome.value),
                attempts=outcome.attempts,
            )

        result.duration_ms = (self._clock.monotonic() - start) * 1000
        await self._record(run, stage, result)
        return result

    async def _call_provider(self, stage: StageSpec, request: dict[str, Any]) -> RetryOutcome:
        # Pre-flight checks; denials never reach the retry executor
        self.rate_limiter.acquire(stage.category, stage.provider)
        self.breakers.check(stage.provider)

        try:
            outcome = await self.retry.execute(
                lambda: self._invoke_once(stage, request),
                self.policy,
                label=stage.provider,
            )
        except asyncio.CancelledError:
            self.breakers.release_trial(stage.provider)
            raise
        except Exception:
            self.breakers.record_failure(stage.provider)
            raise
        self.breakers.record_success(stage.provider)
        return outcome

    async def _invoke_once(self, stage: StageSpec, request: dict[str, Any]) -> Any:
        try:
            return await self._clock.run_with_timeout(
                self.providers.invoke(stage.provider, request),
                stage.timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError:
            raise StageTimeoutError(stage.name, stage.timeout_ms) from None

    def _failure(
        self, stage: StageSpec, error: BaseException, status: StageStatus, attempts: int
    ) -> StageResult:
        result = StageResult(
            stage.name,
            status,
            stage.required,
            error=str(error),
            error_type=type(error).__name__,
            failure_kind=_OUTCOME_KINDS.get(getattr(error, "outcome", "failed"), FAILED_AFTER_RETRIES),
            attempts=attempts,
        )
        if isinstance(error, RateLimitExceededError):
            result.retry_after_ms = error.retry_after_ms
        elif isinstance(error, CircuitOpenError):
            result.retry_after_ms = error.cooldown_remaining_ms
        return result

    async def _record(self, run: _Run, stage: StageSpec, result: StageResult) -> None:
        await self.lifecycle.record_command(
            run.session_id,
            stage.name,
            output=result.output,
            duration_ms=round(result.duration_ms, 3),
            status=result.status.value,
            attempts=result.attempts,
            error=result.error,
            metrics={
                "pipeline": run.definition.name,
                "provider": stage.provider,
                "kind": stage.kind.value,
            },
        )
        if result.ok:
            logger.info(
                "Stage %s succeeded in %.0fms (%d attempt(s))",
                stage.name, result.duration_ms, result.attempts,
            )
        if self._metrics is not None:
            self._metrics.stage_total.labels(
                pipeline=run.definition.name, stage=stage.name, status=result.status.value
            ).inc()
            self._metrics.stage_duration.labels(
                pipeline=run.definition.name, stage=stage.name
            ).observe(result.duration_ms / 1000.0)

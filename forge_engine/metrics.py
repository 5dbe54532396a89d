"""
Prometheus metrics for forge_engine.

Collectors live on an injectable CollectorRegistry so each engine (and
each test) gets its own set without global state pollution.

Usage:
    metrics = EngineMetrics()
    executor = PipelineExecutor(..., metrics=metrics)
    text = metrics.render()
"""
from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


class EngineMetrics:
    """All orchestration-core metrics in one place."""

    def __init__(self, reg: CollectorRegistry | None = None):
        self.registry = reg if reg is not None else CollectorRegistry()

        # -- Stages --
        self.stage_total = Counter(
            "forge_stage_total",
            "Stage outcomes",
            ["pipeline", "stage", "status"],
            registry=self.registry,
        )

        self.stage_duration = Histogram(
            "forge_stage_duration_seconds",
            "Stage wall time including retries",
            ["pipeline", "stage"],
            buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
            registry=self.registry,
        )

        self.pipeline_total = Counter(
            "forge_pipeline_runs_total",
            "Pipeline run outcomes",
            ["pipeline", "status"],
            registry=self.registry,
        )

        # -- Policies --
        self.retries = Counter(
            "forge_retries_total",
            "Retried provider calls",
            ["provider"],
            registry=self.registry,
        )

        self.rate_limit_denials = Counter(
            "forge_rate_limit_denials_total",
            "Calls denied by the rate limiter",
            ["category"],
            registry=self.registry,
        )

        self.circuit_state = Gauge(
            "forge_circuit_breaker_state",
            "Circuit breaker state (0=closed, 1=half-open, 2=open)",
            ["provider"],
            registry=self.registry,
        )

        # -- Persistence --
        self.session_writes = Counter(
            "forge_session_writes_total",
            "Session documents written",
            ["mode"],
            registry=self.registry,
        )

    def render(self) -> bytes:
        """Prometheus text exposition of this registry."""
        return generate_latest(self.registry)

"""
Forge Engine — composition root for the orchestration core.

Builds every component explicitly from one EngineConfig and passes them
to each other; nothing is looked up from module-level state.

Boot sequence:
  Phase 1: Sessions directory + exit-time flush hook
  Phase 2: Retention sweep loop (when enabled)
  Phase 3: Housekeeping loop for idle rate-limit buckets and lapsed leases

Usage:
    providers = ProviderRegistry({"claude": LiteLLMProvider(models)}).freeze()
    async with ForgeEngine(config, providers, catalog) as engine:
        result = await engine.run_pipeline("review", "session-1", {"pr": 42})
"""
import asyncio
import logging
from typing import Any

from forge_engine.circuit_breaker import CircuitBreakerRegistry
from forge_engine.clock import Clock, SystemClock
from forge_engine.config import EngineConfig
from forge_engine.executor import PipelineExecutor, PipelineResult
from forge_engine.idempotency import IdempotencyGuard
from forge_engine.lifecycle import SessionLifecycle
from forge_engine.llm_gateway import ProviderRegistry
from forge_engine.metrics import EngineMetrics
from forge_engine.pipeline import PipelineCatalog
from forge_engine.rate_limiter import RateLimiter
from forge_engine.retention import RetentionManager
from forge_engine.retry import RetryExecutor
from forge_engine.session_store import SessionStore

logger = logging.getLogger("forge.engine")

HOUSEKEEPING_INTERVAL_S = 60.0


class ForgeEngine:
    """Owns the store, policies, executor and retention loop for one process."""

    def __init__(
        self,
        config: EngineConfig,
        providers: ProviderRegistry,
        catalog: PipelineCatalog,
        clock: Clock | None = None,
        metrics: EngineMetrics | None = None,
        install_exit_hook: bool = True,
    ):
        self.config = config
        self.catalog = catalog
        self.clock = clock or SystemClock()
        self.metrics = metrics or EngineMetrics()
        self.providers = providers.freeze()
        self._install_exit_hook = install_exit_hook

        self.store = SessionStore(
            config.sessions, config.debounce, self.clock, metrics=self.metrics
        )
        self.guard = IdempotencyGuard(self.clock, config.idempotency.lease_ms)
        self.lifecycle = SessionLifecycle(self.store, self.guard, self.clock)
        self.rate_limiter = RateLimiter(config.rate_limits, self.clock, self.metrics)
        self.breakers = CircuitBreakerRegistry(config.circuit_breaker, self.clock, self.metrics)
        self.retry = RetryExecutor(self.clock, metrics=self.metrics)
        self.retention = RetentionManager(self.store, config.retention, self.clock)
        self.executor = PipelineExecutor(
            config,
            self.lifecycle,
            self.providers,
            rate_limiter=self.rate_limiter,
            breakers=self.breakers,
            guard=self.guard,
            retry=self.retry,
            clock=self.clock,
            metrics=self.metrics,
        )

        self._stop = asyncio.Event()
        self._retention_task: asyncio.Task | None = None
        self._housekeeping_task: asyncio.Task | None = None
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        logger.info("Forge engine starting...")

        # Phase 1: sessions
        self.store.root.mkdir(parents=True, exist_ok=True)
        if self._install_exit_hook:
            self.store.install_exit_hook()
        logger.info("Phase 1: sessions at %s", self.store.root)

        self._stop.clear()

        # Phase 2: retention
        if self.config.retention.enabled:
            self._retention_task = asyncio.create_task(
                self.retention.run_forever(self._stop), name="forge-retention"
            )
            logger.info(
                "Phase 2: retention sweep every %dh", self.config.retention.cleanup_interval_hours
            )

        # Phase 3: housekeeping
        self._housekeeping_task = asyncio.create_task(
            self._housekeeping_loop(), name="forge-housekeeping"
        )
        logger.info("Phase 3: housekeeping every %.0fs", HOUSEKEEPING_INTERVAL_S)

        self._started = True
        logger.info("Forge engine running — %d pipeline(s)", len(self.catalog))

    async def shutdown(self) -> None:
        """Stop housekeeping and flush every pending session write."""
        if not self._started:
            return
        self._stop.set()
        if self._retention_task is not None:
            await self._retention_task
            self._retention_task = None
        if self._housekeeping_task is not None:
            await self._housekeeping_task
            self._housekeeping_task = None
        self.store.close_all()
        if self._install_exit_hook:
            self.store.remove_exit_hook()
        self._started = False
        logger.info("Forge engine stopped")

    def housekeep(self) -> dict[str, int]:
        """Drop idle rate-limit buckets and idempotency leases left by crashed stages."""
        buckets = self.rate_limiter.cleanup()
        leases = self.guard.sweep_expired()
        if buckets or leases:
            logger.debug("Housekeeping: %d idle bucket(s), %d expired lease(s)", buckets, leases)
        return {"idle_buckets": buckets, "expired_leases": leases}

    async def _housekeeping_loop(self) -> None:
        while not self._stop.is_set():
            self.housekeep()
            if await self.clock.wait_event(self._stop, HOUSEKEEPING_INTERVAL_S):
                break

    async def __aenter__(self) -> "ForgeEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    async def run_pipeline(
        self,
        name: str,
        session_id: str,
        payload: Any = None,
        cancel_event: asyncio.Event | None = None,
    ) -> PipelineResult:
        """Look up ``name`` in the catalog and run it against ``session_id``."""
        definition = self.catalog.get(name)
        return await self.executor.run(definition, session_id, payload, cancel_event)

    def health(self) -> dict[str, Any]:
        return {
            "running": self._started,
            "pipelines": self.catalog.names,
            "providers": self.providers.ids,
            "pending_writes": self.store.pending_ids(),
            "circuits": self.breakers.snapshot(),
            "rate_limits": self.rate_limiter.stats(),
        }

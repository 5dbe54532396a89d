"""
Unit tests for forge_engine.engine.ForgeEngine (composition and lifecycle).
"""
import asyncio
from unittest.mock import patch

import pytest

from forge_engine import ForgeEngine, __version__
from forge_engine.config import RetentionSettings
from forge_engine.exceptions import PipelineDefinitionError
from forge_engine.llm_gateway import ProviderRegistry
from forge_engine.pipeline import PipelineCatalog, PipelineDefinition, StageSpec


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def catalog() -> PipelineCatalog:
    return PipelineCatalog([
        PipelineDefinition("echo", (StageSpec("say", "local", request={"prompt": "say"}),)),
    ])


@pytest.fixture
def engine(engine_config, catalog, clock, metrics, make_provider) -> ForgeEngine:
    return ForgeEngine(
        engine_config,
        ProviderRegistry({"local": make_provider()}),
        catalog,
        clock=clock,
        metrics=metrics,
        install_exit_hook=False,
    )


# ============================================================================
# Composition
# ============================================================================

class TestComposition:

    def test_version(self):
        assert __version__ == "1.0.0"

    def test_components_share_clock_and_guard(self, engine, clock):
        assert engine.lifecycle.guard is engine.guard
        assert engine.executor.guard is engine.guard
        assert engine.executor.rate_limiter is engine.rate_limiter
        assert engine.executor.breakers is engine.breakers
        assert engine.lifecycle.store is engine.store
        assert engine.clock is clock

    def test_provider_registry_frozen(self, engine, make_provider):
        assert engine.providers.frozen
        with pytest.raises(RuntimeError):
            engine.providers.register("late", make_provider())

    def test_health_before_start(self, engine):
        health = engine.health()
        assert health["running"] is False
        assert health["pipelines"] == ["echo"]
        assert health["providers"] == ["local"]
        assert health["pending_writes"] == []
        assert health["circuits"] == {}


# ============================================================================
# Lifecycle
# ============================================================================

class TestEngineLifecycle:

    async def test_start_creates_sessions_dir(self, engine, sessions_dir):
        await engine.start()
        try:
            assert sessions_dir.is_dir()
            assert engine.health()["running"] is True
        finally:
            await engine.shutdown()
        assert engine.health()["running"] is False

    async def test_start_is_idempotent(self, engine):
        await engine.start()
        task = engine._retention_task
        await engine.start()
        assert engine._retention_task is task
        await engine.shutdown()
        await engine.shutdown()

    async def test_retention_disabled(self, engine_config, catalog, clock, make_provider):
        config = engine_config.model_copy(update={"retention": RetentionSettings(enabled=False)})
        engine = ForgeEngine(
            config, ProviderRegistry({"local": make_provider()}), catalog,
            clock=clock, install_exit_hook=False,
        )
        async with engine:
            assert engine._retention_task is None

    async def test_exit_hook_installed_and_removed(self, engine_config, catalog, clock, make_provider):
        engine = ForgeEngine(
            engine_config, ProviderRegistry({"local": make_provider()}), catalog, clock=clock,
        )
        with patch("forge_engine.session_store.atexit") as mock_atexit:
            async with engine:
                mock_atexit.register.assert_called_once_with(engine.store.close_all)
            mock_atexit.unregister.assert_called_once_with(engine.store.close_all)

    async def test_shutdown_flushes_pending_writes(self, engine, sessions_dir):
        async with engine:
            await engine.lifecycle.create(session_id="open")
            assert engine.health()["pending_writes"] == ["open"]
        assert (sessions_dir / "open.json").exists()
        assert not (sessions_dir / "open.lock").exists()


# ============================================================================
# Running pipelines
# ============================================================================

class TestRunPipeline:

    async def test_run_by_name(self, engine):
        async with engine:
            result = await engine.run_pipeline("echo", "s1", {"n": 1})
        assert result.succeeded
        assert result.context == {"say": {"text": "say done"}}

    async def test_unknown_pipeline(self, engine):
        with pytest.raises(PipelineDefinitionError):
            await engine.run_pipeline("missing", "s1")

    async def test_runs_on_different_sessions_in_parallel(self, engine):
        results = await asyncio.gather(
            engine.run_pipeline("echo", "a"),
            engine.run_pipeline("echo", "b"),
        )
        assert [r.session_id for r in results] == ["a", "b"]
        assert all(r.succeeded for r in results)


# ============================================================================
# Housekeeping
# ============================================================================

class TestHousekeeping:

    async def test_drops_idle_buckets_and_lapsed_leases(self, engine, clock, settle):
        engine.rate_limiter.try_acquire("mcp_tool_call", "local")
        stuck = asyncio.Event()
        holder = asyncio.create_task(engine.guard.with_lock("fp", stuck.wait))
        await settle()

        assert engine.housekeep() == {"idle_buckets": 0, "expired_leases": 0}

        clock.advance(121.0)
        assert engine.housekeep() == {"idle_buckets": 1, "expired_leases": 1}
        assert engine.rate_limiter.stats()["buckets"] == 0
        assert not engine.guard.is_held("fp")

        stuck.set()
        await holder

    async def test_loop_runs_while_started(self, engine, clock, settle):
        async with engine:
            await settle()
            assert engine._housekeeping_task is not None
            engine.rate_limiter.try_acquire("mcp_tool_call", "local")
            for _ in range(3):
                clock.advance(60.0)
                await settle(50)
            assert engine.rate_limiter.stats()["buckets"] == 0
        assert engine._housekeeping_task is None

"""
forge_engine test suite — shared fixtures.

Time-dependent components run on a ManualClock so tests advance virtual
time instead of sleeping. Sessions live under pytest's tmp_path.
"""
import asyncio
import os
from typing import Any, Mapping

import pytest

# litellm fetches its model cost map over the network at import time; in an
# offline environment that failure path deadlocks under pytest. Use the
# bundled copy instead.
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

from forge_engine.clock import ManualClock
from forge_engine.config import EngineConfig, RetrySettings, SessionSettings
from forge_engine.metrics import EngineMetrics


# ── Helpers ───────────────────────────────────────────────────────────────────

async def _settle(rounds: int = 10) -> None:
    """Let every ready task run until it parks on something."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class ScriptedProvider:
    """
    Provider double that replays scripted outcomes per stage prompt.

    ``script`` maps a request's ``prompt`` to a list of outcomes, each an
    exception instance (raised) or a value (returned). The last outcome
    repeats once the list is exhausted. Unscripted prompts return
    ``{"text": "<prompt> done"}``.
    """

    def __init__(
        self,
        script: Mapping[str, list[Any]] | None = None,
        clock: ManualClock | None = None,
        latency: float = 0.0,
    ):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.clock = clock
        self.latency = latency
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def prompts(self) -> list[str]:
        return [request.get("prompt") for _, request in self.calls]

    async def invoke(self, provider_id: str, request: Mapping[str, Any]) -> Any:
        self.calls.append((provider_id, dict(request)))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.latency and self.clock is not None:
                await self.clock.sleep(self.latency)
            prompt = request.get("prompt")
            outcomes = self.script.get(prompt)
            if outcomes:
                outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
            else:
                outcome = {"text": f"{prompt} done"}
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        finally:
            self.in_flight -= 1


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def sessions_dir(tmp_path):
    return tmp_path / "sessions"


@pytest.fixture
def engine_config(sessions_dir) -> EngineConfig:
    """Defaults, with jitter off so backoff delays are exact."""
    return EngineConfig(
        sessions=SessionSettings(sessions_dir=sessions_dir),
        retry=RetrySettings(jitter_ratio=0.0),
    )


@pytest.fixture
def metrics() -> EngineMetrics:
    return EngineMetrics()


@pytest.fixture
def settle():
    """``await settle()`` runs ready tasks until they park."""
    return _settle


@pytest.fixture
def make_provider():
    """Factory for ScriptedProvider doubles."""
    return ScriptedProvider

"""
Forge Engine — pipeline and session orchestration core.

Runs multi-stage LLM pipelines against durable sessions with:
- Rate limiting per call category
- Circuit breaking per provider
- Bounded retry with exponential backoff (tenacity)
- Idempotency leases per stage invocation
- Debounced, atomic, optionally encrypted session persistence
"""

__version__ = "1.0.0"

from forge_engine.config import EngineConfig
from forge_engine.engine import ForgeEngine
from forge_engine.exceptions import (
    EngineError,
    PipelineAbortedError,
    PolicyDenialError,
    ProviderError,
    SessionError,
)
from forge_engine.executor import PipelineExecutor, PipelineResult, StageResult, StageStatus
from forge_engine.llm_gateway import LiteLLMProvider, ProviderRegistry
from forge_engine.pipeline import PipelineCatalog, PipelineDefinition, StageKind, StageSpec, load_catalog

__all__ = [
    "EngineConfig",
    "ForgeEngine",
    "EngineError",
    "PipelineAbortedError",
    "PolicyDenialError",
    "ProviderError",
    "SessionError",
    "PipelineExecutor",
    "PipelineResult",
    "StageResult",
    "StageStatus",
    "LiteLLMProvider",
    "ProviderRegistry",
    "PipelineCatalog",
    "PipelineDefinition",
    "StageKind",
    "StageSpec",
    "load_catalog",
]

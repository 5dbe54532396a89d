"""
LLM Gateway — the opaque "LLM call" capability used by pipeline stages.

- ``LLMProvider``: anything with ``async invoke(provider_id, request)``
- ``ProviderRegistry``: explicitly constructed provider-id → provider table,
  frozen after startup and passed to the executor (no module-level registry)
- ``LiteLLMProvider``: default provider over ``litellm.acompletion``;
  litellm exceptions are translated into TransientProviderError or
  FatalProviderError so the retry executor can classify them
"""
import json
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Mapping, Protocol, runtime_checkable

import litellm
from litellm import acompletion

from forge_engine.exceptions import (
    FatalProviderError,
    TransientProviderError,
    UnknownProviderError,
)

logger = logging.getLogger("forge.engine.llm")

# Checked in order; the first match wins
_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    litellm.Timeout,
    litellm.APIConnectionError,
    litellm.RateLimitError,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
)
_FATAL_ERRORS: tuple[type[BaseException], ...] = (
    litellm.AuthenticationError,
    litellm.PermissionDeniedError,
    litellm.NotFoundError,
    litellm.BadRequestError,
)


@runtime_checkable
class LLMProvider(Protocol):
    async def invoke(self, provider_id: str, request: Mapping[str, Any]) -> Any:
        ...


@dataclass
class LLMResponse:
    """Response from a completion provider."""
    content: str
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    latency_ms: int = 0
    finish_reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ProviderRegistry:
    """
    Provider id → LLMProvider.

    Usage:
        providers = ProviderRegistry()
        providers.register("claude", LiteLLMProvider({"claude": {"model": "anthropic/claude-sonnet-4"}}))
        providers.freeze()
        await providers.invoke("claude", {"prompt": "..."})
    """

    def __init__(self, providers: Mapping[str, LLMProvider] | None = None):
        self._providers: dict[str, LLMProvider] = dict(providers or {})
        self._frozen = False

    def register(self, provider_id: str, provider: LLMProvider) -> None:
        if self._frozen:
            raise RuntimeError("provider registry is frozen")
        if not isinstance(provider, LLMProvider):
            raise TypeError(f"{provider!r} does not implement invoke(provider_id, request)")
        self._providers[provider_id] = provider

    def freeze(self) -> "ProviderRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, provider_id: str) -> LLMProvider:
        try:
            return self._providers[provider_id]
        except KeyError:
            raise UnknownProviderError(
                f"No provider registered as {provider_id!r}", provider=provider_id
            ) from None

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers

    @property
    def ids(self) -> list[str]:
        return sorted(self._providers)

    async def invoke(self, provider_id: str, request: Mapping[str, Any]) -> Any:
        return await self.get(provider_id).invoke(provider_id, request)


def build_messages(request: Mapping[str, Any]) -> list[dict[str, str]]:
    """Chat messages for a stage request.

    Uses ``request["messages"]`` verbatim when present; otherwise an optional
    system prompt, the ``prompt`` and the serialized stage inputs.
    """
    if request.get("messages"):
        return [dict(m) for m in request["messages"]]

    messages: list[dict[str, str]] = []
    if request.get("system"):
        messages.append({"role": "system", "content": str(request["system"])})
    parts = [str(request.get("prompt", ""))]
    for key in ("input", "context"):
        if request.get(key):
            parts.append(f"{key}:\n{json.dumps(request[key], indent=2, default=str)}")
    messages.append({"role": "user", "content": "\n\n".join(p for p in parts if p)})
    return messages


class LiteLLMProvider:
    """
    Completion provider over the litellm SDK.

    ``models`` maps provider ids to litellm kwargs; ``model`` is required,
    everything else (api_base, temperature, max_tokens, ...) is forwarded.
    """

    def __init__(self, models: Mapping[str, Mapping[str, Any]], default_max_tokens: int = 4096):
        self.models = {k: dict(v) for k, v in models.items()}
        self.default_max_tokens = default_max_tokens

    def _resolve(self, provider_id: str) -> dict[str, Any]:
        try:
            entry = self.models[provider_id]
        except KeyError:
            raise UnknownProviderError(
                f"No litellm model configured for {provider_id!r}", provider=provider_id
            ) from None
        if not entry.get("model"):
            raise FatalProviderError(
                f"litellm entry for {provider_id!r} has no model", provider=provider_id
            )
        return dict(entry)

    async def invoke(self, provider_id: str, request: Mapping[str, Any]) -> LLMResponse:
        kwargs = self._resolve(provider_id)
        kwargs.setdefault("max_tokens", self.default_max_tokens)
        for key in ("temperature", "max_tokens"):
            if key in request:
                kwargs[key] = request[key]
        kwargs["messages"] = build_messages(request)
        kwargs["drop_params"] = True

        start = time.monotonic()
        try:
            response = await acompletion(**kwargs)
        except _TRANSIENT_ERRORS as e:
            logger.warning("LLM call to %s failed transiently: %s", provider_id, e)
            raise TransientProviderError(str(e), provider=provider_id) from e
        except _FATAL_ERRORS as e:
            logger.error("LLM call to %s rejected: %s", provider_id, e)
            raise FatalProviderError(str(e), provider=provider_id) from e
        elapsed_ms = int((time.monotonic() - start) * 1000)

        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        hidden = getattr(response, "_hidden_params", None) or {}
        return LLMResponse(
            content=choice.message.content or "",
            model=kwargs["model"],
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            cost_usd=hidden.get("response_cost") or 0.0,
            latency_ms=elapsed_ms,
            finish_reason=choice.finish_reason or "",
        )

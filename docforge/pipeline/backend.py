"""
Generation backend contract and the LiteLLM implementation.

The pipeline only depends on :class:`GenerationBackend`: given a prompt and
parameters, return text, token usage and whether the provider served the
response from its own cache. Usage and the cache signal are passed through
for observability; the pipeline never changes behavior based on them.

Model limits follow the same resolution order everywhere:
1. Override table (exact match after stripping the provider prefix)
2. litellm's model registry
3. ModelConfigError: no silent defaults, a wrong context window
   silently truncates every prompt
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from ..exceptions import GenerationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerationParameters:
    temperature: float = 0.2
    max_tokens: int = 4096
    system_prompt: Optional[str] = None


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class GenerationResponse:
    content: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    from_cache: bool = False


class GenerationBackend(Protocol):
    """Anything that turns a prompt into text."""

    context_window: int

    def generate(self, prompt: str, parameters: GenerationParameters) -> GenerationResponse:
        ...

    def identity(self) -> dict[str, Any]:
        """Provider/model identity recorded in cache metadata."""
        ...


class UsageMeter:
    """Thread-safe running totals for one pipeline run."""

    def __init__(self):
        self._lock = threading.Lock()
        self.calls = 0
        self.cache_hits = 0
        self.prompt_tokens = 0
        self.completion_tokens = 0

    def record(self, response: GenerationResponse) -> None:
        with self._lock:
            self.calls += 1
            if response.from_cache:
                self.cache_hits += 1
            self.prompt_tokens += response.usage.prompt_tokens
            self.completion_tokens += response.usage.completion_tokens

    def to_dict(self) -> dict[str, int]:
        with self._lock:
            return {
                "calls": self.calls,
                "cache_hits": self.cache_hits,
                "prompt_tokens": self.prompt_tokens,
                "completion_tokens": self.completion_tokens,
                "total_tokens": self.prompt_tokens + self.completion_tokens,
            }


# ──────────────────────────────────────────────────────────────────────
# Model limits
# ──────────────────────────────────────────────────────────────────────

class ModelConfigError(ValueError):
    """Model not found in the override table or litellm registry."""


@dataclass(frozen=True)
class ModelLimits:
    context_window: int        # max input tokens the model accepts
    max_output_tokens: int     # actual provider limit for completions


# Keys are the model identifier WITHOUT the provider prefix.
MODEL_OVERRIDES: dict[str, ModelLimits] = {
    # litellm reports 262K output; OpenRouter serves 8K.
    "moonshotai/kimi-k2.5": ModelLimits(context_window=131_072, max_output_tokens=8_192),
    "mistralai/devstral-2512": ModelLimits(context_window=131_072, max_output_tokens=8_192),
    "qwen3-coder:30b": ModelLimits(context_window=32_768, max_output_tokens=8_192),
    "mistral-small:24b": ModelLimits(context_window=32_768, max_output_tokens=8_192),
}

_PROVIDER_PREFIXES = ("openrouter/", "openai/", "ollama/", "ollama_chat/", "litellm_proxy/", "hosted_vllm/")


def _strip_provider_prefix(model: str) -> str:
    """'openrouter/moonshotai/kimi-k2.5' → 'moonshotai/kimi-k2.5'"""
    for prefix in _PROVIDER_PREFIXES:
        if model.startswith(prefix):
            return model[len(prefix):]
    return model


def resolve_model_limits(model: str) -> ModelLimits:
    """Resolve context window and output limit for *model*.

    Raises:
        ModelConfigError: If neither the override table nor litellm knows the model.
    """
    bare = _strip_provider_prefix(model)
    if bare in MODEL_OVERRIDES:
        return MODEL_OVERRIDES[bare]

    try:
        import litellm
        info = litellm.get_model_info(model)
    except Exception as e:
        logger.warning("litellm lookup failed for '%s': %s", model, e)
        info = None

    if info:
        ctx = info.get("max_input_tokens") or info.get("max_tokens")
        out = info.get("max_output_tokens") or 4_096
        if ctx:
            return ModelLimits(context_window=ctx, max_output_tokens=min(out, ctx // 2))

    available = ", ".join(sorted(MODEL_OVERRIDES))
    raise ModelConfigError(
        f"Model '{model}' (bare: '{bare}') not found in override table or litellm registry. "
        f"Set GENERATION_CONTEXT_WINDOW or add an entry to MODEL_OVERRIDES. "
        f"Known models: {available}"
    )


# ──────────────────────────────────────────────────────────────────────
# LiteLLM backend
# ──────────────────────────────────────────────────────────────────────

class LiteLLMBackend:
    """Generation backend calling ``litellm.completion``.

    The per-call timeout is enforced by litellm; a timeout surfaces as a
    retryable :class:`GenerationError` and is retried by the executor.
    """

    def __init__(
        self,
        model: str,
        api_key: str = "",
        api_base: str = "",
        timeout: float = 120.0,
        context_window: int = 0,
    ):
        if not model:
            raise ValueError("model is required")
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.timeout = timeout
        limits = None if context_window else resolve_model_limits(model)
        self.context_window = context_window or limits.context_window
        self.max_output_tokens = limits.max_output_tokens if limits else None

    @classmethod
    def from_settings(cls, settings) -> "LiteLLMBackend":
        return cls(
            model=settings.generation_model,
            api_key=settings.generation_api_key,
            api_base=settings.generation_api_base,
            timeout=settings.generation_timeout,
            context_window=settings.generation_context_window,
        )

    def _clamp_output(self, requested: int) -> int:
        """Never ask for more completion tokens than the provider serves."""
        if self.max_output_tokens is None:
            return requested
        return min(requested, self.max_output_tokens)

    def identity(self) -> dict[str, Any]:
        provider = self.model.split("/", 1)[0] if "/" in self.model else "litellm"
        return {"provider": provider, "model": self.model}

    def generate(self, prompt: str, parameters: GenerationParameters) -> GenerationResponse:
        import litellm

        messages = []
        if parameters.system_prompt:
            messages.append({"role": "system", "content": parameters.system_prompt})
        messages.append({"role": "user", "content": prompt})

        kwargs: dict = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self._clamp_output(parameters.max_tokens),
            "temperature": parameters.temperature,
            "timeout": self.timeout,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base

        try:
            response = litellm.completion(**kwargs)
        except (litellm.AuthenticationError, litellm.BadRequestError, litellm.NotFoundError) as e:
            raise GenerationError(f"{self.model} rejected the request: {e}", retryable=False) from e
        except Exception as e:
            raise GenerationError(f"{self.model} call failed: {e}") from e

        content = response.choices[0].message.content or ""
        if not content.strip():
            raise GenerationError(f"{self.model} returned an empty response")

        usage = getattr(response, "usage", None)
        hidden = getattr(response, "_hidden_params", None) or {}
        return GenerationResponse(
            content=content,
            usage=TokenUsage(
                prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
            ),
            from_cache=bool(hidden.get("cache_hit")),
        )

"""Static model catalog and local cost calculation.

Cost is never taken from the vendor: every adapter prices usage from this
table so that all providers report USD in the same units.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

_PER_MILLION = 1_000_000


@dataclass(frozen=True)
class ModelInfo:
    """Pricing and feature flags for one vendor model."""

    id: str
    name: str
    provider: str
    context_window: int
    max_output_tokens: int
    input_cost_per_1m: float
    output_cost_per_1m: float
    supports_streaming: bool = True
    supports_tools: bool = True
    supports_vision: bool = True


AI_MODELS: dict[str, tuple[ModelInfo, ...]] = {
    "anthropic": (
        ModelInfo("claude-sonnet-4-20250514", "Claude Sonnet 4", "anthropic", 200_000, 8192, 3.0, 15.0),
        ModelInfo("claude-3-5-sonnet-20241022", "Claude 3.5 Sonnet", "anthropic", 200_000, 8192, 3.0, 15.0),
        ModelInfo(
            "claude-3-5-haiku-20241022",
            "Claude 3.5 Haiku",
            "anthropic",
            200_000,
            8192,
            0.8,
            4.0,
            supports_vision=False,
        ),
    ),
    "openai": (
        ModelInfo("gpt-4o", "GPT-4o", "openai", 128_000, 16384, 2.5, 10.0),
        ModelInfo("gpt-4o-mini", "GPT-4o Mini", "openai", 128_000, 16384, 0.15, 0.6),
        ModelInfo("gpt-4-turbo", "GPT-4 Turbo", "openai", 128_000, 4096, 10.0, 30.0),
    ),
    "google": (
        ModelInfo("gemini-2.0-flash-exp", "Gemini 2.0 Flash", "google", 1_000_000, 8192, 0.0, 0.0),
        ModelInfo("gemini-1.5-pro", "Gemini 1.5 Pro", "google", 2_000_000, 8192, 1.25, 5.0),
        ModelInfo("gemini-1.5-flash", "Gemini 1.5 Flash", "google", 1_000_000, 8192, 0.075, 0.3),
    ),
    "openrouter": (
        ModelInfo("anthropic/claude-sonnet-4", "Claude Sonnet 4 (OpenRouter)", "openrouter", 200_000, 8192, 3.0, 15.0),
        ModelInfo("openai/gpt-4o", "GPT-4o (OpenRouter)", "openrouter", 128_000, 16384, 2.5, 10.0),
        ModelInfo("openai/gpt-4o-mini", "GPT-4o Mini (OpenRouter)", "openrouter", 128_000, 16384, 0.15, 0.6),
        ModelInfo("google/gemini-pro-1.5", "Gemini Pro 1.5 (OpenRouter)", "openrouter", 2_000_000, 8192, 1.25, 5.0),
        ModelInfo(
            "meta-llama/llama-3.3-70b-instruct",
            "Llama 3.3 70B (OpenRouter)",
            "openrouter",
            128_000,
            4096,
            0.35,
            0.4,
            supports_vision=False,
        ),
        ModelInfo(
            "mistralai/mistral-large",
            "Mistral Large (OpenRouter)",
            "openrouter",
            128_000,
            4096,
            2.0,
            6.0,
            supports_vision=False,
        ),
    ),
}


def find_model(models: Iterable[ModelInfo], model_id: str) -> ModelInfo | None:
    """Return the catalog entry for ``model_id`` or None."""
    for info in models:
        if info.id == model_id:
            return info
    return None


def get_model_by_id(model_id: str) -> ModelInfo | None:
    """Search every provider's catalog."""
    for models in AI_MODELS.values():
        info = find_model(models, model_id)
        if info is not None:
            return info
    return None


def get_models_by_provider(provider: str) -> tuple[ModelInfo, ...]:
    return AI_MODELS.get(provider, ())


def calculate_cost(
    models: Iterable[ModelInfo],
    model_id: str,
    prompt_tokens: int,
    completion_tokens: int,
) -> float:
    """Price token usage against a catalog. Unknown models cost nothing."""
    info = find_model(models, model_id)
    if info is None:
        return 0.0
    input_cost = (prompt_tokens / _PER_MILLION) * info.input_cost_per_1m
    output_cost = (completion_tokens / _PER_MILLION) * info.output_cost_per_1m
    return input_cost + output_cost

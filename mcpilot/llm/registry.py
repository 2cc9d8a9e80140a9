"""Known models and their input token limits."""

import math
from typing import Dict, List, Optional

DEFAULT_MAX_INPUT_TOKENS = 128_000
DEFAULT_BUDGET_MARGIN = 0.9

MODEL_REGISTRY: Dict[str, Dict[str, int]] = {
    "openai": {
        "gpt-4.1": 1_047_576,
        "gpt-4.1-mini": 1_047_576,
        "gpt-4o": 128_000,
        "gpt-4o-mini": 128_000,
        "gpt-4-turbo": 128_000,
        "gpt-4": 8_192,
        "gpt-3.5-turbo": 16_385,
        "o1": 200_000,
        "o3-mini": 200_000,
    },
    "anthropic": {
        "claude-3-7-sonnet-20250219": 200_000,
        "claude-3-5-sonnet-20240620": 200_000,
        "claude-3-5-haiku-20241022": 200_000,
        "claude-3-opus-20240229": 200_000,
        "claude-3-haiku-20240307": 200_000,
    },
    "google": {
        "gemini-2.5-pro": 1_048_576,
        "gemini-2.0-flash": 1_048_576,
        "gemini-1.5-pro": 2_097_152,
        "gemini-1.5-flash": 1_048_576,
    },
}


def get_max_input_tokens(provider: str, model: str) -> int:
    """
    Input limit for ``model``. Exact names win, then the longest registered
    prefix (``gpt-4o-2024-08-06`` -> ``gpt-4o``), then the default.
    """
    models = MODEL_REGISTRY.get((provider or "").lower(), {})
    if model in models:
        return models[model]
    prefixes = sorted((name for name in models if model.startswith(name)), key=len, reverse=True)
    if prefixes:
        return models[prefixes[0]]
    return DEFAULT_MAX_INPUT_TOKENS


def get_effective_max_input_tokens(
    provider: str,
    model: str,
    override: Optional[int] = None,
    margin: float = DEFAULT_BUDGET_MARGIN,
) -> int:
    """Working budget: ``floor(limit * margin)``; an explicit override is used as-is."""
    if override:
        return override
    # Round off float error before flooring.
    return math.floor(round(get_max_input_tokens(provider, model) * margin, 6))


def supported_providers() -> List[str]:
    return list(MODEL_REGISTRY)

"""
mcpilot llm module.

Model drivers and the per-model input token registry.
"""

from mcpilot.llm.clients import AnthropicClient, LLMClient, LLMClientFactory, LLMResponse, OpenAIClient
from mcpilot.llm.registry import get_effective_max_input_tokens, get_max_input_tokens

__all__ = [
    "AnthropicClient",
    "LLMClient",
    "LLMClientFactory",
    "LLMResponse",
    "OpenAIClient",
    "get_effective_max_input_tokens",
    "get_max_input_tokens",
]

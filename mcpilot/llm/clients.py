"""
mcpilot LLM clients - async model drivers behind one interface.

A client takes messages already shaped by the matching formatter and
returns an ``LLMResponse`` with text, requested tool calls and usage.
Retries and rate limiting are left to the SDKs.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type

from mcpilot.client.schema import ToolDef
from mcpilot.context.messages import ToolCall
from mcpilot.validation.config import LLMConfig, resolve_api_key

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_TOKENS = 4096


@dataclass
class LLMResponse:
    """Response from a model call."""

    text: Optional[str]
    model: str
    provider: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    finish_reason: str = "stop"


class LLMClient(ABC):
    """
    Abstract base class for model drivers.

    Example:
        >>> client = LLMClientFactory.create(config.merged.llm)
        >>> response = await client.generate(prepared.formatted_messages, prepared.system_prompt, tools)
    """

    provider_name = ""

    def __init__(self, config: LLMConfig):
        """
        Initialize the client.

        Args:
            config: The ``llm`` section of the agent configuration.
        """
        self.config = config
        self.model = config.model

    @abstractmethod
    async def generate(
        self,
        messages: List[Dict[str, Any]],
        system_prompt: Optional[str] = None,
        tools: Optional[Dict[str, ToolDef]] = None,
        max_output_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> LLMResponse:
        """
        Run one model call.

        Args:
            messages: Provider-shaped messages from the formatter.
            system_prompt: Sidecar system prompt for providers that take one.
            tools: Tools to advertise, keyed by the name the model should call.
            max_output_tokens: Completion limit; defaults to the config value.
            temperature: Sampling temperature; defaults to the config value.
        """

    def get_api_key(self) -> Optional[str]:
        return resolve_api_key(self.config)


class OpenAIClient(LLMClient):
    """OpenAI chat completions, including OpenAI-compatible endpoints via ``base_url``."""

    provider_name = "openai"

    def __init__(self, config: LLMConfig, client: Optional[Any] = None):
        super().__init__(config)
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                import openai
            except ImportError:
                raise ImportError("openai package required. Install with: pip install mcpilot[openai]")

            api_key = self.get_api_key()
            if not api_key and not self.config.base_url:
                raise ValueError("OpenAI API key not configured")
            self._client = openai.AsyncOpenAI(api_key=api_key or "none", base_url=self.config.base_url)
        return self._client

    @staticmethod
    def format_tools(tools: Dict[str, ToolDef]) -> List[Dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {"name": name, "description": tool.description, "parameters": tool.input_schema},
            }
            for name, tool in tools.items()
        ]

    async def generate(
        self,
        messages: List[Dict[str, Any]],
        system_prompt: Optional[str] = None,
        tools: Optional[Dict[str, ToolDef]] = None,
        max_output_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> LLMResponse:
        kwargs: Dict[str, Any] = {"model": self.model, "messages": messages}
        if tools:
            kwargs["tools"] = self.format_tools(tools)
        max_tokens = max_output_tokens or self.config.max_output_tokens
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        temperature = temperature if temperature is not None else self.config.temperature
        if temperature is not None:
            kwargs["temperature"] = temperature

        response = await self._get_client().chat.completions.create(**kwargs)
        choice = response.choices[0]
        tool_calls = []
        for call in choice.message.tool_calls or []:
            try:
                arguments = json.loads(call.function.arguments or "{}")
            except json.JSONDecodeError:
                logger.warning("Tool call '%s' has unparseable arguments", call.function.name)
                arguments = {}
            tool_calls.append(ToolCall(id=call.id, name=call.function.name, arguments=arguments))

        usage = response.usage
        return LLMResponse(
            text=choice.message.content,
            model=response.model,
            provider=self.provider_name,
            tool_calls=tool_calls,
            input_tokens=usage.prompt_tokens if usage else None,
            output_tokens=usage.completion_tokens if usage else None,
            finish_reason=choice.finish_reason or "stop",
        )


class AnthropicClient(LLMClient):
    """Anthropic messages API."""

    provider_name = "anthropic"

    def __init__(self, config: LLMConfig, client: Optional[Any] = None):
        super().__init__(config)
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                import anthropic
            except ImportError:
                raise ImportError(
                    "anthropic package required. Install with: pip install mcpilot[anthropic]"
                )

            api_key = self.get_api_key()
            if not api_key:
                raise ValueError("Anthropic API key not configured")
            self._client = anthropic.AsyncAnthropic(api_key=api_key, base_url=self.config.base_url)
        return self._client

    @staticmethod
    def format_tools(tools: Dict[str, ToolDef]) -> List[Dict[str, Any]]:
        return [
            {"name": name, "description": tool.description, "input_schema": tool.input_schema}
            for name, tool in tools.items()
        ]

    async def generate(
        self,
        messages: List[Dict[str, Any]],
        system_prompt: Optional[str] = None,
        tools: Optional[Dict[str, ToolDef]] = None,
        max_output_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> LLMResponse:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_output_tokens or self.config.max_output_tokens or DEFAULT_MAX_OUTPUT_TOKENS,
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        if tools:
            kwargs["tools"] = self.format_tools(tools)
        temperature = temperature if temperature is not None else self.config.temperature
        if temperature is not None:
            kwargs["temperature"] = temperature

        response = await self._get_client().messages.create(**kwargs)
        texts = []
        tool_calls = []
        for block in response.content:
            if block.type == "text":
                texts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {})))

        return LLMResponse(
            text="\n".join(texts) if texts else None,
            model=response.model,
            provider=self.provider_name,
            tool_calls=tool_calls,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            finish_reason=response.stop_reason or "stop",
        )


class LLMClientFactory:
    """Factory for creating model clients."""

    _clients: Dict[str, Type[LLMClient]] = {
        "openai": OpenAIClient,
        "anthropic": AnthropicClient,
    }

    @classmethod
    def register(cls, provider: str, client_class: Type[LLMClient]) -> None:
        """Register a client class for a provider name."""
        cls._clients[provider] = client_class

    @classmethod
    def create(cls, config: LLMConfig) -> LLMClient:
        """
        Create the client for ``config.provider``.

        Raises:
            ValueError: If no client is registered for the provider.
        """
        provider = config.provider.lower()
        if provider not in cls._clients:
            raise ValueError(
                f"Unknown provider: {config.provider}. Available: {', '.join(cls.available_providers())}"
            )
        return cls._clients[provider](config)

    @classmethod
    def available_providers(cls) -> List[str]:
        return list(cls._clients.keys())

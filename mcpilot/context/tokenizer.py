"""Per-provider token counting."""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

from mcpilot.context.messages import InternalMessage
from mcpilot.errors import TokenCountFailed

logger = logging.getLogger(__name__)

# Fixed cost per message for role markers and separators.
MESSAGE_OVERHEAD_TOKENS = 4
# Flat estimate for an attached image or file.
ATTACHMENT_TOKENS = 256


class Tokenizer(ABC):
    """Counts tokens in a piece of text. Deterministic for a given input."""

    @abstractmethod
    def count_tokens(self, text: str) -> int:
        pass


class DefaultTokenizer(Tokenizer):
    """Roughly four characters per token."""

    def count_tokens(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / 4)


class AnthropicTokenizer(Tokenizer):
    """Approximation; Claude averages about 3.5 characters per token."""

    def count_tokens(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / 3.5)


class GoogleTokenizer(Tokenizer):
    """Approximation for Gemini models (~4 characters per token)."""

    def __init__(self, model: str = ""):
        self.model = model

    def count_tokens(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / 4)


class OpenAITokenizer(Tokenizer):
    """
    Exact counts through tiktoken.

    The encoding is resolved lazily on first use; models tiktoken does not
    know fall back to ``cl100k_base``.
    """

    def __init__(self, model: str, encoding: Optional[Any] = None):
        self.model = model
        self._encoding = encoding

    def _get_encoding(self) -> Any:
        if self._encoding is None:
            import tiktoken

            try:
                self._encoding = tiktoken.encoding_for_model(self.model)
            except KeyError:
                logger.debug("No tiktoken encoding for '%s'; using cl100k_base", self.model)
                self._encoding = tiktoken.get_encoding("cl100k_base")
        return self._encoding

    def count_tokens(self, text: str) -> int:
        if not text:
            return 0
        try:
            return len(self._get_encoding().encode(text))
        except Exception as exc:
            raise TokenCountFailed(f"Failed to count tokens for model '{self.model}': {exc}") from exc


def create_tokenizer(provider: str, model: str = "") -> Tokenizer:
    """Return the tokenizer for ``provider``; unknown providers get the default."""
    provider = (provider or "").lower()
    if provider == "openai":
        return OpenAITokenizer(model)
    if provider == "anthropic":
        return AnthropicTokenizer()
    if provider == "google":
        return GoogleTokenizer(model)
    return DefaultTokenizer()


def count_message_tokens(tokenizer: Tokenizer, message: InternalMessage) -> int:
    """Estimated cost of one message. Never negative."""
    total = MESSAGE_OVERHEAD_TOKENS
    total += tokenizer.count_tokens(message.content or "")
    for call in message.tool_calls:
        total += tokenizer.count_tokens(call.name)
        total += tokenizer.count_tokens(str(call.arguments))
    if message.name:
        total += tokenizer.count_tokens(message.name)
    if message.image is not None:
        total += ATTACHMENT_TOKENS
    if message.file is not None:
        total += ATTACHMENT_TOKENS
    return total


def estimate_messages_tokens(
    tokenizer: Tokenizer,
    messages: Iterable[InternalMessage],
    system_prompt: str = "",
) -> int:
    """Sum of per-message costs plus the system prompt."""
    total = tokenizer.count_tokens(system_prompt) if system_prompt else 0
    for message in messages:
        total += count_message_tokens(tokenizer, message)
    return total

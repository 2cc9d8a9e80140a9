"""
Context Manager - the per-session message log and its token budget.

Appends are validated and never evict. Fitting the log into the model's
input budget happens only when a request is prepared, through
``get_formatted_messages_with_compression``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from mcpilot.context.compression import (
    CompressionResult,
    CompressionStrategy,
    OldestRemovalStrategy,
    create_compression_strategy,
)
from mcpilot.context.formatters import MessageFormatter, create_formatter
from mcpilot.context.history import HistoryProvider, InMemoryHistoryProvider
from mcpilot.context.messages import (
    FileData,
    ImageData,
    InternalMessage,
    ToolCall,
    render_tool_result,
    validate_message,
)
from mcpilot.context.prompt import SystemPromptManager
from mcpilot.context.tokenizer import Tokenizer, create_tokenizer, estimate_messages_tokens
from mcpilot.errors import (
    CompressionBudgetUnsatisfiable,
    ContextErrorCode,
    HistoryInvariantError,
    MessageValidationError,
)
from mcpilot.events import EventBus, EventType
from mcpilot.llm.registry import get_effective_max_input_tokens

logger = logging.getLogger(__name__)


@dataclass
class PreparedContext:
    """Everything a provider call needs from the context layer."""

    formatted_messages: List[Dict[str, Any]]
    system_prompt: Optional[str]  # sidecar prompt; None when inline
    tokens_used: int
    compression: Optional[CompressionResult] = None


class ContextManager:
    """
    Owns one conversation: the message log, the system prompt builder and
    the token budget.

    Example:
        >>> ctx = create_context_manager(config.merged.llm)
        >>> await ctx.add_user_message("List the files in /tmp")
        >>> prepared = await ctx.get_formatted_messages_with_compression({"client_manager": manager})
    """

    def __init__(
        self,
        formatter: MessageFormatter,
        prompt_manager: SystemPromptManager,
        max_input_tokens: int,
        tokenizer: Tokenizer,
        compression_strategy: Optional[CompressionStrategy] = None,
        history_provider: Optional[HistoryProvider] = None,
        event_bus: Optional[EventBus] = None,
        session_id: Optional[str] = None,
    ):
        self.formatter = formatter
        self.prompt_manager = prompt_manager
        self.max_input_tokens = max_input_tokens
        self.tokenizer = tokenizer
        self.compression_strategy = compression_strategy or OldestRemovalStrategy()
        self.history_provider = history_provider or InMemoryHistoryProvider()
        self.event_bus = event_bus or EventBus(session_id)
        self.session_id = session_id

        self._messages: List[InternalMessage] = []
        self._last_estimated_tokens = 0
        self._actual_tokens: Optional[int] = None
        self._actual_at = 0  # message count when the actual count was reported

    async def initialize(self) -> None:
        """Load any persisted messages for this session."""
        self._messages = list(await self.history_provider.get_history())
        self._actual_tokens = None
        if self._messages:
            logger.info("Restored %d messages for session %s", len(self._messages), self.session_id)

    # ── Appends ───────────────────────────────────────────────────────────

    async def add_message(self, message: InternalMessage) -> None:
        validate_message(message)
        if message.role == "tool":
            self._check_tool_result(message)
        self._messages.append(message)
        await self.history_provider.save_message(message)
        logger.debug("Added %s message (%d in history)", message.role, len(self._messages))

    async def add_user_message(
        self,
        text: str,
        image: Optional[ImageData] = None,
        file: Optional[FileData] = None,
    ) -> None:
        if not isinstance(text, str):
            raise MessageValidationError(
                "User message text must be a string", ContextErrorCode.USER_MESSAGE_CONTENT_INVALID
            )
        await self.add_message(InternalMessage(role="user", content=text, image=image, file=file))

    async def add_assistant_message(self, text: Optional[str], tool_calls: Optional[List[ToolCall]] = None) -> None:
        await self.add_message(InternalMessage(role="assistant", content=text, tool_calls=tool_calls or []))

    async def add_tool_result(self, call_id: str, tool_name: str, result: Any) -> None:
        if not call_id or not tool_name:
            raise MessageValidationError(
                "Tool result needs a call id and a tool name", ContextErrorCode.TOOL_CALL_ID_NAME_REQUIRED
            )
        content = render_tool_result(result)
        await self.add_message(InternalMessage(role="tool", content=content, tool_call_id=call_id, name=tool_name))

    async def add_system_message(self, text: str) -> None:
        await self.add_message(InternalMessage(role="system", content=text))

    def _check_tool_result(self, message: InternalMessage) -> None:
        answered = set()
        for previous in reversed(self._messages):
            if previous.role == "tool":
                answered.add(previous.tool_call_id)
                continue
            if previous.has_tool_calls:
                open_ids = {call.id for call in previous.tool_calls} - answered
                if message.tool_call_id in open_ids:
                    return
            break
        raise HistoryInvariantError(
            f"Tool result '{message.tool_call_id}' does not answer an open tool call",
            ContextErrorCode.TOOL_RESULT_ORPHANED,
        )

    # ── Reads ─────────────────────────────────────────────────────────────

    def get_history(self) -> List[InternalMessage]:
        return list(self._messages)

    @property
    def last_estimated_tokens(self) -> int:
        return self._last_estimated_tokens

    def estimate_tokens(self, system_prompt: str = "") -> int:
        """
        Current size of prompt plus history.

        After ``update_actual_token_count`` this is the reported count plus
        estimates for messages appended since.
        """
        if self._actual_tokens is not None and self._actual_at <= len(self._messages):
            newer = self._messages[self._actual_at:]
            return self._actual_tokens + estimate_messages_tokens(self.tokenizer, newer)
        return estimate_messages_tokens(self.tokenizer, self._messages, system_prompt)

    def update_actual_token_count(self, tokens: int) -> None:
        """Record the input token count the provider reported for the last request."""
        self._actual_tokens = max(0, int(tokens))
        self._actual_at = len(self._messages)
        logger.debug("Provider reported %d input tokens", self._actual_tokens)

    # ── Request preparation ───────────────────────────────────────────────

    async def get_formatted_messages_with_compression(
        self,
        collaborators: Optional[Mapping[str, Any]] = None,
        provider_info: Optional[Mapping[str, Any]] = None,
    ) -> PreparedContext:
        """
        Build the system prompt, fit the history into the budget and format
        it for the provider.

        If compression cannot reach the budget the best effort is returned
        and CompressionBudgetUnsatisfiable is reported as an ERROR event.
        """
        system_prompt = await self.prompt_manager.build(collaborators)
        history = list(self._messages)
        estimated = estimate_messages_tokens(self.tokenizer, history, system_prompt)
        tokens = self.estimate_tokens(system_prompt)
        compression: Optional[CompressionResult] = None

        if tokens > self.max_input_tokens:
            # The strategy measures with the tokenizer; shift its budget by
            # whatever the provider-reported count says the estimate misses.
            correction = tokens - estimated
            budget = max(0, self.max_input_tokens - correction)
            compression = self.compression_strategy.compress(history, self.tokenizer, budget, system_prompt)
            history = compression.messages
            tokens = compression.tokens_after + correction
            logger.info(
                "Compressed history for session %s: removed %d messages, %d -> %d tokens",
                self.session_id, compression.removed_count, compression.tokens_before + correction, tokens,
            )

            if not compression.budget_satisfied:
                error = CompressionBudgetUnsatisfiable(tokens, self.max_input_tokens, len(history))
                logger.warning("%s", error)
                self.event_bus.emit(EventType.ERROR, error=error, code=error.code.value)

            if self.compression_strategy.prune and compression.removed_count:
                self._messages = list(history)
                self._actual_tokens = None
                await self.history_provider.replace_history(self._messages)

        self._last_estimated_tokens = tokens
        formatted = self.formatter.format(history, system_prompt)
        if provider_info:
            logger.debug("Prepared %d messages for %s", len(formatted), dict(provider_info))
        return PreparedContext(
            formatted_messages=formatted,
            system_prompt=self.formatter.format_system_prompt(system_prompt),
            tokens_used=tokens,
            compression=compression,
        )

    def apply_llm_config(self, llm_config) -> None:
        """Switch formatter, tokenizer and budget to another model. History is kept."""
        self.formatter = create_formatter(llm_config.provider)
        self.tokenizer = create_tokenizer(llm_config.provider, llm_config.model)
        self.max_input_tokens = get_effective_max_input_tokens(
            llm_config.provider,
            llm_config.model,
            override=llm_config.max_input_tokens,
            margin=llm_config.budget_margin,
        )
        # Reported counts came from the previous model's tokenizer.
        self._actual_tokens = None
        logger.info(
            "Session %s now targets %s/%s (budget %d tokens)",
            self.session_id, llm_config.provider, llm_config.model, self.max_input_tokens,
        )

    async def reset(self) -> None:
        """Forget the conversation. The system prompt and budget stay."""
        self._messages = []
        self._actual_tokens = None
        self._actual_at = 0
        self._last_estimated_tokens = 0
        await self.history_provider.clear()
        self.event_bus.emit(EventType.CONVERSATION_RESET)
        logger.info("Conversation reset for session %s", self.session_id)


def create_context_manager(
    llm_config,
    history_provider: Optional[HistoryProvider] = None,
    event_bus: Optional[EventBus] = None,
    session_id: Optional[str] = None,
) -> ContextManager:
    """Wire formatter, tokenizer, prompt builder and budget for an ``LLMConfig``."""
    max_input_tokens = get_effective_max_input_tokens(
        llm_config.provider,
        llm_config.model,
        override=llm_config.max_input_tokens,
        margin=llm_config.budget_margin,
    )
    logger.debug(
        "Context budget for %s/%s: %d tokens", llm_config.provider, llm_config.model, max_input_tokens
    )
    return ContextManager(
        formatter=create_formatter(llm_config.provider),
        prompt_manager=SystemPromptManager.from_config(llm_config.system_prompt),
        max_input_tokens=max_input_tokens,
        tokenizer=create_tokenizer(llm_config.provider, llm_config.model),
        compression_strategy=create_compression_strategy(llm_config.compression),
        history_provider=history_provider,
        event_bus=event_bus,
        session_id=session_id,
    )

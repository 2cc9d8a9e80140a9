"""
Message formatters - turn the InternalMessage log into provider payloads.

Each formatter pairs with a tokenizer (see ``tokenizer.py``);
``create_formatter`` is the only place that picks one by provider name.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Type

from mcpilot.context.messages import InternalMessage
from mcpilot.errors import ContextErrorCode, HistoryInvariantError

logger = logging.getLogger(__name__)

MISSING_RESULT_TEXT = "Error: no result was recorded for this tool call."


def pair_tool_results(history: Sequence[InternalMessage]) -> List[InternalMessage]:
    """
    Check call/result pairing and return a repaired copy of ``history``.

    A tool message must answer a call of the closest preceding assistant
    message with tool calls; otherwise HistoryInvariantError is raised.
    Calls left without a result get a synthetic error result so providers
    that require strict pairing accept the payload.
    """
    paired: List[InternalMessage] = []
    pending: Dict[str, str] = {}

    def close_pending() -> None:
        for call_id, name in pending.items():
            logger.warning("Tool call '%s' (%s) has no result; inserting a placeholder", call_id, name)
            paired.append(
                InternalMessage(role="tool", content=MISSING_RESULT_TEXT, tool_call_id=call_id, name=name)
            )
        pending.clear()

    for message in history:
        if message.role == "tool":
            if message.tool_call_id not in pending:
                raise HistoryInvariantError(
                    f"Tool result '{message.tool_call_id}' does not answer any open tool call",
                    ContextErrorCode.TOOL_RESULT_ORPHANED,
                )
            del pending[message.tool_call_id]
            paired.append(message)
            continue

        close_pending()
        paired.append(message)
        if message.has_tool_calls:
            pending = {call.id: call.name for call in message.tool_calls}

    close_pending()
    return paired


class MessageFormatter(ABC):
    """Converts the message log into one provider's request shape."""

    provider: str = ""

    @abstractmethod
    def format(self, history: Sequence[InternalMessage], system_prompt: Optional[str]) -> List[Dict[str, Any]]:
        pass

    def format_system_prompt(self, system_prompt: Optional[str]) -> Optional[str]:
        """System prompt to send beside the messages, or None when it is inline."""
        return system_prompt or None


class OpenAIMessageFormatter(MessageFormatter):
    """
    OpenAI Chat Completions.

    The system prompt is the first message; tool results use the ``tool``
    role; attachments become content parts.
    """

    provider = "openai"

    def format(self, history: Sequence[InternalMessage], system_prompt: Optional[str]) -> List[Dict[str, Any]]:
        formatted: List[Dict[str, Any]] = []
        if system_prompt:
            formatted.append({"role": "system", "content": system_prompt})

        for msg in pair_tool_results(history):
            if msg.role == "system":
                formatted.append({"role": "system", "content": msg.content})
            elif msg.role == "user":
                formatted.append({"role": "user", "content": self._user_content(msg)})
            elif msg.role == "assistant":
                entry: Dict[str, Any] = {"role": "assistant", "content": msg.content}
                if msg.tool_calls:
                    entry["tool_calls"] = [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                        }
                        for call in msg.tool_calls
                    ]
                formatted.append(entry)
            elif msg.role == "tool":
                formatted.append(
                    {"role": "tool", "content": msg.content, "tool_call_id": msg.tool_call_id, "name": msg.name}
                )
        return formatted

    def format_system_prompt(self, system_prompt: Optional[str]) -> Optional[str]:
        return None

    @staticmethod
    def _user_content(msg: InternalMessage) -> Any:
        if msg.image is None and msg.file is None:
            return msg.content
        parts: List[Dict[str, Any]] = []
        if msg.content:
            parts.append({"type": "text", "text": msg.content})
        if msg.image is not None:
            url = msg.image.data
            if not url.startswith(("http://", "https://", "data:")):
                url = f"data:{msg.image.mime_type};base64,{url}"
            parts.append({"type": "image_url", "image_url": {"url": url}})
        if msg.file is not None:
            parts.append(
                {
                    "type": "file",
                    "file": {
                        "filename": msg.file.filename or "attachment",
                        "file_data": f"data:{msg.file.mime_type};base64,{msg.file.data}",
                    },
                }
            )
        return parts


class AnthropicMessageFormatter(MessageFormatter):
    """
    Anthropic Messages API.

    The system prompt travels separately. Tool results are ``tool_result``
    blocks inside a user message; consecutive results share one message.
    The conversation must open with a user turn.
    """

    provider = "anthropic"

    def format(self, history: Sequence[InternalMessage], system_prompt: Optional[str]) -> List[Dict[str, Any]]:
        formatted: List[Dict[str, Any]] = []

        for msg in pair_tool_results(history):
            if msg.role == "tool":
                block = {"type": "tool_result", "tool_use_id": msg.tool_call_id, "content": msg.content}
                previous = formatted[-1] if formatted else None
                if previous and previous["role"] == "user" and self._is_tool_results(previous):
                    previous["content"].append(block)
                else:
                    formatted.append({"role": "user", "content": [block]})
            elif msg.role == "assistant":
                blocks: List[Dict[str, Any]] = []
                if msg.content:
                    blocks.append({"type": "text", "text": msg.content})
                for call in msg.tool_calls:
                    blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments})
                formatted.append({"role": "assistant", "content": blocks})
            elif msg.role == "user":
                formatted.append({"role": "user", "content": self._user_content(msg)})
            elif msg.role == "system":
                # No system role inside the conversation.
                formatted.append({"role": "user", "content": [{"type": "text", "text": f"[system] {msg.content}"}]})

        if formatted and formatted[0]["role"] != "user":
            formatted.insert(0, {"role": "user", "content": [{"type": "text", "text": "(conversation continued)"}]})
        return formatted

    @staticmethod
    def _is_tool_results(entry: Dict[str, Any]) -> bool:
        content = entry.get("content")
        return isinstance(content, list) and bool(content) and all(
            block.get("type") == "tool_result" for block in content
        )

    @staticmethod
    def _user_content(msg: InternalMessage) -> List[Dict[str, Any]]:
        blocks: List[Dict[str, Any]] = []
        if msg.image is not None:
            blocks.append(
                {
                    "type": "image",
                    "source": {"type": "base64", "media_type": msg.image.mime_type, "data": msg.image.data},
                }
            )
        if msg.file is not None:
            blocks.append(
                {
                    "type": "document",
                    "source": {"type": "base64", "media_type": msg.file.mime_type, "data": msg.file.data},
                }
            )
        if msg.content:
            blocks.append({"type": "text", "text": msg.content})
        return blocks


class GoogleMessageFormatter(MessageFormatter):
    """Gemini ``contents``: ``model`` role, function_call / function_response parts."""

    provider = "google"

    def format(self, history: Sequence[InternalMessage], system_prompt: Optional[str]) -> List[Dict[str, Any]]:
        formatted: List[Dict[str, Any]] = []

        for msg in pair_tool_results(history):
            if msg.role == "user":
                parts: List[Dict[str, Any]] = []
                if msg.content:
                    parts.append({"text": msg.content})
                for attachment in (msg.image, msg.file):
                    if attachment is not None:
                        parts.append({"inline_data": {"mime_type": attachment.mime_type, "data": attachment.data}})
                formatted.append({"role": "user", "parts": parts})
            elif msg.role == "assistant":
                parts = [{"text": msg.content}] if msg.content else []
                for call in msg.tool_calls:
                    parts.append({"function_call": {"name": call.name, "args": call.arguments}})
                formatted.append({"role": "model", "parts": parts})
            elif msg.role == "tool":
                part = {"function_response": {"name": msg.name, "response": {"content": msg.content}}}
                previous = formatted[-1] if formatted else None
                if previous and previous["role"] == "function":
                    previous["parts"].append(part)
                else:
                    formatted.append({"role": "function", "parts": [part]})
            elif msg.role == "system":
                formatted.append({"role": "user", "parts": [{"text": f"[system] {msg.content}"}]})
        return formatted


_FORMATTERS: Dict[str, Type[MessageFormatter]] = {
    "openai": OpenAIMessageFormatter,
    "anthropic": AnthropicMessageFormatter,
    "google": GoogleMessageFormatter,
}


def create_formatter(provider: str) -> MessageFormatter:
    """Formatter for ``provider``. OpenAI-compatible providers share the OpenAI shape."""
    formatter_class = _FORMATTERS.get((provider or "").lower())
    if formatter_class is None:
        logger.debug("No dedicated formatter for '%s'; using the OpenAI format", provider)
        formatter_class = OpenAIMessageFormatter
    return formatter_class()

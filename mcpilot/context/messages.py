"""
Provider-neutral conversation messages.

``InternalMessage`` is the one shape the message log stores. Formatters turn
it into provider payloads; nothing else in the context layer knows about
providers.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from mcpilot.errors import ContextErrorCode, MessageValidationError

Role = Literal["system", "user", "assistant", "tool"]


class ImageData(BaseModel):
    """Inline image. ``data`` is base64 or a URL."""

    data: str
    mime_type: str = "image/png"


class FileData(BaseModel):
    """Inline file attachment. ``data`` is base64."""

    data: str
    mime_type: str
    filename: Optional[str] = None


class ToolCall(BaseModel):
    """A tool call requested by the assistant."""

    id: str
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class InternalMessage(BaseModel):
    role: Role
    content: Optional[str] = None
    image: Optional[ImageData] = None
    file: Optional[FileData] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)
    tool_call_id: Optional[str] = None  # tool messages only
    name: Optional[str] = None  # tool messages only
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def has_tool_calls(self) -> bool:
        return self.role == "assistant" and bool(self.tool_calls)


def validate_message(message: InternalMessage) -> None:
    """Raise MessageValidationError when ``message`` cannot go into the log."""
    if not message.role:
        raise MessageValidationError("Message role is required", ContextErrorCode.MESSAGE_ROLE_MISSING)

    if message.role == "user":
        if not (message.content or "").strip() and message.image is None and message.file is None:
            raise MessageValidationError(
                "User message needs text, an image, or a file",
                ContextErrorCode.USER_MESSAGE_CONTENT_INVALID,
            )

    elif message.role == "assistant":
        if message.content is None and not message.tool_calls:
            raise MessageValidationError(
                "Assistant message needs content or tool calls",
                ContextErrorCode.ASSISTANT_MESSAGE_CONTENT_OR_TOOLS_REQUIRED,
            )
        ids = [call.id for call in message.tool_calls]
        if any(not call.id or not call.name for call in message.tool_calls) or len(ids) != len(set(ids)):
            raise MessageValidationError(
                "Assistant tool calls need unique ids and names",
                ContextErrorCode.ASSISTANT_MESSAGE_TOOL_CALLS_INVALID,
            )

    elif message.role == "tool":
        if not message.tool_call_id or not message.name or message.content is None:
            raise MessageValidationError(
                "Tool message needs tool_call_id, name and content",
                ContextErrorCode.TOOL_MESSAGE_FIELDS_MISSING,
            )

    elif message.role == "system":
        if not (message.content or "").strip():
            raise MessageValidationError(
                "System message needs non-empty content",
                ContextErrorCode.SYSTEM_MESSAGE_CONTENT_INVALID,
            )


def render_tool_result(result: Any) -> str:
    """
    Flatten a tool result into the text stored in the log.

    MCP results carry a ``content`` list of parts; text parts are joined,
    other parts are kept as JSON. Anything else is JSON-encoded.
    """
    if isinstance(result, str):
        return result
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        parts = []
        for part in result["content"]:
            if isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
            else:
                parts.append(json.dumps(part, default=str))
        text = "\n".join(parts)
        if result.get("isError"):
            text = f"[error] {text}"
        return text
    return json.dumps(result, default=str)

"""Data models for MCP capabilities, connection state, and tool invocations."""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from mcpilot.execution import ExecutionMode


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class ToolDef(BaseModel):
    """A tool advertised by an MCP server."""

    model_config = ConfigDict(frozen=True)

    name: str  # e.g. "read_file"
    server: str  # e.g. "filesystem"
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})

    @property
    def qualified_name(self) -> str:
        """Full name as ``server__tool`` (e.g. ``filesystem__read_file``)."""
        return f"{self.server}__{self.name}"

    @classmethod
    def from_mcp(cls, raw: Dict[str, Any], server: str) -> "ToolDef":
        schema = raw.get("inputSchema") or {"type": "object", "properties": {}}
        return cls(
            name=raw["name"],
            server=server,
            description=raw.get("description") or "",
            input_schema=schema,
        )


class PromptArgument(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    required: bool = False


class PromptDef(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    server: str
    description: str = ""
    arguments: List[PromptArgument] = Field(default_factory=list)

    @classmethod
    def from_mcp(cls, raw: Dict[str, Any], server: str) -> "PromptDef":
        return cls(
            name=raw["name"],
            server=server,
            description=raw.get("description") or "",
            arguments=[PromptArgument(**a) for a in raw.get("arguments") or []],
        )


class ResourceDef(BaseModel):
    model_config = ConfigDict(frozen=True)

    uri: str
    server: str
    name: str = ""
    description: str = ""
    mime_type: Optional[str] = None

    @classmethod
    def from_mcp(cls, raw: Dict[str, Any], server: str) -> "ResourceDef":
        return cls(
            uri=raw["uri"],
            server=server,
            name=raw.get("name") or "",
            description=raw.get("description") or "",
            mime_type=raw.get("mimeType"),
        )


class Capabilities(BaseModel):
    """Everything one server reported during discovery."""

    model_config = ConfigDict(frozen=True)

    tools: List[ToolDef] = Field(default_factory=list)
    prompts: List[PromptDef] = Field(default_factory=list)
    resources: List[ResourceDef] = Field(default_factory=list)


class ToolInvocation(BaseModel):
    """Record of a single tool invocation request."""

    call_id: str = ""
    tool_name: str = ""
    arguments: Dict[str, Any] = Field(default_factory=dict)
    session_id: Optional[str] = None
    server: Optional[str] = None
    mode: ExecutionMode = ExecutionMode.LIVE
    timestamp: str = ""

    def model_post_init(self, __context: Any) -> None:
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).isoformat()
        if not self.call_id:
            raw = f"{self.tool_name}:{self.arguments}:{self.timestamp}"
            self.call_id = hashlib.sha256(raw.encode()).hexdigest()[:12]

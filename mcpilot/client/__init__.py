"""
mcpilot client module.

Connections to MCP servers (stdio, SSE, streamable HTTP), the capability
lookup tables over them, and the confirmation gate in front of tool calls.
"""

from mcpilot.client.confirmation import (
    CallbackConfirmationProvider,
    ConsoleConfirmationProvider,
    NoOpConfirmationProvider,
    ToolConfirmationProvider,
    create_confirmation_provider,
)
from mcpilot.client.connection import ServerConnection
from mcpilot.client.manager import ClientManager, CollisionPolicy
from mcpilot.client.schema import ConnectionState, PromptDef, ResourceDef, ToolDef, ToolInvocation
from mcpilot.client.transport import HttpTransport, MCPTransport, SseTransport, StdioTransport, create_transport

__all__ = [
    "CallbackConfirmationProvider",
    "ClientManager",
    "CollisionPolicy",
    "ConnectionState",
    "ConsoleConfirmationProvider",
    "HttpTransport",
    "MCPTransport",
    "NoOpConfirmationProvider",
    "PromptDef",
    "ResourceDef",
    "ServerConnection",
    "SseTransport",
    "StdioTransport",
    "ToolConfirmationProvider",
    "ToolDef",
    "ToolInvocation",
    "create_confirmation_provider",
    "create_transport",
]

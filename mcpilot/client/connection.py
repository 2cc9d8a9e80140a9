"""A named connection to one MCP server and its discovered capabilities."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from mcpilot.client.schema import Capabilities, ConnectionState, PromptDef, ResourceDef, ToolDef
from mcpilot.client.transport import MCPTransport
from mcpilot.errors import TransportError

logger = logging.getLogger(__name__)


class ServerConnection:
    """
    Wraps one transport with discovery and invocation.

    ``state`` and ``error`` are assigned by the ClientManager; this class
    only performs I/O.
    """

    def __init__(self, name: str, config: Any, transport: MCPTransport):
        self.name = name
        self.config = config
        self.transport = transport
        self.state = ConnectionState.DISCONNECTED
        self.error: Optional[str] = None
        self.capabilities = Capabilities()

    def __repr__(self) -> str:
        return f"ServerConnection(name={self.name!r}, state={self.state.value})"

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def open(self) -> None:
        """Start the transport and perform the MCP handshake."""
        await self.transport.start()
        info = await self.transport.initialize()
        server = info.get("serverInfo") or {}
        logger.debug(
            "Server '%s' is %s %s", self.name, server.get("name", "?"), server.get("version", "")
        )

    async def close(self) -> None:
        await self.transport.stop()

    # ── Discovery ─────────────────────────────────────────────────────────

    async def discover(self) -> Capabilities:
        """
        Fetch tools, prompts and resources.

        Tools are required: a failure there propagates. Prompts and resources
        are optional and skipped when unsupported or failing. Listings that
        do not parse raise TransportError.
        """
        tools = self._parse("tools", await self.transport.list_tools(), ToolDef.from_mcp)

        prompts = []
        if self.transport.supports("prompts"):
            try:
                prompts = self._parse("prompts", await self.transport.list_prompts(), PromptDef.from_mcp)
            except TransportError as exc:
                logger.debug("Skipping prompts for server '%s': %s", self.name, exc)

        resources = []
        if self.transport.supports("resources"):
            try:
                resources = self._parse(
                    "resources", await self.transport.list_resources(), ResourceDef.from_mcp
                )
            except TransportError as exc:
                logger.debug("Skipping resources for server '%s': %s", self.name, exc)

        logger.debug(
            "Server '%s' offers %d tools, %d prompts, %d resources",
            self.name, len(tools), len(prompts), len(resources),
        )
        return Capabilities(tools=tools, prompts=prompts, resources=resources)

    def _parse(self, kind: str, raw_items: Any, factory: Callable[[Dict[str, Any], str], Any]) -> List[Any]:
        try:
            return [factory(raw, self.name) for raw in raw_items]
        except (AttributeError, TypeError, KeyError, ValueError) as exc:
            raise TransportError(f"Malformed {kind} listing from '{self.name}': {exc!r}") from exc

    # ── Invocation ────────────────────────────────────────────────────────

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return await self.transport.call_tool(name, arguments)

    async def get_prompt(self, name: str, arguments: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        return await self.transport.get_prompt(name, arguments)

    async def read_resource(self, uri: str) -> Dict[str, Any]:
        return await self.transport.read_resource(uri)

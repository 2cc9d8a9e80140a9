"""
Client manager - owns every MCP server connection, routes capability names
to their owning connection, and gates tool execution behind confirmation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from mcpilot.client.confirmation import NoOpConfirmationProvider, ToolConfirmationProvider
from mcpilot.client.connection import ServerConnection
from mcpilot.client.schema import (
    Capabilities,
    ConnectionState,
    PromptDef,
    ResourceDef,
    ToolDef,
    ToolInvocation,
)
from mcpilot.client.transport import MCPTransport, create_transport
from mcpilot.errors import (
    AggregateConnectError,
    ConnectError,
    ExecutionDenied,
    ExecutionTimeout,
    PromptNotFound,
    ResourceNotFound,
    ToolExecutionError,
    ToolNotFound,
    TransportError,
)
from mcpilot.events import EventBus, EventType
from mcpilot.execution import ExecutionMode

logger = logging.getLogger(__name__)


class CollisionPolicy(str, Enum):
    """What happens when two servers advertise the same capability name."""

    LAST_WRITE_WINS = "last_write_wins"
    FIRST_WRITE_WINS = "first_write_wins"
    NAMESPACE = "namespace"  # tools exposed as ``server__tool``


@dataclass(frozen=True)
class _Route:
    connection: ServerConnection
    remote_name: str  # name (or URI) as the owning server knows it
    definition: Any


@dataclass(frozen=True)
class _CapabilityIndex:
    """Immutable lookup tables. Replaced wholesale, never patched."""

    tools: Mapping[str, _Route] = field(default_factory=dict)
    prompts: Mapping[str, _Route] = field(default_factory=dict)
    resources: Mapping[str, _Route] = field(default_factory=dict)


TransportFactory = Callable[[Any], MCPTransport]


class ClientManager:
    """
    Centralized manager for multiple MCP server connections.

    - Connects servers one by one (``connect_server``) or in bulk with a
      strict/lenient split (``initialize_from_config``).
    - Keeps name → connection lookup tables for tools, prompts and
      resources. Only CONNECTED servers appear in them. The tables are
      rebuilt after every change and swapped in one assignment, so readers
      always see a complete snapshot.
    - Executes tools behind a confirmation provider.

    One instance may be shared by many sessions.

    Example:
        >>> manager = ClientManager()
        >>> await manager.initialize_from_config(config.merged.mcp_servers)
        >>> tools = manager.get_all_tools()
        >>> result = await manager.execute_tool("read_file", {"path": "README.md"})
    """

    def __init__(
        self,
        confirmation_provider: Optional[ToolConfirmationProvider] = None,
        transport_factory: TransportFactory = create_transport,
        collision_policy: CollisionPolicy = CollisionPolicy.LAST_WRITE_WINS,
        tool_timeout: Optional[float] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self._confirmation = confirmation_provider or NoOpConfirmationProvider()
        self._transport_factory = transport_factory
        self.collision_policy = CollisionPolicy(collision_policy)
        self.tool_timeout = tool_timeout
        self.event_bus = event_bus or EventBus()
        self._connections: Dict[str, ServerConnection] = {}
        self._connection_errors: Dict[str, str] = {}
        self._index = _CapabilityIndex()
        self._write_lock = asyncio.Lock()

    # ── Connection lifecycle ──────────────────────────────────────────────

    async def connect_server(self, name: str, config: Any) -> None:
        """
        Connect to one server and publish its capabilities.

        Raises ConnectError on failure (including timeout); nothing about the
        server is left in the lookup tables in that case.
        """
        if name in self._connections:
            logger.warning("Client '%s' is already connected or registered.", name)
            return

        connection = ServerConnection(name, config, self._transport_factory(config))
        connection.state = ConnectionState.CONNECTING
        self._connections[name] = connection
        timeout = getattr(config, "timeout", None)

        logger.info("Attempting to connect to server '%s'...", name)
        try:
            if timeout:
                capabilities = await asyncio.wait_for(self._open_and_discover(connection), timeout)
            else:
                capabilities = await self._open_and_discover(connection)
        except asyncio.TimeoutError:
            await self._fail_connection(connection, f"timed out after {timeout:g}s")
            raise ConnectError(name, f"timed out after {timeout:g}s")
        except (TransportError, OSError, ValueError, KeyError) as exc:
            await self._fail_connection(connection, str(exc) or type(exc).__name__)
            raise ConnectError(name, str(exc) or type(exc).__name__) from exc
        except Exception as exc:
            logger.exception("Unexpected error while connecting to server '%s'", name)
            reason = f"{type(exc).__name__}: {exc}"
            await self._fail_connection(connection, reason)
            raise ConnectError(name, reason) from exc

        async with self._write_lock:
            if self._connections.get(name) is not connection:
                # Removed while connecting.
                await self._close_quietly(connection)
                raise ConnectError(name, "removed while connecting")
            connection.capabilities = capabilities
            connection.state = ConnectionState.CONNECTED
            connection.error = None
            self._connection_errors.pop(name, None)
            self._rebuild_index()

        logger.info(
            "Successfully connected and cached server '%s' (%d tools)",
            name, len(capabilities.tools),
        )
        self.event_bus.emit(EventType.CONNECTION_ESTABLISHED, name=name)
        self.event_bus.emit(EventType.TOOLS_UPDATED, tools=sorted(self._index.tools))

    async def _open_and_discover(self, connection: ServerConnection) -> Capabilities:
        await connection.open()
        return await connection.discover()

    async def _fail_connection(self, connection: ServerConnection, reason: str) -> None:
        connection.state = ConnectionState.FAILED
        connection.error = reason
        async with self._write_lock:
            if self._connections.get(connection.name) is connection:
                del self._connections[connection.name]
            self._connection_errors[connection.name] = reason
            self._rebuild_index()
        await self._close_quietly(connection)
        logger.error("Failed to connect to server '%s': %s", connection.name, reason)
        self.event_bus.emit(EventType.CONNECTION_FAILED, name=connection.name, error=reason)

    async def initialize_from_config(self, server_configs: Mapping[str, Any]) -> None:
        """
        Connect every configured server concurrently and wait for all of them.

        Any failed ``strict`` server aborts: connections made by this call are
        torn down again and AggregateConnectError names every failed strict
        server. ``lenient`` failures are only recorded.
        """
        if not server_configs:
            logger.info("No MCP servers configured - running without external tools")
            return

        names = list(server_configs)
        outcomes = await asyncio.gather(
            *(self._try_connect(name, server_configs[name]) for name in names)
        )

        failed_strict: Dict[str, str] = {}
        for name, (_, error) in zip(names, outcomes):
            if error is None:
                continue
            if getattr(server_configs[name], "connection_mode", "lenient") == "strict":
                failed_strict[name] = error
            else:
                logger.warning("Lenient server '%s' unavailable: %s", name, error)

        if failed_strict:
            created = [name for name, (is_new, error) in zip(names, outcomes) if is_new and error is None]
            for name in created:
                await self.remove_client(name)
            raise AggregateConnectError(failed_strict)

    async def _try_connect(self, name: str, config: Any) -> Tuple[bool, Optional[str]]:
        """Connect one server; return whether this call created it and the failure reason."""
        if name in self._connections:
            logger.warning("Client '%s' is already connected or registered.", name)
            return False, None
        try:
            await self.connect_server(name, config)
        except ConnectError as exc:
            logger.debug("Handled connection error for '%s' during initialization: %s", name, exc)
            return True, exc.cause
        if name not in self._connections:
            return True, self._connection_errors.get(name, "Unknown error")
        return True, None

    async def refresh(self, name: Optional[str] = None) -> None:
        """
        Re-run discovery for one server (or all) and rebuild the tables.

        Servers are queried concurrently, each bounded by its own timeout.
        A server whose discovery fails is marked FAILED and drops out of the
        tables but stays registered.
        """
        if name is not None and name not in self._connections:
            logger.warning("Cannot refresh unknown client '%s'", name)
            return
        targets = [self._connections[name]] if name else list(self._connections.values())
        targets = [
            c for c in targets if c.state in (ConnectionState.CONNECTED, ConnectionState.FAILED)
        ]
        results: List[Tuple[ServerConnection, Optional[Capabilities], Optional[str]]] = list(
            await asyncio.gather(*(self._rediscover(connection) for connection in targets))
        )

        async with self._write_lock:
            for connection, capabilities, error in results:
                if self._connections.get(connection.name) is not connection:
                    continue
                if error is None:
                    connection.capabilities = capabilities
                    connection.state = ConnectionState.CONNECTED
                    connection.error = None
                else:
                    logger.error("Discovery refresh for '%s' failed: %s", connection.name, error)
                    connection.state = ConnectionState.FAILED
                    connection.error = error
                    self._connection_errors[connection.name] = error
            self._rebuild_index()
        self.event_bus.emit(EventType.TOOLS_UPDATED, tools=sorted(self._index.tools))

    async def _rediscover(
        self, connection: ServerConnection
    ) -> Tuple[ServerConnection, Optional[Capabilities], Optional[str]]:
        timeout = getattr(connection.config, "timeout", None)
        try:
            if timeout:
                capabilities = await asyncio.wait_for(connection.discover(), timeout)
            else:
                capabilities = await connection.discover()
        except asyncio.TimeoutError:
            return connection, None, f"discovery timed out after {timeout:g}s"
        except TransportError as exc:
            return connection, None, str(exc) or type(exc).__name__
        return connection, capabilities, None

    async def remove_client(self, name: str) -> None:
        """Disconnect and remove a server. Never raises."""
        async with self._write_lock:
            connection = self._connections.pop(name, None)
            if connection is not None:
                self._rebuild_index()
            if self._connection_errors.pop(name, None) is not None:
                logger.info("Cleared connection error for removed client: %s", name)

        if connection is None:
            return
        await self._close_quietly(connection)
        connection.state = ConnectionState.DISCONNECTED
        logger.info("Removed client from manager: %s", name)
        self.event_bus.emit(EventType.TOOLS_UPDATED, tools=sorted(self._index.tools))

    async def disconnect_all(self) -> None:
        """Disconnect every server and clear all tables."""
        async with self._write_lock:
            connections = list(self._connections.values())
            self._connections.clear()
            self._connection_errors.clear()
            self._index = _CapabilityIndex()

        await asyncio.gather(*(self._close_quietly(c) for c in connections))
        for connection in connections:
            connection.state = ConnectionState.DISCONNECTED
        logger.info("Disconnected all clients and cleared caches.")

    async def _close_quietly(self, connection: ServerConnection) -> None:
        try:
            await connection.close()
            logger.debug("Disconnected client: %s", connection.name)
        except Exception as exc:
            logger.error("Error disconnecting client '%s': %s", connection.name, exc)

    # ── Index ─────────────────────────────────────────────────────────────

    def _rebuild_index(self) -> None:
        """Build fresh tables from CONNECTED servers, in registration order, then swap."""
        tools: Dict[str, _Route] = {}
        prompts: Dict[str, _Route] = {}
        resources: Dict[str, _Route] = {}

        for connection in self._connections.values():
            if not connection.is_connected:
                continue
            caps = connection.capabilities
            for tool in caps.tools:
                key = tool.qualified_name if self.collision_policy is CollisionPolicy.NAMESPACE else tool.name
                self._publish(tools, key, _Route(connection, tool.name, tool), "tool")
            for prompt in caps.prompts:
                self._publish(prompts, prompt.name, _Route(connection, prompt.name, prompt), "prompt")
            for resource in caps.resources:
                self._publish(resources, resource.uri, _Route(connection, resource.uri, resource), "resource")

        self._index = _CapabilityIndex(tools=tools, prompts=prompts, resources=resources)

    def _publish(self, table: Dict[str, _Route], key: str, route: _Route, kind: str) -> None:
        existing = table.get(key)
        if existing is not None and existing.connection is not route.connection:
            if self.collision_policy is CollisionPolicy.FIRST_WRITE_WINS:
                logger.warning(
                    "%s '%s' from '%s' ignored; already provided by '%s'",
                    kind.capitalize(), key, route.connection.name, existing.connection.name,
                )
                return
            logger.warning(
                "%s '%s' from '%s' overrides the one from '%s'",
                kind.capitalize(), key, route.connection.name, existing.connection.name,
            )
        table[key] = route

    # ── Tools ─────────────────────────────────────────────────────────────

    def get_all_tools(self) -> Dict[str, ToolDef]:
        """All tools of all connected servers, keyed by the name the model should use."""
        index = self._index
        return {name: route.definition for name, route in index.tools.items()}

    def get_tool_client(self, tool_name: str) -> Optional[ServerConnection]:
        route = self._index.tools.get(tool_name)
        return route.connection if route else None

    async def execute_tool(
        self,
        tool_name: str,
        args: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
        mode: ExecutionMode = ExecutionMode.LIVE,
    ) -> Dict[str, Any]:
        """
        Execute a tool after confirmation.

        Raises ToolNotFound, ExecutionDenied, ExecutionTimeout, or
        ToolExecutionError (wrapping the TransportError).
        """
        route = self._index.tools.get(tool_name)
        if route is None:
            raise ToolNotFound(tool_name)

        args = args or {}
        invocation = ToolInvocation(
            tool_name=tool_name,
            arguments=args,
            session_id=session_id,
            server=route.connection.name,
            mode=mode,
        )
        approved = await self._confirmation.request_confirmation(invocation)
        if not approved:
            logger.info("Tool '%s' denied by confirmation provider", tool_name)
            raise ExecutionDenied(tool_name, session_id)

        if mode.is_dry_run:
            logger.info("Dry run: skipping tool '%s' on '%s'", tool_name, route.connection.name)
            return {
                "content": [{"type": "text", "text": f"[dry run] {tool_name} was not executed"}],
                "dryRun": True,
                "arguments": args,
            }

        logger.debug("Executing tool '%s' on '%s' with %s", tool_name, route.connection.name, args)
        try:
            if self.tool_timeout:
                return await asyncio.wait_for(
                    route.connection.call_tool(route.remote_name, args), self.tool_timeout
                )
            return await route.connection.call_tool(route.remote_name, args)
        except asyncio.TimeoutError:
            raise ExecutionTimeout(tool_name, self.tool_timeout)
        except TransportError as exc:
            raise ToolExecutionError(tool_name, exc) from exc

    # ── Prompts ───────────────────────────────────────────────────────────

    def list_all_prompts(self) -> List[str]:
        return list(self._index.prompts)

    def get_prompt_definitions(self) -> Dict[str, PromptDef]:
        return {name: route.definition for name, route in self._index.prompts.items()}

    def get_prompt_client(self, name: str) -> Optional[ServerConnection]:
        route = self._index.prompts.get(name)
        return route.connection if route else None

    async def get_prompt(self, name: str, args: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        route = self._index.prompts.get(name)
        if route is None:
            raise PromptNotFound(name)
        return await route.connection.get_prompt(route.remote_name, args)

    # ── Resources ─────────────────────────────────────────────────────────

    def list_all_resources(self) -> List[str]:
        return list(self._index.resources)

    def get_resource_definitions(self) -> Dict[str, ResourceDef]:
        return {uri: route.definition for uri, route in self._index.resources.items()}

    def get_resource_client(self, uri: str) -> Optional[ServerConnection]:
        route = self._index.resources.get(uri)
        return route.connection if route else None

    async def read_resource(self, uri: str) -> Dict[str, Any]:
        route = self._index.resources.get(uri)
        if route is None:
            raise ResourceNotFound(uri)
        return await route.connection.read_resource(route.remote_name)

    # ── Reporting ─────────────────────────────────────────────────────────

    def get_clients(self) -> Dict[str, ServerConnection]:
        return dict(self._connections)

    def get_failed_connections(self) -> Dict[str, str]:
        return dict(self._connection_errors)

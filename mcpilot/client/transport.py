"""MCP server communication: stdio subprocess, SSE stream, and streamable HTTP transports."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
from urllib.parse import urljoin

import httpx

from mcpilot.errors import TransportError
from mcpilot.validation.config import HttpServerConfig, SseServerConfig, StdioServerConfig

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "mcpilot", "version": "1.0.0"}


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[Tuple[str, str]]:
    """Group server-sent-event lines into ``(event, data)`` pairs."""
    event, data_lines = "", []
    async for line in lines:
        if line == "":
            if data_lines:
                yield event or "message", "\n".join(data_lines)
            event, data_lines = "", []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event = value
        elif field == "data":
            data_lines.append(value)
    if data_lines:
        yield event or "message", "\n".join(data_lines)


class MCPTransport(ABC):
    """
    One JSON-RPC channel to one MCP server.

    Subclasses provide the byte-level exchange (``_request``/``_notify``);
    the MCP protocol methods live here so every transport speaks them the
    same way.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self.server_info: Dict[str, Any] = {}
        self.server_capabilities: Dict[str, Any] = {}
        self._request_id = 0

    # ── Lifecycle ─────────────────────────────────────────────────────────

    @abstractmethod
    async def start(self) -> None:
        """Open the underlying channel."""

    @abstractmethod
    async def stop(self) -> None:
        """Close the underlying channel. Safe to call more than once."""

    @property
    @abstractmethod
    def is_running(self) -> bool:
        ...

    @property
    def description(self) -> str:
        return type(self).__name__

    # ── JSON-RPC ──────────────────────────────────────────────────────────

    @abstractmethod
    async def _request(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """Deliver a request and return the matching response object."""

    @abstractmethod
    async def _notify(self, message: Dict[str, Any]) -> None:
        """Deliver a notification (no response expected)."""

    async def send(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Send a JSON-RPC request and return the result."""
        if not self.is_running:
            raise TransportError(f"{self.description} is not running")

        self._request_id += 1
        request: Dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
        }
        if params is not None:
            request["params"] = params

        effective_timeout = timeout if timeout is not None else self.timeout
        if effective_timeout:
            response = await asyncio.wait_for(self._request(request), effective_timeout)
        else:
            response = await self._request(request)

        if "error" in response:
            err = response["error"] or {}
            raise TransportError(f"MCP error {err.get('code')}: {err.get('message')}")

        return response.get("result") or {}

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._notify(message)

    # ── MCP Protocol ──────────────────────────────────────────────────────

    async def initialize(self) -> Dict[str, Any]:
        """Perform the MCP initialize handshake."""
        result = await self.send("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": CLIENT_INFO,
        })
        self.server_info = result.get("serverInfo") or {}
        self.server_capabilities = result.get("capabilities") or {}
        await self.notify("notifications/initialized")
        return result

    def supports(self, capability: str) -> bool:
        """Whether the server advertised ``capability`` (tools, prompts, resources)."""
        return capability in self.server_capabilities

    async def _list_paginated(self, method: str, key: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        cursor = None
        while True:
            result = await self.send(method, {"cursor": cursor} if cursor else None)
            items.extend(result.get(key) or [])
            cursor = result.get("nextCursor")
            if not cursor:
                return items

    async def list_tools(self) -> List[Dict[str, Any]]:
        """Fetch the tool list from the MCP server."""
        return await self._list_paginated("tools/list", "tools")

    async def list_prompts(self) -> List[Dict[str, Any]]:
        return await self._list_paginated("prompts/list", "prompts")

    async def list_resources(self) -> List[Dict[str, Any]]:
        return await self._list_paginated("resources/list", "resources")

    async def call_tool(
        self,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Call a tool on the MCP server."""
        return await self.send(
            "tools/call", {"name": name, "arguments": arguments or {}}, timeout=timeout
        )

    async def get_prompt(self, name: str, arguments: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        return await self.send("prompts/get", {"name": name, "arguments": arguments or {}})

    async def read_resource(self, uri: str) -> Dict[str, Any]:
        return await self.send("resources/read", {"uri": uri})


class StdioTransport(MCPTransport):
    """
    Communicate with an MCP server over stdin/stdout (newline-delimited JSON-RPC).

    One request is in flight at a time; responses with a stale id (left over
    from a request that timed out) are skipped.
    """

    STREAM_LIMIT = 16 * 1024 * 1024

    def __init__(
        self,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(timeout=timeout)
        self.command = command
        self.args = args or []
        self.env = env or {}
        self._process: Optional[asyncio.subprocess.Process] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    @property
    def description(self) -> str:
        return f"stdio server '{self.command}'"

    async def start(self) -> None:
        """Spawn the MCP server subprocess."""
        if self.is_running:
            return  # already running

        merged_env = {**os.environ, **self.env}
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=merged_env,
                limit=self.STREAM_LIMIT,
            )
        except FileNotFoundError:
            raise TransportError(
                f"MCP server command not found: {self.command}. "
                "Make sure it is installed and on PATH."
            )
        except OSError as exc:
            raise TransportError(f"Failed to start MCP server '{self.command}': {exc}")

        self._stderr_task = asyncio.ensure_future(self._drain_stderr(self._process.stderr))

    async def stop(self) -> None:
        """Terminate the MCP server subprocess."""
        process, self._process = self._process, None
        if process is not None and process.returncode is None:
            if process.stdin is not None:
                process.stdin.close()
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=5)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()

        if self._stderr_task is not None:
            self._stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
            self._stderr_task = None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def _drain_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            line = await stream.readline()
            if not line:
                return
            logger.debug("[%s] %s", self.command, line.decode(errors="replace").rstrip())

    async def _write(self, message: Dict[str, Any]) -> None:
        if not self.is_running:
            raise TransportError(f"{self.description} is not running")
        try:
            self._process.stdin.write((json.dumps(message) + "\n").encode())
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError, OSError) as exc:
            raise TransportError(f"MCP transport error: {exc}")

    async def _read_message(self) -> Optional[Dict[str, Any]]:
        try:
            raw = await self._process.stdout.readline()
        except (ValueError, OSError) as exc:
            raise TransportError(f"MCP transport error: {exc}")
        if not raw:
            raise TransportError("MCP server closed connection (empty response)")
        try:
            message = json.loads(raw.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.debug("Ignoring non JSON-RPC output from %s: %r", self.command, raw[:200])
            return None
        return message if isinstance(message, dict) else None

    async def _answer_server_request(self, message: Dict[str, Any]) -> None:
        if message.get("method") == "ping":
            await self._write({"jsonrpc": "2.0", "id": message["id"], "result": {}})
        else:
            await self._write({
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": -32601, "message": f"Method not supported: {message.get('method')}"},
            })

    async def _request(self, message: Dict[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            await self._write(message)
            while True:
                if self._process is None:
                    raise TransportError(f"{self.description} is not running")
                response = await self._read_message()
                if response is None:
                    continue
                if "method" in response:
                    if "id" in response:
                        await self._answer_server_request(response)
                    else:
                        logger.debug("Notification from %s: %s", self.command, response["method"])
                    continue
                if response.get("id") == message["id"]:
                    return response
                logger.debug("Skipping stale response id=%s from %s", response.get("id"), self.command)

    async def _notify(self, message: Dict[str, Any]) -> None:
        async with self._lock:
            await self._write(message)


class SseTransport(MCPTransport):
    """
    Legacy MCP HTTP+SSE transport.

    A long-lived GET stream delivers an ``endpoint`` event and then every
    response; requests are POSTed to that endpoint and matched to responses
    by id.
    """

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(timeout=timeout)
        self.url = url
        self.headers = headers or {}
        self._client = client
        self._owns_client = client is None
        self._endpoint: Optional[str] = None
        self._endpoint_ready: Optional[asyncio.Future] = None
        self._pending: Dict[Any, asyncio.Future] = {}
        self._reader_task: Optional[asyncio.Task] = None

    @property
    def description(self) -> str:
        return f"SSE server '{self.url}'"

    async def start(self) -> None:
        if self.is_running:
            return
        if self._client is None:
            self._client = httpx.AsyncClient(headers=self.headers, timeout=httpx.Timeout(30.0, read=None))
        self._endpoint_ready = asyncio.get_running_loop().create_future()
        self._reader_task = asyncio.ensure_future(self._read_stream())
        try:
            self._endpoint = await self._endpoint_ready
        except (Exception, asyncio.CancelledError):
            await self.stop()
            raise
        logger.debug("SSE endpoint for %s is %s", self.url, self._endpoint)

    async def stop(self) -> None:
        if self._reader_task is not None:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
            self._reader_task = None
        self._fail_pending(TransportError(f"{self.description} was closed"))
        self._endpoint = None
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @property
    def is_running(self) -> bool:
        return (
            self._endpoint is not None
            and self._reader_task is not None
            and not self._reader_task.done()
        )

    async def _read_stream(self) -> None:
        try:
            async with self._client.stream(
                "GET", self.url, headers={"Accept": "text/event-stream"}
            ) as response:
                response.raise_for_status()
                async for event, data in iter_sse_events(response.aiter_lines()):
                    if event == "endpoint":
                        if self._endpoint_ready is not None and not self._endpoint_ready.done():
                            self._endpoint_ready.set_result(urljoin(self.url, data.strip()))
                    elif event == "message":
                        self._dispatch(data)
            error = TransportError(f"{self.description} closed the event stream")
        except httpx.HTTPError as exc:
            error = TransportError(f"SSE stream failed: {exc}")
        self._fail_pending(error)

    def _dispatch(self, data: str) -> None:
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Ignoring malformed SSE message from %s: %r", self.url, data[:200])
            return
        if not isinstance(message, dict) or "method" in message:
            return
        future = self._pending.pop(message.get("id"), None)
        if future is not None and not future.done():
            future.set_result(message)

    def _fail_pending(self, error: Exception) -> None:
        if self._endpoint_ready is not None and not self._endpoint_ready.done():
            self._endpoint_ready.set_exception(error)
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def _post(self, message: Dict[str, Any]) -> None:
        try:
            response = await self._client.post(self._endpoint, json=message)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise TransportError(f"MCP transport error: {exc}")

    async def _request(self, message: Dict[str, Any]) -> Dict[str, Any]:
        future = asyncio.get_running_loop().create_future()
        self._pending[message["id"]] = future
        try:
            await self._post(message)
            return await future
        finally:
            self._pending.pop(message["id"], None)

    async def _notify(self, message: Dict[str, Any]) -> None:
        await self._post(message)


class HttpTransport(MCPTransport):
    """
    MCP streamable HTTP transport.

    Each request is a POST; the server answers with plain JSON or with an
    event stream carrying the response. The ``Mcp-Session-Id`` header is
    echoed back once the server assigns one.
    """

    SESSION_HEADER = "Mcp-Session-Id"

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(timeout=timeout)
        self.url = url
        self.headers = headers or {}
        self._client = client
        self._owns_client = client is None
        self._session_id: Optional[str] = None
        self._open = False

    @property
    def description(self) -> str:
        return f"HTTP server '{self.url}'"

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(headers=self.headers, timeout=httpx.Timeout(30.0, read=None))
        self._open = True

    async def stop(self) -> None:
        if not self._open:
            return
        self._open = False
        if self._session_id and self._client is not None:
            try:
                await self._client.delete(self.url, headers={self.SESSION_HEADER: self._session_id})
            except httpx.HTTPError as exc:
                logger.debug("Session teardown for %s failed: %s", self.url, exc)
        self._session_id = None
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @property
    def is_running(self) -> bool:
        return self._open

    def _request_headers(self) -> Dict[str, str]:
        headers = {**self.headers, "Accept": "application/json, text/event-stream"}
        if self._session_id:
            headers[self.SESSION_HEADER] = self._session_id
        return headers

    async def _request(self, message: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with self._client.stream(
                "POST", self.url, json=message, headers=self._request_headers()
            ) as response:
                response.raise_for_status()
                self._session_id = response.headers.get(self.SESSION_HEADER, self._session_id)
                content_type = response.headers.get("content-type", "")
                if content_type.startswith("text/event-stream"):
                    async for _event, data in iter_sse_events(response.aiter_lines()):
                        try:
                            reply = json.loads(data)
                        except json.JSONDecodeError:
                            continue
                        if isinstance(reply, dict) and reply.get("id") == message["id"] and "method" not in reply:
                            return reply
                    raise TransportError(f"{self.description} ended the stream without a response")
                body = await response.aread()
        except httpx.HTTPError as exc:
            raise TransportError(f"MCP transport error: {exc}")

        try:
            reply = json.loads(body)
        except json.JSONDecodeError:
            raise TransportError(f"{self.description} returned invalid JSON")
        if isinstance(reply, list):
            reply = next((r for r in reply if r.get("id") == message["id"]), {})
        return reply

    async def _notify(self, message: Dict[str, Any]) -> None:
        try:
            response = await self._client.post(self.url, json=message, headers=self._request_headers())
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise TransportError(f"MCP transport error: {exc}")


def create_transport(config) -> MCPTransport:
    """Build the transport variant described by a server config."""
    if isinstance(config, StdioServerConfig):
        return StdioTransport(command=config.command, args=config.args, env=config.env)
    if isinstance(config, SseServerConfig):
        return SseTransport(url=config.url, headers=config.headers)
    if isinstance(config, HttpServerConfig):
        return HttpTransport(url=config.url, headers=config.headers)
    raise ValueError(f"Unsupported server config: {type(config).__name__}")

"""Tests for the MCP transports."""

import json
import sys
from pathlib import Path

import httpx
import pytest

from mcpilot.client.transport import (
    HttpTransport,
    SseTransport,
    StdioTransport,
    create_transport,
    iter_sse_events,
)
from mcpilot.errors import TransportError
from mcpilot.validation.config import HttpServerConfig, SseServerConfig, StdioServerConfig

FAKE_SERVER = str(Path(__file__).parent / "fake_mcp_server.py")


async def _lines(items):
    for item in items:
        yield item


async def _collect(lines):
    return [event async for event in iter_sse_events(_lines(lines))]


class TestSseParsing:
    """Tests for iter_sse_events."""

    @pytest.mark.asyncio
    async def test_events_and_defaults(self):
        """Named events keep their name; unnamed ones default to 'message'."""
        events = await _collect(["event: endpoint", "data: /messages?s=1", "", "data: {}", ""])
        assert events == [("endpoint", "/messages?s=1"), ("message", "{}")]

    @pytest.mark.asyncio
    async def test_multiline_data_and_comments(self):
        """Data lines are joined; comment lines are skipped."""
        events = await _collect([": keepalive", "data: a", "data: b", ""])
        assert events == [("message", "a\nb")]

    @pytest.mark.asyncio
    async def test_trailing_event_without_blank_line(self):
        """An event at end of stream is still delivered."""
        events = await _collect(["event: message", "data: tail"])
        assert events == [("message", "tail")]


class TestStdioTransport:
    """End-to-end tests against a real subprocess."""

    @pytest.mark.asyncio
    async def test_handshake_list_and_call(self):
        """The transport initializes, lists tools and calls one."""
        transport = StdioTransport(sys.executable, [FAKE_SERVER], timeout=10)
        await transport.start()
        try:
            info = await transport.initialize()
            assert info["serverInfo"]["name"] == "fake-stdio"
            assert transport.supports("tools")
            assert not transport.supports("prompts")

            tools = await transport.list_tools()
            assert [tool["name"] for tool in tools] == ["echo", "ping_me"]

            result = await transport.call_tool("echo", {"text": "hello"})
            assert result["content"][0]["text"] == "hello"
        finally:
            await transport.stop()

        assert not transport.is_running

    @pytest.mark.asyncio
    async def test_answers_server_ping(self):
        """Requests from the server are answered while waiting for a response."""
        transport = StdioTransport(sys.executable, [FAKE_SERVER], timeout=10)
        await transport.start()
        try:
            await transport.initialize()
            result = await transport.call_tool("ping_me", {})
            assert result["content"][0]["text"] == "pong received"
        finally:
            await transport.stop()

    @pytest.mark.asyncio
    async def test_error_response(self):
        """JSON-RPC errors become TransportError."""
        transport = StdioTransport(sys.executable, [FAKE_SERVER], timeout=10)
        await transport.start()
        try:
            await transport.initialize()
            with pytest.raises(TransportError, match="unknown"):
                await transport.send("resources/list")
        finally:
            await transport.stop()

    @pytest.mark.asyncio
    async def test_missing_command(self):
        """A command that does not exist fails on start."""
        transport = StdioTransport("definitely-not-a-real-mcp-server-binary")
        with pytest.raises(TransportError, match="not found"):
            await transport.start()

    @pytest.mark.asyncio
    async def test_send_requires_running(self):
        """Requests before start are rejected."""
        transport = StdioTransport(sys.executable, [FAKE_SERVER])
        with pytest.raises(TransportError, match="not running"):
            await transport.list_tools()


class TestHttpTransport:
    """Tests for the streamable HTTP transport using httpx's mock transport."""

    def _client(self, seen):
        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.method == "DELETE":
                return httpx.Response(200)
            body = json.loads(request.content)
            if "id" not in body:
                return httpx.Response(202)
            if body["method"] == "initialize":
                return httpx.Response(
                    200,
                    json={
                        "jsonrpc": "2.0",
                        "id": body["id"],
                        "result": {"capabilities": {"tools": {}}, "serverInfo": {"name": "mock"}},
                    },
                    headers={"Mcp-Session-Id": "sess-1"},
                )
            if body["method"] == "tools/list":
                reply = {"jsonrpc": "2.0", "id": body["id"], "result": {"tools": [{"name": "search"}]}}
                stream = "event: message\ndata: " + json.dumps(reply) + "\n\n"
                return httpx.Response(200, text=stream, headers={"content-type": "text/event-stream"})
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32601, "message": "nope"}}
            )

        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_json_and_stream_replies(self):
        """Plain JSON and event-stream replies are both understood."""
        seen = []
        client = self._client(seen)
        transport = HttpTransport("http://mcp.test/mcp", headers={"Authorization": "Bearer t"}, client=client)
        await transport.start()

        await transport.initialize()
        tools = await transport.list_tools()

        assert tools == [{"name": "search"}]
        assert seen[0].headers["authorization"] == "Bearer t"
        # Session id assigned by the server is echoed on later requests.
        assert seen[-1].headers["mcp-session-id"] == "sess-1"

        await transport.stop()
        assert seen[-1].method == "DELETE"
        assert not transport.is_running
        await client.aclose()

    @pytest.mark.asyncio
    async def test_error_reply(self):
        """JSON-RPC errors in HTTP replies raise TransportError."""
        client = self._client([])
        transport = HttpTransport("http://mcp.test/mcp", client=client)
        await transport.start()

        with pytest.raises(TransportError, match="nope"):
            await transport.send("prompts/list")

        await transport.stop()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_http_status_error(self):
        """HTTP failures raise TransportError."""
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        transport = HttpTransport("http://mcp.test/mcp", client=client)
        await transport.start()

        with pytest.raises(TransportError):
            await transport.send("tools/list")

        await transport.stop()
        await client.aclose()


class TestCreateTransport:
    """Tests for create_transport."""

    def test_variants(self):
        """Each config type maps to its transport."""
        assert isinstance(create_transport(StdioServerConfig(command="mcp-fs")), StdioTransport)
        assert isinstance(create_transport(SseServerConfig(url="http://x/sse")), SseTransport)
        assert isinstance(create_transport(HttpServerConfig(url="http://x/mcp")), HttpTransport)

    def test_unknown_config(self):
        """Anything else is rejected."""
        with pytest.raises(ValueError):
            create_transport({"type": "carrier-pigeon"})

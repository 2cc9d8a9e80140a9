"""Shared fixtures: in-memory MCP servers and small builders."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from mcpilot.client.transport import MCPTransport
from mcpilot.context.compression import OldestRemovalStrategy
from mcpilot.context.formatters import OpenAIMessageFormatter
from mcpilot.context.manager import ContextManager
from mcpilot.context.prompt import StaticContributor, SystemPromptManager
from mcpilot.context.tokenizer import DefaultTokenizer
from mcpilot.errors import TransportError
from mcpilot.validation.config import StdioServerConfig


class FakeTransport(MCPTransport):
    """Answers MCP requests from in-memory tool, prompt and resource lists."""

    def __init__(
        self,
        tools: List[str] = (),
        prompts: List[str] = (),
        resources: List[str] = (),
        fail_start: Optional[str] = None,
        start_delay: float = 0.0,
        call_delay: float = 0.0,
        call_error: Optional[str] = None,
        raw_tools: Optional[List[Any]] = None,
        list_delay: float = 0.0,
    ):
        super().__init__()
        self.tools = list(tools)
        self.prompts = list(prompts)
        self.resources = list(resources)
        self.fail_start = fail_start
        self.start_delay = start_delay
        self.call_delay = call_delay
        self.call_error = call_error
        self.raw_tools = raw_tools
        self.list_delay = list_delay
        self.calls: List[Dict[str, Any]] = []
        self.started = 0
        self.stopped = 0
        self._running = False

    async def start(self) -> None:
        self.started += 1
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.fail_start:
            raise TransportError(self.fail_start)
        self._running = True

    async def stop(self) -> None:
        self.stopped += 1
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def _notify(self, message: Dict[str, Any]) -> None:
        pass

    async def _request(self, message: Dict[str, Any]) -> Dict[str, Any]:
        method = message["method"]
        params = message.get("params") or {}
        reply = {"jsonrpc": "2.0", "id": message["id"]}

        if method == "initialize":
            capabilities: Dict[str, Any] = {"tools": {}}
            if self.prompts:
                capabilities["prompts"] = {}
            if self.resources:
                capabilities["resources"] = {}
            reply["result"] = {"serverInfo": {"name": "fake", "version": "0.1"}, "capabilities": capabilities}
        elif method == "tools/list" and self.raw_tools is not None:
            reply["result"] = {"tools": self.raw_tools}
        elif method == "tools/list":
            if self.list_delay:
                await asyncio.sleep(self.list_delay)
            reply["result"] = {
                "tools": [
                    {
                        "name": name,
                        "description": f"{name} tool",
                        "inputSchema": {"type": "object", "properties": {"path": {"type": "string"}}},
                    }
                    for name in self.tools
                ]
            }
        elif method == "prompts/list":
            reply["result"] = {"prompts": [{"name": name, "description": f"{name} prompt"} for name in self.prompts]}
        elif method == "resources/list":
            reply["result"] = {"resources": [{"uri": uri, "name": uri.rsplit("/", 1)[-1]} for uri in self.resources]}
        elif method == "tools/call":
            self.calls.append(params)
            if self.call_delay:
                await asyncio.sleep(self.call_delay)
            if self.call_error:
                reply["error"] = {"code": -32000, "message": self.call_error}
            else:
                reply["result"] = {"content": [{"type": "text", "text": f"{params['name']} ok"}]}
        elif method == "prompts/get":
            reply["result"] = {"messages": [{"role": "user", "content": {"type": "text", "text": params["name"]}}]}
        elif method == "resources/read":
            reply["result"] = {"contents": [{"uri": params["uri"], "text": "resource body"}]}
        else:
            reply["error"] = {"code": -32601, "message": f"unknown method {method}"}
        return reply


class FakeServers:
    """Transport factory keyed by the config's ``command``."""

    def __init__(self, **transports: FakeTransport):
        self.transports = transports

    def __call__(self, config) -> FakeTransport:
        return self.transports[config.command]


def server(command: str, mode: str = "lenient", timeout: float = 1.0) -> StdioServerConfig:
    return StdioServerConfig(command=command, connection_mode=mode, timeout=timeout)


def make_context(
    max_input_tokens: int = 100_000,
    strategy=None,
    system_prompt: str = "You are helpful.",
    **kwargs,
) -> ContextManager:
    prompt = SystemPromptManager([StaticContributor("base", system_prompt)] if system_prompt else [])
    return ContextManager(
        formatter=OpenAIMessageFormatter(),
        prompt_manager=prompt,
        max_input_tokens=max_input_tokens,
        tokenizer=DefaultTokenizer(),
        compression_strategy=strategy or OldestRemovalStrategy(),
        **kwargs,
    )


@pytest.fixture
def fake_servers():
    return FakeServers(
        fs=FakeTransport(tools=["read_file", "write_file"], resources=["file:///readme.md"]),
        docs=FakeTransport(tools=["search_docs"], prompts=["summarize"]),
    )

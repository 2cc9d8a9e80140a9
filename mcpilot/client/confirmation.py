"""
Tool confirmation gate.

The ClientManager consults a provider exactly once per invocation attempt,
before any side effect. Providers may suspend (await user input) before
answering.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, Optional, Set, Union

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt

from mcpilot.client.schema import ToolInvocation

logger = logging.getLogger(__name__)


class ToolConfirmationProvider(ABC):
    """Decides whether a tool invocation may proceed."""

    @abstractmethod
    async def request_confirmation(self, invocation: ToolInvocation) -> bool:
        """Return True to allow the call, False to deny it."""


class NoOpConfirmationProvider(ToolConfirmationProvider):
    """Approves everything. The default."""

    async def request_confirmation(self, invocation: ToolInvocation) -> bool:
        return True


ConfirmationCallback = Callable[[ToolInvocation], Union[bool, Awaitable[bool]]]


class CallbackConfirmationProvider(ToolConfirmationProvider):
    """
    Delegates the decision to a callable, sync or async.

    Event-driven front-ends use this to forward the request to a user and
    await the answer. A ``timeout`` denies the call when no answer arrives.
    """

    def __init__(self, callback: ConfirmationCallback, timeout: Optional[float] = None):
        self._callback = callback
        self._timeout = timeout

    async def request_confirmation(self, invocation: ToolInvocation) -> bool:
        outcome = self._callback(invocation)
        if inspect.isawaitable(outcome):
            try:
                outcome = await asyncio.wait_for(outcome, self._timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Confirmation for tool '%s' timed out after %ss; denying",
                    invocation.tool_name, self._timeout,
                )
                return False
        return bool(outcome)


class ConsoleConfirmationProvider(ToolConfirmationProvider):
    """
    Asks on the terminal.

    Answers: ``y`` approve once, ``n`` deny, ``a`` approve this tool for the
    rest of the session. The prompt runs in a worker thread so other
    connections and sessions keep going while the user decides.
    """

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()
        self._always_allowed: Dict[Optional[str], Set[str]] = {}

    async def request_confirmation(self, invocation: ToolInvocation) -> bool:
        allowed = self._always_allowed.setdefault(invocation.session_id, set())
        if invocation.tool_name in allowed:
            return True

        answer = await asyncio.to_thread(self._ask, invocation)
        if answer == "a":
            allowed.add(invocation.tool_name)
            return True
        return answer == "y"

    def _ask(self, invocation: ToolInvocation) -> str:
        args = json.dumps(invocation.arguments, indent=2, default=str)
        title = f"Tool call: {invocation.tool_name}"
        if invocation.server:
            title += f" ({invocation.server})"
        self.console.print(Panel(args, title=title, border_style="yellow"))
        return Prompt.ask(
            "[bold]Allow this call?[/bold] [y]es / [n]o / [a]lways",
            choices=["y", "n", "a"],
            default="n",
            console=self.console,
        )


def create_confirmation_provider(mode: str = "auto_approve") -> ToolConfirmationProvider:
    """Build the confirmation provider named by ``tool_confirmation.mode``."""
    if mode == "auto_approve":
        return NoOpConfirmationProvider()
    if mode == "console":
        return ConsoleConfirmationProvider()
    raise ValueError(f"Unknown tool confirmation mode: {mode}")

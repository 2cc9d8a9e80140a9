"""
Chat session - drives one conversation turn by turn.

Each turn: append the user message, offer every available tool to the
model, run the tool calls it asks for, feed the results back, and repeat
until the model answers without tool calls.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from mcpilot.client.manager import ClientManager
from mcpilot.context.manager import ContextManager
from mcpilot.context.messages import FileData, ImageData, ToolCall
from mcpilot.errors import ToolError
from mcpilot.events import EventBus, EventType
from mcpilot.execution import ExecutionMode
from mcpilot.llm.clients import LLMClient

logger = logging.getLogger(__name__)

MAX_ITERATIONS_TEXT = "Stopped after reaching the maximum number of tool iterations."


class ChatSession:
    """
    One conversation: its own ContextManager and EventBus, sharing the
    agent's ClientManager.
    """

    def __init__(
        self,
        client_manager: ClientManager,
        context_manager: ContextManager,
        llm_client: LLMClient,
        event_bus: Optional[EventBus] = None,
        session_id: Optional[str] = None,
        mode: ExecutionMode = ExecutionMode.LIVE,
        max_iterations: int = 50,
    ):
        self.session_id = session_id or uuid.uuid4().hex
        self.client_manager = client_manager
        self.context = context_manager
        self.llm_client = llm_client
        self.event_bus = event_bus or context_manager.event_bus
        self.mode = mode
        self.max_iterations = max_iterations

    async def run(
        self,
        text: str,
        image: Optional[ImageData] = None,
        file: Optional[FileData] = None,
    ) -> str:
        """Process one user input and return the model's final answer."""
        await self.context.add_user_message(text, image=image, file=file)

        for iteration in range(1, self.max_iterations + 1):
            tools = self.client_manager.get_all_tools()
            self.event_bus.emit(EventType.THINKING, iteration=iteration)

            prepared = await self.context.get_formatted_messages_with_compression(
                {"client_manager": self.client_manager},
                {"provider": self.llm_client.provider_name, "model": self.llm_client.model},
            )
            try:
                response = await self.llm_client.generate(
                    prepared.formatted_messages, prepared.system_prompt, tools
                )
            except Exception as exc:
                logger.error("Model call failed in session %s: %s", self.session_id, exc)
                self.event_bus.emit(EventType.ERROR, error=exc)
                raise

            if response.input_tokens is not None:
                self.context.update_actual_token_count(response.input_tokens)

            if not response.tool_calls:
                answer = response.text or ""
                await self.context.add_assistant_message(answer)
                self.event_bus.emit(EventType.RESPONSE, content=answer, tokens=prepared.tokens_used)
                return answer

            await self.context.add_assistant_message(response.text, response.tool_calls)
            if response.text:
                self.event_bus.emit(EventType.RESPONSE_CHUNK, content=response.text)
            for call in response.tool_calls:
                await self._run_tool_call(call)

        logger.warning(
            "Session %s reached max_iterations (%d) without a final answer",
            self.session_id, self.max_iterations,
        )
        self.event_bus.emit(EventType.RESPONSE, content=MAX_ITERATIONS_TEXT, tokens=self.context.last_estimated_tokens)
        return MAX_ITERATIONS_TEXT

    async def _run_tool_call(self, call: ToolCall) -> None:
        self.event_bus.emit(EventType.TOOL_CALL_STARTED, call_id=call.id, tool=call.name, arguments=call.arguments)
        try:
            result = await self.client_manager.execute_tool(
                call.name, call.arguments, session_id=self.session_id, mode=self.mode
            )
            success = True
        except ToolError as exc:
            logger.info("Tool '%s' failed in session %s: %s", call.name, self.session_id, exc)
            result = exc.to_payload()
            success = False

        await self.context.add_tool_result(call.id, call.name, result)
        self.event_bus.emit(
            EventType.TOOL_CALL_FINISHED, call_id=call.id, tool=call.name, success=success, result=result
        )

    async def reset(self) -> None:
        await self.context.reset()

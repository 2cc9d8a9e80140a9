"""
mcpilot Agent - wires one shared ClientManager to any number of sessions.

Servers are connected once per agent; every session gets its own
ContextManager, EventBus and history store.
"""

import logging
import uuid
from typing import Callable, Dict, Optional

from mcpilot.agent.session import ChatSession
from mcpilot.client.confirmation import ToolConfirmationProvider, create_confirmation_provider
from mcpilot.client.manager import ClientManager, CollisionPolicy
from mcpilot.context.history import HistoryProvider, InMemoryHistoryProvider
from mcpilot.context.manager import create_context_manager
from mcpilot.events import EventBus
from mcpilot.execution import ExecutionMode
from mcpilot.llm.clients import LLMClient, LLMClientFactory
from mcpilot.validation.config import AgentConfig, LLMConfig

logger = logging.getLogger(__name__)

HistoryFactory = Callable[[str], HistoryProvider]
LLMClientBuilder = Callable[[LLMConfig], LLMClient]


class Agent:
    """
    Entry point for embedding the runtime.

    Example:
        >>> agent = await create_agent(Config.load().merged)
        >>> session = await agent.create_session()
        >>> answer = await session.run("What is in README.md?")
        >>> await agent.shutdown()
    """

    def __init__(
        self,
        config: AgentConfig,
        client_manager: Optional[ClientManager] = None,
        confirmation_provider: Optional[ToolConfirmationProvider] = None,
        llm_client_builder: LLMClientBuilder = LLMClientFactory.create,
        history_factory: Optional[HistoryFactory] = None,
    ):
        self.config = config
        self.event_bus = EventBus()
        self.client_manager = client_manager or ClientManager(
            confirmation_provider=confirmation_provider
            or create_confirmation_provider(config.tool_confirmation.mode),
            collision_policy=CollisionPolicy(config.collision_policy),
            tool_timeout=config.tool_timeout,
            event_bus=self.event_bus,
        )
        self._llm_config = config.llm
        self._llm_client_builder = llm_client_builder
        self._history_factory = history_factory or (lambda session_id: InMemoryHistoryProvider())
        self._sessions: Dict[str, ChatSession] = {}

    @property
    def mode(self) -> ExecutionMode:
        return ExecutionMode.DRY_RUN if self.config.dry_run else ExecutionMode.LIVE

    @property
    def llm_config(self) -> LLMConfig:
        return self._llm_config

    async def start(self) -> None:
        """Connect every configured server. Strict failures raise AggregateConnectError."""
        await self.client_manager.initialize_from_config(self.config.mcp_servers)
        failed = self.client_manager.get_failed_connections()
        logger.info(
            "Agent started: %d servers connected, %d failed",
            len(self.client_manager.get_clients()), len(failed),
        )

    async def shutdown(self) -> None:
        await self.client_manager.disconnect_all()
        self._sessions.clear()

    # ── Servers ───────────────────────────────────────────────────────────

    async def connect_server(self, name: str, server_config) -> None:
        await self.client_manager.connect_server(name, server_config)

    async def remove_server(self, name: str) -> None:
        await self.client_manager.remove_client(name)

    # ── Sessions ──────────────────────────────────────────────────────────

    async def create_session(self, session_id: Optional[str] = None) -> ChatSession:
        """Create (or return the existing) session, restoring persisted history."""
        session_id = session_id or uuid.uuid4().hex
        if session_id in self._sessions:
            return self._sessions[session_id]

        event_bus = EventBus(session_id)
        context = create_context_manager(
            self._llm_config,
            history_provider=self._history_factory(session_id),
            event_bus=event_bus,
            session_id=session_id,
        )
        await context.initialize()
        session = ChatSession(
            client_manager=self.client_manager,
            context_manager=context,
            llm_client=self._llm_client_builder(self._llm_config),
            event_bus=event_bus,
            session_id=session_id,
            mode=self.mode,
            max_iterations=self._llm_config.max_iterations,
        )
        self._sessions[session_id] = session
        logger.debug("Created session %s", session_id)
        return session

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        return self._sessions.get(session_id)

    async def end_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    async def reset_conversation(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"Unknown session: {session_id}")
        await session.reset()

    def switch_llm(self, llm_config: LLMConfig, session_id: Optional[str] = None) -> None:
        """
        Point one session (or all, and future ones) at another model.
        Conversation history is kept.
        """
        if session_id is not None and session_id not in self._sessions:
            raise KeyError(f"Unknown session: {session_id}")
        targets = [self._sessions[session_id]] if session_id else list(self._sessions.values())
        if session_id is None:
            self._llm_config = llm_config
        for session in targets:
            session.llm_client = self._llm_client_builder(llm_config)
            session.context.apply_llm_config(llm_config)
            session.max_iterations = llm_config.max_iterations
        logger.info("Switched %d session(s) to %s/%s", len(targets), llm_config.provider, llm_config.model)


async def create_agent(config: AgentConfig, **kwargs) -> Agent:
    """Build an Agent and connect its servers."""
    agent = Agent(config, **kwargs)
    await agent.start()
    return agent

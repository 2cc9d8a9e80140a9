"""
mcpilot - Agent runtime for MCP tool servers.

Connects a model driver to a changing set of MCP servers and keeps a
multi-turn conversation inside the model's input budget.

Architecture:
- client/: transports, connections, the ClientManager and its confirmation gate
- context/: message log, compression, tokenizers and provider formatters
- llm/: model drivers and the input token registry
- agent/: the driving loop and session wiring
"""

__version__ = "1.0.0"
__author__ = "mcpilot Team"
__license__ = "Apache-2.0"

from mcpilot.agent import Agent, ChatSession, create_agent
from mcpilot.client import ClientManager, CollisionPolicy
from mcpilot.context import ContextManager, create_context_manager
from mcpilot.events import EventBus, EventType
from mcpilot.execution import ExecutionMode
from mcpilot.logging_config import setup_logging
from mcpilot.validation import AgentConfig, Config

__all__ = [
    "Agent",
    "AgentConfig",
    "ChatSession",
    "ClientManager",
    "CollisionPolicy",
    "Config",
    "ContextManager",
    "EventBus",
    "EventType",
    "ExecutionMode",
    "create_agent",
    "create_context_manager",
    "setup_logging",
    "__version__",
]

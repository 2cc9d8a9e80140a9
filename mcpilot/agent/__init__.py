"""
mcpilot agent module.

The driving loop (``ChatSession``) and the ``Agent`` that shares one set of
server connections across sessions.
"""

from mcpilot.agent.agent import Agent, create_agent
from mcpilot.agent.session import ChatSession

__all__ = ["Agent", "ChatSession", "create_agent"]

"""
System prompt assembly from prioritized contributors.

A contributor yields one section of text. Static contributors hold fixed
text; dynamic ones compute it per request from the collaborators passed in
(for example the ClientManager, to list the available tools).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from mcpilot.validation.config import ContributorConfig, SystemPromptConfig

logger = logging.getLogger(__name__)

PromptCollaborators = Mapping[str, Any]
DynamicSource = Callable[[PromptCollaborators], Union[str, Awaitable[str]]]


class SystemPromptContributor(ABC):
    def __init__(self, id: str, priority: int = 0):
        self.id = id
        self.priority = priority

    @abstractmethod
    async def get_content(self, collaborators: PromptCollaborators) -> str:
        pass


class StaticContributor(SystemPromptContributor):
    def __init__(self, id: str, content: str, priority: int = 0):
        super().__init__(id, priority)
        self.content = content

    async def get_content(self, collaborators: PromptCollaborators) -> str:
        return self.content


class DynamicContributor(SystemPromptContributor):
    def __init__(self, id: str, source: DynamicSource, priority: int = 0):
        super().__init__(id, priority)
        self.source = source

    async def get_content(self, collaborators: PromptCollaborators) -> str:
        outcome = self.source(collaborators)
        if hasattr(outcome, "__await__"):
            outcome = await outcome
        return outcome or ""


# ── Built-in dynamic sources ──────────────────────────────────────────────


def date_time_source(collaborators: PromptCollaborators) -> str:
    return f"Current date and time: {datetime.now().astimezone().isoformat(timespec='seconds')}"


def tool_list_source(collaborators: PromptCollaborators) -> str:
    manager = collaborators.get("client_manager")
    if manager is None:
        return ""
    tools = manager.get_all_tools()
    if not tools:
        return "No tools are available."
    lines = ["Available tools:"]
    for name, tool in sorted(tools.items()):
        lines.append(f"- {name}: {tool.description}" if tool.description else f"- {name}")
    return "\n".join(lines)


def resource_list_source(collaborators: PromptCollaborators) -> str:
    manager = collaborators.get("client_manager")
    if manager is None:
        return ""
    uris = manager.list_all_resources()
    if not uris:
        return ""
    return "Available resources:\n" + "\n".join(f"- {uri}" for uri in sorted(uris))


DYNAMIC_SOURCES: Dict[str, DynamicSource] = {
    "date_time": date_time_source,
    "tool_list": tool_list_source,
    "resource_list": resource_list_source,
}


class SystemPromptManager:
    """
    Builds the system prompt by joining contributor output in ascending
    priority order. Empty sections are skipped.
    """

    def __init__(self, contributors: Optional[List[SystemPromptContributor]] = None):
        self._contributors = sorted(contributors or [], key=lambda c: c.priority)

    @classmethod
    def from_config(cls, config: Union[str, SystemPromptConfig, None]) -> "SystemPromptManager":
        if config is None or isinstance(config, str):
            text = config or ""
            return cls([StaticContributor("default", text)] if text else [])

        contributors: List[SystemPromptContributor] = []
        for item in config.contributors:
            if not item.enabled:
                continue
            contributors.append(cls._build_contributor(item))
        return cls(contributors)

    @staticmethod
    def _build_contributor(item: ContributorConfig) -> SystemPromptContributor:
        if item.type == "static":
            return StaticContributor(item.id, item.content or "", item.priority)
        source = DYNAMIC_SOURCES.get(item.source or "")
        if source is None:
            raise ValueError(f"Unknown dynamic prompt source '{item.source}' for contributor '{item.id}'")
        return DynamicContributor(item.id, source, item.priority)

    @property
    def contributors(self) -> List[SystemPromptContributor]:
        return list(self._contributors)

    def add_contributor(self, contributor: SystemPromptContributor) -> None:
        self._contributors.append(contributor)
        self._contributors.sort(key=lambda c: c.priority)

    def remove_contributor(self, id: str) -> None:
        self._contributors = [c for c in self._contributors if c.id != id]

    async def build(self, collaborators: Optional[PromptCollaborators] = None) -> str:
        collaborators = collaborators or {}
        sections = []
        for contributor in self._contributors:
            content = await contributor.get_content(collaborators)
            if content:
                sections.append(content)
        return "\n\n".join(sections)

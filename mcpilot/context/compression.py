"""
Compression strategies - shrink the history until it fits the token budget.

Strategies never touch the caller's list: they work on a copy and hand back
a ``CompressionResult``. Removal happens in units so tool calls and their
results always leave together.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Sequence

from mcpilot.context.messages import InternalMessage
from mcpilot.context.tokenizer import Tokenizer, count_message_tokens
from mcpilot.errors import CompressionConfigError, ContextErrorCode

logger = logging.getLogger(__name__)


@dataclass
class CompressionResult:
    messages: List[InternalMessage]
    tokens_before: int
    tokens_after: int
    removed_count: int = 0
    budget_satisfied: bool = True


@dataclass
class _Unit:
    """Contiguous messages that must be kept or removed together."""

    indices: List[int] = field(default_factory=list)
    tokens: int = 0
    protected: bool = False


def split_units(history: Sequence[InternalMessage]) -> List[List[int]]:
    """Group message indices: an assistant message with tool calls owns the tool results after it."""
    units: List[List[int]] = []
    for i, message in enumerate(history):
        if message.role == "tool" and units and history[units[-1][0]].has_tool_calls:
            units[-1].append(i)
        else:
            units.append([i])
    return units


class CompressionStrategy(ABC):
    """
    Base for unit-removal strategies.

    Args:
        min_messages: never shrink the history below this many messages.
        prune: when True the ContextManager replaces its log with the
            compressed result; otherwise only the outgoing request shrinks.
    """

    name = ""

    def __init__(self, min_messages: int = 4, prune: bool = False):
        if min_messages < 0:
            raise CompressionConfigError(
                f"min_messages must be >= 0, got {min_messages}", ContextErrorCode.MIN_MESSAGES_NEGATIVE
            )
        self.min_messages = min_messages
        self.prune = prune

    @staticmethod
    def _check_preserve(**values: int) -> None:
        for key, value in values.items():
            if value < 0:
                raise CompressionConfigError(
                    f"{key} must be >= 0, got {value}", ContextErrorCode.PRESERVE_VALUES_NEGATIVE
                )

    @abstractmethod
    def _protected_indices(self, history: Sequence[InternalMessage]) -> set:
        """Indices of messages that may not be removed."""

    def compress(
        self,
        history: Sequence[InternalMessage],
        tokenizer: Tokenizer,
        budget: int,
        system_prompt: str = "",
    ) -> CompressionResult:
        costs = [count_message_tokens(tokenizer, m) for m in history]
        prompt_tokens = tokenizer.count_tokens(system_prompt) if system_prompt else 0
        before = prompt_tokens + sum(costs)
        if before <= budget:
            return CompressionResult(list(history), before, before)

        protected = self._protected_indices(history)
        last_user = max((i for i, m in enumerate(history) if m.role == "user"), default=None)
        if last_user is not None:
            protected.add(last_user)

        units = []
        for indices in split_units(history):
            units.append(
                _Unit(
                    indices=indices,
                    tokens=sum(costs[i] for i in indices),
                    protected=any(i in protected for i in indices),
                )
            )

        total = before
        remaining = len(history)
        removed = set()
        for unit in units:
            if total <= budget:
                break
            if unit.protected:
                continue
            if remaining - len(unit.indices) < self.min_messages:
                break
            removed.update(unit.indices)
            total -= unit.tokens
            remaining -= len(unit.indices)

        kept = [m for i, m in enumerate(history) if i not in removed]
        satisfied = total <= budget
        logger.debug(
            "%s compression: %d -> %d tokens, removed %d messages (budget %d)",
            self.name, before, total, len(removed), budget,
        )
        return CompressionResult(
            messages=kept,
            tokens_before=before,
            tokens_after=total,
            removed_count=len(removed),
            budget_satisfied=satisfied,
        )


class OldestRemovalStrategy(CompressionStrategy):
    """Drops the oldest units first, keeping the last ``preserve_last_n`` messages."""

    name = "oldest"

    def __init__(self, preserve_last_n: int = 5, min_messages: int = 4, prune: bool = False):
        self._check_preserve(preserve_last_n=preserve_last_n)
        super().__init__(min_messages=min_messages, prune=prune)
        self.preserve_last_n = preserve_last_n

    def _protected_indices(self, history: Sequence[InternalMessage]) -> set:
        count = len(history)
        return set(range(max(0, count - self.preserve_last_n), count))


class MiddleRemovalStrategy(CompressionStrategy):
    """
    Keeps the opening ``preserve_start`` messages (usually the task statement)
    and the last ``preserve_end``, dropping the oldest units in between.
    """

    name = "middle"

    def __init__(
        self,
        preserve_start: int = 4,
        preserve_end: int = 5,
        min_messages: int = 4,
        prune: bool = False,
    ):
        self._check_preserve(preserve_start=preserve_start, preserve_end=preserve_end)
        super().__init__(min_messages=min_messages, prune=prune)
        self.preserve_start = preserve_start
        self.preserve_end = preserve_end

    def _protected_indices(self, history: Sequence[InternalMessage]) -> set:
        count = len(history)
        protected = set(range(min(self.preserve_start, count)))
        protected.update(range(max(0, count - self.preserve_end), count))
        return protected


def create_compression_strategy(config) -> CompressionStrategy:
    """Build a strategy from a ``CompressionConfig``."""
    if config.strategy == "middle":
        return MiddleRemovalStrategy(
            preserve_start=config.preserve_start,
            preserve_end=config.preserve_end,
            min_messages=config.min_messages,
            prune=config.prune,
        )
    return OldestRemovalStrategy(
        preserve_last_n=config.preserve_end,
        min_messages=config.min_messages,
        prune=config.prune,
    )

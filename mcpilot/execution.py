"""Execution mode threaded through tool calls (replaces any global dry-run switch)."""

from enum import Enum


class ExecutionMode(str, Enum):
    """How a tool invocation is carried out."""

    LIVE = "live"
    DRY_RUN = "dry_run"

    @property
    def is_dry_run(self) -> bool:
        return self is ExecutionMode.DRY_RUN

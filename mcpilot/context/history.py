"""
History providers - where a session's message log is persisted.

Only the contract and two simple stores live here: memory and one YAML file
per session.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from mcpilot.context.messages import InternalMessage


class HistoryProvider(ABC):
    @abstractmethod
    async def get_history(self) -> List[InternalMessage]:
        pass

    @abstractmethod
    async def save_message(self, message: InternalMessage) -> None:
        pass

    async def replace_history(self, messages: List[InternalMessage]) -> None:
        """Overwrite the stored log (used after pruning compression)."""
        await self.clear()
        for message in messages:
            await self.save_message(message)

    @abstractmethod
    async def clear(self) -> None:
        pass


class InMemoryHistoryProvider(HistoryProvider):
    def __init__(self) -> None:
        self._messages: List[InternalMessage] = []

    async def get_history(self) -> List[InternalMessage]:
        return list(self._messages)

    async def save_message(self, message: InternalMessage) -> None:
        self._messages.append(message)

    async def replace_history(self, messages: List[InternalMessage]) -> None:
        self._messages = list(messages)

    async def clear(self) -> None:
        self._messages.clear()


class FileHistoryProvider(HistoryProvider):
    """
    Stores one session's messages in ``<history_dir>/<session_id>.yaml``.

    The whole file is rewritten on each save; file I/O runs in a worker
    thread.

    Example:
        >>> provider = FileHistoryProvider("abc123")
        >>> await provider.save_message(InternalMessage(role="user", content="hi"))
        >>> await provider.get_history()
    """

    def __init__(self, session_id: str, history_dir: Optional[Path] = None):
        if history_dir:
            self.history_dir = Path(history_dir)
        else:
            self.history_dir = Path.cwd() / ".mcpilot" / "history"
        self.history_dir.mkdir(parents=True, exist_ok=True)
        self.path = self.history_dir / f"{session_id}.yaml"
        self._lock = asyncio.Lock()

    def _read(self) -> List[Dict]:
        if not self.path.exists():
            return []
        with open(self.path) as f:
            data = yaml.safe_load(f)
        return data or []

    def _write(self, records: List[Dict]) -> None:
        with open(self.path, "w") as f:
            yaml.dump(records, f, default_flow_style=False, sort_keys=False)

    async def get_history(self) -> List[InternalMessage]:
        records = await asyncio.to_thread(self._read)
        return [InternalMessage(**record) for record in records]

    async def save_message(self, message: InternalMessage) -> None:
        async with self._lock:
            records = await asyncio.to_thread(self._read)
            records.append(message.model_dump(mode="json", exclude_none=True))
            await asyncio.to_thread(self._write, records)

    async def replace_history(self, messages: List[InternalMessage]) -> None:
        async with self._lock:
            records = [m.model_dump(mode="json", exclude_none=True) for m in messages]
            await asyncio.to_thread(self._write, records)

    async def clear(self) -> None:
        async with self._lock:
            if self.path.exists():
                self.path.unlink()

"""
mcpilot context module.

The per-session message log, its token budget, and the provider formatters
and tokenizers that shape it into requests.
"""

from mcpilot.context.compression import (
    CompressionResult,
    CompressionStrategy,
    MiddleRemovalStrategy,
    OldestRemovalStrategy,
)
from mcpilot.context.formatters import MessageFormatter, create_formatter
from mcpilot.context.history import FileHistoryProvider, HistoryProvider, InMemoryHistoryProvider
from mcpilot.context.manager import ContextManager, PreparedContext, create_context_manager
from mcpilot.context.messages import FileData, ImageData, InternalMessage, ToolCall
from mcpilot.context.prompt import DynamicContributor, StaticContributor, SystemPromptManager
from mcpilot.context.tokenizer import Tokenizer, create_tokenizer

__all__ = [
    "CompressionResult",
    "CompressionStrategy",
    "ContextManager",
    "DynamicContributor",
    "FileData",
    "FileHistoryProvider",
    "HistoryProvider",
    "ImageData",
    "InMemoryHistoryProvider",
    "InternalMessage",
    "MessageFormatter",
    "MiddleRemovalStrategy",
    "OldestRemovalStrategy",
    "PreparedContext",
    "StaticContributor",
    "SystemPromptManager",
    "ToolCall",
    "Tokenizer",
    "create_context_manager",
    "create_formatter",
    "create_tokenizer",
]

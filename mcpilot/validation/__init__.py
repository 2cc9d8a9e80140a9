"""
mcpilot validation module.

This module provides configuration validation and schema enforcement.
"""

from mcpilot.validation.config import (
    AgentConfig,
    Config,
    ConfigError,
    HttpServerConfig,
    LLMConfig,
    SseServerConfig,
    StdioServerConfig,
)

__all__ = [
    "AgentConfig",
    "Config",
    "ConfigError",
    "HttpServerConfig",
    "LLMConfig",
    "SseServerConfig",
    "StdioServerConfig",
]

"""
mcpilot Configuration - Configuration loading and validation.

This module provides the Config class for managing agent configuration
from both global (~/.mcpilot/agent.yml) and local (agent.yml) sources.
"""

import os
import re
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator


class ConfigError(Exception):
    """Raised when there's a configuration error."""

    pass


ConnectionMode = Literal["strict", "lenient"]


class _ServerConfigBase(BaseModel):
    timeout: float = 30.0  # seconds, applies to connect + discovery
    connection_mode: ConnectionMode = "lenient"


class StdioServerConfig(_ServerConfigBase):
    """MCP server launched as a subprocess speaking JSON-RPC on stdin/stdout."""

    type: Literal["stdio"] = "stdio"
    command: str
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)


class SseServerConfig(_ServerConfigBase):
    """MCP server reachable over a persistent HTTP event stream."""

    type: Literal["sse"] = "sse"
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)


class HttpServerConfig(_ServerConfigBase):
    """MCP server using the streamable HTTP transport."""

    type: Literal["http"] = "http"
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)


ServerConfig = Annotated[
    Union[StdioServerConfig, SseServerConfig, HttpServerConfig],
    Field(discriminator="type"),
]


class ContributorConfig(BaseModel):
    """One section of the system prompt."""

    id: str
    type: Literal["static", "dynamic"]
    priority: int = 0
    enabled: bool = True
    content: Optional[str] = None  # static
    source: Optional[str] = None  # dynamic

    @model_validator(mode="after")
    def _check_payload(self) -> "ContributorConfig":
        if self.type == "static" and self.content is None:
            raise ValueError(f"static contributor '{self.id}' requires 'content'")
        if self.type == "dynamic" and not self.source:
            raise ValueError(f"dynamic contributor '{self.id}' requires 'source'")
        return self


class SystemPromptConfig(BaseModel):
    contributors: List[ContributorConfig] = Field(default_factory=list)


class CompressionConfig(BaseModel):
    """History compression settings."""

    strategy: Literal["oldest", "middle"] = "oldest"
    preserve_start: int = 4  # middle strategy only
    preserve_end: int = 5
    min_messages: int = 4
    prune: bool = False


class LLMConfig(BaseModel):
    """Configuration for the model driver."""

    provider: str
    model: str
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    system_prompt: Union[str, SystemPromptConfig] = ""
    max_iterations: int = 50
    max_output_tokens: Optional[int] = None
    temperature: Optional[float] = None
    max_input_tokens: Optional[int] = None  # overrides the model registry
    budget_margin: float = Field(default=0.9, gt=0, le=1)
    compression: CompressionConfig = Field(default_factory=CompressionConfig)


class ToolConfirmationConfig(BaseModel):
    mode: Literal["auto_approve", "console"] = "auto_approve"


class AgentConfig(BaseModel):
    """Complete agent configuration schema."""

    mcp_servers: Dict[str, ServerConfig] = Field(default_factory=dict)
    llm: LLMConfig
    tool_confirmation: ToolConfirmationConfig = Field(default_factory=ToolConfirmationConfig)
    collision_policy: Literal["last_write_wins", "first_write_wins", "namespace"] = "last_write_wins"
    tool_timeout: Optional[float] = 120.0
    dry_run: bool = False


API_KEY_ENV_VARS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GOOGLE_API_KEY",
    "groq": "GROQ_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "together": "TOGETHER_API_KEY",
}


def resolve_api_key(llm: LLMConfig) -> Optional[str]:
    """API key for ``llm``: the configured value first, then the provider's environment variable."""
    if llm.api_key:
        return llm.api_key
    env_var = API_KEY_ENV_VARS.get(llm.provider.lower())
    if env_var:
        return os.environ.get(env_var)
    return None


_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def expand_env_vars(value: Any) -> Any:
    """Recursively replace ``$VAR`` / ``${VAR}`` in strings. Unset variables expand to ''."""
    if isinstance(value, str):
        return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1) or m.group(2), ""), value)
    if isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env_vars(v) for v in value]
    return value


class Config:
    """
    Agent configuration manager.

    Handles loading, merging, and validating configuration from:
    - Global: ~/.mcpilot/agent.yml
    - Local: agent.yml (project-specific, found by walking up from cwd)
    - Overrides: programmatic values (e.g. from a CLI front-end)

    Local configuration overrides global; overrides win over both.

    Example:
        >>> config = Config.load()
        >>> config.merged.llm.model
        'gpt-4o'
    """

    GLOBAL_CONFIG_DIR = Path.home() / ".mcpilot"
    CONFIG_FILE_NAME = "agent.yml"

    def __init__(
        self,
        global_config: Optional[Dict[str, Any]] = None,
        local_config: Optional[Dict[str, Any]] = None,
    ):
        self._global_config = global_config or {}
        self._local_config = local_config or {}
        self._overrides: Dict[str, Any] = {}
        self._merged: Optional[AgentConfig] = None

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        """
        Load configuration from default locations, or from ``path`` as the
        local file when given.
        """
        global_config = cls._load_yaml(cls.GLOBAL_CONFIG_DIR / cls.CONFIG_FILE_NAME)
        local_path = Path(path) if path else cls._find_local_config()
        if path and not local_path.exists():
            raise ConfigError(f"Config file not found: {local_path}")
        local_config = cls._load_yaml(local_path)

        return cls(global_config=global_config, local_config=local_config)

    @classmethod
    def _load_yaml(cls, path: Optional[Path]) -> Dict[str, Any]:
        """Load YAML file if it exists."""
        if path is None or not path.exists():
            return {}

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
                return data if data else {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load config from {path}: {e}")

    @classmethod
    def _find_local_config(cls) -> Optional[Path]:
        """Find the local config file by walking up the directory tree."""
        current = Path.cwd()
        while current != current.parent:
            config_path = current / cls.CONFIG_FILE_NAME
            if config_path.exists():
                return config_path
            current = current.parent
        return None

    def override(self, overrides: Dict[str, Any]) -> "Config":
        """Apply programmatic overrides (highest precedence)."""
        self._overrides = self._deep_merge(self._overrides, overrides)
        self._merged = None
        return self

    def get_merged_config(self) -> Dict[str, Any]:
        """Get the merged configuration as a dictionary, environment references expanded."""
        merged = self._deep_merge(self._global_config.copy(), self._local_config)
        merged = self._deep_merge(merged, self._overrides)
        return expand_env_vars(merged)

    @property
    def merged(self) -> AgentConfig:
        """Get the validated merged configuration."""
        if self._merged is None:
            try:
                self._merged = AgentConfig(**self.get_merged_config())
            except ValidationError as e:
                raise ConfigError(f"Invalid configuration: {e}")
        return self._merged

    def get_server_configs(self) -> Dict[str, Any]:
        return dict(self.merged.mcp_servers)

    def get_api_key(self) -> Optional[str]:
        """Get the API key for the configured provider."""
        return resolve_api_key(self.merged.llm)

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

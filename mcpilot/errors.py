"""
mcpilot Errors - Error taxonomy shared by the client and context layers.

Every error carries a stable string ``code`` so callers (the driving loop,
an API layer) can map failures without matching on message text.
"""

from enum import Enum
from typing import Dict, Optional


class ToolErrorCode(str, Enum):
    """Tool execution and connection error codes."""

    EXECUTION_DENIED = "tools_execution_denied"
    EXECUTION_TIMEOUT = "tools_execution_timeout"
    EXECUTION_FAILED = "tools_execution_failed"
    TOOL_NOT_FOUND = "tools_tool_not_found"
    PROMPT_NOT_FOUND = "tools_prompt_not_found"
    RESOURCE_NOT_FOUND = "tools_resource_not_found"
    CONNECT_FAILED = "tools_connect_failed"
    STRICT_SERVERS_FAILED = "tools_strict_servers_failed"
    TRANSPORT_FAILED = "tools_transport_failed"


class ContextErrorCode(str, Enum):
    """Context error codes: message validation, token counting, compression."""

    MESSAGE_ROLE_MISSING = "context_message_role_missing"
    MESSAGE_CONTENT_EMPTY = "context_message_content_empty"
    USER_MESSAGE_CONTENT_INVALID = "context_user_message_content_invalid"
    ASSISTANT_MESSAGE_CONTENT_OR_TOOLS_REQUIRED = "context_assistant_message_content_or_tools_required"
    ASSISTANT_MESSAGE_TOOL_CALLS_INVALID = "context_assistant_message_tool_calls_invalid"
    TOOL_MESSAGE_FIELDS_MISSING = "context_tool_message_fields_missing"
    TOOL_CALL_ID_NAME_REQUIRED = "context_tool_call_id_name_required"
    TOOL_RESULT_ORPHANED = "context_tool_result_orphaned"
    SYSTEM_MESSAGE_CONTENT_INVALID = "context_system_message_content_invalid"
    TOKEN_COUNT_FAILED = "context_token_count_failed"
    COMPRESSION_BUDGET_UNSATISFIABLE = "context_compression_budget_unsatisfiable"
    PRESERVE_VALUES_NEGATIVE = "context_preserve_values_negative"
    MIN_MESSAGES_NEGATIVE = "context_min_messages_negative"


class MCPilotError(Exception):
    """Base class for all mcpilot errors."""

    code: str = "mcpilot_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        if code is not None:
            self.code = code

    def to_payload(self) -> Dict[str, str]:
        """Serializable form, used when an error becomes a tool result."""
        return {"error": str(self), "code": str(getattr(self.code, "value", self.code))}


# ── Transport / connection ────────────────────────────────────────────────


class TransportError(MCPilotError):
    """Raised when MCP transport communication fails."""

    code = ToolErrorCode.TRANSPORT_FAILED


class ConnectError(MCPilotError):
    """A single server failed to connect or to report its capabilities."""

    code = ToolErrorCode.CONNECT_FAILED

    def __init__(self, server_name: str, cause: str):
        super().__init__(f"Failed to connect to server '{server_name}': {cause}")
        self.server_name = server_name
        self.cause = cause


class AggregateConnectError(MCPilotError):
    """One or more strict servers failed during bulk initialization."""

    code = ToolErrorCode.STRICT_SERVERS_FAILED

    def __init__(self, failures: Dict[str, str]):
        details = "; ".join(f"{name}: {cause}" for name, cause in sorted(failures.items()))
        super().__init__(f"Failed to connect to required strict servers: {details}")
        self.failures = dict(failures)

    @property
    def server_names(self):
        return sorted(self.failures)


# ── Tool execution ────────────────────────────────────────────────────────


class ToolError(MCPilotError):
    """Base class for errors raised by ``ClientManager.execute_tool``."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name


class ToolNotFound(ToolError):
    code = ToolErrorCode.TOOL_NOT_FOUND

    def __init__(self, tool_name: str):
        super().__init__(tool_name, f"No client found for tool: {tool_name}")


class ExecutionDenied(ToolError):
    """The confirmation gate refused the call. Recoverable."""

    code = ToolErrorCode.EXECUTION_DENIED

    def __init__(self, tool_name: str, session_id: Optional[str] = None):
        suffix = f" (session {session_id})" if session_id else ""
        super().__init__(tool_name, f"Execution of tool '{tool_name}' was denied{suffix}")
        self.session_id = session_id


class ExecutionTimeout(ToolError):
    code = ToolErrorCode.EXECUTION_TIMEOUT

    def __init__(self, tool_name: str, timeout: float):
        super().__init__(tool_name, f"Tool '{tool_name}' timed out after {timeout:g}s")
        self.timeout = timeout


class ToolExecutionError(ToolError):
    """Wraps a transport failure that happened while invoking a tool."""

    code = ToolErrorCode.EXECUTION_FAILED

    def __init__(self, tool_name: str, cause: Exception):
        super().__init__(tool_name, f"Tool '{tool_name}' failed: {cause}")
        self.cause = cause


class PromptNotFound(MCPilotError):
    code = ToolErrorCode.PROMPT_NOT_FOUND

    def __init__(self, name: str):
        super().__init__(f"No client found for prompt: {name}")
        self.name = name


class ResourceNotFound(MCPilotError):
    code = ToolErrorCode.RESOURCE_NOT_FOUND

    def __init__(self, uri: str):
        super().__init__(f"No client found for resource: {uri}")
        self.uri = uri


# ── Context ───────────────────────────────────────────────────────────────


class ContextError(MCPilotError):
    """Base class for conversation context errors."""


class MessageValidationError(ContextError):
    """An appended message is malformed."""


class HistoryInvariantError(ContextError):
    """Tool call / tool result pairing is broken. Programming error."""

    code = ContextErrorCode.TOOL_RESULT_ORPHANED


class TokenCountFailed(ContextError):
    code = ContextErrorCode.TOKEN_COUNT_FAILED


class CompressionConfigError(ContextError):
    """Invalid compression strategy parameters."""


class CompressionBudgetUnsatisfiable(ContextError):
    """Compression could not bring the history under budget. Reported, not raised."""

    code = ContextErrorCode.COMPRESSION_BUDGET_UNSATISFIABLE

    def __init__(self, tokens: int, budget: int, message_count: int):
        super().__init__(
            f"History still uses {tokens} tokens after compression "
            f"(budget {budget}, {message_count} messages kept)"
        )
        self.tokens = tokens
        self.budget = budget
        self.message_count = message_count

"""Exceptions and wire error codes."""

from enum import Enum


class ErrorCode(str, Enum):
    API_ERROR = "API_ERROR"
    MODEL_UNAVAILABLE = "MODEL_UNAVAILABLE"
    ABORTED = "ABORTED"
    MAX_ITERATIONS = "MAX_ITERATIONS"
    INVALID_REQUEST = "INVALID_REQUEST"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    UNKNOWN_TOOL = "UNKNOWN_TOOL"
    TOOL_FAILED = "TOOL_FAILED"
    INVALID_TOOL_INPUT = "INVALID_TOOL_INPUT"


class AgentError(Exception):
    """Base class for errors raised inside canvas_agent."""

    code = ErrorCode.INTERNAL_ERROR


class ModelCallError(AgentError):
    """The upstream model call failed (transport, auth, overload...)."""

    code = ErrorCode.API_ERROR

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


class ToolInputError(AgentError):
    """Tool arguments did not validate against the tool's input model."""

    code = ErrorCode.INVALID_TOOL_INPUT

    def __init__(self, tool: str, message: str, schema: dict | None = None):
        super().__init__(f"invalid arguments for {tool}: {message}")
        self.tool = tool
        self.schema = schema


class ConversationClosedError(AgentError):
    """Append attempted on a conversation whose run was cancelled."""


class BackendUnavailableError(AgentError):
    """A tool's external back-end is not configured."""

    code = ErrorCode.TOOL_FAILED

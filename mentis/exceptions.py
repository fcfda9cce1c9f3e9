"""Custom exceptions for Mentis."""

from typing import Any


class MentisError(Exception):
    """Base exception for Mentis."""

    pass


class ConfigurationError(MentisError):
    """Configuration-related errors."""

    pass


class LLMError(MentisError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolError(MentisError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool {tool_name} not found.")
        self.tool_name = tool_name


class ToolArgumentsError(ToolError):
    """Tool call arguments could not be decoded."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Invalid arguments for tool '{tool_name}': {message}")
        self.tool_name = tool_name


class SessionError(MentisError):
    """Subprocess session errors."""

    pass


class SessionBusyError(SessionError):
    """A command is already running in the session."""

    def __init__(self, message: str = "Shell is busy executing another command."):
        super().__init__(message)


class SessionTerminatedError(SessionError):
    """The session process exited while a request was outstanding."""

    def __init__(self, returncode: int | None = None):
        super().__init__(f"Shell session terminated (exit code {returncode})")
        self.returncode = returncode


class SessionClosedError(SessionError):
    """The session was closed before the request completed."""

    def __init__(self, message: str = "Session closed"):
        super().__init__(message)


class RpcError(MentisError):
    """Error response from a JSON-RPC peer."""

    def __init__(self, message: str, code: int | None = None, data: Any = None):
        super().__init__(message)
        self.code = code
        self.data = data


class RemoteToolError(RpcError):
    """A remote tool reported a failed call."""

    def __init__(self, tool_name: str, message: str = ""):
        detail = f": {message}" if message else ""
        super().__init__(f"Remote tool '{tool_name}' reported an error{detail}")
        self.tool_name = tool_name


class TurnCancelledError(MentisError):
    """Raised internally to unwind a turn cancelled by the user."""

    def __init__(self, message: str = "Request cancelled by user"):
        super().__init__(message)

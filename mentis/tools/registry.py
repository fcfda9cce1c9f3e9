"""Tool registry and base tool class."""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

from pydantic import BaseModel, model_validator

from mentis.exceptions import ToolExecutionError, ToolNotFoundError
from mentis.logging import get_logger

log = get_logger(__name__)


class ToolKind(str, Enum):
    """Capability family a tool belongs to."""

    FILE = "file"
    PROCESS = "process"
    VCS = "vcs"
    NETWORK = "network"
    RPC = "rpc"
    META = "meta"


class ToolConcurrency(str, Enum):
    """How the agent loop may schedule calls to a tool within one batch."""

    # Side-effect-free; calls may run at the same time as each other.
    CONCURRENT = "concurrent"
    # Writes or interacts; calls run one at a time in the order requested.
    SEQUENTIAL = "sequential"


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self

    def as_text(self) -> str:
        """Render the result the way the model sees it."""
        if self.success:
            return self.content
        return f"Error: {self.error}"


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {"type": "object", "properties": {}, "required": []}
    kind: ToolKind = ToolKind.META
    concurrency: ToolConcurrency = ToolConcurrency.SEQUENTIAL
    requires_confirmation: bool = False

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments. Keys starting with ``_`` are
                runtime context injected by the registry.

        Returns:
            ToolResult with success status and content
        """
        pass

    def get_definition(self) -> dict[str, Any]:
        """Get the tool definition advertised to the model.

        Returns:
            OpenAI function-style definition
        """
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def confirmation_message(self, arguments: dict[str, Any]) -> str:
        """Question shown to the user before running this tool."""
        return f"Allow {self.name}({_summarize_arguments(arguments)})?"

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Validate tool arguments against schema.

        Raises:
            ToolExecutionError if a required argument is missing
        """
        required = self.parameters.get("required", [])
        for field_name in required:
            if field_name not in arguments:
                raise ToolExecutionError(
                    self.name,
                    f"Missing required argument: {field_name}",
                )


def _summarize_arguments(arguments: dict[str, Any], max_chars: int = 100) -> str:
    text = ", ".join(f"{key}={value!r}" for key, value in arguments.items())
    if len(text) > max_chars:
        text = text[:max_chars] + "..."
    return text


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """Register a tool, replacing any tool with the same name.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name, kind=tool.kind.value)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        """Unregister a tool.

        Args:
            name: Tool name to unregister
        """
        self._tools.pop(name, None)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools)

    def tools(self) -> list[Tool]:
        return list(self._tools.values())

    def get_definitions(self) -> list[dict[str, Any]]:
        """Get all tool definitions for the model.

        Returns:
            List of OpenAI function-style definitions
        """
        return [tool.get_definition() for tool in self._tools.values()]

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        **runtime: Any,
    ) -> ToolResult:
        """Execute a tool by name.

        Args:
            name: Tool name
            arguments: Tool arguments
            **runtime: Runtime context forwarded to the tool as ``_``-prefixed kwargs

        Returns:
            ToolResult from execution

        Raises:
            ToolNotFoundError if tool not found
            ToolExecutionError if execution fails
        """
        tool = self.get(name)
        tool.validate_arguments(arguments)

        extra = {f"_{key}": value for key, value in runtime.items()}
        log.info("Executing tool", tool=name, args=arguments)
        try:
            result = await tool.execute(**arguments, **extra)
        except ToolExecutionError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e)) from e

        if not isinstance(result, ToolResult):
            raise ToolExecutionError(name, "Tool returned invalid result payload")
        log.info("Tool executed", tool=name, success=result.success)
        return result

"""Tools package for Mentis."""

from pathlib import Path

from mentis.config import Config
from mentis.shell_session import CommandSession
from mentis.tools.git import (
    GitCommitTool,
    GitDiffTool,
    GitPullTool,
    GitPushTool,
    GitStatusTool,
)
from mentis.tools.read import ListDirTool, ReadFileTool
from mentis.tools.registry import (
    Tool,
    ToolConcurrency,
    ToolKind,
    ToolRegistry,
    ToolResult,
)
from mentis.tools.search import SearchFilesTool
from mentis.tools.shell import RunShellTool
from mentis.tools.web_search import WebSearchTool
from mentis.tools.write import EditFileTool, WriteFileTool


def build_default_registry(
    config: Config,
    shell: CommandSession,
    root: Path | str | None = None,
) -> ToolRegistry:
    """Create a registry holding every built-in tool enabled in ``config``."""
    candidates: list[Tool] = [
        ReadFileTool(root),
        WriteFileTool(root),
        EditFileTool(root),
        ListDirTool(root),
        SearchFilesTool(root),
        RunShellTool(shell),
        GitStatusTool(root),
        GitDiffTool(root),
        GitCommitTool(root),
        GitPushTool(root),
        GitPullTool(root),
        WebSearchTool(config.tools.web_search),
    ]
    enabled = set(config.tools.enabled)
    return ToolRegistry([tool for tool in candidates if tool.name in enabled])


__all__ = [
    "Tool",
    "ToolConcurrency",
    "ToolKind",
    "ToolRegistry",
    "ToolResult",
    "build_default_registry",
    "ReadFileTool",
    "ListDirTool",
    "WriteFileTool",
    "EditFileTool",
    "SearchFilesTool",
    "RunShellTool",
    "GitStatusTool",
    "GitDiffTool",
    "GitCommitTool",
    "GitPushTool",
    "GitPullTool",
    "WebSearchTool",
]

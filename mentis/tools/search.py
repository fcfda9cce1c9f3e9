"""Repository search via ``git grep``."""

from pathlib import Path
from typing import Any

from mentis.logging import get_logger
from mentis.tools.registry import Tool, ToolConcurrency, ToolKind, ToolResult
from mentis.tools.shell import run_process, truncate_output

log = get_logger(__name__)


class SearchFilesTool(Tool):
    """Search tracked files for a pattern."""

    name = "search_files"
    description = "Search for a string pattern in files within the current directory recursively."
    parameters = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "The string or regular expression to search for.",
            },
            "path": {
                "type": "string",
                "description": "Optional path to limit search (default: .)",
            },
        },
        "required": ["query"],
    }
    kind = ToolKind.PROCESS
    concurrency = ToolConcurrency.CONCURRENT

    def __init__(self, root: Path | str | None = None):
        self.root = str(root) if root is not None else None

    async def execute(self, query: str, path: str = ".", **kwargs: Any) -> ToolResult:
        try:
            result = await run_process("git", "grep", "-n", "-e", query, "--", path or ".", cwd=self.root)
        except OSError as e:
            log.error("Search failed", query=query, error=str(e))
            return ToolResult(success=False, error=f"Error searching: {e}")

        # git grep exits 1 when nothing matched
        if result.returncode == 1:
            return ToolResult(success=True, content="No matches found.")
        if result.returncode != 0:
            return ToolResult(success=False, error=f"Error searching: {result.stderr.strip()}")
        return ToolResult(success=True, content=truncate_output(result.stdout) or "No matches found.")

"""Read-only file tools: read_file and list_dir."""

import asyncio
from pathlib import Path
from typing import Any

from mentis.logging import get_logger
from mentis.tools.registry import Tool, ToolConcurrency, ToolKind, ToolResult

log = get_logger(__name__)

MAX_READ_BYTES = 1_000_000


def resolve_path(path: str, root: Path | None = None) -> Path:
    """Resolve a user-supplied path against ``root`` (cwd when omitted)."""
    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = (root or Path.cwd()) / candidate
    return candidate.resolve()


class ReadFileTool(Tool):
    """Read file contents."""

    name = "read_file"
    description = "Read content from a file."
    parameters = {
        "type": "object",
        "properties": {
            "filePath": {
                "type": "string",
                "description": "The path to the file to read",
            },
        },
        "required": ["filePath"],
    }
    kind = ToolKind.FILE
    concurrency = ToolConcurrency.CONCURRENT

    def __init__(self, root: Path | str | None = None):
        self.root = Path(root) if root is not None else None

    async def execute(self, filePath: str, **kwargs: Any) -> ToolResult:
        """Read a file.

        Args:
            filePath: Path to file

        Returns:
            ToolResult with file contents
        """
        file_path = resolve_path(filePath, self.root)
        if not file_path.exists():
            return ToolResult(success=False, error=f"File not found at {filePath}")
        if not file_path.is_file():
            return ToolResult(success=False, error=f"Not a file: {filePath}")

        size = file_path.stat().st_size
        if size > MAX_READ_BYTES:
            return ToolResult(
                success=False,
                error=f"File too large: {size} bytes (max {MAX_READ_BYTES})",
            )

        try:
            content = await asyncio.to_thread(file_path.read_text, encoding="utf-8", errors="replace")
        except OSError as e:
            log.error("Read failed", path=str(file_path), error=str(e))
            return ToolResult(success=False, error=f"Error reading file: {e}")

        return ToolResult(success=True, content=content)


class ListDirTool(Tool):
    """List directory entries."""

    name = "list_dir"
    description = "List files and directories in a path."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "The directory path to list",
            },
        },
        "required": ["path"],
    }
    kind = ToolKind.FILE
    concurrency = ToolConcurrency.CONCURRENT

    def __init__(self, root: Path | str | None = None):
        self.root = Path(root) if root is not None else None

    async def execute(self, path: str, **kwargs: Any) -> ToolResult:
        target = resolve_path(path, self.root)
        if not target.exists():
            return ToolResult(success=False, error=f"Directory not found at {path}")
        if not target.is_dir():
            return ToolResult(success=False, error=f"Not a directory: {path}")

        try:
            entries = sorted(
                (f"{entry.name}/" if entry.is_dir() else entry.name) for entry in target.iterdir()
            )
        except OSError as e:
            log.error("List failed", path=str(target), error=str(e))
            return ToolResult(success=False, error=f"Error listing directory: {e}")

        return ToolResult(success=True, content="\n".join(entries) or "(empty directory)")

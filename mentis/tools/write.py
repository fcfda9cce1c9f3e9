"""Mutating file tools: write_file and edit_file."""

import asyncio
from pathlib import Path
from typing import Any

from mentis.logging import get_logger
from mentis.tools.read import resolve_path
from mentis.tools.registry import Tool, ToolConcurrency, ToolKind, ToolResult

log = get_logger(__name__)


def _write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


class WriteFileTool(Tool):
    """Write content to files."""

    name = "write_file"
    description = "Write content to a file. Overwrites if exists. Creates directories if needed."
    parameters = {
        "type": "object",
        "properties": {
            "filePath": {
                "type": "string",
                "description": "The path to the file to write",
            },
            "content": {
                "type": "string",
                "description": "The content to write to the file",
            },
        },
        "required": ["filePath", "content"],
    }
    kind = ToolKind.FILE
    concurrency = ToolConcurrency.SEQUENTIAL
    requires_confirmation = True

    def __init__(self, root: Path | str | None = None):
        self.root = Path(root) if root is not None else None

    def confirmation_message(self, arguments: dict[str, Any]) -> str:
        return f"Allow writing to {arguments.get('filePath', '?')}?"

    async def execute(self, filePath: str, content: str, **kwargs: Any) -> ToolResult:
        """Write content to a file.

        Args:
            filePath: Path to file
            content: Content to write

        Returns:
            ToolResult with status
        """
        file_path = resolve_path(filePath, self.root)
        try:
            await asyncio.to_thread(_write_text, file_path, content)
        except OSError as e:
            log.error("Write failed", path=str(file_path), error=str(e))
            return ToolResult(success=False, error=f"Error writing file: {e}")

        log.info("File written", path=str(file_path), chars=len(content))
        return ToolResult(success=True, content=f"Successfully wrote to {filePath}")


class EditFileTool(Tool):
    """Replace one unique occurrence of a string in a file."""

    name = "edit_file"
    description = "Replace a specific string of text with new text in a file."
    parameters = {
        "type": "object",
        "properties": {
            "filePath": {
                "type": "string",
                "description": "The path to the file to edit",
            },
            "target": {
                "type": "string",
                "description": "The exact string to replace",
            },
            "replacement": {
                "type": "string",
                "description": "The new string to replace it with",
            },
        },
        "required": ["filePath", "target", "replacement"],
    }
    kind = ToolKind.FILE
    concurrency = ToolConcurrency.SEQUENTIAL
    requires_confirmation = True

    def __init__(self, root: Path | str | None = None):
        self.root = Path(root) if root is not None else None

    def confirmation_message(self, arguments: dict[str, Any]) -> str:
        return f"Allow editing {arguments.get('filePath', '?')}?"

    async def execute(self, filePath: str, target: str, replacement: str, **kwargs: Any) -> ToolResult:
        file_path = resolve_path(filePath, self.root)
        if not file_path.is_file():
            return ToolResult(success=False, error=f"File not found at {filePath}")
        if not target:
            return ToolResult(success=False, error="Target string must not be empty.")

        try:
            content = await asyncio.to_thread(file_path.read_text, encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            return ToolResult(success=False, error=f"Error editing file: {e}")

        matches = content.count(target)
        if matches == 0:
            return ToolResult(success=False, error="Target string not found in file.")
        if matches > 1:
            return ToolResult(
                success=False,
                error=(
                    f"Target string found {matches} times. "
                    "Content must be unique to avoid ambiguous replacements."
                ),
            )

        try:
            await asyncio.to_thread(_write_text, file_path, content.replace(target, replacement, 1))
        except OSError as e:
            log.error("Edit failed", path=str(file_path), error=str(e))
            return ToolResult(success=False, error=f"Error editing file: {e}")

        return ToolResult(success=True, content=f"Successfully replaced target in {filePath}")

"""Git tools backed by the ``git`` executable."""

from pathlib import Path
from typing import Any

from mentis.logging import get_logger
from mentis.tools.registry import Tool, ToolConcurrency, ToolKind, ToolResult
from mentis.tools.shell import ProcessOutput, run_process, truncate_output

log = get_logger(__name__)


class GitTool(Tool):
    """Shared plumbing for tools that run one git subcommand."""

    kind = ToolKind.VCS
    empty_output: str = ""

    def __init__(self, root: Path | str | None = None):
        self.root = str(root) if root is not None else None

    async def _git(self, *args: str) -> ProcessOutput:
        return await run_process("git", *args, cwd=self.root)

    def _render(self, subcommand: str, result: ProcessOutput) -> ToolResult:
        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip() or f"exit code {result.returncode}"
            log.warning("Git command failed", subcommand=subcommand, returncode=result.returncode)
            return ToolResult(success=False, error=f"Error running git {subcommand}: {detail}")

        output = result.stdout
        if result.stderr.strip():
            output = f"{output}\nStderr: {result.stderr.strip()}" if output else result.stderr.strip()
        return ToolResult(success=True, content=truncate_output(output.strip()) or self.empty_output)

    async def _run(self, subcommand: str, *args: str) -> ToolResult:
        try:
            result = await self._git(subcommand, *args)
        except OSError as e:
            return ToolResult(success=False, error=f"Error running git {subcommand}: {e}")
        return self._render(subcommand, result)


class GitStatusTool(GitTool):
    name = "git_status"
    description = "Check the status of the git repository."
    parameters = {"type": "object", "properties": {}, "required": []}
    concurrency = ToolConcurrency.CONCURRENT
    empty_output = "Working tree clean."

    async def execute(self, **kwargs: Any) -> ToolResult:
        return await self._run("status")


class GitDiffTool(GitTool):
    name = "git_diff"
    description = "Show changes in the git repository."
    parameters = {
        "type": "object",
        "properties": {
            "cached": {
                "type": "boolean",
                "description": "Show cached (staged) changes.",
            },
        },
        "required": [],
    }
    concurrency = ToolConcurrency.CONCURRENT
    empty_output = "No changes found."

    async def execute(self, cached: bool = False, **kwargs: Any) -> ToolResult:
        if cached:
            return await self._run("diff", "--cached")
        return await self._run("diff")


class GitCommitTool(GitTool):
    name = "git_commit"
    description = "Commit changes to the git repository."
    parameters = {
        "type": "object",
        "properties": {
            "message": {
                "type": "string",
                "description": "The commit message.",
            },
        },
        "required": ["message"],
    }
    concurrency = ToolConcurrency.SEQUENTIAL
    requires_confirmation = True

    def confirmation_message(self, arguments: dict[str, Any]) -> str:
        return f"Allow git commit with message: {arguments.get('message', '')!r}?"

    async def execute(self, message: str, **kwargs: Any) -> ToolResult:
        # argv is passed without a shell, so the message needs no quoting
        return await self._run("commit", "-m", message)


class GitPushTool(GitTool):
    name = "git_push"
    description = "Push changes to the remote repository."
    parameters = {"type": "object", "properties": {}, "required": []}
    concurrency = ToolConcurrency.SEQUENTIAL
    requires_confirmation = True
    empty_output = "Push completed."

    async def execute(self, **kwargs: Any) -> ToolResult:
        return await self._run("push")


class GitPullTool(GitTool):
    name = "git_pull"
    description = "Pull changes from the remote repository."
    parameters = {"type": "object", "properties": {}, "required": []}
    concurrency = ToolConcurrency.SEQUENTIAL
    requires_confirmation = True
    empty_output = "Pull completed."

    async def execute(self, **kwargs: Any) -> ToolResult:
        return await self._run("pull")

"""Shell tools: persistent session commands and one-shot process helpers."""

import asyncio
import os
from dataclasses import dataclass
from typing import Any

from mentis.exceptions import SessionError
from mentis.logging import get_logger
from mentis.shell_session import CommandSession
from mentis.tools.registry import Tool, ToolConcurrency, ToolKind, ToolResult

log = get_logger(__name__)

MAX_OUTPUT_CHARS = 10000


def truncate_output(output: str, max_length: int = MAX_OUTPUT_CHARS) -> str:
    if len(output) > max_length:
        return output[:max_length] + f"\n... [truncated, {len(output)} total chars]"
    return output


@dataclass
class ProcessOutput:
    """Captured result of a finished one-shot process."""

    returncode: int
    stdout: str
    stderr: str


async def run_process(*argv: str, cwd: str | None = None) -> ProcessOutput:
    """Run a program to completion without a shell and capture its output."""
    env = os.environ.copy()
    env["PATH"] = os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin")

    log.debug("Running process", argv=list(argv), cwd=cwd)
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env=env,
    )
    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise

    return ProcessOutput(
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


class RunShellTool(Tool):
    """Execute commands in the persistent shell session."""

    name = "run_shell"
    description = (
        "Execute a shell command in a persistent session. Use this for running tests, "
        "build scripts, or git commands. State (env vars, cwd) is preserved."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The shell command to execute.",
            },
        },
        "required": ["command"],
    }
    kind = ToolKind.PROCESS
    concurrency = ToolConcurrency.SEQUENTIAL
    requires_confirmation = True

    def __init__(self, session: CommandSession):
        self.session = session

    def confirmation_message(self, arguments: dict[str, Any]) -> str:
        return f"Allow running shell command: {arguments.get('command', '')}?"

    async def execute(self, command: str, **kwargs: Any) -> ToolResult:
        """Execute a shell command.

        Args:
            command: Shell command to execute

        Returns:
            ToolResult with command output
        """
        token = kwargs.get("_cancel_token")
        if token is not None and token.cancelled:
            return ToolResult(success=False, error="Command aborted")

        try:
            output = await self.session.execute(command)
        except SessionError as e:
            log.error("Shell command failed", command=command, error=str(e))
            return ToolResult(success=False, error=f"Error executing command: {e}")

        return ToolResult(
            success=True,
            content=truncate_output(output) or "Command executed with no output.",
        )

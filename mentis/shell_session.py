"""Persistent shell session driven by a sentinel-delimited protocol.

One long-lived shell process keeps environment variables and the working
directory between commands. Each command is written on a single line followed
by ``echo "<sentinel>"``; everything the shell prints on stdout or stderr is
collected until the sentinel shows up, and that text is the command's output.

Only one command may be outstanding at a time.
"""

import asyncio
import codecs
import os
import sys
from pathlib import Path

from mentis.exceptions import SessionBusyError, SessionClosedError, SessionTerminatedError
from mentis.logging import get_logger

log = get_logger(__name__)

DEFAULT_SENTINEL = "MENTIS_SHELL_DELIMITER"
_READ_CHUNK = 4096


def default_shell_argv() -> list[str]:
    """Return the interactive shell for the current platform."""
    if sys.platform == "win32":
        return ["powershell.exe", "-NoLogo", "-NoExit", "-Command", "-"]
    return ["bash"]


def join_commands(parts: list[str]) -> str:
    """Join commands with ``;``, or a space after a trailing ``&``."""
    joined = ""
    for part in parts:
        if joined:
            joined += " " if joined.endswith("&") else "; "
        joined += part
    return joined


def flatten_command(command: str) -> str:
    """Join a multi-line command into one line separated by ``;``."""
    lines = [line.strip().rstrip(";").rstrip() for line in command.replace("\r\n", "\n").split("\n")]
    return join_commands([line for line in lines if line])


class CommandSession:
    """Single-flight command execution against one persistent shell."""

    def __init__(
        self,
        sentinel: str = DEFAULT_SENTINEL,
        argv: list[str] | None = None,
        cwd: Path | str | None = None,
        env: dict[str, str] | None = None,
    ):
        self.sentinel = sentinel
        self.argv = list(argv or default_shell_argv())
        self.cwd = str(cwd) if cwd is not None else None
        self.env = env
        self._process: asyncio.subprocess.Process | None = None
        self._watcher: asyncio.Task[None] | None = None
        self._pending: asyncio.Future[str] | None = None
        self._buffer = ""

    @property
    def busy(self) -> bool:
        """Whether a command is waiting for its sentinel."""
        return self._pending is not None

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    async def start(self) -> None:
        """Spawn the shell process if it is not already running."""
        if self.running:
            return

        env = os.environ.copy()
        if self.env:
            env.update(self.env)

        log.info("Starting persistent shell", argv=self.argv, cwd=self.cwd)
        self._process = await asyncio.create_subprocess_exec(
            *self.argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.cwd,
            env=env,
        )
        self._buffer = ""
        self._watcher = asyncio.create_task(self._watch(self._process))

    async def _pump(self, process: asyncio.subprocess.Process, stream: asyncio.StreamReader) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(_READ_CHUNK)
            text = decoder.decode(chunk, final=not chunk)
            if text and self._process is process:
                self._handle_output(text)
            if not chunk:
                return

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        """Feed both output streams into the buffer until the shell exits."""
        await asyncio.gather(
            self._pump(process, process.stdout),
            self._pump(process, process.stderr),
        )
        returncode = await process.wait()
        if returncode != 0:
            log.warning("Shell process exited", returncode=returncode)
        else:
            log.info("Shell process exited", returncode=returncode)

        if self._process is not process:
            return
        pending = self._pending
        self._pending = None
        self._buffer = ""
        if pending is not None and not pending.done():
            pending.set_exception(SessionTerminatedError(returncode))

    def _handle_output(self, text: str) -> None:
        if not text:
            return
        if self._pending is None:
            # Late output with no command waiting; keep it out of the next result.
            log.debug("Discarding shell output with no pending command", chars=len(text))
            return

        self._buffer += text
        if self.sentinel not in self._buffer:
            return

        output = self._buffer.replace(self.sentinel, "", 1).strip()
        self._buffer = ""
        pending = self._pending
        self._pending = None
        if not pending.done():
            pending.set_result(output)

    async def execute(self, command: str) -> str:
        """Run ``command`` in the shell and return its combined output.

        Raises:
            SessionBusyError: a previous command has not finished
            SessionTerminatedError: the shell exited before the sentinel arrived
        """
        if self.busy:
            raise SessionBusyError()

        # Claim the session before the first await so a concurrent call sees it busy.
        pending: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._pending = pending
        try:
            await self.start()
        except BaseException:
            self._pending = None
            raise
        if pending.done():
            return await pending
        process = self._process
        assert process is not None and process.stdin is not None
        self._buffer = ""

        line = flatten_command(command)
        full_command = join_commands([part for part in (line, f'echo "{self.sentinel}"') if part]) + "\n"

        try:
            process.stdin.write(full_command.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            self._pending = None
            log.error("Shell stdin closed", error=str(e))
            raise SessionTerminatedError(process.returncode) from e

        log.debug("Shell command sent", command=line)
        return await pending

    async def close(self) -> None:
        """Kill the shell. Any outstanding command fails with SessionClosedError."""
        process = self._process
        pending = self._pending
        self._pending = None
        if pending is not None and not pending.done():
            pending.set_exception(SessionClosedError("Shell session closed"))

        if process is not None and process.returncode is None:
            log.info("Killing persistent shell", pid=process.pid)
            process.kill()
            await process.wait()

        watcher = self._watcher
        self._watcher = None
        if watcher is not None:
            # Background children of the shell can keep the pipes open.
            watcher.cancel()
            try:
                await watcher
            except asyncio.CancelledError:
                pass
        self._process = None
        self._buffer = ""

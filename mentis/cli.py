"""Terminal user interface for Mentis."""

import asyncio
import atexit
import os
import sys
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.prompt import Confirm

from mentis.agent import AgentOutput
from mentis.cancellation import CancellationToken
from mentis.logging import get_logger

if os.name == "posix":
    import termios
    import tty

log = get_logger(__name__)

SPECIAL_COMMANDS = [
    "/help",
    "/plan",
    "/build",
    "/add",
    "/drop",
    "/context",
    "/compact",
    "/clear",
    "/mcp",
    "/tools",
    "/exit",
]

HELP_TEXT = """\
Commands:
  /help                     Show this help
  /plan                     Switch to PLAN mode (design before code)
  /build                    Switch to BUILD mode (implement)
  /add <file>               Add a file to the conversation context
  /drop <file>              Remove a file from the context
  /context                  Show context files and usage
  /compact [focus]          Summarize the conversation to save tokens
  /clear                    Clear conversation history and context files
  /mcp connect <cmd> [args] Connect a tool server over stdio
  /mcp list                 List connected tool servers
  /mcp disconnect           Disconnect all tool servers
  /tools                    List available tools
  /exit                     Quit

Press Esc while the assistant is working to cancel the request."""


class TerminalUI(AgentOutput):
    """Rich-based terminal output plus the escape-key cancellation producer."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()
        self._readline = None
        self._history_file = Path("~/.mentis/history").expanduser()
        self._setup_readline()

    def _setup_readline(self) -> None:
        """Set up line editing, history, and command completion."""
        try:
            import readline
        except ImportError:
            return

        self._readline = readline
        try:
            self._history_file.parent.mkdir(parents=True, exist_ok=True)
            if self._history_file.exists():
                readline.read_history_file(str(self._history_file))
            readline.set_history_length(1000)
            readline.parse_and_bind("tab: complete")
            readline.set_completer(self._complete_special_command)
            atexit.register(self._save_history)
        except OSError as e:
            log.debug("Readline setup failed", error=str(e))

    def _save_history(self) -> None:
        if self._readline is None:
            return
        try:
            self._readline.write_history_file(str(self._history_file))
        except OSError as e:
            log.debug("Failed to save history", error=str(e))

    def _complete_special_command(self, text: str, state: int) -> str | None:
        """Readline completer for slash commands."""
        if not text.startswith("/"):
            return None
        matches = [cmd for cmd in SPECIAL_COMMANDS if cmd.startswith(text)]
        if state < len(matches):
            return matches[state]
        return None

    def print_welcome(self, model: str, mode: str) -> None:
        self.console.print("[bold blue]=== Mentis ===[/bold blue]")
        self.console.print(f"[dim]Model: {escape(model)} | Mode: {mode.upper()}[/dim]")
        self.console.print("Type '/help' for commands.\n")

    def print_help(self) -> None:
        self.console.print(HELP_TEXT, markup=False, highlight=False)

    def print_assistant(self, content: str) -> None:
        self.console.print("\n[bold blue]Mentis:[/bold blue]")
        self.console.print(Markdown(content or ""))

    def print_error(self, error: str) -> None:
        self.console.print(f"[red]Error: {escape(error)}[/red]", highlight=False)

    def print_warning(self, warning: str) -> None:
        self.console.print(f"[yellow]{escape(warning)}[/yellow]", highlight=False)

    def print_success(self, message: str) -> None:
        self.console.print(f"[green]{escape(message)}[/green]", highlight=False)

    def print_info(self, message: str) -> None:
        self.console.print(escape(message), highlight=False)

    def print_dim(self, message: str) -> None:
        self.console.print(f"[dim]{escape(message)}[/dim]", highlight=False)

    def print_usage(self, prompt_tokens: int, completion_tokens: int, bar: str) -> None:
        if prompt_tokens or completion_tokens:
            self.print_dim(f"(Tokens: {prompt_tokens} in / {completion_tokens} out)")
        self.print_dim(bar)

    # AgentOutput

    def status(self, text: str) -> None:
        log.debug("Agent status", status=text)
        if text != "thinking":
            self.print_warning(text)

    def tool_started(self, name: str, arguments: dict[str, Any]) -> None:
        display = ", ".join(f"{key}={value!r}" for key, value in arguments.items())
        if len(display) > 100:
            display = display[:100] + "..."
        self.print_dim(f"  [Action] {name}({display})")

    def tool_finished(self, name: str, arguments: dict[str, Any], output: str) -> None:
        preview = output if len(output) <= 200 else output[:200] + "..."
        self.print_dim(f"  [Result] {name}: {preview}")

    def tool_declined(self, name: str) -> None:
        self.console.print("[red]  Action cancelled by user.[/red]")

    def prompt(self, prompt_text: str = "> ") -> str:
        value = input(prompt_text)
        if self._readline and value.strip():
            self._readline.add_history(value)
        return value

    def confirm(self, message: str) -> bool:
        """Ask for approval; defaults to yes like the rest of the prompts."""
        return Confirm.ask(escape(message), console=self.console, default=True)

    def can_capture_escape(self) -> bool:
        """Whether ESC key capture is available on this terminal."""
        return os.name == "posix" and sys.stdin.isatty()

    async def wait_for_escape(self) -> bool:
        """Wait asynchronously for an ESC key press."""
        if not self.can_capture_escape():
            await asyncio.Event().wait()
            return False

        fd = sys.stdin.fileno()
        loop = asyncio.get_running_loop()
        old = termios.tcgetattr(fd)
        fut: asyncio.Future[bool] = loop.create_future()

        def _on_stdin_ready() -> None:
            try:
                ch = os.read(fd, 1)
            except OSError:
                ch = b""
            if ch == b"\x1b" and not fut.done():
                fut.set_result(True)

        try:
            tty.setcbreak(fd)
            loop.add_reader(fd, _on_stdin_ready)
            return await fut
        finally:
            loop.remove_reader(fd)
            termios.tcsetattr(fd, termios.TCSADRAIN, old)

    async def escape_producer(self, token: CancellationToken) -> None:
        """Cancellation producer: cancel the turn when ESC is pressed."""
        if await self.wait_for_escape():
            self.print_warning("Esc pressed, cancelling after the current step...")
            token.cancel("escape")

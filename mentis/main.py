"""Main entry point for Mentis."""

import asyncio
import os
import shlex
import sys
from pathlib import Path

import yaml
from pydantic import ValidationError

from mentis.agent import AgentLoop, TurnResult, TurnStatus
from mentis.cancellation import CancellationController
from mentis.cli import TerminalUI
from mentis.compaction import format_bar
from mentis.config import Config, get_config, set_config
from mentis.context import ContextManager
from mentis.exceptions import ConfigurationError, MentisError
from mentis.llm import create_provider
from mentis.logging import configure_logging, log
from mentis.policy import AgentMode
from mentis.rpc import RpcConnectionManager
from mentis.shell_session import CommandSession
from mentis.tools import WebSearchTool, build_default_registry


class MentisApp:
    """Wires config, tools, sessions, and the agent loop behind the REPL."""

    def __init__(self, config: Config, ui: TerminalUI, root: Path | None = None):
        self.config = config
        self.ui = ui
        self.root = root or Path.cwd()

        shell_argv = shlex.split(config.shell.executable) if config.shell.executable else None
        self.shell = CommandSession(sentinel=config.shell.sentinel, argv=shell_argv, cwd=self.root)
        self.registry = build_default_registry(config, self.shell, self.root)
        self.rpc = RpcConnectionManager(
            self.registry,
            client_name=config.rpc.client_name,
            protocol_version=config.rpc.protocol_version,
        )
        self.context = ContextManager(self.root, config.context.repo_map_ignore)
        self.controller = CancellationController()
        if ui.can_capture_escape():
            self.controller.add_producer(ui.escape_producer)

        self.provider = create_provider(
            provider=config.model.provider,
            model=config.model.model,
            api_key=config.model.api_key or None,
            base_url=config.model.base_url or None,
            temperature=config.model.temperature,
            max_tokens=config.model.max_tokens,
            timeout=config.model.timeout,
        )
        self.agent = AgentLoop(
            self.provider,
            self.registry,
            confirm=ui.confirm,
            context=self.context,
            mode=AgentMode(config.agent.mode),
            auto_confirm=config.agent.auto_confirm,
            output=ui,
            max_iterations=config.agent.max_iterations,
            controller=self.controller,
            require_confirmation=config.tools.require_confirmation,
            auto_compact=config.context.auto_compact,
            context_max_tokens=config.context.max_tokens,
            compaction_threshold=config.context.compaction_threshold,
            turn_timeout=config.agent.turn_timeout,
        )

    @property
    def model_name(self) -> str:
        return str(getattr(self.provider, "model", self.config.model.model))

    async def start(self) -> None:
        """Connect the tool servers listed in config."""
        for server in self.config.rpc.servers:
            label = server.name or server.command
            try:
                session = await self.rpc.connect(server.command, server.args, server.env)
            except (MentisError, OSError) as e:
                self.ui.print_error(f"Failed to connect tool server '{label}': {e}")
                continue
            self.ui.print_success(
                f"Connected to {session.server_name} ({len(self.rpc.tools_for(session))} tools)"
            )

    async def close(self) -> None:
        await self.rpc.disconnect_all()
        await self.shell.close()
        if self.registry.has_tool("web_search"):
            tool = self.registry.get("web_search")
            if isinstance(tool, WebSearchTool):
                await tool.close()
        await self.provider.close()

    async def chat(self, text: str) -> TurnResult:
        result = await self.agent.run_turn(text)
        if result.status is TurnStatus.COMPLETED:
            if result.content:
                self.ui.print_assistant(result.content)
            self.ui.print_usage(
                result.usage.get("prompt_tokens", 0),
                result.usage.get("completion_tokens", 0),
                format_bar(self.agent.context_usage()),
            )
        elif result.status is TurnStatus.CANCELLED:
            self.ui.print_warning("\nRequest cancelled by user.")
        else:
            self.ui.print_error(f"Error getting response from model: {result.error}")
        return result

    async def handle_command(self, line: str) -> bool:
        """Run a slash command. Returns False when the REPL should exit."""
        parts = line.strip().split()
        command, args = parts[0].lower(), parts[1:]

        if command in ("/exit", "/quit"):
            return False
        if command in ("/help", "/?"):
            self.ui.print_help()
        elif command == "/plan":
            self.agent.mode = AgentMode.PLAN
            self.ui.print_info("Switched to PLAN mode.")
        elif command == "/build":
            self.agent.mode = AgentMode.BUILD
            self.ui.print_info("Switched to BUILD mode.")
        elif command == "/add":
            if not args:
                self.ui.print_error("Usage: /add <file>")
            for path in args:
                self.ui.print_info(self.context.add_file(path))
        elif command == "/drop":
            if not args:
                self.ui.print_error("Usage: /drop <file>")
            for path in args:
                self.ui.print_info(self.context.remove_file(path))
        elif command == "/context":
            files = self.context.files
            self.ui.print_info("Context files:" if files else "No files in context.")
            for path in files:
                self.ui.print_dim(f"  {path}")
            self.ui.print_dim(format_bar(self.agent.context_usage()))
        elif command == "/compact":
            focus = " ".join(args) or None
            removed = await self.agent.compact(focus)
            self.ui.print_success(f"Conversation compacted ({removed} messages removed).")
        elif command == "/clear":
            self.agent.clear_history()
            self.context.clear()
            self.ui.print_success("Context and history cleared.")
        elif command == "/mcp":
            await self._handle_mcp(args)
        elif command == "/tools":
            for tool in self.registry.tools():
                self.ui.print_info(f"  {tool.name} [{tool.kind.value}] {tool.description[:60]}")
        else:
            self.ui.print_error(f"Unknown command: {command}")
        return True

    async def _handle_mcp(self, args: list[str]) -> None:
        if not args:
            self.ui.print_error("Usage: /mcp <connect|list|disconnect> [args]")
            return
        action, rest = args[0].lower(), args[1:]
        if action == "connect":
            if not rest:
                self.ui.print_error("Usage: /mcp connect <command> [args...]")
                return
            try:
                session = await self.rpc.connect(rest[0], rest[1:])
            except (MentisError, OSError) as e:
                self.ui.print_error(f"Failed to connect: {e}")
                return
            names = self.rpc.tools_for(session)
            self.ui.print_success(f"Connected to {session.server_name}. Added {len(names)} tools:")
            for name in names:
                self.ui.print_dim(f"  - {name}")
        elif action == "list":
            sessions = self.rpc.sessions
            if not sessions:
                self.ui.print_info("No active MCP connections.")
            for idx, session in enumerate(sessions, start=1):
                self.ui.print_info(f"  {idx}. {session.server_name} ({session.label})")
        elif action == "disconnect":
            await self.rpc.disconnect_all()
            self.ui.print_success("Disconnected all MCP clients.")
        else:
            self.ui.print_error(f"Unknown MCP action: {action}")


async def run_interactive(app: MentisApp) -> None:
    """Run the read-eval-print loop until /exit or end of input."""
    ui = app.ui
    ui.print_welcome(app.model_name, app.agent.mode.value)
    while True:
        try:
            line = await asyncio.to_thread(ui.prompt, f"{app.agent.mode.value.upper()}> ")
        except (EOFError, KeyboardInterrupt):
            break

        line = line.strip()
        if not line:
            continue
        try:
            if line.startswith("/"):
                if not await app.handle_command(line):
                    break
            else:
                await app.chat(line)
        except MentisError as e:
            log.error("Error in interactive loop", error=str(e))
            ui.print_error(str(e))


async def run_app(config: Config, prompt: str = "") -> int:
    ui = TerminalUI()
    try:
        app = MentisApp(config, ui)
    except ValueError as e:
        ui.print_error(str(e))
        return 2

    try:
        await app.start()
        if prompt:
            result = await app.chat(prompt)
            return 0 if result.status is TurnStatus.COMPLETED else 1
        await run_interactive(app)
        return 0
    finally:
        await app.close()


def load_config(path: str = "") -> Config:
    """Load config from ``path`` or the default locations.

    Raises:
        ConfigurationError: the file exists but cannot be parsed or validated
    """
    try:
        return Config.from_yaml(Path(path)) if path else Config.load()
    except (OSError, yaml.YAMLError, ValidationError) as e:
        log.error("Failed to load config", path=path, error=str(e))
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def main(
    config: str = "",
    model: str = "",
    provider: str = "",
    yolo: bool = False,
    verbose: bool = False,
    prompt: str = "",
) -> None:
    """Start a Mentis session."""
    try:
        cfg = load_config(config)
    except ConfigurationError as e:
        TerminalUI().print_error(str(e))
        sys.exit(2)
    if model:
        cfg.model.model = model
    if provider:
        cfg.model.provider = provider
    if yolo:
        cfg.agent.auto_confirm = True
    if verbose:
        os.environ["MENTIS_LOGGING__LEVEL"] = "DEBUG"
        cfg.logging.level = "DEBUG"
    set_config(cfg)
    configure_logging()

    try:
        code = asyncio.run(run_app(get_config(), prompt))
    except KeyboardInterrupt:
        log.info("Shutting down...")
        code = 0
    sys.exit(code)


def version() -> None:
    """Show version information."""
    from mentis import __version__

    print(f"Mentis v{__version__}")


def cli() -> None:
    import typer

    app = typer.Typer(help="Mentis - an interactive coding assistant", add_completion=False)

    @app.callback(invoke_without_command=True)
    def run(
        ctx: typer.Context,
        config: str = typer.Option("", "-c", "--config", help="Path to config file"),
        model: str = typer.Option("", "-m", "--model", help="Override model"),
        provider: str = typer.Option("", "-p", "--provider", help="Override provider"),
        yolo: bool = typer.Option(False, "--yolo", help="Approve every tool call without asking"),
        verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
        prompt: str = typer.Option("", "--prompt", help="Run one request and exit"),
    ) -> None:
        if ctx.invoked_subcommand is None:
            main(config, model, provider, yolo, verbose, prompt)

    @app.command("version")
    def show_version() -> None:
        version()

    app()


if __name__ == "__main__":
    cli()

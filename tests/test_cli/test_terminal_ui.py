import sys
from io import StringIO
from pathlib import Path

import pytest
from rich.console import Console

from mentis.cli import TerminalUI
from mentis.config import Config
from mentis.llm import LLMProvider, LLMResponse
from mentis.main import MentisApp
from mentis.policy import AgentMode

FAKE_SERVER = str(Path(__file__).resolve().parent.parent / "test_rpc" / "fake_server.py")


class CannedProvider(LLMProvider):
    def __init__(self, reply: str = "**done**"):
        self.reply = reply

    async def chat(self, messages, tools=None) -> LLMResponse:
        return LLMResponse(content=self.reply, usage={"prompt_tokens": 5, "completion_tokens": 3})


def _ui(monkeypatch, tmp_path: Path) -> tuple[TerminalUI, StringIO]:
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    buffer = StringIO()
    return TerminalUI(Console(file=buffer, width=200)), buffer


def _app(monkeypatch, tmp_path: Path) -> tuple[MentisApp, StringIO]:
    ui, buffer = _ui(monkeypatch, tmp_path)
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    config = Config()
    config.tools.enabled = ["read_file", "list_dir", "run_shell"]
    app = MentisApp(config, ui, root=workspace)
    return app, buffer


def test_special_command_completion(monkeypatch, tmp_path: Path):
    ui, _ = _ui(monkeypatch, tmp_path)

    assert ui._complete_special_command("/c", 0) == "/context"
    assert ui._complete_special_command("/c", 1) == "/compact"
    assert ui._complete_special_command("/c", 2) == "/clear"
    assert ui._complete_special_command("/c", 3) is None
    assert ui._complete_special_command("hello", 0) is None


def test_tool_progress_lines(monkeypatch, tmp_path: Path):
    ui, buffer = _ui(monkeypatch, tmp_path)

    ui.tool_started("read_file", {"filePath": "a.py"})
    ui.tool_finished("read_file", {"filePath": "a.py"}, "x" * 300)
    ui.tool_declined("write_file")

    out = buffer.getvalue()
    assert "[Action] read_file(filePath='a.py')" in out
    assert "[Result] read_file: " + "x" * 200 + "..." in out
    assert "Action cancelled by user." in out


@pytest.mark.asyncio
async def test_mode_and_unknown_commands(monkeypatch, tmp_path: Path):
    app, buffer = _app(monkeypatch, tmp_path)
    try:
        assert await app.handle_command("/plan") is True
        assert app.agent.mode is AgentMode.PLAN
        assert await app.handle_command("/BUILD") is True
        assert app.agent.mode is AgentMode.BUILD
        assert await app.handle_command("/frobnicate") is True
        assert await app.handle_command("/exit") is False
        assert await app.handle_command("/quit") is False
    finally:
        await app.close()

    out = buffer.getvalue()
    assert "Switched to PLAN mode." in out
    assert "Switched to BUILD mode." in out
    assert "Error: Unknown command: /frobnicate" in out


@pytest.mark.asyncio
async def test_context_commands(monkeypatch, tmp_path: Path):
    app, buffer = _app(monkeypatch, tmp_path)
    (app.root / "notes.md").write_text("pinned", encoding="utf-8")
    try:
        await app.handle_command("/add notes.md")
        await app.handle_command("/context")
        assert len(app.context.files) == 1
        await app.handle_command("/drop notes.md")
        await app.handle_command("/clear")
        assert app.context.files == []
        assert app.agent.history == []
    finally:
        await app.close()

    out = buffer.getvalue()
    assert "Added notes.md to context." in out
    assert "Context files:" in out
    assert "tokens" in out
    assert "Removed notes.md from context." in out
    assert "Context and history cleared." in out


@pytest.mark.asyncio
async def test_tools_command_lists_enabled_tools(monkeypatch, tmp_path: Path):
    app, buffer = _app(monkeypatch, tmp_path)
    try:
        await app.handle_command("/tools")
    finally:
        await app.close()

    out = buffer.getvalue()
    assert "read_file [file]" in out
    assert "run_shell [process]" in out
    assert "write_file" not in out


@pytest.mark.asyncio
async def test_mcp_connect_list_and_disconnect(monkeypatch, tmp_path: Path):
    app, buffer = _app(monkeypatch, tmp_path)
    try:
        await app.handle_command("/mcp list")
        await app.handle_command(f"/mcp connect {sys.executable} {FAKE_SERVER}")
        assert app.registry.has_tool("echo")
        await app.handle_command("/mcp list")
        await app.handle_command("/mcp disconnect")
        assert not app.registry.has_tool("echo")
    finally:
        await app.close()

    out = buffer.getvalue()
    assert "No active MCP connections." in out
    assert "Connected to fake-server. Added 4 tools:" in out
    assert "  1. fake-server (" in out
    assert "Disconnected all MCP clients." in out


@pytest.mark.asyncio
async def test_mcp_connect_failure_is_reported(monkeypatch, tmp_path: Path):
    app, buffer = _app(monkeypatch, tmp_path)
    try:
        await app.handle_command("/mcp connect /definitely/not/a/real/binary")
    finally:
        await app.close()

    assert "Failed to connect:" in buffer.getvalue()
    assert app.rpc.sessions == []


@pytest.mark.asyncio
async def test_chat_prints_reply_and_usage(monkeypatch, tmp_path: Path):
    app, buffer = _app(monkeypatch, tmp_path)
    await app.provider.close()
    app.provider = app.agent.provider = CannedProvider()
    try:
        await app.chat("hello")
    finally:
        await app.close()

    out = buffer.getvalue()
    assert "Mentis:" in out
    assert "done" in out
    assert "(Tokens: 5 in / 3 out)" in out

import asyncio
import json

import pytest

from mentis.agent import AgentLoop, TurnStatus, validate_history
from mentis.exceptions import LLMAPIError
from mentis.llm import LLMProvider, LLMResponse, Message, ToolCall
from mentis.policy import BUILD_DIRECTIVE, PLAN_DIRECTIVE, ActiveSkill, AgentMode, SkillCatalog
from mentis.tools.registry import Tool, ToolConcurrency, ToolRegistry, ToolResult


class ScriptedProvider(LLMProvider):
    """Returns queued responses and records what it was sent."""

    def __init__(self, responses: list[LLMResponse]):
        self.responses = list(responses)
        self.calls: list[dict] = []

    async def chat(self, messages, tools=None) -> LLMResponse:
        self.calls.append({"messages": list(messages), "tools": tools})
        if not self.responses:
            return LLMResponse(content="done")
        return self.responses.pop(0)


class LoopingProvider(LLMProvider):
    def __init__(self):
        self.count = 0

    async def chat(self, messages, tools=None) -> LLMResponse:
        self.count += 1
        return LLMResponse(content=None, tool_calls=[_call(f"c{self.count}", "reader")])


class FailingProvider(LLMProvider):
    async def chat(self, messages, tools=None) -> LLMResponse:
        raise LLMAPIError("Model API error 500: Internal Server Error", status_code=500)


class RecordingTool(Tool):
    description = "Test tool"
    parameters = {"type": "object", "properties": {}, "required": []}

    def __init__(
        self,
        name: str,
        *,
        output: str = "ok",
        concurrency: ToolConcurrency = ToolConcurrency.SEQUENTIAL,
        requires_confirmation: bool = False,
        events: list | None = None,
        delay: float = 0.0,
    ):
        self.name = name
        self.output = output
        self.concurrency = concurrency
        self.requires_confirmation = requires_confirmation
        self.events = events if events is not None else []
        self.delay = delay
        self.calls: list[dict] = []

    async def execute(self, **kwargs) -> ToolResult:
        self.calls.append(kwargs)
        self.events.append(("start", self.name))
        if self.delay:
            await asyncio.sleep(self.delay)
        self.events.append(("end", self.name))
        return ToolResult(success=True, content=self.output)


class ExplodingTool(Tool):
    name = "explode"
    description = "Raises"

    async def execute(self, **kwargs) -> ToolResult:
        raise RuntimeError("kaput")


class CancellingTool(RecordingTool):
    async def execute(self, **kwargs) -> ToolResult:
        kwargs["_cancel_token"].cancel("test")
        return await super().execute(**kwargs)


class RegisteringTool(RecordingTool):
    def __init__(self, registry: ToolRegistry):
        super().__init__("registrar")
        self.registry = registry

    async def execute(self, **kwargs) -> ToolResult:
        self.registry.register(RecordingTool("late"))
        return await super().execute(**kwargs)


def _call(call_id: str, name: str, **arguments) -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments_json=json.dumps(arguments))


def _tool_messages(agent: AgentLoop) -> dict[str, str]:
    return {msg.tool_call_id: msg.content for msg in agent.history if msg.role == "tool"}


@pytest.mark.asyncio
async def test_plain_answer_completes_turn():
    provider = ScriptedProvider([LLMResponse(content="hello")])
    agent = AgentLoop(provider, ToolRegistry())

    result = await agent.run_turn("hi")

    assert result.status is TurnStatus.COMPLETED
    assert result.content == "hello"
    assert [msg.role for msg in agent.history] == ["user", "assistant"]
    assert agent.history[0].content == "hi" + BUILD_DIRECTIVE


@pytest.mark.asyncio
async def test_tool_results_keep_their_call_ids():
    registry = ToolRegistry(
        [
            RecordingTool("alpha", output="A", concurrency=ToolConcurrency.CONCURRENT),
            RecordingTool("beta", output="B"),
        ]
    )
    provider = ScriptedProvider(
        [
            LLMResponse(content=None, tool_calls=[_call("call-b", "beta"), _call("call-a", "alpha")]),
            LLMResponse(content="finished"),
        ]
    )
    agent = AgentLoop(provider, registry)

    result = await agent.run_turn("go")

    assert result.status is TurnStatus.COMPLETED
    assert result.iterations == 1
    assert _tool_messages(agent) == {"call-a": "A", "call-b": "B"}
    assert validate_history(agent.history) == []
    assistant = agent.history[1]
    assert assistant.role == "assistant"
    assert [call.id for call in assistant.tool_calls] == ["call-b", "call-a"]
    assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_concurrent_tools_overlap_and_sequential_tools_do_not():
    events: list = []
    registry = ToolRegistry(
        [
            RecordingTool("r1", concurrency=ToolConcurrency.CONCURRENT, events=events, delay=0.05),
            RecordingTool("r2", concurrency=ToolConcurrency.CONCURRENT, events=events, delay=0.05),
            RecordingTool("w1", events=events, delay=0.01),
            RecordingTool("w2", events=events, delay=0.01),
        ]
    )
    provider = ScriptedProvider(
        [
            LLMResponse(
                content=None,
                tool_calls=[_call("1", "w1"), _call("2", "r1"), _call("3", "w2"), _call("4", "r2")],
            ),
            LLMResponse(content="done"),
        ]
    )

    await AgentLoop(provider, registry).run_turn("go")

    assert {events[0], events[1]} == {("start", "r1"), ("start", "r2")}
    assert events[4:] == [("start", "w1"), ("end", "w1"), ("start", "w2"), ("end", "w2")]


@pytest.mark.asyncio
async def test_declined_tool_is_never_executed():
    gated = RecordingTool("write_file", requires_confirmation=True)
    prompts: list[str] = []

    def confirm(message: str) -> bool:
        prompts.append(message)
        return False

    provider = ScriptedProvider(
        [LLMResponse(content=None, tool_calls=[_call("w", "write_file")]), LLMResponse(content="ok")]
    )
    agent = AgentLoop(provider, ToolRegistry([gated]), confirm=confirm)

    result = await agent.run_turn("write it")

    assert result.status is TurnStatus.COMPLETED
    assert gated.calls == []
    assert prompts == ["Allow write_file()?"]
    assert _tool_messages(agent) == {"w": "Error: User rejected write_file operation."}


@pytest.mark.asyncio
async def test_async_approval_runs_tool():
    gated = RecordingTool("write_file", output="written", requires_confirmation=True)

    async def confirm(message: str) -> bool:
        return True

    provider = ScriptedProvider(
        [LLMResponse(content=None, tool_calls=[_call("w", "write_file")]), LLMResponse(content="ok")]
    )
    agent = AgentLoop(provider, ToolRegistry([gated]), confirm=confirm)

    await agent.run_turn("write it")

    assert len(gated.calls) == 1
    assert _tool_messages(agent) == {"w": "written"}


@pytest.mark.asyncio
async def test_auto_confirm_and_skill_allow_list_skip_the_prompt():
    def confirm(message: str) -> bool:
        raise AssertionError("should not be asked")

    for kwargs in (
        {"auto_confirm": True},
        {"skills": SkillCatalog(active=ActiveSkill("scaffold", allowed_tools=["Write"]))},
    ):
        gated = RecordingTool("write_file", requires_confirmation=True)
        provider = ScriptedProvider(
            [LLMResponse(content=None, tool_calls=[_call("w", "write_file")]), LLMResponse(content="ok")]
        )
        agent = AgentLoop(provider, ToolRegistry([gated]), confirm=confirm, **kwargs)

        await agent.run_turn("write it")

        assert len(gated.calls) == 1


@pytest.mark.asyncio
async def test_missing_confirm_callback_declines_gated_tools():
    gated = RecordingTool("run_shell", requires_confirmation=True)
    provider = ScriptedProvider(
        [LLMResponse(content=None, tool_calls=[_call("s", "run_shell")]), LLMResponse(content="ok")]
    )
    agent = AgentLoop(provider, ToolRegistry([gated]))

    await agent.run_turn("run")

    assert gated.calls == []
    assert _tool_messages(agent)["s"] == "Error: User rejected run_shell operation."


@pytest.mark.asyncio
async def test_unknown_tool_and_failures_become_error_results():
    registry = ToolRegistry([ExplodingTool(), RecordingTool("reader", concurrency=ToolConcurrency.CONCURRENT)])
    provider = ScriptedProvider(
        [
            LLMResponse(
                content=None,
                tool_calls=[
                    _call("u", "missing"),
                    _call("x", "explode"),
                    ToolCall(id="j", name="reader", arguments_json="{not json"),
                ],
            ),
            LLMResponse(content="recovered"),
        ]
    )
    agent = AgentLoop(provider, registry)

    result = await agent.run_turn("go")

    messages = _tool_messages(agent)
    assert result.status is TurnStatus.COMPLETED
    assert result.content == "recovered"
    assert messages["u"] == "Error: Tool missing not found."
    assert messages["x"] == "Error: Tool 'explode' failed: kaput"
    assert messages["j"].startswith("Error: Invalid arguments for tool 'reader'")


@pytest.mark.asyncio
async def test_failed_tool_result_is_rendered_as_error():
    class Refusing(Tool):
        name = "refuse"
        description = "Fails politely"

        async def execute(self, **kwargs) -> ToolResult:
            return ToolResult(success=False, error="not today")

    provider = ScriptedProvider(
        [LLMResponse(content=None, tool_calls=[_call("r", "refuse")]), LLMResponse(content="ok")]
    )
    agent = AgentLoop(provider, ToolRegistry([Refusing()]))

    await agent.run_turn("go")

    assert _tool_messages(agent) == {"r": "Error: not today"}


@pytest.mark.asyncio
async def test_adapter_failure_fails_the_turn():
    agent = AgentLoop(FailingProvider(), ToolRegistry())

    result = await agent.run_turn("hi")

    assert result.status is TurnStatus.FAILED
    assert "500" in (result.error or "")
    assert [msg.role for msg in agent.history] == ["user"]


@pytest.mark.asyncio
async def test_cancellation_between_sequential_calls_stops_the_batch():
    first = CancellingTool("first", output="first done")
    second = RecordingTool("second")
    provider = ScriptedProvider(
        [
            LLMResponse(content=None, tool_calls=[_call("1", "first"), _call("2", "second")]),
            LLMResponse(content="never"),
        ]
    )
    agent = AgentLoop(provider, ToolRegistry([first, second]))

    result = await agent.run_turn("go")

    assert result.status is TurnStatus.CANCELLED
    assert second.calls == []
    assert len(provider.calls) == 1
    messages = _tool_messages(agent)
    assert messages["1"] == "first done"
    assert messages["2"] == "Error: Request cancelled by user."


@pytest.mark.asyncio
async def test_pre_cancelled_token_starts_no_tools():
    tool = RecordingTool("reader")
    provider = ScriptedProvider([LLMResponse(content=None, tool_calls=[_call("1", "reader")])])
    agent = AgentLoop(provider, ToolRegistry([tool]))
    token = agent.controller.new_turn()
    token.cancel()

    result = await agent.run_turn("go", token=token)

    assert result.status is TurnStatus.CANCELLED
    assert tool.calls == []


@pytest.mark.asyncio
async def test_iteration_limit_fails_runaway_turns():
    provider = LoopingProvider()
    agent = AgentLoop(provider, ToolRegistry([RecordingTool("reader")]), max_iterations=2)

    result = await agent.run_turn("loop")

    assert result.status is TurnStatus.FAILED
    assert provider.count == 3
    assert "2 tool iterations" in (result.error or "")


@pytest.mark.asyncio
async def test_tools_registered_mid_turn_are_advertised_next_turn():
    registry = ToolRegistry()
    registry.register(RegisteringTool(registry))
    provider = ScriptedProvider(
        [
            LLMResponse(content=None, tool_calls=[_call("1", "registrar")]),
            LLMResponse(content="first turn"),
            LLMResponse(content="second turn"),
        ]
    )
    agent = AgentLoop(provider, registry)

    await agent.run_turn("one")
    await agent.run_turn("two")

    names = [[tool["function"]["name"] for tool in call["tools"]] for call in provider.calls]
    assert names == [["registrar"], ["registrar"], ["registrar", "late"]]


def test_compose_input_orders_context_sections():
    skills = SkillCatalog(
        skills_context="SKILLS",
        commands_context="COMMANDS",
        active=ActiveSkill("reviewer", instructions="Review carefully."),
    )
    agent = AgentLoop(ScriptedProvider([]), ToolRegistry(), skills=skills, mode=AgentMode.PLAN)

    composed = agent.compose_input("question")

    assert composed == (
        "COMMANDS\n\nSKILLS\n\n[Active skill: reviewer]\nReview carefully.\n\nquestion" + PLAN_DIRECTIVE
    )


def test_validate_history_reports_orphan_tool_results():
    history = [
        Message(role="user", content="hi"),
        Message(role="assistant", content=None, tool_calls=[ToolCall(id="a", name="t")]),
        Message(role="tool", content="ok", tool_call_id="a"),
        Message(role="tool", content="??", tool_call_id="b"),
    ]

    problems = validate_history(history)

    assert len(problems) == 1
    assert "'b'" in problems[0]


@pytest.mark.asyncio
async def test_auto_compaction_asks_before_compacting():
    prompts: list[str] = []

    def confirm(message: str) -> bool:
        prompts.append(message)
        return False

    provider = ScriptedProvider([LLMResponse(content="hello")])
    agent = AgentLoop(provider, ToolRegistry(), confirm=confirm, context_max_tokens=100)

    await agent.run_turn("hi")

    assert prompts == ["Compact conversation now?"]
    assert [msg.role for msg in agent.history] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_auto_compaction_with_auto_confirm_summarizes_history():
    provider = ScriptedProvider([LLMResponse(content="hello"), LLMResponse(content="they said hi")])
    agent = AgentLoop(provider, ToolRegistry(), auto_confirm=True, context_max_tokens=100)

    await agent.run_turn("hi")

    assert len(agent.history) == 1
    assert agent.history[0].role == "system"
    assert agent.history[0].content.endswith("they said hi")


@pytest.mark.asyncio
async def test_configured_confirmation_gates_concurrent_tools():
    prompts: list[str] = []

    def confirm(message: str) -> bool:
        prompts.append(message)
        return False

    search = RecordingTool("web_search", concurrency=ToolConcurrency.CONCURRENT)
    reader = RecordingTool("read_file", output="body", concurrency=ToolConcurrency.CONCURRENT)
    provider = ScriptedProvider(
        [
            LLMResponse(content=None, tool_calls=[_call("s", "web_search"), _call("r", "read_file")]),
            LLMResponse(content="ok"),
        ]
    )
    agent = AgentLoop(
        provider,
        ToolRegistry([search, reader]),
        confirm=confirm,
        require_confirmation=["web_search"],
    )

    await agent.run_turn("look it up")

    assert prompts == ["Allow web_search()?"]
    assert search.calls == []
    assert len(reader.calls) == 1
    assert _tool_messages(agent) == {"s": "Error: User rejected web_search operation.", "r": "body"}

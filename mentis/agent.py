"""Agent turn loop: model calls, tool dispatch, confirmation, cancellation."""

import asyncio
import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from mentis.cancellation import CancellationController, CancellationToken
from mentis.compaction import ContextUsage, ConversationCompacter, calculate_usage, should_compact
from mentis.context import ContextManager
from mentis.exceptions import LLMError, ToolError
from mentis.llm import LLMProvider, LLMResponse, Message, ToolCall
from mentis.logging import get_logger
from mentis.policy import AgentMode, ConfirmationPolicy, SkillCatalog
from mentis.tools.registry import Tool, ToolConcurrency, ToolRegistry

log = get_logger(__name__)

CANCELLED_MESSAGE = "Request cancelled by user."
ConfirmCallback = Callable[[str], bool | Awaitable[bool]]


class TurnStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class TurnResult:
    """Outcome of one user turn."""

    status: TurnStatus
    content: str = ""
    error: str | None = None
    usage: dict[str, int] = field(default_factory=dict)
    iterations: int = 0


class AgentOutput:
    """Receives progress events from the loop. The default ignores them."""

    def status(self, text: str) -> None:
        pass

    def tool_started(self, name: str, arguments: dict[str, Any]) -> None:
        pass

    def tool_finished(self, name: str, arguments: dict[str, Any], output: str) -> None:
        pass

    def tool_declined(self, name: str) -> None:
        pass


def validate_history(history: list[Message]) -> list[str]:
    """Return a description of every tool message with no issuing call."""
    announced: set[str] = set()
    problems: list[str] = []
    for index, msg in enumerate(history):
        if msg.role == "assistant":
            announced.update(call.id for call in msg.tool_calls)
        elif msg.role == "tool" and msg.tool_call_id not in announced:
            problems.append(f"message {index}: tool result {msg.tool_call_id!r} has no matching call")
    return problems


class AgentLoop:
    """Runs user turns against a model with an injected tool registry."""

    def __init__(
        self,
        provider: LLMProvider,
        registry: ToolRegistry,
        *,
        confirm: ConfirmCallback | None = None,
        context: ContextManager | None = None,
        skills: SkillCatalog | None = None,
        mode: AgentMode = AgentMode.BUILD,
        auto_confirm: bool = False,
        output: AgentOutput | None = None,
        compacter: ConversationCompacter | None = None,
        max_iterations: int | None = None,
        controller: CancellationController | None = None,
        require_confirmation: list[str] | None = None,
        auto_compact: bool = True,
        context_max_tokens: int = 128000,
        compaction_threshold: int = 80,
        turn_timeout: float | None = None,
    ):
        """Initialize the loop.

        Args:
            provider: Model adapter
            registry: Tools the model may call
            confirm: Asked before approval-gated tools run; sync or async.
                Without one, gated calls are declined.
            context: Pinned files and repository map added to each turn
            skills: Skill and command catalogue text plus the active skill
            mode: PLAN or BUILD directive appended to each turn
            auto_confirm: Approve every gated call without asking
            output: Progress sink (terminal UI)
            compacter: Conversation summarizer
            max_iterations: Model round trips allowed per turn (default 50)
            controller: Source of turn tokens and interrupt producers
            require_confirmation: Tool names that need approval, overriding
                each tool's own declaration
            auto_compact: Offer compaction when usage crosses the threshold
            context_max_tokens: Context window used for usage estimates
            compaction_threshold: Usage percentage that triggers compaction
            turn_timeout: Cancel a turn after this many seconds
        """
        self.provider = provider
        self.registry = registry
        self.confirm = confirm
        self.context = context
        self.skills = skills or SkillCatalog()
        self.mode = mode
        self.auto_confirm = auto_confirm
        self.output = output or AgentOutput()
        self.compacter = compacter or ConversationCompacter()
        self.max_iterations = max_iterations or 50
        self.controller = controller or CancellationController()
        self.require_confirmation = list(require_confirmation or [])
        self.auto_compact = auto_compact
        self.context_max_tokens = context_max_tokens
        self.compaction_threshold = compaction_threshold
        self.turn_timeout = turn_timeout
        self.history: list[Message] = []
        self.last_usage: dict[str, int] = self._empty_usage()
        self.total_usage: dict[str, int] = self._empty_usage()

    @staticmethod
    def _empty_usage() -> dict[str, int]:
        return {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}

    @staticmethod
    def _accumulate_usage(target: dict[str, int], usage: dict[str, int] | None) -> None:
        if not usage:
            return
        prompt = int(usage.get("prompt_tokens", 0))
        completion = int(usage.get("completion_tokens", 0))
        target["prompt_tokens"] += prompt
        target["completion_tokens"] += completion
        target["total_tokens"] += int(usage.get("total_tokens", prompt + completion))

    @property
    def policy(self) -> ConfirmationPolicy:
        return ConfirmationPolicy(
            auto_confirm=self.auto_confirm,
            require_confirmation=self.require_confirmation,
            active_skill=self.skills.active,
        )

    def compose_input(self, user_input: str) -> str:
        """Build the user message: context, catalogues, skill, input, mode."""
        full_input = f"{user_input}{self.mode.directive}"

        active = self.skills.active
        if active is not None and active.instructions:
            full_input = f"[Active skill: {active.name}]\n{active.instructions}\n\n{full_input}"
        if self.skills.skills_context:
            full_input = f"{self.skills.skills_context}\n\n{full_input}"
        if self.skills.commands_context:
            full_input = f"{self.skills.commands_context}\n\n{full_input}"

        if self.context is not None:
            context = self.context.get_context_string()
            if context:
                full_input = f"{context}\n\nUser Question: {full_input}"
        return full_input

    def context_usage(self) -> ContextUsage:
        return calculate_usage(self.history, self.context_max_tokens)

    def clear_history(self) -> None:
        self.history = []

    async def compact(self, focus_topic: str | None = None) -> int:
        """Compact history now. Returns how many messages were removed."""
        before = len(self.history)
        self.history = await self.compacter.compact(self.history, self.provider, focus_topic)
        return before - len(self.history)

    async def run_turn(self, user_input: str, token: CancellationToken | None = None) -> TurnResult:
        """Process one user message until the model stops calling tools."""
        token = token or self.controller.new_turn()
        self.last_usage = self._empty_usage()
        self.history.append(Message(role="user", content=self.compose_input(user_input)))
        # Tools registered during the turn are advertised from the next one.
        definitions = self.registry.get_definitions()

        timeout_task = None
        if self.turn_timeout:
            timeout_task = self.controller.cancel_after(token, self.turn_timeout)
        try:
            async with self.controller.observe(token):
                result = await self._run_iterations(token, definitions)
        finally:
            if timeout_task is not None:
                timeout_task.cancel()

        result.usage = dict(self.last_usage)
        log.info("Turn finished", status=result.status.value, iterations=result.iterations)
        if result.status is TurnStatus.COMPLETED:
            await self._maybe_auto_compact()
        return result

    async def _chat(self, definitions: list[dict[str, Any]]) -> LLMResponse:
        self.output.status("thinking")
        response = await self.provider.chat(self.history, definitions)
        self._accumulate_usage(self.last_usage, response.usage)
        self._accumulate_usage(self.total_usage, response.usage)
        return response

    async def _run_iterations(
        self,
        token: CancellationToken,
        definitions: list[dict[str, Any]],
    ) -> TurnResult:
        iterations = 0
        try:
            response = await self._chat(definitions)
            while response.tool_calls:
                if token.cancelled:
                    return TurnResult(TurnStatus.CANCELLED, error=CANCELLED_MESSAGE, iterations=iterations)
                iterations += 1
                if iterations > self.max_iterations:
                    log.warning("Iteration limit reached", max_iterations=self.max_iterations)
                    return TurnResult(
                        TurnStatus.FAILED,
                        error=f"Stopped after {self.max_iterations} tool iterations.",
                        iterations=iterations,
                    )

                self.history.append(
                    Message(role="assistant", content=response.content, tool_calls=list(response.tool_calls))
                )
                await self._handle_tool_calls(response.tool_calls, token)
                if token.cancelled:
                    return TurnResult(TurnStatus.CANCELLED, error=CANCELLED_MESSAGE, iterations=iterations)

                response = await self._chat(definitions)
        except LLMError as e:
            log.error("Model call failed", error=str(e))
            return TurnResult(TurnStatus.FAILED, error=str(e), iterations=iterations)

        content = response.content or ""
        self.history.append(Message(role="assistant", content=content))
        return TurnResult(TurnStatus.COMPLETED, content=content, iterations=iterations)

    def _lookup(self, call: ToolCall) -> tuple[Tool, dict[str, Any]]:
        return self.registry.get(call.name), call.arguments()

    def _is_concurrent(self, call: ToolCall) -> bool:
        if not self.registry.has_tool(call.name):
            return False
        tool = self.registry.get(call.name)
        # Calls that need approval are asked one at a time, in order.
        if self.policy.requires_confirmation(tool):
            return False
        return tool.concurrency is ToolConcurrency.CONCURRENT

    def _append_result(self, call: ToolCall, content: str) -> None:
        self.history.append(
            Message(role="tool", content=content, tool_call_id=call.id, name=call.name)
        )

    async def _handle_tool_calls(self, tool_calls: list[ToolCall], token: CancellationToken) -> None:
        """Run one batch: side-effect-free tools together, the rest in order."""
        concurrent = [call for call in tool_calls if self._is_concurrent(call)]
        sequential = [call for call in tool_calls if not self._is_concurrent(call)]
        finished: set[str] = set()

        if concurrent and not token.cancelled:
            outputs = await asyncio.gather(*(self._run_call(call, token) for call in concurrent))
            for call, output in zip(concurrent, outputs):
                self._append_result(call, output)
                finished.add(call.id)

        for call in sequential:
            if token.cancelled:
                break
            output = await self._run_gated_call(call, token)
            if output is None:
                break
            self._append_result(call, output)
            finished.add(call.id)

        # Calls that never started still need a result for the next request.
        for call in tool_calls:
            if call.id not in finished:
                self._append_result(call, f"Error: {CANCELLED_MESSAGE}")

    async def _run_call(self, call: ToolCall, token: CancellationToken) -> str:
        try:
            tool, arguments = self._lookup(call)
        except ToolError as e:
            log.warning("Tool call rejected", tool=call.name, error=str(e))
            return f"Error: {e}"
        return await self._invoke(tool, call, arguments, token)

    async def _run_gated_call(self, call: ToolCall, token: CancellationToken) -> str | None:
        """Confirm if needed, then run. ``None`` means cancelled before start."""
        try:
            tool, arguments = self._lookup(call)
        except ToolError as e:
            log.warning("Tool call rejected", tool=call.name, error=str(e))
            return f"Error: {e}"

        if self.policy.requires_confirmation(tool):
            approved = await self._ask(tool.confirmation_message(arguments))
            if not approved:
                log.info("Tool call declined", tool=tool.name)
                self.output.tool_declined(tool.name)
                return f"Error: User rejected {tool.name} operation."
            if token.cancelled:
                return None

        return await self._invoke(tool, call, arguments, token)

    async def _invoke(
        self,
        tool: Tool,
        call: ToolCall,
        arguments: dict[str, Any],
        token: CancellationToken,
    ) -> str:
        self.output.tool_started(tool.name, arguments)
        try:
            result = await self.registry.execute(tool.name, arguments, cancel_token=token)
            output = result.as_text()
        except Exception as e:
            log.error("Tool execution failed", tool=tool.name, call_id=call.id, error=str(e))
            output = f"Error: {e}"
        self.output.tool_finished(tool.name, arguments, output)
        return output

    async def _ask(self, message: str) -> bool:
        if self.confirm is None:
            return False
        async with self.controller.paused():
            answer = self.confirm(message)
            if inspect.isawaitable(answer):
                answer = await answer
        return bool(answer)

    async def _maybe_auto_compact(self) -> None:
        if not self.auto_compact:
            return
        usage = self.context_usage()
        if not should_compact(usage, self.compaction_threshold):
            return
        self.output.status(f"Context is {usage.percentage}% full.")
        if not self.auto_confirm and not await self._ask("Compact conversation now?"):
            return
        removed = await self.compact()
        log.info("Auto-compaction finished", removed=removed)

"""Conversation compaction and context-window usage estimates."""

import json
import math
from dataclasses import dataclass

from mentis.exceptions import LLMError
from mentis.llm import LLMProvider, Message
from mentis.logging import get_logger

log = get_logger(__name__)

SUMMARY_PREFIX = "[Previous Conversation Summary]"
PRESERVED_ROLES = {"system", "tool"}
DEFAULT_MAX_TOKENS = 128000
# Budget for the system prompt and tool definitions that are not in history.
OVERHEAD_CHARS = 2000
BAR_WIDTH = 20


@dataclass
class ContextUsage:
    tokens: int
    percentage: int
    max_tokens: int


def calculate_usage(history: list[Message], max_tokens: int = DEFAULT_MAX_TOKENS) -> ContextUsage:
    """Estimate token usage at roughly four characters per token."""
    total_chars = OVERHEAD_CHARS
    for msg in history:
        if msg.content:
            total_chars += len(msg.content)
        if msg.tool_calls:
            total_chars += len(json.dumps([call.to_dict() for call in msg.tool_calls]))

    tokens = math.ceil(total_chars / 4)
    percentage = min(100, round(tokens / max_tokens * 100)) if max_tokens > 0 else 100
    return ContextUsage(tokens=tokens, percentage=percentage, max_tokens=max_tokens)


def format_bar(usage: ContextUsage) -> str:
    """Plain progress bar, e.g. ``████░░░… 20% | 25k/128k tokens``."""
    filled = min(BAR_WIDTH, round(usage.percentage / (100 / BAR_WIDTH)))
    bar = "█" * filled + "░" * (BAR_WIDTH - filled)
    return (
        f"{bar} {usage.percentage}% | "
        f"{round(usage.tokens / 1000)}k/{round(usage.max_tokens / 1000)}k tokens"
    )


def should_compact(usage: ContextUsage, threshold: int = 80) -> bool:
    return usage.percentage >= threshold


class ConversationCompacter:
    """Collapse user and assistant messages into one summary message.

    System and tool messages are kept verbatim and in order; the summary is
    appended after them as a system message, so compacting an already
    compacted history is a no-op.
    """

    history_window = 10

    def build_prompt(self, messages: list[Message], focus_topic: str | None = None) -> str:
        prompt = (
            "Please summarize the following conversation into a concise overview. Include:\n"
            "- The main topic/problem being discussed\n"
            "- Key decisions made\n"
            "- Important technical details\n"
            "- Current status/next steps\n\n"
        )
        if focus_topic:
            prompt += f"Focus primarily on content related to: {focus_topic}\n\n"
        prompt += "Return ONLY the summary, no other text.\n\n---\n\n"
        for msg in messages[-self.history_window:]:
            prompt += f"{msg.role.upper()}: {msg.content or ''}\n\n"
        return prompt

    async def compact(
        self,
        history: list[Message],
        provider: LLMProvider,
        focus_topic: str | None = None,
    ) -> list[Message]:
        """Return a compacted copy of ``history``; the original on failure."""
        preserved = [msg for msg in history if msg.role in PRESERVED_ROLES]
        to_compact = [msg for msg in history if msg.role not in PRESERVED_ROLES]
        if not to_compact:
            return history

        prompt = self.build_prompt(to_compact, focus_topic)
        try:
            response = await provider.chat([Message(role="user", content=prompt)], [])
        except LLMError as e:
            log.error("Compaction failed", error=str(e))
            return history

        summary = (response.content or "").strip()
        log.info(
            "Conversation compacted",
            before=len(history),
            after=len(preserved) + 1,
            focus=focus_topic,
        )
        return [*preserved, Message(role="system", content=f"{SUMMARY_PREFIX}\n{summary}")]

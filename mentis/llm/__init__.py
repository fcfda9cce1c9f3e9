"""Model adapter contract and an OpenAI-compatible HTTP provider."""

import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from mentis.exceptions import LLMAPIError, LLMError, ToolArgumentsError
from mentis.logging import get_logger

log = get_logger(__name__)


DEFAULT_SYSTEM_PROMPT = (
    "You are Mentis, an expert AI coding assistant. You help users write code, "
    "debug issues, and explain concepts. You are concise, accurate, and professional."
)

PROVIDER_PRESETS: dict[str, dict[str, str]] = {
    "ollama": {
        "base_url": "http://localhost:11434/v1",
        "model": "llama3:latest",
        "api_key": "ollama",
    },
    "openai": {
        "base_url": "https://api.openai.com/v1",
        "model": "gpt-4o",
    },
    "gemini": {
        "base_url": "https://generativelanguage.googleapis.com/v1beta/openai/",
        "model": "gemini-2.5-flash",
    },
    "glm": {
        "base_url": "https://api.z.ai/api/coding/paas/v4/",
        "model": "glm-4.6",
    },
}


@dataclass
class ToolCall:
    """A tool call requested by the model."""

    id: str
    name: str
    arguments_json: str = "{}"

    def arguments(self) -> dict[str, Any]:
        """Decode the JSON argument payload.

        Raises:
            ToolArgumentsError: if the payload is not a JSON object
        """
        raw = (self.arguments_json or "").strip()
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ToolArgumentsError(self.name, str(e)) from e
        if not isinstance(parsed, dict):
            raise ToolArgumentsError(self.name, "arguments must be a JSON object")
        return parsed

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_json},
        }


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str | None
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the OpenAI chat wire format."""
        entry: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            entry["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            entry["tool_call_id"] = self.tool_call_id
        if self.name:
            entry["name"] = self.name
        return entry


@dataclass
class LLMResponse:
    """Response from the model."""

    content: str | None
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)


class LLMProvider(ABC):
    """Abstract base class for model adapters."""

    @abstractmethod
    async def chat(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
    ) -> LLMResponse:
        pass

    async def close(self) -> None:
        return None


class OpenAICompatibleProvider(LLMProvider):
    """Provider for any endpoint speaking the OpenAI chat-completions API."""

    def __init__(
        self,
        model: str,
        base_url: str,
        api_key: str = "",
        temperature: float = 0.7,
        max_tokens: int | None = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        timeout: float = 300.0,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize provider.

        Args:
            model: Model name sent with each request
            base_url: API base URL (``/chat/completions`` is appended)
            api_key: Bearer token
            temperature: Sampling temperature
            max_tokens: Optional completion cap
            system_prompt: System message prepended to every request
            timeout: HTTP timeout in seconds
            client: Optional preconfigured HTTP client (tests)
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.system_prompt = system_prompt
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    def _build_body(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None,
    ) -> dict[str, Any]:
        wire_messages: list[dict[str, Any]] = []
        if self.system_prompt:
            wire_messages.append({"role": "system", "content": self.system_prompt})
        announced: set[str] = set()
        for msg in messages:
            entry = msg.to_dict() if isinstance(msg, Message) else dict(msg)
            for call in entry.get("tool_calls") or []:
                announced.add(str(call.get("id")))
            if entry.get("role") == "tool" and str(entry.get("tool_call_id")) not in announced:
                # Compaction drops the assistant turn that issued this call.
                entry = {
                    "role": "user",
                    "content": f"[Earlier tool result {entry.get('tool_call_id')}]\n{entry.get('content') or ''}",
                }
            wire_messages.append(entry)

        body: dict[str, Any] = {
            "model": self.model,
            "messages": wire_messages,
            "temperature": self.temperature,
        }
        if self.max_tokens:
            body["max_tokens"] = self.max_tokens
        if tools:
            body["tools"] = tools
            body["tool_choice"] = "auto"
        return body

    @staticmethod
    def _parse_tool_calls(raw_calls: list[dict[str, Any]] | None) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for raw in raw_calls or []:
            function = raw.get("function") or {}
            arguments = function.get("arguments", "{}")
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments)
            calls.append(
                ToolCall(
                    id=str(raw.get("id") or f"call_{uuid.uuid4().hex[:12]}"),
                    name=str(function.get("name", "")),
                    arguments_json=arguments,
                )
            )
        return calls

    async def chat(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
    ) -> LLMResponse:
        """Send the conversation and return the model's next message."""
        url = f"{self.base_url}/chat/completions"
        body = self._build_body(messages, tools)

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            log.debug("Calling model", model=self.model, url=url, msg_count=len(body["messages"]))
            response = await self.client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Model HTTP error: {e}") from e

        if not response.is_success:
            raise LLMAPIError(
                f"Model API error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
            message = data["choices"][0]["message"]
            usage_raw = data.get("usage") or {}
            usage = {
                "prompt_tokens": int(usage_raw.get("prompt_tokens", 0) or 0),
                "completion_tokens": int(usage_raw.get("completion_tokens", 0) or 0),
            }
            usage["total_tokens"] = int(
                usage_raw.get("total_tokens", usage["prompt_tokens"] + usage["completion_tokens"]) or 0
            )
            return LLMResponse(
                content=message.get("content"),
                tool_calls=self._parse_tool_calls(message.get("tool_calls")),
                model=str(data.get("model", self.model)),
                usage=usage,
            )
        except (KeyError, IndexError, TypeError, AttributeError, ValueError) as e:
            raise LLMError(f"Malformed model response: {e}") from e

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "ollama",
    model: str = "",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int | None = None,
    timeout: float = 300.0,
) -> LLMProvider:
    """Create a model provider from a preset name.

    Args:
        provider: Preset name (ollama, openai, gemini, glm)
        model: Model name; preset default when empty
        api_key: Optional API key
        base_url: Optional base URL override
        temperature: Default temperature
        max_tokens: Optional completion cap
        timeout: HTTP timeout in seconds

    Returns:
        Configured LLMProvider instance
    """
    key = (provider or "ollama").strip().lower()
    preset = PROVIDER_PRESETS.get(key)
    if preset is None:
        raise ValueError(
            f"Provider '{provider}' not supported. Use one of: {', '.join(PROVIDER_PRESETS)}"
        )
    return OpenAICompatibleProvider(
        model=model or preset["model"],
        base_url=base_url or preset["base_url"],
        api_key=api_key or preset.get("api_key", ""),
        temperature=temperature,
        max_tokens=max_tokens,
        timeout=timeout,
    )

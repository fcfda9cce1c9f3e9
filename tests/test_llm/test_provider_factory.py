import json

import httpx
import pytest

from mentis.exceptions import LLMAPIError, LLMError, ToolArgumentsError
from mentis.llm import (
    DEFAULT_SYSTEM_PROMPT,
    Message,
    OpenAICompatibleProvider,
    ToolCall,
    create_provider,
)


def _provider(handler, **kwargs) -> OpenAICompatibleProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAICompatibleProvider(
        model="test-model",
        base_url="https://llm.example/v1/",
        client=client,
        **kwargs,
    )


def _completion(message: dict, usage: dict | None = None) -> httpx.Response:
    payload = {"model": "test-model", "choices": [{"message": message}]}
    if usage is not None:
        payload["usage"] = usage
    return httpx.Response(200, json=payload)


def test_create_provider_uses_presets():
    provider = create_provider(provider="ollama")

    assert isinstance(provider, OpenAICompatibleProvider)
    assert provider.model == "llama3:latest"
    assert provider.base_url == "http://localhost:11434/v1"
    assert provider.api_key == "ollama"


def test_create_provider_overrides_preset_values():
    provider = create_provider(provider="OpenAI", model="gpt-4o-mini", api_key="sk-test", base_url="http://proxy/v1")

    assert provider.model == "gpt-4o-mini"
    assert provider.base_url == "http://proxy/v1"
    assert provider.api_key == "sk-test"


def test_create_provider_rejects_unknown_names():
    with pytest.raises(ValueError, match="not supported"):
        create_provider(provider="mystery")


@pytest.mark.asyncio
async def test_chat_sends_history_tools_and_auth():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return _completion(
            {"role": "assistant", "content": "hi"},
            usage={"prompt_tokens": 10, "completion_tokens": 2, "total_tokens": 12},
        )

    provider = _provider(handler, api_key="secret", max_tokens=256)
    tools = [{"type": "function", "function": {"name": "read_file", "parameters": {}}}]

    response = await provider.chat([Message(role="user", content="hello")], tools)
    await provider.close()

    assert seen["url"] == "https://llm.example/v1/chat/completions"
    assert seen["auth"] == "Bearer secret"
    body = seen["body"]
    assert body["model"] == "test-model"
    assert body["max_tokens"] == 256
    assert body["tools"] == tools
    assert body["tool_choice"] == "auto"
    assert body["messages"][0] == {"role": "system", "content": DEFAULT_SYSTEM_PROMPT}
    assert body["messages"][1] == {"role": "user", "content": "hello"}
    assert response.content == "hi"
    assert response.usage == {"prompt_tokens": 10, "completion_tokens": 2, "total_tokens": 12}


@pytest.mark.asyncio
async def test_chat_parses_tool_calls():
    def handler(request: httpx.Request) -> httpx.Response:
        return _completion(
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {
                        "id": "call_1",
                        "type": "function",
                        "function": {"name": "read_file", "arguments": '{"filePath": "a.py"}'},
                    },
                    {"type": "function", "function": {"name": "list_dir", "arguments": {"path": "."}}},
                ],
            }
        )

    provider = _provider(handler)

    response = await provider.chat([Message(role="user", content="look")])

    first, second = response.tool_calls
    assert first.id == "call_1"
    assert first.arguments() == {"filePath": "a.py"}
    assert second.id.startswith("call_")
    assert second.arguments() == {"path": "."}
    assert response.content is None


@pytest.mark.asyncio
async def test_http_errors_carry_status_code():
    provider = _provider(lambda request: httpx.Response(500, text="upstream broke"))

    with pytest.raises(LLMAPIError) as exc_info:
        await provider.chat([Message(role="user", content="hi")])

    assert exc_info.value.status_code == 500
    assert "upstream broke" in str(exc_info.value)


@pytest.mark.asyncio
async def test_malformed_payload_is_an_llm_error():
    provider = _provider(lambda request: httpx.Response(200, json={"choices": []}))

    with pytest.raises(LLMError, match="Malformed"):
        await provider.chat([Message(role="user", content="hi")])


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"choices": [{"message": {"content": "hi"}}], "usage": {"prompt_tokens": "lots"}},
        {"choices": [{"message": {"content": "hi"}}], "usage": ["not", "a", "dict"]},
        {"choices": [{"message": "just text"}]},
        {"choices": [{"message": {"content": "hi", "tool_calls": ["bad"]}}]},
    ],
)
async def test_malformed_fields_are_llm_errors(payload):
    provider = _provider(lambda request: httpx.Response(200, json=payload))

    with pytest.raises(LLMError, match="Malformed"):
        await provider.chat([Message(role="user", content="hi")])


def test_orphan_tool_results_become_user_messages():
    provider = _provider(lambda request: httpx.Response(200))
    history = [
        Message(role="tool", content="old output", tool_call_id="gone", name="read_file"),
        Message(role="assistant", content=None, tool_calls=[ToolCall(id="c1", name="list_dir")]),
        Message(role="tool", content="a.py", tool_call_id="c1", name="list_dir"),
    ]

    messages = provider._build_body(history, None)["messages"]

    assert messages[1] == {"role": "user", "content": "[Earlier tool result gone]\nold output"}
    assert messages[3]["role"] == "tool"
    assert messages[3]["tool_call_id"] == "c1"


def test_tool_call_arguments_must_be_an_object():
    assert ToolCall(id="1", name="t", arguments_json="").arguments() == {}

    with pytest.raises(ToolArgumentsError, match="Invalid arguments for tool 't'"):
        ToolCall(id="1", name="t", arguments_json="[1, 2]").arguments()
    with pytest.raises(ToolArgumentsError):
        ToolCall(id="1", name="t", arguments_json="{broken").arguments()

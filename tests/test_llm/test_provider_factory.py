import json

import httpx
import pytest

from taskloom.config import Config, get_config, set_config
from taskloom.exceptions import LLMAPIError
from taskloom.llm import (
    ContentBlock,
    Message,
    OllamaProvider,
    ToolDefinition,
    create_provider,
    provider_from_config,
)


def _with_transport(provider: OllamaProvider, handler) -> OllamaProvider:
    provider.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return provider


def test_create_provider_supports_ollama():
    provider = create_provider(
        provider="ollama",
        model="llama3.2",
        base_url="http://localhost:11434/",
    )
    assert isinstance(provider, OllamaProvider)
    assert provider.model == "llama3.2"
    assert provider.base_url == "http://localhost:11434"


def test_create_provider_rejects_unknown_provider():
    with pytest.raises(ValueError, match="not supported"):
        create_provider(provider="carrier-pigeon", model="x")


def test_provider_from_config_uses_model_settings():
    old_cfg = get_config()
    try:
        cfg = Config()
        cfg.model.model = "qwen2.5-coder"
        cfg.model.context_window = 32768
        cfg.model.supports_reasoning = True
        set_config(cfg)

        provider = provider_from_config()

        assert provider.model == "qwen2.5-coder"
        assert provider.context_window == 32768
        assert provider.supports_reasoning is True
    finally:
        set_config(old_cfg)


def test_build_body_carries_context_window_and_tools():
    provider = OllamaProvider(model="llama3.2", context_window=8192, temperature=0.4)
    tools = [ToolDefinition(name="read_file", description="Read", parameters={"type": "object"})]

    body = provider._build_body([Message(role="user", content="hi")], tools, 0.0, None, stream=False)

    assert body["options"] == {"num_ctx": 8192, "temperature": 0.0, "num_predict": 4096}
    assert body["tools"][0]["function"]["name"] == "read_file"


def test_assistant_blocks_are_converted_with_thinking_and_calls():
    provider = OllamaProvider()
    message = Message(
        role="assistant",
        content="",
        blocks=(
            ContentBlock(type="thinking", text="plan"),
            ContentBlock(type="tool_use", tool_call_id="c1", tool_name="list_files", arguments=(("path", "."),)),
        ),
    )

    converted = provider._convert_messages([message])

    assert converted[0]["thinking"] == "plan"
    assert converted[0]["tool_calls"] == [{"function": {"name": "list_files", "arguments": {"path": "."}}}]


@pytest.mark.asyncio
async def test_complete_parses_message_tool_calls_and_usage():
    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream"] is False
        return httpx.Response(
            200,
            json={
                "message": {
                    "content": "Reading.",
                    "thinking": "need the file",
                    "tool_calls": [{"function": {"name": "read_file", "arguments": {"path": "a.py"}}}],
                },
                "prompt_eval_count": 30,
                "eval_count": 12,
                "done_reason": "stop",
            },
        )

    provider = _with_transport(OllamaProvider(), handler)
    try:
        response = await provider.complete([Message(role="user", content="hi")])
    finally:
        await provider.close()

    assert response.content == "Reading."
    assert response.tool_calls[0].name == "read_file"
    assert response.tool_calls[0].arguments == {"path": "a.py"}
    assert response.thinking == ["need the file"]
    assert (response.tokens_in, response.tokens_out) == (30, 12)


@pytest.mark.asyncio
async def test_complete_raises_api_error_with_status():
    provider = _with_transport(OllamaProvider(), lambda request: httpx.Response(503, text="busy"))
    try:
        with pytest.raises(LLMAPIError) as excinfo:
            await provider.complete([Message(role="user", content="hi")])
    finally:
        await provider.close()

    assert excinfo.value.status_code == 503


@pytest.mark.asyncio
async def test_streaming_yields_content_until_done():
    lines = [
        {"message": {"content": "Hel"}},
        {"message": {"content": "lo"}},
        {"message": {"content": ""}, "done": True},
        {"message": {"content": "ignored"}},
    ]
    payload = "\n".join(json.dumps(line) for line in lines) + "\n"
    provider = _with_transport(OllamaProvider(), lambda request: httpx.Response(200, text=payload))
    try:
        chunks = [chunk async for chunk in provider.complete_streaming([Message(role="user", content="hi")])]
    finally:
        await provider.close()

    assert chunks == ["Hel", "lo"]

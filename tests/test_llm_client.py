import json

import pytest
import respx
from httpx import ConnectError, Response

from graphagent.errors import LLMServiceError
from graphagent.llm import ChatClient

URL = "http://llm.test/v1/chat/completions"


def sse_body(*chunks) -> bytes:
    lines = [f"data: {json.dumps(chunk)}\n\n" for chunk in chunks]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


@pytest.mark.asyncio
async def test_stream_turn_collects_text_and_usage():
    client = ChatClient("secret", max_output_tokens=100)
    captured = {}
    seen = []

    async def on_text(chunk):
        seen.append(chunk)

    try:
        with respx.mock(assert_all_called=True) as respx_mock:

            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["headers"] = request.headers
                body = sse_body(
                    {"choices": [{"delta": {"content": "Hel"}}]},
                    {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]},
                    {"choices": [], "usage": {"prompt_tokens": 12, "completion_tokens": 3}},
                )
                return Response(200, content=body, headers={"content-type": "text/event-stream"})

            respx_mock.post(URL).mock(side_effect=handler)
            turn = await client.stream_turn(
                "http://llm.test/v1/",
                "planner-model",
                [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}, {"role": "bogus"}],
                max_tokens=500,
                on_text=on_text,
            )
        assert turn.text == "Hello"
        assert turn.finish_reason == "stop"
        assert turn.requested_tools is False
        assert (turn.usage.prompt_tokens, turn.usage.completion_tokens) == (12, 3)
        assert seen == ["Hel", "lo"]
        payload = captured["json"]
        assert payload["model"] == "planner-model"
        assert payload["max_tokens"] == 100
        assert payload["stream"] is True
        assert "tools" not in payload
        assert [m["role"] for m in payload["messages"]] == ["system", "user"]
        assert captured["headers"]["Authorization"] == "Bearer secret"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_stream_turn_accumulates_tool_call_fragments():
    client = ChatClient()
    tools = [{"type": "function", "function": {"name": "query_nodes", "parameters": {"type": "object"}}}]
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            body = sse_body(
                {
                    "choices": [
                        {
                            "delta": {
                                "tool_calls": [
                                    {"index": 0, "id": "call_1", "function": {"name": "query_", "arguments": '{"que'}}
                                ]
                            }
                        }
                    ]
                },
                {
                    "choices": [
                        {
                            "delta": {"tool_calls": [{"index": 0, "function": {"name": "nodes", "arguments": 'ry": "solar"}'}}]},
                            "finish_reason": "stop",
                        }
                    ]
                },
            )
            route = respx_mock.post(URL).mock(return_value=Response(200, content=body))
            turn = await client.stream_turn("http://llm.test/v1", "m", [{"role": "user", "content": "go"}], tools=tools)
        assert turn.finish_reason == "tool_calls"
        assert turn.requested_tools is True
        call = turn.tool_calls[0]
        assert (call.id, call.name, call.arguments) == ("call_1", "query_nodes", {"query": "solar"})
        sent = json.loads(route.calls[0].request.content.decode("utf-8"))
        assert sent["tool_choice"] == "auto"
        assert sent["tools"] == tools
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_sanitize_keeps_tool_protocol_messages():
    client = ChatClient()
    try:
        messages = client._sanitize_messages(
            [
                {"role": "user", "content": "  "},
                {
                    "role": "assistant",
                    "content": "",
                    "tool_calls": [{"id": "c1", "type": "function", "function": {"name": "think", "arguments": "{}"}}],
                },
                {"role": "tool", "tool_call_id": "c1", "content": {"ok": True}},
                {"role": "tool", "content": "orphan"},
            ]
        )
        assert [m["role"] for m in messages] == ["assistant", "tool"]
        assert messages[0]["content"] is None
        assert messages[1]["content"] == '{"ok": true}'
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_http_error_raises_service_error_with_detail():
    client = ChatClient()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(URL).mock(return_value=Response(401, json={"error": {"message": "bad key"}}))
            with pytest.raises(LLMServiceError) as excinfo:
                await client.stream_turn("http://llm.test/v1", "m", [{"role": "user", "content": "hi"}])
        assert excinfo.value.status_code == 401
        assert "bad key" in excinfo.value.message
        assert excinfo.value.fatal is True
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_network_error_raises_service_error():
    client = ChatClient()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(URL).mock(side_effect=ConnectError)
            with pytest.raises(LLMServiceError):
                await client.complete_text("http://llm.test/v1", "m", [{"role": "user", "content": "hi"}])
    finally:
        await client.close()

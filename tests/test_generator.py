import json

import httpx
import pytest

from turnloop.api.errors import ApiError
from turnloop.llm.client import OpenAICompatibleGenerator
from turnloop.llm.types import GenerateContentRequest
from turnloop.utils.lru import LruCache


def sse(*chunks):
    lines = [f"data: {json.dumps(c)}\n\n" for c in chunks] + ["data: [DONE]\n\n"]
    return "".join(lines).encode()


def make_generator(handler, **kwargs):
    client = httpx.AsyncClient(base_url="http://model.test/v1", transport=httpx.MockTransport(handler))
    return OpenAICompatibleGenerator("http://model.test/v1", "sk-test", client=client, **kwargs)


CONTENTS = [
    {"role": "user", "parts": [{"text": "read a.txt"}]},
    {"role": "model", "parts": [{"functionCall": {"id": "c1", "name": "read_file", "args": {"path": "a.txt"}}}]},
    {"role": "user", "parts": [{"functionResponse": {"id": "c1", "name": "read_file", "response": {"output": "hi"}}}]},
]


@pytest.mark.asyncio
async def test_generate_content_translates_request_and_reply():
    sent = []

    def handler(request):
        sent.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "model": "gpt-4o",
                "choices": [
                    {
                        "finish_reason": "tool_calls",
                        "message": {
                            "content": "Reading.",
                            "tool_calls": [
                                {"id": "c2", "function": {"name": "read_file", "arguments": '{"path": "b.txt"}'}}
                            ],
                        },
                    }
                ],
                "usage": {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15},
            },
        )

    generator = make_generator(handler)
    response = await generator.generate_content(
        GenerateContentRequest(
            model="gpt-4o",
            contents=CONTENTS,
            config={
                "system_instruction": "be brief",
                "temperature": 0,
                "tools": [{"name": "read_file", "description": "Read", "parameters": {"type": "object"}}],
            },
        )
    )

    payload = sent[0]
    assert [m["role"] for m in payload["messages"]] == ["system", "user", "assistant", "tool"]
    assert payload["messages"][2]["tool_calls"][0]["function"]["arguments"] == '{"path": "a.txt"}'
    assert payload["messages"][3]["tool_call_id"] == "c1"
    assert payload["tools"][0]["function"]["name"] == "read_file"
    assert payload["temperature"] == 0

    assert response.text == "Reading."
    assert response.content["parts"][1] == {
        "functionCall": {"id": "c2", "name": "read_file", "args": {"path": "b.txt"}}
    }
    assert response.usage == {"input": 12, "output": 3, "reasoning": 0, "total": 15}
    assert response.finish_reason == "tool_calls"


@pytest.mark.asyncio
async def test_json_mime_type_requests_json_object():
    sent = []

    def handler(request):
        sent.append(json.loads(request.content))
        return httpx.Response(200, json={"choices": [{"message": {"content": "{}"}}]})

    generator = make_generator(handler)
    await generator.generate_content(
        GenerateContentRequest(model="m", contents=CONTENTS[:1], config={"response_mime_type": "application/json"})
    )

    assert sent[0]["response_format"] == {"type": "json_object"}


@pytest.mark.asyncio
async def test_stream_yields_deltas_and_assembles_tool_calls():
    body = sse(
        {"choices": [{"delta": {"reasoning_content": "thinking"}}]},
        {"choices": [{"delta": {"content": "Hel"}}]},
        {"choices": [{"delta": {"content": "lo"}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "c9", "function": {"name": "grep", "arguments": '{"pat'}}]}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": 'tern": "x"}'}}]}, "finish_reason": "tool_calls"}]},
        {"choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 4}},
    )

    def handler(request):
        assert json.loads(request.content)["stream"] is True
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    generator = make_generator(handler)
    stream = await generator.generate_content_stream(GenerateContentRequest(model="m", contents=CONTENTS[:1]))
    fragments = [f async for f in stream]

    assert fragments[0].content["parts"] == [{"text": "thinking", "thought": True}]
    assert [f.text for f in fragments[1:3]] == ["Hel", "lo"]
    last = fragments[-1]
    assert last.content["parts"] == [{"functionCall": {"id": "c9", "name": "grep", "args": {"pattern": "x"}}}]
    assert last.usage["total"] == 9
    assert last.finish_reason == "tool_calls"


@pytest.mark.asyncio
async def test_http_errors_become_api_errors():
    def handler(request):
        return httpx.Response(429, json={"error": {"message": "Rate limit reached"}}, headers={"retry-after": "2"})

    generator = make_generator(handler)

    with pytest.raises(ApiError) as excinfo:
        await generator.generate_content(GenerateContentRequest(model="m", contents=CONTENTS[:1]))
    assert excinfo.value.status == 429
    assert "Rate limit reached" in str(excinfo.value)

    with pytest.raises(ApiError) as excinfo:
        await generator.generate_content_stream(GenerateContentRequest(model="m", contents=CONTENTS[:1]))
    assert excinfo.value.status == 429


@pytest.mark.asyncio
async def test_connection_errors_become_api_errors():
    def handler(request):
        raise httpx.ConnectError("refused")

    generator = make_generator(handler)

    with pytest.raises(ApiError, match="Connection error"):
        await generator.generate_content(GenerateContentRequest(model="m", contents=CONTENTS[:1]))


@pytest.mark.asyncio
async def test_count_tokens_uses_injected_cache():
    cache = LruCache(8)
    generator = make_generator(lambda request: httpx.Response(500), token_cache=cache)

    first = await generator.count_tokens(GenerateContentRequest(model="m", contents=CONTENTS))
    second = await generator.count_tokens(GenerateContentRequest(model="m", contents=CONTENTS))

    assert first.total_tokens == second.total_tokens > 0
    assert len(cache) == len(CONTENTS)

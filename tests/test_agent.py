import json

import pytest

from turnloop.api.errors import ApiError
from turnloop.core.agent import EMPTY_JSON_RESPONSE, AgentClient, extract_json
from turnloop.output.events import StreamEventType
from turnloop.prompts.system import COMPRESSION_ACK, CONTINUE_REQUEST, ENVIRONMENT_ACK
from turnloop.utils.cancellation import CancellationToken

from conftest import call_response, text_response

USER_NEXT = text_response(json.dumps({"reasoning": "asked a question", "next_speaker": "user"}))
MODEL_NEXT = text_response(json.dumps({"reasoning": "said it would continue", "next_speaker": "model"}))


async def collect(client, request="hi", prompt_id="p1", **kwargs):
    cancel = kwargs.pop("cancel", None) or CancellationToken()
    return [e async for e in client.send_message_stream(request, cancel, prompt_id, **kwargs)]


def types(events):
    return [e.type for e in events]


def seed(client, pairs=2, size=40):
    history = []
    for i in range(pairs):
        history.append({"role": "user", "parts": [{"text": f"q{i} " + "x" * size}]})
        history.append({"role": "model", "parts": [{"text": f"a{i} " + "y" * size}]})
    client.set_history(history)


@pytest.mark.asyncio
async def test_single_turn_stops_when_user_should_speak(client, generator):
    generator.streams.append([text_response("Do you want more?")])
    generator.responses.append(USER_NEXT)

    events = await collect(client)

    assert types(events) == [StreamEventType.CONTENT]
    assert len(generator.stream_requests) == 1
    next_speaker_request = generator.requests[0]
    assert next_speaker_request.model == "test-flash"
    assert next_speaker_request.config["response_mime_type"] == "application/json"
    assert "tools" not in next_speaker_request.config


@pytest.mark.asyncio
async def test_model_continues_with_continue_request(client, generator):
    generator.streams.extend([[text_response("Next, I will run it.")], [text_response("Finished.")]])
    generator.responses.extend([MODEL_NEXT, USER_NEXT])

    events = await collect(client)

    assert [e.value for e in events] == ["Next, I will run it.", "Finished."]
    continuation = generator.stream_requests[1].contents[-1]
    assert continuation == {"role": "user", "parts": [{"text": CONTINUE_REQUEST}]}


@pytest.mark.asyncio
async def test_continuations_are_bounded_by_max_turns(session, generator, registry):
    session.config.max_turns = 2
    client = AgentClient(session, generator, registry).initialize()
    generator.streams.extend([[text_response("One.")], [text_response("Two.")]])
    generator.responses.extend([MODEL_NEXT, MODEL_NEXT])

    events = await collect(client)

    assert [e.value for e in events] == ["One.", "Two."]
    assert len(generator.stream_requests) == 2


@pytest.mark.asyncio
async def test_zero_turn_budget_does_nothing(client, generator):
    assert await collect(client, turns=0) == []
    assert generator.stream_requests == []


@pytest.mark.asyncio
async def test_pending_tool_calls_skip_next_speaker_check(client, generator):
    generator.streams.append([call_response("echo", {"x": 1}, call_id="c1")])

    events = await collect(client)

    assert types(events) == [StreamEventType.TOOL_CALL_REQUEST]
    assert generator.requests == []


@pytest.mark.asyncio
async def test_session_turn_cap_emits_event(session, generator, registry):
    session.config.max_session_turns = 1
    client = AgentClient(session, generator, registry).initialize()
    generator.streams.append([call_response("echo", call_id="c1")])

    await collect(client)
    events = await collect(client, request=[{"text": "again"}])

    assert types(events) == [StreamEventType.MAX_SESSION_TURNS]
    assert len(generator.stream_requests) == 1


@pytest.mark.asyncio
async def test_repeated_tool_calls_trip_loop_detection(client, generator):
    generator.streams.append([call_response("read", {"path": "a"}) for _ in range(6)])

    events = await collect(client)

    assert types(events) == [StreamEventType.TOOL_CALL_REQUEST] * 4 + [StreamEventType.LOOP_DETECTED]
    assert generator.requests == []
    assert generator.closed_streams == 1


@pytest.mark.asyncio
async def test_loop_detector_resets_for_new_prompt(client, generator):
    generator.streams.append([call_response("read", {"path": "a"}) for _ in range(4)])
    generator.streams.append([call_response("read", {"path": "a"}) for _ in range(4)])

    first = await collect(client, prompt_id="p1")
    second = await collect(client, prompt_id="p2")

    assert StreamEventType.LOOP_DETECTED not in types(first)
    assert StreamEventType.LOOP_DETECTED not in types(second)


@pytest.mark.asyncio
async def test_compression_runs_before_turn_when_over_threshold(client, generator):
    seed(client)
    counts = iter([800_000, 1_000])
    generator.token_count = lambda request: next(counts)
    generator.responses.extend([text_response("<state_snapshot>summary</state_snapshot>"), USER_NEXT])
    generator.streams.append([text_response("Done.")])

    events = await collect(client)

    assert events[0].type == StreamEventType.CHAT_COMPRESSED
    assert (events[0].value.original_token_count, events[0].value.new_token_count) == (800_000, 1_000)
    history = client.get_history(curated=False)
    assert history[0] == {"role": "user", "parts": [{"text": "<state_snapshot>summary</state_snapshot>"}]}
    assert history[1] == {"role": "model", "parts": [{"text": COMPRESSION_ACK}]}
    assert history[2]["parts"][0]["text"].startswith("q1")


@pytest.mark.asyncio
async def test_compressed_history_starts_with_user_entry(client, generator):
    seed(client, pairs=3)
    counts = iter([int(0.75 * 1_048_576), 500])
    generator.token_count = lambda request: next(counts)
    generator.responses.append(text_response("summary"))

    info = await client.try_compress_chat("p1")

    assert info is not None
    assert client.get_chat().get_history(curated=True)[0]["role"] == "user"


@pytest.mark.asyncio
async def test_compression_skipped_below_threshold(client, generator):
    seed(client)
    generator.token_count = int(0.6 * 1_048_576)
    before = client.get_history()

    assert await client.try_compress_chat("p1") is None
    assert generator.requests == []
    assert client.get_history() == before


@pytest.mark.asyncio
async def test_failed_summary_keeps_full_history(client, generator):
    seed(client, pairs=3)
    generator.token_count = int(0.75 * 1_048_576)
    generator.responses.append(ApiError("bad request", status=400))
    before = client.get_history()

    assert await client.try_compress_chat("p1") is None

    assert len(generator.requests) == 1
    assert client.get_history() == before
    assert len(before) == 6


@pytest.mark.asyncio
async def test_forced_compression_ignores_threshold(client, generator):
    seed(client)
    generator.responses.append(text_response("summary"))

    info = await client.try_compress_chat("p1", force=True)

    assert info is not None
    assert generator.requests[0].config["system_instruction"].startswith("You are the component")


def test_start_chat_seeds_environment_context(session, generator, registry):
    session.config.include_environment_context = True
    client = AgentClient(session, generator, registry).initialize()

    history = client.get_history()

    assert len(history) == 2
    assert session.config.working_dir in history[0]["parts"][0]["text"]
    assert history[1] == {"role": "model", "parts": [{"text": ENVIRONMENT_ACK}]}


@pytest.mark.asyncio
async def test_generate_json_rejects_empty_reply(client, generator):
    generator.responses.append(text_response(""))

    with pytest.raises(ValueError, match=EMPTY_JSON_RESPONSE):
        await client.generate_json([], {"type": "object"}, CancellationToken())


def test_extract_json_handles_fenced_and_bare_replies():
    assert extract_json('```json\n{"a": 1}\n```') == {"a": 1}
    assert extract_json('Here: `{"b": 2}`') == {"b": 2}
    assert extract_json('prefix {"c": [1, 2]} suffix') == {"c": [1, 2]}
    assert extract_json("[1, 2]") == [1, 2]

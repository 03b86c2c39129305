from turnloop.core.loop_detection import CONTENT_LOOP_THRESHOLD, TOOL_CALL_LOOP_THRESHOLD, LoopDetector
from turnloop.core.tool_calls import ToolCallRequestInfo
from turnloop.output.events import StreamEvent, StreamEventType


def call(name="read", args=None):
    return StreamEvent.tool_call_request(
        ToolCallRequestInfo(call_id="c", name=name, args=args or {"path": "a"}, prompt_id="p")
    )


def content(text):
    return StreamEvent(type=StreamEventType.CONTENT, value=text)


def test_identical_tool_calls_trip_at_threshold():
    detector = LoopDetector()

    results = [detector.add_and_check(call()) for _ in range(TOOL_CALL_LOOP_THRESHOLD)]

    assert results == [False] * (TOOL_CALL_LOOP_THRESHOLD - 1) + [True]


def test_changed_arguments_restart_the_count():
    detector = LoopDetector()

    for _ in range(TOOL_CALL_LOOP_THRESHOLD - 1):
        assert not detector.add_and_check(call())
    assert not detector.add_and_check(call(args={"path": "b"}))
    assert not detector.add_and_check(call())


def test_repeated_sentence_trips_content_check():
    detector = LoopDetector()

    results = [detector.add_and_check(content("I will try again. ")) for _ in range(CONTENT_LOOP_THRESHOLD)]

    assert results[-1] is True
    assert not any(results[:-1])


def test_sentence_split_across_chunks_is_counted_once():
    detector = LoopDetector(content_threshold=2)

    assert not detector.add_and_check(content("Checking the"))
    assert not detector.add_and_check(content(" file. "))
    assert not detector.add_and_check(content("Checking the fi"))
    assert detector.add_and_check(content("le. "))


def test_varied_content_never_trips():
    detector = LoopDetector(content_threshold=3)

    for i in range(20):
        assert not detector.add_and_check(content(f"Step {i} done. "))


def test_other_events_reset_tracking():
    detector = LoopDetector(tool_call_threshold=2)

    assert not detector.add_and_check(call())
    assert not detector.add_and_check(StreamEvent(type=StreamEventType.THOUGHT))
    assert not detector.add_and_check(call())
    assert detector.add_and_check(call())

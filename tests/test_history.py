import pytest

from turnloop.core.history_manager import HistoryManager, extract_curated_history, validate_history


def user(text):
    return {"role": "user", "parts": [{"text": text}]}


def model(text):
    return {"role": "model", "parts": [{"text": text}]}


def thought(text):
    return {"role": "model", "parts": [{"text": text, "thought": True}]}


FUNCTION_RESPONSE = {
    "role": "user",
    "parts": [{"functionResponse": {"id": "c1", "name": "echo", "response": {"output": "ok"}}}],
}


def test_validate_history_rejects_unknown_role():
    with pytest.raises(ValueError, match="Role must be user or model, but got system."):
        validate_history([{"role": "system", "parts": [{"text": "x"}]}])


def test_record_merges_adjacent_text_chunks_into_one_model_entry():
    history = HistoryManager()

    history.record(user("hi"), [model("Hel"), model("lo")])

    assert history.get() == [user("hi"), model("Hello")]


def test_record_drops_reasoning_fragments():
    history = HistoryManager()

    history.record(user("hi"), [thought("**Plan** think"), model("answer")])

    assert history.get() == [user("hi"), model("answer")]


def test_reasoning_only_reply_adds_no_model_entry():
    history = HistoryManager()

    history.record(user("hi"), [thought("just thinking")])

    assert history.get() == [user("hi")]


def test_empty_reply_adds_placeholder_model_entry():
    history = HistoryManager()

    history.record(user("hi"), [])

    assert history.get() == [user("hi"), {"role": "model", "parts": []}]


def test_empty_reply_after_function_response_adds_nothing():
    history = HistoryManager()

    history.record(FUNCTION_RESPONSE, [])

    assert history.get() == [FUNCTION_RESPONSE]


def test_function_call_is_not_merged_with_text():
    call = {"role": "model", "parts": [{"functionCall": {"name": "echo", "args": {}}}]}
    history = HistoryManager()

    history.record(user("go"), [model("Calling"), call])

    assert history.get() == [user("go"), model("Calling"), call]


def test_curated_history_drops_invalid_reply_and_its_prompt():
    entries = [
        user("first"),
        model("fine"),
        user("second"),
        {"role": "model", "parts": []},
        user("third"),
        model(""),
    ]

    assert extract_curated_history(entries) == [user("first"), model("fine")]


def test_get_returns_deep_copies():
    history = HistoryManager([user("a"), model("b")])

    snapshot = history.get()
    snapshot[0]["parts"][0]["text"] = "changed"

    assert history.get()[0]["parts"][0]["text"] == "a"
    assert history.get(curated=True) == [user("a"), model("b")]


def test_set_validates_and_clear_empties():
    history = HistoryManager([user("a")])

    with pytest.raises(ValueError):
        history.set([{"role": "tool", "parts": []}])
    assert len(history) == 1

    history.clear()
    assert len(history) == 0
    assert history.last() is None

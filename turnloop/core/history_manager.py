"""Conversation history with exchange-aware recording.

The comprehensive history keeps every entry, including empty model
replies. The curated view drops model runs that contain an invalid entry
(and the user entry that prompted them); it is what gets sent back to
the model.
"""

from __future__ import annotations

import copy
from typing import List, Optional

from turnloop.llm.types import (
    Content,
    is_function_response,
    is_text_content,
    is_thought_content,
    is_valid_content,
)

_ROLES = ("user", "model")


def validate_history(history: List[Content]) -> None:
    """Raise ValueError unless every entry has a user or model role."""
    for content in history:
        if content.get("role") not in _ROLES:
            raise ValueError("Role must be user or model, but got %s." % content.get("role"))


def extract_curated_history(history: List[Content]) -> List[Content]:
    """Return the entries that form valid user/model exchanges."""
    curated: List[Content] = []
    i = 0
    length = len(history)
    while i < length:
        if history[i].get("role") == "user":
            curated.append(history[i])
            i += 1
            continue
        model_output: List[Content] = []
        valid = True
        while i < length and history[i].get("role") == "model":
            model_output.append(history[i])
            if valid and not is_valid_content(history[i]):
                valid = False
            i += 1
        if valid:
            curated.extend(model_output)
        elif curated:
            # drop the user input that produced the invalid reply
            curated.pop()
    return curated


def _merge_text(target: Content, source: Content) -> None:
    target["parts"][0]["text"] += source["parts"][0].get("text") or ""
    if len(source["parts"]) > 1:
        target["parts"].extend(source["parts"][1:])


class HistoryManager:
    """Owns the ordered conversation log for one chat."""

    def __init__(self, history: Optional[List[Content]] = None):
        history = history or []
        validate_history(history)
        self._history: List[Content] = history

    def __len__(self) -> int:
        return len(self._history)

    def get(self, curated: bool = False) -> List[Content]:
        """Deep copy of the comprehensive (or curated) history."""
        history = extract_curated_history(self._history) if curated else self._history
        return copy.deepcopy(history)

    def last(self) -> Optional[Content]:
        return self._history[-1] if self._history else None

    def add(self, content: Content) -> None:
        self._history.append(content)

    def set(self, history: List[Content]) -> None:
        validate_history(history)
        self._history = list(history)

    def clear(self) -> None:
        self._history = []

    def record(self, user_input: Content, model_output: List[Content]) -> None:
        """Append one exchange: the user entry and its merged model reply.

        Reasoning fragments never reach the log. A reply made only of
        reasoning adds no model entry; a reply with nothing at all adds an
        empty model entry (except after function responses) so the log
        keeps alternating.
        """
        non_thought = [c for c in model_output if not is_thought_content(c)]

        output: List[Content] = []
        if non_thought and all(c.get("role") for c in non_thought):
            output = non_thought
        elif not non_thought and model_output:
            pass
        elif not is_function_response(user_input):
            output.append({"role": "model", "parts": []})

        self._history.append(user_input)

        consolidated: List[Content] = []
        for content in output:
            last = consolidated[-1] if consolidated else None
            if is_text_content(last) and is_text_content(content):
                _merge_text(last, content)
            else:
                consolidated.append(copy.deepcopy(content))

        if not consolidated:
            return
        previous = self._history[-1]
        if is_text_content(previous) and is_text_content(consolidated[0]):
            _merge_text(previous, consolidated.pop(0))
        self._history.extend(consolidated)

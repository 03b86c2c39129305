"""Detection of runaway repetition in the model's output.

Two signals are tracked: the same tool call (name and arguments) issued
several times in a row, and the same sentence streamed over and over.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from typing import Any, Dict, List, Optional

from turnloop.output.events import StreamEvent, StreamEventType

logger = logging.getLogger(__name__)

TOOL_CALL_LOOP_THRESHOLD = 5
CONTENT_LOOP_THRESHOLD = 10

_SENTENCE_END_RE = re.compile(r"[.!?]+(?=\s|$)")
_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]+(?=\s|$)")


class LoopDetector:
    """Fed every event of a prompt; reports True once a loop is seen."""

    def __init__(
        self,
        tool_call_threshold: int = TOOL_CALL_LOOP_THRESHOLD,
        content_threshold: int = CONTENT_LOOP_THRESHOLD,
    ):
        self.tool_call_threshold = tool_call_threshold
        self.content_threshold = content_threshold
        self.reset()

    @staticmethod
    def _tool_call_key(name: str, args: Dict[str, Any]) -> str:
        key = f"{name}:{json.dumps(args, separators=(',', ':'))}"
        return hashlib.sha256(key.encode("utf-8")).hexdigest()

    def add_and_check(self, event: StreamEvent) -> bool:
        if event.type == StreamEventType.TOOL_CALL_REQUEST:
            self._reset_sentences()
            return self._check_tool_call(event.value.name, event.value.args)
        if event.type == StreamEventType.CONTENT:
            return self._check_content(event.value)
        self.reset()
        return False

    def _check_tool_call(self, name: str, args: Dict[str, Any]) -> bool:
        key = self._tool_call_key(name, args)
        if key == self._last_tool_call_key:
            self._tool_call_count += 1
        else:
            self._last_tool_call_key = key
            self._tool_call_count = 1
        if self._tool_call_count >= self.tool_call_threshold:
            logger.warning("Loop detected: %d identical calls to %s", self._tool_call_count, name)
            return True
        return False

    def _check_content(self, content: str) -> bool:
        self._partial += content
        if not _SENTENCE_END_RE.search(self._partial):
            return False
        sentences: List[str] = _SENTENCE_RE.findall(self._partial)
        if not sentences:
            return False

        last = sentences[-1]
        self._partial = self._partial[self._partial.rfind(last) + len(last):]

        for sentence in sentences:
            sentence = sentence.strip()
            if not sentence:
                continue
            if sentence == self._last_sentence:
                self._sentence_count += 1
            else:
                self._last_sentence = sentence
                self._sentence_count = 1
            if self._sentence_count >= self.content_threshold:
                logger.warning("Loop detected: sentence repeated %d times", self._sentence_count)
                return True
        return False

    def reset(self) -> None:
        self._last_tool_call_key: Optional[str] = None
        self._tool_call_count = 0
        self._reset_sentences()

    def _reset_sentences(self) -> None:
        self._last_sentence = ""
        self._sentence_count = 0
        self._partial = ""

"""Canonical events produced by a turn and by the turn loop."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class StreamEventType(str, Enum):
    """Types of events that can be emitted."""

    CONTENT = "content"
    THOUGHT = "thought"
    TOOL_CALL_REQUEST = "tool_call_request"
    TOOL_CALL_RESPONSE = "tool_call_response"
    TOOL_CALL_CONFIRMATION = "tool_call_confirmation"
    USER_CANCELLED = "user_cancelled"
    ERROR = "error"
    CHAT_COMPRESSED = "chat_compressed"
    MAX_SESSION_TURNS = "max_session_turns"
    LOOP_DETECTED = "loop_detected"


@dataclass
class ThoughtSummary:
    """A reasoning fragment split into a bold subject and the rest."""

    subject: str
    description: str


@dataclass
class ChatCompressionInfo:
    """Reported when history is compacted. Never persisted."""

    original_token_count: int
    new_token_count: int


def _serialize(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return str(value)


@dataclass
class StreamEvent:
    """An event from a turn or from the turn loop."""

    type: StreamEventType
    value: Any = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        data: dict[str, Any] = {
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.value is not None:
            data["value"] = _serialize(self.value)
        return data

    @classmethod
    def content(cls, text: str) -> "StreamEvent":
        return cls(type=StreamEventType.CONTENT, value=text)

    @classmethod
    def thought(cls, summary: ThoughtSummary) -> "StreamEvent":
        return cls(type=StreamEventType.THOUGHT, value=summary)

    @classmethod
    def tool_call_request(cls, request: Any) -> "StreamEvent":
        return cls(type=StreamEventType.TOOL_CALL_REQUEST, value=request)

    @classmethod
    def user_cancelled(cls) -> "StreamEvent":
        return cls(type=StreamEventType.USER_CANCELLED)

    @classmethod
    def error(cls, error: Any) -> "StreamEvent":
        """Create an error event carrying a ``StructuredError``."""
        return cls(type=StreamEventType.ERROR, value=error)

    @classmethod
    def chat_compressed(cls, info: Optional[ChatCompressionInfo]) -> "StreamEvent":
        return cls(type=StreamEventType.CHAT_COMPRESSED, value=info)

    @classmethod
    def max_session_turns(cls) -> "StreamEvent":
        return cls(type=StreamEventType.MAX_SESSION_TURNS)

    @classmethod
    def loop_detected(cls) -> "StreamEvent":
        return cls(type=StreamEventType.LOOP_DETECTED)

    @classmethod
    def tool_call_response(cls, response: Any) -> "StreamEvent":
        return cls(type=StreamEventType.TOOL_CALL_RESPONSE, value=response)

    @classmethod
    def tool_call_confirmation(cls, pending: Any) -> "StreamEvent":
        return cls(type=StreamEventType.TOOL_CALL_CONFIRMATION, value=pending)

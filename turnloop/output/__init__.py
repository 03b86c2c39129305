"""Output module - stream events and their JSONL / terminal rendering."""

from turnloop.output.events import ChatCompressionInfo, StreamEvent, StreamEventType, ThoughtSummary
from turnloop.output.jsonl import emit

__all__ = [
    "ChatCompressionInfo",
    "StreamEvent",
    "StreamEventType",
    "ThoughtSummary",
    "emit",
]

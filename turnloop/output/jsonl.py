"""
JSONL output for machine consumption.

Each event is written to stdout as one JSON object per line.

Event types:
- session.started: A run began
- session.completed: A run ended, with token usage
- session.failed: A run ended with an error
- any StreamEventType value: turn and loop events (content, thought, ...)
"""

from __future__ import annotations

import json
import threading
from dataclasses import asdict, dataclass, field, is_dataclass
from typing import Any, Callable, Dict, Optional

# When set, emit() routes events to the callback instead of stdout.
_tls = threading.local()


def set_event_callback(callback: Callable[[Dict[str, Any]], None] | None) -> None:
    """Route :func:`emit` to *callback(event_dict)* on this thread; ``None`` clears."""
    _tls.event_callback = callback


def get_event_callback() -> Callable[[Dict[str, Any]], None] | None:
    return getattr(_tls, "event_callback", None)


# =============================================================================
# Session Events
# =============================================================================


@dataclass
class SessionStartedEvent:
    """Emitted when a run starts."""

    session_id: str
    model: str
    type: str = field(default="session.started", init=False)


@dataclass
class SessionCompletedEvent:
    """Emitted when a run ends normally."""

    session_id: str
    usage: Dict[str, int]
    turns: int
    type: str = field(default="session.completed", init=False)


@dataclass
class SessionFailedEvent:
    session_id: str
    error: Dict[str, Any]
    type: str = field(default="session.failed", init=False)


# =============================================================================
# Emission
# =============================================================================


def to_data(event: Any) -> Dict[str, Any]:
    if hasattr(event, "to_dict"):
        return event.to_dict()
    if is_dataclass(event) and not isinstance(event, type):
        return asdict(event)
    return dict(event)


def _write(data: Dict[str, Any]) -> None:
    cb = get_event_callback()
    if cb is not None:
        cb(data)
    else:
        print(json.dumps(data, ensure_ascii=False, default=str), flush=True)


def emit(event: Any) -> None:
    """
    Emit a single JSONL event.

    Args:
        event: A ``StreamEvent``, an event dataclass from this module, or a dict
    """
    try:
        _write(to_data(event))
    except Exception as e:
        _write({"type": "error", "message": f"Failed to emit event: {e}"})

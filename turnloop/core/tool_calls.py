"""Tool call states and the single transition function between them.

A ``ToolCall`` is one of seven frozen variants. Every state change goes
through :func:`transition`, which builds the target variant from the
current one; terminal variants (success, error, cancelled) are returned
unchanged.
"""

from __future__ import annotations

import dataclasses
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Union

from turnloop.api.errors import get_error_message
from turnloop.llm.types import Part, PartListUnion, get_text_from_parts
from turnloop.tools.base import (
    EditConfirmationDetails,
    FileDiff,
    Tool,
    ToolConfirmationDetails,
    ToolConfirmationOutcome,
    ToolResultDisplay,
)


class ToolCallStatus(str, Enum):
    VALIDATING = "validating"
    SCHEDULED = "scheduled"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({ToolCallStatus.SUCCESS, ToolCallStatus.ERROR, ToolCallStatus.CANCELLED})


@dataclass
class ToolCallRequestInfo:
    """A tool call issued by the model (or by the client)."""

    call_id: str
    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    is_client_initiated: bool = False
    prompt_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class ToolCallResponseInfo:
    """Produced once, when a call reaches a terminal state."""

    call_id: str
    response_parts: List[Part]
    result_display: Optional[ToolResultDisplay] = None
    error: Optional[BaseException] = None

    def to_dict(self) -> Dict[str, Any]:
        display = self.result_display
        return {
            "call_id": self.call_id,
            "response_parts": self.response_parts,
            "result_display": dataclasses.asdict(display) if isinstance(display, FileDiff) else display,
            "error": str(self.error) if self.error is not None else None,
        }


@dataclass(frozen=True)
class _ToolCallState:
    status: ClassVar[ToolCallStatus]

    @property
    def call_id(self) -> str:
        return self.request.call_id  # type: ignore[attr-defined]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class ValidatingToolCall(_ToolCallState):
    status: ClassVar[ToolCallStatus] = ToolCallStatus.VALIDATING

    request: ToolCallRequestInfo
    tool: Tool
    start_time: Optional[float] = None
    outcome: Optional[ToolConfirmationOutcome] = None


@dataclass(frozen=True)
class ScheduledToolCall(_ToolCallState):
    status: ClassVar[ToolCallStatus] = ToolCallStatus.SCHEDULED

    request: ToolCallRequestInfo
    tool: Tool
    start_time: Optional[float] = None
    outcome: Optional[ToolConfirmationOutcome] = None


@dataclass(frozen=True)
class WaitingToolCall(_ToolCallState):
    status: ClassVar[ToolCallStatus] = ToolCallStatus.AWAITING_APPROVAL

    request: ToolCallRequestInfo
    tool: Tool
    confirmation_details: ToolConfirmationDetails
    start_time: Optional[float] = None
    outcome: Optional[ToolConfirmationOutcome] = None


@dataclass(frozen=True)
class ExecutingToolCall(_ToolCallState):
    status: ClassVar[ToolCallStatus] = ToolCallStatus.EXECUTING

    request: ToolCallRequestInfo
    tool: Tool
    start_time: Optional[float] = None
    live_output: Optional[str] = None
    outcome: Optional[ToolConfirmationOutcome] = None


@dataclass(frozen=True)
class SuccessfulToolCall(_ToolCallState):
    status: ClassVar[ToolCallStatus] = ToolCallStatus.SUCCESS

    request: ToolCallRequestInfo
    tool: Tool
    response: ToolCallResponseInfo
    duration_ms: Optional[int] = None
    outcome: Optional[ToolConfirmationOutcome] = None


@dataclass(frozen=True)
class ErroredToolCall(_ToolCallState):
    status: ClassVar[ToolCallStatus] = ToolCallStatus.ERROR

    request: ToolCallRequestInfo
    response: ToolCallResponseInfo
    tool: Optional[Tool] = None
    duration_ms: Optional[int] = None
    outcome: Optional[ToolConfirmationOutcome] = None


@dataclass(frozen=True)
class CancelledToolCall(_ToolCallState):
    status: ClassVar[ToolCallStatus] = ToolCallStatus.CANCELLED

    request: ToolCallRequestInfo
    tool: Tool
    response: ToolCallResponseInfo
    duration_ms: Optional[int] = None
    outcome: Optional[ToolConfirmationOutcome] = None


ToolCall = Union[
    ValidatingToolCall,
    ScheduledToolCall,
    WaitingToolCall,
    ExecutingToolCall,
    SuccessfulToolCall,
    ErroredToolCall,
    CancelledToolCall,
]
CompletedToolCall = Union[SuccessfulToolCall, ErroredToolCall, CancelledToolCall]


# ---------------------------------------------------------------------------
# Function-response payloads
# ---------------------------------------------------------------------------


def create_function_response_part(call_id: str, tool_name: str, output: str) -> Part:
    return {
        "functionResponse": {
            "id": call_id,
            "name": tool_name,
            "response": {"output": output},
        }
    }


def convert_to_function_response(tool_name: str, call_id: str, llm_content: PartListUnion) -> List[Part]:
    """Wrap a tool's output into the parts sent back to the model."""
    content: Any = llm_content
    if isinstance(content, list) and len(content) == 1:
        content = content[0]

    if isinstance(content, str):
        return [create_function_response_part(call_id, tool_name, content)]

    if isinstance(content, list):
        parts = [{"text": p} if isinstance(p, str) else p for p in content]
        return [create_function_response_part(call_id, tool_name, "Tool execution succeeded."), *parts]

    if "functionResponse" in content:
        response = content["functionResponse"].get("response") or {}
        if response.get("content"):
            output = get_text_from_parts(response["content"]) or ""
            return [create_function_response_part(call_id, tool_name, output)]
        return [content]

    if "inlineData" in content or "fileData" in content:
        blob = content.get("inlineData") or content.get("fileData") or {}
        mime_type = blob.get("mimeType") or "unknown"
        return [
            create_function_response_part(
                call_id, tool_name, f"Binary content of type {mime_type} was processed."
            ),
            content,
        ]

    if isinstance(content.get("text"), str):
        return [create_function_response_part(call_id, tool_name, content["text"])]

    return [create_function_response_part(call_id, tool_name, "Tool execution succeeded.")]


def create_error_response(request: ToolCallRequestInfo, error: BaseException) -> ToolCallResponseInfo:
    message = get_error_message(error)
    return ToolCallResponseInfo(
        call_id=request.call_id,
        response_parts=[
            {
                "functionResponse": {
                    "id": request.call_id,
                    "name": request.name,
                    "response": {"error": message},
                }
            }
        ],
        result_display=message,
        error=error,
    )


def _cancelled_response(call: ToolCall, reason: str) -> ToolCallResponseInfo:
    display: Optional[ToolResultDisplay] = None
    details = getattr(call, "confirmation_details", None)
    if isinstance(details, EditConfirmationDetails):
        display = FileDiff(file_diff=details.file_diff, file_name=details.file_name)
    return ToolCallResponseInfo(
        call_id=call.request.call_id,
        response_parts=[
            {
                "functionResponse": {
                    "id": call.request.call_id,
                    "name": call.request.name,
                    "response": {"error": f"[Operation Cancelled] Reason: {reason}"},
                }
            }
        ],
        result_display=display,
    )


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def _duration_ms(start_time: Optional[float], now: float) -> Optional[int]:
    if start_time is None:
        return None
    return int((now - start_time) * 1000)


def transition(
    call: ToolCall,
    status: ToolCallStatus,
    data: Any = None,
    now: Optional[float] = None,
) -> ToolCall:
    """Move ``call`` to ``status``.

    ``data`` depends on the target: a ``ToolCallResponseInfo`` for success
    and error, confirmation details for awaiting_approval, a reason string
    for cancelled, nothing otherwise.
    """
    if call.is_terminal:
        return call

    now = time.monotonic() if now is None else now
    request = call.request
    tool = getattr(call, "tool", None)
    start_time = getattr(call, "start_time", None)
    outcome = call.outcome

    if status == ToolCallStatus.SUCCESS:
        return SuccessfulToolCall(
            request=request,
            tool=tool,
            response=data,
            duration_ms=_duration_ms(start_time, now),
            outcome=outcome,
        )
    if status == ToolCallStatus.ERROR:
        return ErroredToolCall(
            request=request,
            response=data,
            tool=tool,
            duration_ms=_duration_ms(start_time, now),
            outcome=outcome,
        )
    if status == ToolCallStatus.CANCELLED:
        return CancelledToolCall(
            request=request,
            tool=tool,
            response=_cancelled_response(call, str(data)),
            duration_ms=_duration_ms(start_time, now),
            outcome=outcome,
        )
    if status == ToolCallStatus.AWAITING_APPROVAL:
        return WaitingToolCall(
            request=request,
            tool=tool,
            confirmation_details=data,
            start_time=start_time,
            outcome=outcome,
        )
    if status == ToolCallStatus.SCHEDULED:
        return ScheduledToolCall(request=request, tool=tool, start_time=start_time, outcome=outcome)
    if status == ToolCallStatus.VALIDATING:
        return ValidatingToolCall(request=request, tool=tool, start_time=start_time, outcome=outcome)
    if status == ToolCallStatus.EXECUTING:
        return ExecutingToolCall(request=request, tool=tool, start_time=start_time, outcome=outcome)
    raise ValueError(f"Unknown tool call status: {status}")


def with_args(call: ToolCall, args: Dict[str, Any]) -> ToolCall:
    return dataclasses.replace(call, request=dataclasses.replace(call.request, args=args))


def with_outcome(call: ToolCall, outcome: ToolConfirmationOutcome) -> ToolCall:
    return dataclasses.replace(call, outcome=outcome)


def with_live_output(call: ToolCall, output: str) -> ToolCall:
    if not isinstance(call, ExecutingToolCall):
        return call
    return dataclasses.replace(call, live_output=output)

"""Non-interactive execution of a single prompt.

Tool calls run one at a time, without confirmation, until the model
replies without requesting any tool or the session turn cap is hit.

Example:
    text = await run_non_interactive(client, "summarize README.md", "p-1")
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional

from turnloop.core.agent import AgentClient
from turnloop.core.executor import ToolNotFoundError, execute_tool_call
from turnloop.core.tool_calls import ToolCallRequestInfo
from turnloop.core.turn import parse_thought
from turnloop.llm.types import Part
from turnloop.output.events import StreamEvent
from turnloop.utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)


class ToolExecutionError(RuntimeError):
    """A tool failed for a reason other than being unknown."""


async def run_non_interactive(
    client: AgentClient,
    prompt: str,
    prompt_id: str,
    *,
    cancel: Optional[CancellationToken] = None,
    on_event: Optional[Callable[[StreamEvent], None]] = None,
) -> str:
    """Run ``prompt`` to completion and return the model's text output.

    Raises:
        ToolExecutionError: If a known tool fails.
        OperationCancelled: If ``cancel`` fires.
    """
    cancel = cancel or CancellationToken()
    chat = client.get_chat()
    max_session_turns = client.session.config.max_session_turns

    def emit(event: StreamEvent) -> None:
        if on_event is not None:
            on_event(event)

    message: List[Part] = [{"text": prompt}]
    output: List[str] = []
    turn_count = 0

    while True:
        turn_count += 1
        if max_session_turns > 0 and turn_count > max_session_turns:
            logger.info("Reached max session turns (%d)", max_session_turns)
            emit(StreamEvent.max_session_turns())
            return "".join(output)

        requests: List[ToolCallRequestInfo] = []
        stream = await chat.send_message_stream(message, prompt_id, cancel=cancel)
        async for response in cancel.iterate(stream):
            parts = response.parts
            if parts and parts[0].get("thought"):
                emit(StreamEvent.thought(parse_thought(parts[0].get("text") or "")))
                continue
            text = response.text
            if text:
                output.append(text)
                emit(StreamEvent.content(text))
            for call in response.function_calls:
                request = ToolCallRequestInfo(
                    call_id=call.id or f"{call.name}-{int(time.time() * 1000)}",
                    name=call.name or "undefined_tool_name",
                    args=dict(call.args or {}),
                    prompt_id=prompt_id,
                )
                requests.append(request)
                emit(StreamEvent.tool_call_request(request))

        if not requests:
            return "".join(output)

        tool_response_parts: List[Part] = []
        for request in requests:
            response_info = await execute_tool_call(request, client.registry, cancel)
            emit(StreamEvent.tool_call_response(response_info))
            if response_info.error is not None:
                message_text = response_info.result_display or str(response_info.error)
                logger.error("Error executing tool %s: %s", request.name, message_text)
                if not isinstance(response_info.error, ToolNotFoundError):
                    raise ToolExecutionError(f"Error executing tool {request.name}: {message_text}")
            tool_response_parts.extend(response_info.response_parts)

        message = tool_response_parts

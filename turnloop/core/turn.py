"""One model exchange, translated into canonical stream events."""

from __future__ import annotations

import contextlib
import logging
import random
import re
import time
from typing import AsyncIterator, List

from turnloop.api.errors import StructuredError, UnauthorizedError, get_error_message, to_friendly_error
from turnloop.core.tool_calls import ToolCallRequestInfo
from turnloop.llm.types import FunctionCall, GenerateContentResponse, PartListUnion
from turnloop.output.events import StreamEvent, ThoughtSummary
from turnloop.utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

_SUBJECT_RE = re.compile(r"\*\*(.*?)\*\*", re.DOTALL)


def parse_thought(text: str) -> ThoughtSummary:
    """Split a reasoning fragment into its bold subject and the rest."""
    match = _SUBJECT_RE.search(text)
    subject = match.group(1).strip() if match else ""
    description = _SUBJECT_RE.sub("", text, count=1).strip()
    return ThoughtSummary(subject=subject, description=description)


class Turn:
    """Drives one streamed exchange with the model.

    Tool calls found in the stream are collected in ``pending_tool_calls``.
    A turn is never reused.
    """

    def __init__(self, chat, prompt_id: str):
        self.chat = chat
        self.prompt_id = prompt_id
        self.pending_tool_calls: List[ToolCallRequestInfo] = []
        self.debug_responses: List[GenerateContentResponse] = []

    async def run(self, request: PartListUnion, cancel: CancellationToken) -> AsyncIterator[StreamEvent]:
        try:
            stream = await self.chat.send_message_stream(request, self.prompt_id, cancel=cancel)
            async with contextlib.aclosing(cancel.iterate(stream)) as responses:
                async for response in responses:
                    if cancel.cancelled:
                        yield StreamEvent.user_cancelled()
                        return
                    self.debug_responses.append(response)

                    parts = response.parts
                    if parts and parts[0].get("thought"):
                        yield StreamEvent.thought(parse_thought(parts[0].get("text") or ""))
                        continue

                    text = response.text
                    if text:
                        yield StreamEvent.content(text)

                    for call in response.function_calls:
                        yield self._handle_pending_function_call(call)
        except Exception as e:
            error = to_friendly_error(e)
            if isinstance(error, UnauthorizedError):
                raise error
            if cancel.cancelled:
                yield StreamEvent.user_cancelled()
                return
            logger.error("Error communicating with the model: %s", error)
            status = getattr(error, "status", None)
            yield StreamEvent.error(
                StructuredError(
                    message=get_error_message(error),
                    status=status if isinstance(status, int) else None,
                )
            )

    def _handle_pending_function_call(self, call: FunctionCall) -> StreamEvent:
        call_id = call.id or f"{call.name}-{int(time.time() * 1000)}-{random.getrandbits(48):x}"
        request = ToolCallRequestInfo(
            call_id=call_id,
            name=call.name or "undefined_tool_name",
            args=dict(call.args or {}),
            is_client_initiated=False,
            prompt_id=self.prompt_id,
        )
        self.pending_tool_calls.append(request)
        return StreamEvent.tool_call_request(request)

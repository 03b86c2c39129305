"""Interactive agent loop.

Streams one prompt through :class:`AgentClient`, hands the requested tool
calls to the :class:`ToolScheduler`, and once a batch completes submits
the function responses back to the model as a continuation of the same
prompt. The loop is idle when nothing is streaming and no batch is open.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Awaitable, Callable, List, Optional, Tuple, Union

from turnloop.api.errors import StructuredError, UnauthorizedError, get_error_message
from turnloop.core.agent import AgentClient
from turnloop.core.scheduler import PendingConfirmation, ToolScheduler
from turnloop.core.tool_calls import CompletedToolCall, ToolCallRequestInfo, ToolCallStatus
from turnloop.llm.types import Part, PartListUnion
from turnloop.output.events import StreamEvent, StreamEventType
from turnloop.tools.base import ToolConfirmationOutcome, ToolConfirmationPayload
from turnloop.tools.modifiable import Editor
from turnloop.utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

EventHandler = Callable[[StreamEvent], None]
ConfirmDecision = Union[ToolConfirmationOutcome, Tuple[ToolConfirmationOutcome, ToolConfirmationPayload]]
ConfirmHandler = Callable[[PendingConfirmation], Awaitable[ConfirmDecision]]


class AgentLoop:
    """Drives prompts to completion, including tool-call continuations.

    Example:
        loop = AgentLoop(client, on_event=print, confirm=ask_user)
        await loop.run("fix the failing test")
    """

    def __init__(
        self,
        client: AgentClient,
        *,
        on_event: Optional[EventHandler] = None,
        confirm: Optional[ConfirmHandler] = None,
        editor: Optional[Editor] = None,
        output_update_handler: Optional[Callable[[str, str], None]] = None,
    ):
        self.client = client
        self.session = client.session
        self.on_event = on_event
        self.confirm = confirm
        self.scheduler = ToolScheduler(
            client.registry,
            client.session,
            on_all_tool_calls_complete=self._on_batch_complete,
            on_confirmation_required=self._on_confirmation_required,
            output_update_handler=output_update_handler,
            editor=editor,
        )

        self.loop_detected = False
        self._cancel: Optional[CancellationToken] = None
        self._responding = False
        self._active = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._error: Optional[BaseException] = None
        self._prompt_counter = itertools.count()

    @property
    def is_responding(self) -> bool:
        return self._responding

    @property
    def is_idle(self) -> bool:
        return self._idle.is_set()

    def _emit(self, event: StreamEvent) -> None:
        if self.on_event is not None:
            self.on_event(event)

    # -----------------------------------------------------------------
    # Idle tracking
    # -----------------------------------------------------------------

    def _begin(self) -> None:
        self._active += 1
        self._idle.clear()

    def _end(self) -> None:
        self._active -= 1
        if self._active == 0 and not self.scheduler.tool_calls:
            self._idle.set()

    async def wait_until_idle(self) -> None:
        await self._idle.wait()
        if self._error is not None:
            error, self._error = self._error, None
            raise error

    # -----------------------------------------------------------------
    # Prompts
    # -----------------------------------------------------------------

    async def run(self, prompt: PartListUnion) -> None:
        """Submit ``prompt`` and wait until the conversation goes idle."""
        await self.submit_query(prompt)
        await self.wait_until_idle()

    def cancel(self, reason: str = "User cancelled the request.") -> None:
        if self._cancel is not None:
            self._cancel.cancel(reason)

    async def submit_query(
        self,
        query: PartListUnion,
        *,
        continuation: bool = False,
        prompt_id: Optional[str] = None,
    ) -> None:
        """Stream one query and schedule the tool calls it requests.

        A new prompt (not a continuation) is ignored while another one
        is still streaming.
        """
        if self._responding and not continuation:
            logger.warning("Ignoring prompt submitted while a response is streaming")
            return

        if not continuation:
            self._cancel = CancellationToken()
            self.loop_detected = False
            self.session.quota_error_occurred = False
            self.session.model_switched_from_quota_error = False
        cancel = self._cancel or CancellationToken()
        prompt_id = prompt_id or f"{self.session.id}########{next(self._prompt_counter)}"

        self._begin()
        self._responding = True
        requests: List[ToolCallRequestInfo] = []
        try:
            async for event in self.client.send_message_stream(query, cancel, prompt_id):
                self._emit(event)
                if event.type == StreamEventType.TOOL_CALL_REQUEST:
                    requests.append(event.value)
                elif event.type == StreamEventType.LOOP_DETECTED:
                    logger.info("Loop detected in prompt %s; tool calls of this turn are dropped", prompt_id)
                    self.loop_detected = True

            self._responding = False
            if requests and not self.loop_detected and not cancel.cancelled:
                await self.scheduler.schedule(requests, cancel)
        except UnauthorizedError:
            raise
        except Exception as e:
            if cancel.cancelled:
                self._emit(StreamEvent.user_cancelled())
            else:
                logger.error("Prompt %s failed: %s", prompt_id, e)
                self._emit(StreamEvent.error(StructuredError(message=get_error_message(e))))
        finally:
            self._responding = False
            self._end()

    # -----------------------------------------------------------------
    # Scheduler callbacks
    # -----------------------------------------------------------------

    def _on_confirmation_required(self, pending: PendingConfirmation) -> Optional[Awaitable[None]]:
        self._emit(StreamEvent.tool_call_confirmation(pending))
        if self.confirm is None:
            return None
        return self._confirm(pending)

    async def _confirm(self, pending: PendingConfirmation) -> None:
        decision = await self.confirm(pending)
        payload = None
        if isinstance(decision, tuple):
            decision, payload = decision
        await self.scheduler.resolve_confirmation(pending.call_id, decision, payload)

    def _on_batch_complete(self, completed: List[CompletedToolCall]) -> Awaitable[None]:
        # Marked active before the handler task starts so the loop never
        # looks idle between the batch closing and the continuation.
        self._begin()
        return self._handle_completed_tools(completed)

    async def _handle_completed_tools(self, completed: List[CompletedToolCall]) -> None:
        try:
            for call in completed:
                self._emit(StreamEvent.tool_call_response(call.response))

            model_calls = [c for c in completed if not c.request.is_client_initiated]
            if not model_calls:
                return

            if all(c.status == ToolCallStatus.CANCELLED for c in model_calls):
                parts: List[Part] = [p for c in model_calls for p in c.response.response_parts]
                self.client.add_history({"role": "user", "parts": parts})
                return

            if self.session.model_switched_from_quota_error:
                logger.info("Model switched after a quota error; not continuing prompt")
                return

            merged: List[Part] = [p for c in model_calls for p in c.response.response_parts]
            await self.submit_query(merged, continuation=True, prompt_id=model_calls[0].request.prompt_id)
        except Exception as e:
            self._error = e
        finally:
            self._end()

    async def resolve_confirmation(
        self,
        call_id: str,
        outcome: ToolConfirmationOutcome,
        payload: Optional[ToolConfirmationPayload] = None,
    ) -> None:
        await self.scheduler.resolve_confirmation(call_id, outcome, payload)

    async def close(self) -> None:
        self.cancel()
        await self.scheduler.drain()

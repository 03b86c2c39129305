"""Tool call scheduler.

Owns one batch of tool calls at a time, from validation through a
terminal state. A batch is gated on approval: nothing executes until
every call in it is either scheduled or terminal. Approved calls then run
concurrently, and once all are terminal the batch is cleared and the
completion handler fires once with the whole set.

Confirmations are explicit :class:`PendingConfirmation` records. Callers
resolve them by posting an outcome with :meth:`ToolScheduler.resolve_confirmation`.
"""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Union

from turnloop.api.errors import OperationCancelled, SchedulerBusyError
from turnloop.config.models import ApprovalMode
from turnloop.core.session import Session
from turnloop.core.tool_calls import (
    CompletedToolCall,
    ErroredToolCall,
    ExecutingToolCall,
    ScheduledToolCall,
    ToolCall,
    ToolCallRequestInfo,
    ToolCallResponseInfo,
    ToolCallStatus,
    ValidatingToolCall,
    WaitingToolCall,
    convert_to_function_response,
    create_error_response,
    transition,
    with_args,
    with_live_output,
    with_outcome,
)
from turnloop.tools.base import (
    EditConfirmationDetails,
    ToolConfirmationDetails,
    ToolConfirmationOutcome,
    ToolConfirmationPayload,
)
from turnloop.tools.modifiable import Editor, apply_content_change, is_modifiable_tool, modify_with_editor
from turnloop.tools.registry import ToolRegistry
from turnloop.utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

ToolCallsUpdateHandler = Callable[[List[ToolCall]], None]
AllToolCallsCompleteHandler = Callable[[List[CompletedToolCall]], Any]
OutputUpdateHandler = Callable[[str, str], None]
ConfirmationHandler = Callable[["PendingConfirmation"], Any]

USER_DENIED_REASON = "User did not allow tool call"
USER_CANCELLED_EXECUTION = "User cancelled tool execution."


@dataclass
class PendingConfirmation:
    """A call waiting for the user's decision."""

    call_id: str
    batch_id: str
    request: ToolCallRequestInfo
    details: ToolConfirmationDetails

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_id": self.call_id,
            "batch_id": self.batch_id,
            "request": self.request.to_dict(),
            "details": self.details.to_dict(),
        }


class ToolScheduler:
    """Schedules, confirms and executes one batch of tool calls at a time."""

    def __init__(
        self,
        registry: ToolRegistry,
        session: Session,
        *,
        on_all_tool_calls_complete: Optional[AllToolCallsCompleteHandler] = None,
        on_tool_calls_update: Optional[ToolCallsUpdateHandler] = None,
        on_confirmation_required: Optional[ConfirmationHandler] = None,
        output_update_handler: Optional[OutputUpdateHandler] = None,
        editor: Optional[Editor] = None,
        approval_mode: Optional[ApprovalMode] = None,
    ):
        self.registry = registry
        self.session = session
        self.on_all_tool_calls_complete = on_all_tool_calls_complete
        self.on_tool_calls_update = on_tool_calls_update
        self.on_confirmation_required = on_confirmation_required
        self.output_update_handler = output_update_handler
        self.editor = editor
        self.approval_mode = approval_mode or session.config.approval_mode

        self._calls: List[ToolCall] = []
        self._pending: Dict[str, PendingConfirmation] = {}
        self._batch_id: Optional[str] = None
        self._cancel: Optional[CancellationToken] = None
        self._tasks: Set["asyncio.Future[Any]"] = set()

    # -----------------------------------------------------------------
    # State
    # -----------------------------------------------------------------

    @property
    def tool_calls(self) -> List[ToolCall]:
        return list(self._calls)

    @property
    def pending_confirmations(self) -> List[PendingConfirmation]:
        return list(self._pending.values())

    @property
    def batch_id(self) -> Optional[str]:
        return self._batch_id

    def is_running(self) -> bool:
        return any(
            c.status in (ToolCallStatus.EXECUTING, ToolCallStatus.AWAITING_APPROVAL) for c in self._calls
        )

    def _find(self, call_id: str) -> Optional[ToolCall]:
        for call in self._calls:
            if call.call_id == call_id:
                return call
        return None

    def _replace(self, call_id: str, new_call: ToolCall) -> None:
        self._calls = [new_call if c.call_id == call_id else c for c in self._calls]

    def _set_status(self, call_id: str, status: ToolCallStatus, data: Any = None) -> None:
        call = self._find(call_id)
        if call is None:
            return
        self._replace(call_id, transition(call, status, data))
        if status != ToolCallStatus.AWAITING_APPROVAL:
            self._pending.pop(call_id, None)
        self._notify_update()
        self._check_completion()

    # -----------------------------------------------------------------
    # Scheduling
    # -----------------------------------------------------------------

    async def schedule(
        self,
        requests: Union[ToolCallRequestInfo, Sequence[ToolCallRequestInfo]],
        cancel: CancellationToken,
    ) -> None:
        """Validate a batch of requests and start the approved ones.

        Raises:
            SchedulerBusyError: If a call of the current batch is executing
                or awaiting approval.
        """
        if self.is_running():
            raise SchedulerBusyError(
                "Cannot schedule new tool calls while other tool calls are running "
                "(executing or awaiting approval)."
            )
        if isinstance(requests, ToolCallRequestInfo):
            requests = [requests]

        if not self._calls:
            self._batch_id = uuid.uuid4().hex
        self._bind_cancel(cancel)

        new_calls: List[ToolCall] = []
        for request in requests:
            tool = self.registry.get_tool(request.name)
            if tool is None:
                new_calls.append(
                    ErroredToolCall(
                        request=request,
                        response=create_error_response(
                            request, ValueError(f'Tool "{request.name}" not found in registry.')
                        ),
                        duration_ms=0,
                    )
                )
            else:
                new_calls.append(ValidatingToolCall(request=request, tool=tool, start_time=time.monotonic()))

        self._calls.extend(new_calls)
        self._notify_update()

        for call in new_calls:
            if not isinstance(call, ValidatingToolCall):
                continue
            await self._validate(call, cancel)

        self._attempt_execution(cancel)
        self._check_completion()

    async def _validate(self, call: ValidatingToolCall, cancel: CancellationToken) -> None:
        request, tool = call.request, call.tool
        try:
            if cancel.cancelled:
                self._set_status(request.call_id, ToolCallStatus.CANCELLED, cancel.reason or "cancelled")
                return
            invalid = tool.validate_tool_params(request.args)
            if invalid:
                self._set_status(request.call_id, ToolCallStatus.ERROR, create_error_response(request, ValueError(invalid)))
                return

            if self.approval_mode == ApprovalMode.YOLO:
                self._set_status(request.call_id, ToolCallStatus.SCHEDULED)
                return

            details = await tool.should_confirm_execute(request.args, cancel)
            if details is None or any(self.session.is_approved(k) for k in details.approval_keys(tool.name)):
                self._set_status(request.call_id, ToolCallStatus.SCHEDULED)
                return

            self._set_status(request.call_id, ToolCallStatus.AWAITING_APPROVAL, details)
            if not isinstance(self._find(request.call_id), WaitingToolCall):
                return
            pending = PendingConfirmation(
                call_id=request.call_id,
                batch_id=self._batch_id or "",
                request=request,
                details=details,
            )
            self._pending[request.call_id] = pending
            if self.on_confirmation_required is not None:
                self._fire(self.on_confirmation_required, pending)
        except Exception as e:
            self._set_status(request.call_id, ToolCallStatus.ERROR, create_error_response(request, e))

    # -----------------------------------------------------------------
    # Confirmation
    # -----------------------------------------------------------------

    async def resolve_confirmation(
        self,
        call_id: str,
        outcome: ToolConfirmationOutcome,
        payload: Optional[ToolConfirmationPayload] = None,
    ) -> None:
        """Apply the user's decision to a call awaiting approval."""
        call = self._find(call_id)
        if not isinstance(call, WaitingToolCall) or call_id not in self._pending:
            logger.warning("No pending confirmation for tool call %s", call_id)
            return
        cancel = self._cancel or CancellationToken()

        self._replace(call_id, with_outcome(call, outcome))
        for key in call.confirmation_details.keys_for_outcome(call.tool.name, outcome):
            self.session.approve_for_session(key)

        if outcome == ToolConfirmationOutcome.CANCEL or cancel.cancelled:
            self._set_status(call_id, ToolCallStatus.CANCELLED, USER_DENIED_REASON)
        elif outcome == ToolConfirmationOutcome.MODIFY_WITH_EDITOR:
            await self._modify_with_editor(call_id, cancel)
        else:
            if payload is not None and payload.new_content:
                await self._apply_inline_modify(call_id, payload, cancel)
            self._set_status(call_id, ToolCallStatus.SCHEDULED)

        self._attempt_execution(cancel)

    def _update_details(self, call_id: str, details: ToolConfirmationDetails) -> None:
        self._set_status(call_id, ToolCallStatus.AWAITING_APPROVAL, details)
        pending = self._pending.get(call_id)
        if pending is not None:
            pending.details = details

    async def _modify_with_editor(self, call_id: str, cancel: CancellationToken) -> None:
        call = self._find(call_id)
        if not isinstance(call, WaitingToolCall) or not is_modifiable_tool(call.tool):
            return
        if self.editor is None:
            logger.warning("No editor configured; cannot modify tool call %s", call_id)
            return
        details = call.confirmation_details
        context = call.tool.get_modify_context(cancel)

        if isinstance(details, EditConfirmationDetails):
            self._update_details(call_id, dataclasses.replace(details, is_modifying=True))
        result = None
        try:
            result = await modify_with_editor(call.request.args, context, self.editor, cancel)
        finally:
            if result is None and isinstance(details, EditConfirmationDetails):
                if isinstance(self._find(call_id), WaitingToolCall):
                    self._update_details(call_id, dataclasses.replace(details, is_modifying=False))

        current = self._find(call_id)
        if not isinstance(current, WaitingToolCall):
            return
        self._replace(call_id, with_args(current, result.updated_params))
        if isinstance(details, EditConfirmationDetails):
            details = dataclasses.replace(details, file_diff=result.updated_diff, is_modifying=False)
        self._update_details(call_id, details)

    async def _apply_inline_modify(
        self, call_id: str, payload: ToolConfirmationPayload, cancel: CancellationToken
    ) -> None:
        call = self._find(call_id)
        if (
            not isinstance(call, WaitingToolCall)
            or not isinstance(call.confirmation_details, EditConfirmationDetails)
            or not is_modifiable_tool(call.tool)
        ):
            return
        context = call.tool.get_modify_context(cancel)
        result = await apply_content_change(call.request.args, context, payload.new_content)
        self._replace(call_id, with_args(call, result.updated_params))
        self._update_details(
            call_id, dataclasses.replace(call.confirmation_details, file_diff=result.updated_diff)
        )

    # -----------------------------------------------------------------
    # Execution
    # -----------------------------------------------------------------

    def _attempt_execution(self, cancel: CancellationToken) -> None:
        if not self._calls:
            return
        if not all(c.status == ToolCallStatus.SCHEDULED or c.is_terminal for c in self._calls):
            return

        for call in [c for c in self._calls if isinstance(c, ScheduledToolCall)]:
            if cancel.cancelled:
                self._set_status(call.call_id, ToolCallStatus.CANCELLED, USER_CANCELLED_EXECUTION)
                continue
            self._set_status(call.call_id, ToolCallStatus.EXECUTING)
            executing = self._find(call.call_id)
            if isinstance(executing, ExecutingToolCall):
                self._track(asyncio.ensure_future(self._execute(executing, cancel)))

    def _live_output_callback(self, call_id: str) -> Callable[[str], None]:
        def on_output(chunk: str) -> None:
            if self.output_update_handler is not None:
                self.output_update_handler(call_id, chunk)
            call = self._find(call_id)
            if call is not None:
                self._replace(call_id, with_live_output(call, chunk))
                self._notify_update()

        return on_output

    async def _execute(self, call: ExecutingToolCall, cancel: CancellationToken) -> None:
        request = call.request
        live = self._live_output_callback(request.call_id) if call.tool.can_update_output else None
        try:
            result = await cancel.guard(call.tool.execute(request.args, cancel, live))
        except OperationCancelled as e:
            if cancel.cancelled:
                self._set_status(request.call_id, ToolCallStatus.CANCELLED, USER_CANCELLED_EXECUTION)
            else:
                self._set_status(request.call_id, ToolCallStatus.ERROR, create_error_response(request, e))
            return
        except Exception as e:
            logger.warning("Tool %s failed: %s", request.name, e)
            self._set_status(request.call_id, ToolCallStatus.ERROR, create_error_response(request, e))
            return

        if cancel.cancelled:
            self._set_status(request.call_id, ToolCallStatus.CANCELLED, USER_CANCELLED_EXECUTION)
            return

        response = ToolCallResponseInfo(
            call_id=request.call_id,
            response_parts=convert_to_function_response(request.name, request.call_id, result.llm_content),
            result_display=result.return_display,
        )
        self._set_status(request.call_id, ToolCallStatus.SUCCESS, response)

    # -----------------------------------------------------------------
    # Cancellation
    # -----------------------------------------------------------------

    def _bind_cancel(self, cancel: CancellationToken) -> None:
        if self._cancel is cancel:
            return
        if self._cancel is not None:
            self._cancel.remove_callback(self.cancel_all)
        self._cancel = cancel
        cancel.add_callback(self.cancel_all)

    def cancel_all(self, reason: str = "cancelled") -> None:
        """Cancel every call that has not started executing.

        Executing calls resolve on their own once the token aborts them.
        """
        for call in list(self._calls):
            if call.is_terminal or call.status == ToolCallStatus.EXECUTING:
                continue
            self._set_status(call.call_id, ToolCallStatus.CANCELLED, reason)

    # -----------------------------------------------------------------
    # Notifications
    # -----------------------------------------------------------------

    def _notify_update(self) -> None:
        if self.on_tool_calls_update is not None:
            self.on_tool_calls_update(list(self._calls))

    def _check_completion(self) -> None:
        if not self._calls or not all(c.is_terminal for c in self._calls):
            return

        completed: List[CompletedToolCall] = list(self._calls)  # type: ignore[arg-type]
        self._calls = []
        self._pending.clear()
        self._batch_id = None
        if self._cancel is not None:
            self._cancel.remove_callback(self.cancel_all)
            self._cancel = None

        for call in completed:
            logger.info(
                "Tool call %s (%s) %s in %sms",
                call.call_id,
                call.request.name,
                call.status.value,
                call.duration_ms,
            )

        if self.on_all_tool_calls_complete is not None:
            self._fire(self.on_all_tool_calls_complete, completed)
        self._notify_update()

    def _fire(self, handler: Callable[..., Any], *args: Any) -> None:
        result = handler(*args)
        if inspect.isawaitable(result):
            self._track(asyncio.ensure_future(result))

    def _track(self, task: "asyncio.Future[Any]") -> None:
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: "asyncio.Future[Any]") -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Scheduler task failed", exc_info=task.exception())

    async def drain(self) -> None:
        """Wait for executions and completion handlers still in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

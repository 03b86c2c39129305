"""Direct tool execution for the non-interactive runner.

No validation gate, no confirmation and no state machine: the request is
looked up, executed, and its outcome wrapped as a response.
"""

from __future__ import annotations

import logging
from typing import Optional

from turnloop.core.tool_calls import (
    ToolCallRequestInfo,
    ToolCallResponseInfo,
    convert_to_function_response,
    create_error_response,
)
from turnloop.tools.base import OutputUpdateHandler
from turnloop.tools.registry import ToolRegistry
from turnloop.utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)


class ToolNotFoundError(LookupError):
    pass


async def execute_tool_call(
    request: ToolCallRequestInfo,
    registry: ToolRegistry,
    cancel: CancellationToken,
    update_output: Optional[OutputUpdateHandler] = None,
) -> ToolCallResponseInfo:
    """Execute one tool call and return its response.

    Failures are returned as error responses (``response.error`` set),
    never raised. Cancellation raises :class:`OperationCancelled`.
    """
    tool = registry.get_tool(request.name)
    if tool is None:
        return create_error_response(
            request, ToolNotFoundError(f'Tool "{request.name}" not found in registry.')
        )

    logger.debug("Executing %s (%s)", request.name, request.call_id)
    try:
        result = await cancel.guard(tool.execute(request.args, cancel, update_output))
    except Exception as e:
        if cancel.cancelled:
            raise
        logger.debug("Tool %s failed: %s", request.name, e)
        return create_error_response(request, e)

    return ToolCallResponseInfo(
        call_id=request.call_id,
        response_parts=convert_to_function_response(request.name, request.call_id, result.llm_content),
        result_display=result.return_display,
    )

"""Core module - session state, history, tool calls and the turn loop.

Heavy submodules (``agent``, ``loop``, ``scheduler``) are NOT re-exported
here to avoid circular imports.  Import them directly::

    from turnloop.core.agent import AgentClient
    from turnloop.core.loop import AgentLoop
    from turnloop.core.scheduler import ToolScheduler
"""

# History and session state only depend on config and llm types.
from turnloop.core.history_manager import HistoryManager, extract_curated_history, validate_history
from turnloop.core.session import Session, TokenUsage
from turnloop.core.tool_calls import (
    CompletedToolCall,
    ToolCall,
    ToolCallRequestInfo,
    ToolCallResponseInfo,
    ToolCallStatus,
    transition,
)

__all__ = [
    "CompletedToolCall",
    "HistoryManager",
    "Session",
    "TokenUsage",
    "ToolCall",
    "ToolCallRequestInfo",
    "ToolCallResponseInfo",
    "ToolCallStatus",
    "extract_curated_history",
    "transition",
    "validate_history",
]

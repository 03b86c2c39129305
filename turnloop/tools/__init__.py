"""Tool contract, confirmation details and the tool registry."""

from turnloop.tools.base import (
    EditConfirmationDetails,
    ExecConfirmationDetails,
    FileDiff,
    InfoConfirmationDetails,
    McpConfirmationDetails,
    Tool,
    ToolConfirmationDetails,
    ToolConfirmationOutcome,
    ToolConfirmationPayload,
    ToolResult,
)
from turnloop.tools.modifiable import ModifiableTool, ModifyContext, modify_with_editor
from turnloop.tools.registry import ToolRegistry

__all__ = [
    "EditConfirmationDetails",
    "ExecConfirmationDetails",
    "FileDiff",
    "InfoConfirmationDetails",
    "McpConfirmationDetails",
    "ModifiableTool",
    "ModifyContext",
    "Tool",
    "ToolConfirmationDetails",
    "ToolConfirmationOutcome",
    "ToolConfirmationPayload",
    "ToolRegistry",
    "ToolResult",
    "modify_with_editor",
]

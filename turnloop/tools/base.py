"""Base tool contract consumed by the scheduler."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, List, Optional, Union

from turnloop.llm.types import PartListUnion
from turnloop.utils.cancellation import CancellationToken


@dataclass
class FileDiff:
    """A diff shown instead of plain text for edit results."""

    file_diff: str
    file_name: str


ToolResultDisplay = Union[str, FileDiff]

OutputUpdateHandler = Callable[[str], None]


@dataclass
class ToolResult:
    """Result of a tool execution.

    ``llm_content`` goes back to the model; ``return_display`` is for
    whoever renders the session.
    """

    llm_content: PartListUnion
    return_display: Optional[ToolResultDisplay] = None
    summary: Optional[str] = None

    @classmethod
    def ok(cls, output: str, display: Optional[ToolResultDisplay] = None) -> "ToolResult":
        """Create a plain text result."""
        return cls(llm_content=output, return_display=display if display is not None else output)


class ToolConfirmationOutcome(str, Enum):
    PROCEED_ONCE = "proceed_once"
    PROCEED_ALWAYS = "proceed_always"
    PROCEED_ALWAYS_SERVER = "proceed_always_server"
    PROCEED_ALWAYS_TOOL = "proceed_always_tool"
    MODIFY_WITH_EDITOR = "modify_with_editor"
    CANCEL = "cancel"


_ALWAYS_TOOL = (ToolConfirmationOutcome.PROCEED_ALWAYS, ToolConfirmationOutcome.PROCEED_ALWAYS_TOOL)


@dataclass
class ToolConfirmationPayload:
    """Inline edits submitted together with a confirmation outcome."""

    new_content: str


@dataclass
class ToolConfirmationDetails:
    """What the user is asked to approve before a tool runs."""

    type: ClassVar[str] = "info"

    title: str

    def approval_key(self, tool_name: str) -> str:
        return f"tool:{tool_name}"

    def approval_keys(self, tool_name: str) -> List[str]:
        """Session approvals any one of which skips this confirmation."""
        return [self.approval_key(tool_name)]

    def keys_for_outcome(self, tool_name: str, outcome: ToolConfirmationOutcome) -> List[str]:
        """Session approvals recorded when the user picks ``outcome``."""
        if outcome in _ALWAYS_TOOL:
            return [self.approval_key(tool_name)]
        return []

    def to_dict(self) -> Dict[str, Any]:
        data = {k: v for k, v in self.__dict__.items()}
        data["type"] = self.type
        return data


@dataclass
class EditConfirmationDetails(ToolConfirmationDetails):
    type: ClassVar[str] = "edit"

    file_name: str = ""
    file_diff: str = ""
    is_modifying: bool = False


@dataclass
class ExecConfirmationDetails(ToolConfirmationDetails):
    type: ClassVar[str] = "exec"

    command: str = ""
    root_command: str = ""

    def approval_key(self, tool_name: str) -> str:
        return f"exec:{self.root_command}"


@dataclass
class McpConfirmationDetails(ToolConfirmationDetails):
    type: ClassVar[str] = "mcp"

    server_name: str = ""
    tool_name: str = ""
    tool_display_name: str = ""

    def server_key(self) -> str:
        return f"server:{self.server_name}"

    def approval_keys(self, tool_name: str) -> List[str]:
        return [self.approval_key(tool_name), self.server_key()]

    def keys_for_outcome(self, tool_name: str, outcome: ToolConfirmationOutcome) -> List[str]:
        if outcome == ToolConfirmationOutcome.PROCEED_ALWAYS_SERVER:
            return [self.server_key()]
        return super().keys_for_outcome(tool_name, outcome)


@dataclass
class InfoConfirmationDetails(ToolConfirmationDetails):
    type: ClassVar[str] = "info"

    prompt: str = ""
    urls: List[str] = field(default_factory=list)


class Tool(ABC):
    """Base class for all tools."""

    name: str
    display_name: str = ""
    description: str = ""
    parameter_schema: Dict[str, Any] = {"type": "object", "properties": {}}
    is_output_markdown: bool = True
    can_update_output: bool = False

    @property
    def schema(self) -> Dict[str, Any]:
        """Function declaration sent to the model."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameter_schema,
        }

    def validate_tool_params(self, params: Dict[str, Any]) -> Optional[str]:
        """Return an error message for invalid params, or None."""
        return None

    def get_description(self, params: Dict[str, Any]) -> str:
        return json.dumps(params)

    async def should_confirm_execute(
        self, params: Dict[str, Any], cancel: CancellationToken
    ) -> Optional[ToolConfirmationDetails]:
        """Details to show the user, or None when no approval is needed."""
        return None

    @abstractmethod
    async def execute(
        self,
        params: Dict[str, Any],
        cancel: CancellationToken,
        update_output: Optional[OutputUpdateHandler] = None,
    ) -> ToolResult:
        """Execute the tool with the given arguments."""

"""Tools whose proposed change the user may edit before approving."""

from __future__ import annotations

import difflib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict

from turnloop.tools.base import Tool
from turnloop.utils.cancellation import CancellationToken

# (file_path, current_content, proposed_content) -> content after the user's edits
Editor = Callable[[str, str, str], Awaitable[str]]


class ModifyContext(ABC):
    """How to read and rewrite the arguments of a pending edit."""

    @abstractmethod
    def get_file_path(self, params: Dict[str, Any]) -> str: ...

    @abstractmethod
    async def get_current_content(self, params: Dict[str, Any]) -> str: ...

    @abstractmethod
    async def get_proposed_content(self, params: Dict[str, Any]) -> str: ...

    @abstractmethod
    def create_updated_params(
        self, old_content: str, modified_content: str, original_params: Dict[str, Any]
    ) -> Dict[str, Any]: ...


class ModifiableTool(Tool):
    """A tool that exposes a :class:`ModifyContext`."""

    @abstractmethod
    def get_modify_context(self, cancel: CancellationToken) -> ModifyContext: ...


def is_modifiable_tool(tool: Tool) -> bool:
    return isinstance(tool, ModifiableTool)


def make_diff(file_path: str, old_content: str, new_content: str) -> str:
    """Unified diff between the current and the proposed content."""
    return "".join(
        difflib.unified_diff(
            old_content.splitlines(keepends=True),
            new_content.splitlines(keepends=True),
            fromfile=f"{file_path} (Current)",
            tofile=f"{file_path} (Proposed)",
        )
    )


@dataclass
class ModifyResult:
    updated_params: Dict[str, Any]
    updated_diff: str


async def apply_content_change(
    params: Dict[str, Any], context: ModifyContext, new_content: str
) -> ModifyResult:
    """Rewrite ``params`` so the tool produces ``new_content``."""
    current = await context.get_current_content(params)
    return ModifyResult(
        updated_params=context.create_updated_params(current, new_content, params),
        updated_diff=make_diff(context.get_file_path(params), current, new_content),
    )


async def modify_with_editor(
    params: Dict[str, Any],
    context: ModifyContext,
    editor: Editor,
    cancel: CancellationToken,
) -> ModifyResult:
    """Let ``editor`` revise the proposed content, then rebuild the params."""
    file_path = context.get_file_path(params)
    current = await context.get_current_content(params)
    proposed = await context.get_proposed_content(params)
    modified = await cancel.guard(editor(file_path, current, proposed))
    return ModifyResult(
        updated_params=context.create_updated_params(current, modified, params),
        updated_diff=make_diff(file_path, current, modified),
    )

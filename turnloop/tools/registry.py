"""Tool registry: name lookup and function declarations."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from turnloop.tools.base import Tool

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Holds the tools the model may call, keyed by name."""

    def __init__(self) -> None:
        self._tools: Dict[str, Tool] = {}

    def register_tool(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.warning("Tool %s is already registered; replacing it", tool.name)
        self._tools[tool.name] = tool

    def get_tool(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def get_all_tools(self) -> List[Tool]:
        return sorted(self._tools.values(), key=lambda t: t.name)

    def get_function_declarations(self) -> List[Dict[str, Any]]:
        """Schemas for every registered tool, in name order."""
        return [tool.schema for tool in self.get_all_tools()]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

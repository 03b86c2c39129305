"""Non-interactive execution of a single prompt."""

from .runner import ToolExecutionError, run_non_interactive

__all__ = ["ToolExecutionError", "run_non_interactive"]

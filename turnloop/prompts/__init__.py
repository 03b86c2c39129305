"""Prompts module."""

from turnloop.prompts.system import get_core_system_prompt, get_environment_context

__all__ = ["get_core_system_prompt", "get_environment_context"]

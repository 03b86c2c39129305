"""
turnloop - an agentic turn-loop engine.

Streams model turns, schedules the tool calls they request, feeds the
results back, and keeps the chat history consistent across retries,
compression and quota fallback.

Heavy modules (core.agent, core.loop, exec) are NOT re-exported here
to avoid circular imports.  Import them directly::

    from turnloop.core.agent import AgentClient
    from turnloop.core.loop import AgentLoop
"""

__version__ = "0.1.0"

# Only re-export lightweight, leaf-node modules that don't trigger cycles.
from turnloop.config import EngineConfig, load_config

__all__ = [
    "EngineConfig",
    "load_config",
    "__version__",
]

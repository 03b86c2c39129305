"""Session state shared by the chat, the client and the scheduler.

Everything that is mutable for the lifetime of one interactive session
lives here: the active model, quota flags, token usage and the
session-scoped tool approvals.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from turnloop.config.models import EngineConfig

logger = logging.getLogger(__name__)

# (current_model, fallback_model, error) -> True/str to switch, False/None to decline
FlashFallbackHandler = Callable[[str, str, BaseException], Awaitable[Any]]


@dataclass
class TokenUsage:
    """Token usage tracking."""

    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add_usage(self, usage: Optional[Dict[str, int]]) -> None:
        """Add a usage dict as reported on a response."""
        if not usage:
            return
        self.input_tokens += usage.get("input", 0)
        self.output_tokens += usage.get("output", 0)
        self.reasoning_tokens += usage.get("reasoning", 0)

    def to_dict(self) -> Dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "reasoning_tokens": self.reasoning_tokens,
        }


@dataclass
class Session:
    """Manages the state of an engine session."""

    config: EngineConfig = field(default_factory=EngineConfig)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    model: str = ""

    usage: TokenUsage = field(default_factory=TokenUsage)
    started_at: datetime = field(default_factory=datetime.now)

    # Quota fallback state
    quota_error_occurred: bool = False
    model_switched_from_quota_error: bool = False
    flash_fallback_handler: Optional[FlashFallbackHandler] = None

    approval_cache: dict[str, bool] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.model:
            self.model = self.config.model

    def set_model(self, model: str) -> None:
        if model != self.model:
            logger.info("Switching model: %s -> %s", self.model, model)
        self.model = model

    def is_approved(self, key: str) -> bool:
        """Check whether an operation is approved for this session."""
        return self.approval_cache.get(key, False)

    def approve_for_session(self, key: str) -> None:
        """Cache an approval for the current session."""
        self.approval_cache[key] = True

    @property
    def elapsed_time(self) -> float:
        """Get elapsed time in seconds."""
        return (datetime.now() - self.started_at).total_seconds()

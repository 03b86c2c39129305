"""Pydantic models for turnloop configuration."""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from turnloop.config import defaults


class AuthType(str, Enum):
    """How the engine authenticates against the model service."""

    OAUTH_PERSONAL = "oauth-personal"
    API_KEY = "api-key"
    OPENAI_COMPATIBLE = "openai-compatible"

    @property
    def supports_fallback(self) -> bool:
        """Only personal OAuth accounts are offered a quota fallback model."""
        return self is AuthType.OAUTH_PERSONAL


class ApprovalMode(str, Enum):
    """Approval mode for tool calls."""

    DEFAULT = "default"
    YOLO = "yolo"


class RetryConfig(BaseModel):
    """Configuration for retry logic."""

    max_attempts: int = Field(
        default=defaults.RETRY_MAX_ATTEMPTS, ge=1, description="Maximum attempts per call"
    )
    initial_delay: float = Field(
        default=defaults.RETRY_INITIAL_DELAY, ge=0, description="Initial backoff delay in seconds"
    )
    max_delay: float = Field(
        default=defaults.RETRY_MAX_DELAY, ge=0, description="Maximum backoff delay in seconds"
    )


class CompressionConfig(BaseModel):
    """Configuration for history compression."""

    token_threshold: float = Field(
        default=defaults.COMPRESSION_TOKEN_THRESHOLD,
        gt=0,
        lt=1,
        description="Fraction of the model token limit that triggers compression",
    )
    preserve_threshold: float = Field(
        default=defaults.COMPRESSION_PRESERVE_THRESHOLD,
        gt=0,
        lt=1,
        description="Fraction of the history (by characters) kept after compression",
    )


class GeneratorConfig(BaseModel):
    """Configuration for the HTTP content generator."""

    base_url: str = Field(default=defaults.DEFAULT_BASE_URL, description="API base URL")
    api_key_env: list[str] = Field(
        default=["TURNLOOP_API_KEY", "OPENAI_API_KEY"],
        description="Environment variables checked (in order) for the API key",
    )
    timeout: float = Field(default=defaults.DEFAULT_TIMEOUT, description="Request timeout in seconds")
    stream_idle_timeout: float = Field(
        default=defaults.STREAM_IDLE_TIMEOUT, description="Read timeout while streaming"
    )
    token_cache_size: int = Field(
        default=defaults.TOKEN_CACHE_SIZE, ge=1, description="Entries kept in the token count cache"
    )


class EngineConfig(BaseModel):
    """Main configuration for the orchestration engine."""

    # Model settings
    model: str = Field(default=defaults.DEFAULT_MODEL, description="Model to use")
    fallback_model: str = Field(
        default=defaults.DEFAULT_FLASH_MODEL, description="Model offered on quota exhaustion"
    )
    auth_type: AuthType = Field(default=AuthType.API_KEY, description="Authentication mode")
    temperature: float = Field(default=0.0, description="Generation temperature")
    top_p: float = Field(default=1.0, description="Nucleus sampling")
    system_prompt: Optional[str] = Field(default=None, description="System instruction")

    # Loop settings
    approval_mode: ApprovalMode = Field(
        default=ApprovalMode.DEFAULT, description="Tool approval mode"
    )
    max_turns: int = Field(default=defaults.MAX_TURNS, ge=0, description="Turn cap per prompt")
    max_session_turns: int = Field(
        default=defaults.MAX_SESSION_TURNS, ge=0, description="Turn cap per session (0 disables)"
    )
    working_dir: str = Field(default="", description="Working directory")
    include_environment_context: bool = Field(
        default=True, description="Seed new chats with date, platform and working directory"
    )

    # Sub-configurations
    retry: RetryConfig = Field(default_factory=RetryConfig)
    compression: CompressionConfig = Field(default_factory=CompressionConfig)
    generator: GeneratorConfig = Field(default_factory=GeneratorConfig)

    @field_validator("working_dir", mode="before")
    @classmethod
    def resolve_working_dir(cls, v: str) -> str:
        """Resolve empty working_dir to the current directory."""
        if not v:
            return os.getcwd()
        return str(Path(v).resolve())

    def get_api_key(self) -> str:
        """Get the API key from the configured environment variables."""
        for var in self.generator.api_key_env:
            key = os.environ.get(var)
            if key:
                return key

        raise ValueError(f"No API key found. Set one of: {self.generator.api_key_env}")

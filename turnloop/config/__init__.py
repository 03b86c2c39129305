"""Configuration module - pydantic models, defaults and TOML loading."""

from turnloop.config.loader import find_config_file, load_config
from turnloop.config.models import (
    ApprovalMode,
    AuthType,
    CompressionConfig,
    EngineConfig,
    GeneratorConfig,
    RetryConfig,
)

__all__ = [
    "ApprovalMode",
    "AuthType",
    "CompressionConfig",
    "EngineConfig",
    "GeneratorConfig",
    "RetryConfig",
    "find_config_file",
    "load_config",
]

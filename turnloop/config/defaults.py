"""
Default values for the orchestration engine.

Kept as plain constants so that both the pydantic models and the core
modules can share them without importing each other.
"""

from __future__ import annotations

import os

# ==========================================================================
# Models
# ==========================================================================
# Model used for regular turns unless overridden
DEFAULT_MODEL = os.environ.get("TURNLOOP_MODEL", "gpt-4o")
# Cheaper model offered when the primary model runs out of quota
DEFAULT_FLASH_MODEL = "gemini-2.5-flash"

# ==========================================================================
# Turn limits
# ==========================================================================
# Upper bound on chained turns for a single prompt
MAX_TURNS = 100
# Cumulative cap per session; 0 disables it
MAX_SESSION_TURNS = 0

# ==========================================================================
# History compression
# ==========================================================================
# Compress once the curated history reaches this share of the context window
COMPRESSION_TOKEN_THRESHOLD = 0.7
# Share of the history (by characters) kept verbatim after compression
COMPRESSION_PRESERVE_THRESHOLD = 0.3

# ==========================================================================
# Retry / backoff (seconds)
# ==========================================================================
RETRY_MAX_ATTEMPTS = 5
RETRY_INITIAL_DELAY = 5.0
RETRY_MAX_DELAY = 30.0

# ==========================================================================
# Content generator
# ==========================================================================
DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_TIMEOUT = 120.0
STREAM_IDLE_TIMEOUT = 300.0
TOKEN_CACHE_SIZE = 256

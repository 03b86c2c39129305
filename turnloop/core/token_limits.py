"""Context window sizes per model."""

DEFAULT_TOKEN_LIMIT = 1_048_576

_TOKEN_LIMITS = {
    "gemini-1.5-pro": 2_097_152,
    "gemini-1.5-flash": 1_048_576,
    "gemini-2.5-pro-preview-05-06": 1_048_576,
    "gemini-2.5-pro-preview-06-05": 1_048_576,
    "gemini-2.5-pro": 1_048_576,
    "gemini-2.5-flash-preview-05-20": 1_048_576,
    "gemini-2.5-flash": 1_048_576,
    "gemini-2.0-flash": 1_048_576,
    "qwen3-coder-plus": 1_048_576,
    "qwen3-coder-plus-2025-07-22": 1_048_576,
    "gemini-2.0-flash-preview-image-generation": 32_000,
    "deepseek-v3": 32_000,
    "deepseek-ai/DeepSeek-V3": 32_000,
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "gpt-4.1": 1_047_576,
}


def token_limit(model: str) -> int:
    return _TOKEN_LIMITS.get(model, DEFAULT_TOKEN_LIMIT)

"""LLM module - content generator contract and httpx implementation.

The httpx client is NOT re-exported here; import it directly::

    from turnloop.llm.client import OpenAICompatibleGenerator
"""

from turnloop.llm.generator import ContentGenerator
from turnloop.llm.types import (
    Content,
    FunctionCall,
    GenerateContentRequest,
    GenerateContentResponse,
    Part,
    TokenCount,
)

__all__ = [
    "Content",
    "ContentGenerator",
    "FunctionCall",
    "GenerateContentRequest",
    "GenerateContentResponse",
    "Part",
    "TokenCount",
]

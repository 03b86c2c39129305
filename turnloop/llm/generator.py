"""Content generator contract.

The engine only talks to the model service through this interface:
single-shot generation, streaming generation and token counting.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, AsyncIterator, Optional

from turnloop.llm.types import GenerateContentRequest, GenerateContentResponse, TokenCount

if TYPE_CHECKING:
    from turnloop.config.models import EngineConfig
    from turnloop.utils.lru import LruCache


class ContentGenerator(ABC):
    """Network abstraction over the model service."""

    @abstractmethod
    async def generate_content(self, request: GenerateContentRequest) -> GenerateContentResponse:
        """Return one complete response."""

    @abstractmethod
    async def generate_content_stream(
        self, request: GenerateContentRequest
    ) -> AsyncIterator[GenerateContentResponse]:
        """Open a stream and return an async iterator of response fragments.

        Connection and HTTP status errors are raised by the awaited call
        itself, so they can be retried before any fragment is consumed.
        """

    @abstractmethod
    async def count_tokens(self, request: GenerateContentRequest) -> TokenCount:
        """Count tokens for ``request.contents``."""

    async def close(self) -> None:
        """Release network resources."""


def create_content_generator(
    config: "EngineConfig",
    token_cache: Optional["LruCache[str, int]"] = None,
) -> ContentGenerator:
    """Build the HTTP content generator described by ``config``."""
    from turnloop.llm.client import OpenAICompatibleGenerator
    from turnloop.utils.lru import LruCache

    return OpenAICompatibleGenerator(
        base_url=config.generator.base_url,
        api_key=config.get_api_key(),
        timeout=config.generator.timeout,
        stream_idle_timeout=config.generator.stream_idle_timeout,
        token_cache=token_cache or LruCache(config.generator.token_cache_size),
    )

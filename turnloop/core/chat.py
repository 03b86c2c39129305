"""Chat session: sends messages in the context of the recorded history."""

from __future__ import annotations

import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional

from turnloop.api.retry import RetryOptions, default_should_retry, retry_with_backoff
from turnloop.config.models import AuthType
from turnloop.core.history_manager import HistoryManager
from turnloop.core.session import Session
from turnloop.llm.generator import ContentGenerator
from turnloop.llm.types import (
    Content,
    GenerateContentRequest,
    GenerateContentResponse,
    PartListUnion,
    create_user_content,
    get_text_from_parts,
)
from turnloop.utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

FLASH_AFTER_QUOTA_MESSAGE = "Please submit a new query to continue with the Flash model."


class AgentChat:
    """Sends messages to the model and records each exchange in history.

    A chat is owned by one turn loop at a time; there is no concurrent
    writer to its history.
    """

    def __init__(
        self,
        session: Session,
        generator: ContentGenerator,
        generation_config: Optional[Dict[str, Any]] = None,
        history: Optional[List[Content]] = None,
    ):
        self.session = session
        self.generator = generator
        self.generation_config = dict(generation_config or {})
        self.history = HistoryManager(history)

    # -----------------------------------------------------------------
    # Quota fallback
    # -----------------------------------------------------------------

    async def handle_flash_fallback(
        self, auth_type: Optional[AuthType], error: BaseException
    ) -> Optional[str]:
        """Offer the fallback model after persistent quota errors.

        Returns the fallback model name when the switch was accepted,
        None otherwise. Handler exceptions propagate to the caller.
        """
        if auth_type is None or not AuthType(auth_type).supports_fallback:
            return None

        current_model = self.session.model
        fallback_model = self.session.config.fallback_model
        if current_model == fallback_model:
            return None

        handler = self.session.flash_fallback_handler
        if handler is None:
            return None

        accepted = await handler(current_model, fallback_model, error)
        if accepted is not False and accepted is not None:
            self.session.set_model(fallback_model)
            self.session.model_switched_from_quota_error = True
            return fallback_model

        self.session.quota_error_occurred = True
        return None

    def _retry_options(self) -> RetryOptions:
        return RetryOptions.from_config(
            self.session.config.retry,
            should_retry=default_should_retry,
            on_persistent_failure=self.handle_flash_fallback,
            auth_type=self.session.config.auth_type,
        )

    def _build_request(
        self,
        contents: List[Content],
        config: Optional[Dict[str, Any]],
        cancel: Optional[CancellationToken],
    ) -> GenerateContentRequest:
        model = self.session.model or self.session.config.fallback_model
        if self.session.quota_error_occurred and model == self.session.config.fallback_model:
            raise RuntimeError(FLASH_AFTER_QUOTA_MESSAGE)
        return GenerateContentRequest(
            model=model,
            contents=contents,
            config={**self.generation_config, **(config or {})},
            cancel=cancel,
        )

    # -----------------------------------------------------------------
    # Sending
    # -----------------------------------------------------------------

    async def send_message(
        self,
        message: PartListUnion,
        prompt_id: str,
        config: Optional[Dict[str, Any]] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> GenerateContentResponse:
        """Send one message and wait for the complete reply."""
        user_content = create_user_content(message)
        request_contents = self.get_history(curated=True) + [user_content]
        logger.debug("API request model=%s prompt_id=%s", self.session.model, prompt_id)

        start = time.monotonic()
        try:
            response = await retry_with_backoff(
                lambda: self.generator.generate_content(
                    self._build_request(request_contents, config, cancel)
                ),
                self._retry_options(),
            )
        except Exception as e:
            logger.warning(
                "API error after %.0fms (prompt_id=%s): %s",
                (time.monotonic() - start) * 1000,
                prompt_id,
                e,
            )
            raise

        logger.debug(
            "API response in %.0fms (prompt_id=%s)", (time.monotonic() - start) * 1000, prompt_id
        )
        self.session.usage.add_usage(response.usage)
        self.history.record(user_content, [response.content] if response.content else [])
        return response

    async def send_message_stream(
        self,
        message: PartListUnion,
        prompt_id: str,
        config: Optional[Dict[str, Any]] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> AsyncIterator[GenerateContentResponse]:
        """Open a streamed reply.

        Opening the stream is retried; a failure in the middle of the
        stream is not. The exchange is recorded once the stream is drained.
        """
        user_content = create_user_content(message)
        request_contents = self.get_history(curated=True) + [user_content]
        logger.debug("API stream request model=%s prompt_id=%s", self.session.model, prompt_id)

        start = time.monotonic()
        try:
            stream = await retry_with_backoff(
                lambda: self.generator.generate_content_stream(
                    self._build_request(request_contents, config, cancel)
                ),
                self._retry_options(),
            )
        except Exception as e:
            logger.warning(
                "API error after %.0fms (prompt_id=%s): %s",
                (time.monotonic() - start) * 1000,
                prompt_id,
                e,
            )
            raise

        return self._process_stream(stream, user_content, start, prompt_id)

    async def _process_stream(
        self,
        stream: AsyncIterator[GenerateContentResponse],
        user_content: Content,
        start: float,
        prompt_id: str,
    ) -> AsyncIterator[GenerateContentResponse]:
        model_output: List[Content] = []
        try:
            async for chunk in stream:
                if chunk.is_valid():
                    model_output.append(chunk.content)
                self.session.usage.add_usage(chunk.usage)
                yield chunk
        except Exception as e:
            logger.warning(
                "API stream error after %.0fms (prompt_id=%s): %s",
                (time.monotonic() - start) * 1000,
                prompt_id,
                e,
            )
            raise
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        parts = [p for c in model_output for p in c.get("parts") or []]
        logger.debug(
            "API stream finished in %.0fms (prompt_id=%s, %d chars)",
            (time.monotonic() - start) * 1000,
            prompt_id,
            len(get_text_from_parts(parts)),
        )
        self.history.record(user_content, model_output)

    # -----------------------------------------------------------------
    # History
    # -----------------------------------------------------------------

    def get_history(self, curated: bool = False) -> List[Content]:
        return self.history.get(curated)

    def add_history(self, content: Content) -> None:
        self.history.add(content)

    def set_history(self, history: List[Content]) -> None:
        self.history.set(history)

    def clear_history(self) -> None:
        self.history.clear()

"""Turn-loop orchestrator.

``AgentClient.send_message_stream`` runs one turn and, when the model
still has the floor, recurses with an explicit remaining-turn budget.
Before each turn it may compress the history; while streaming it feeds
every event to the loop detector.
"""

from __future__ import annotations

import contextlib
import json
import logging
import re
from typing import Any, AsyncIterator, Dict, List, Optional

from turnloop.api.retry import RetryOptions, retry_with_backoff
from turnloop.config import defaults
from turnloop.core import compaction
from turnloop.core.chat import AgentChat
from turnloop.core.loop_detection import LoopDetector
from turnloop.core.next_speaker import check_next_speaker
from turnloop.core.session import Session
from turnloop.core.turn import Turn
from turnloop.llm.generator import ContentGenerator
from turnloop.llm.types import Content, GenerateContentRequest, GenerateContentResponse, PartListUnion
from turnloop.output.events import ChatCompressionInfo, StreamEvent
from turnloop.prompts.system import (
    CONTINUE_REQUEST,
    ENVIRONMENT_ACK,
    get_core_system_prompt,
    get_environment_context,
)
from turnloop.tools.registry import ToolRegistry
from turnloop.utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

EMPTY_JSON_RESPONSE = "API returned an empty response for generateJson."

_JSON_EXTRACTORS = (
    re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```"),
    re.compile(r"`(\{[\s\S]*?\})`"),
    re.compile(r"(\{[\s\S]*\}|\[[\s\S]*\])"),
)


def is_thinking_supported(model: str) -> bool:
    return model.startswith("gemini-2.5")


def extract_json(text: str) -> Any:
    """Parse JSON from a reply that may wrap it in a code fence."""
    for pattern in _JSON_EXTRACTORS:
        match = pattern.search(text)
        if match and match.group(1):
            try:
                return json.loads(match.group(1).strip())
            except json.JSONDecodeError:
                continue
    return json.loads(text.strip())


class AgentClient:
    """Drives turns against one chat and owns session-wide turn counting."""

    def __init__(
        self,
        session: Session,
        generator: ContentGenerator,
        registry: ToolRegistry,
        loop_detector: Optional[LoopDetector] = None,
    ):
        self.session = session
        self.generator = generator
        self.registry = registry
        self.loop_detector = loop_detector or LoopDetector()
        self.session_turn_count = 0
        self._last_prompt_id: Optional[str] = None
        self._chat: Optional[AgentChat] = None

    # -----------------------------------------------------------------
    # Chat lifecycle
    # -----------------------------------------------------------------

    def initialize(self) -> "AgentClient":
        self._chat = self.start_chat()
        return self

    def get_chat(self) -> AgentChat:
        if self._chat is None:
            raise RuntimeError("Chat not initialized")
        return self._chat

    def _generation_config(self) -> Dict[str, Any]:
        config = self.session.config
        generation: Dict[str, Any] = {
            "temperature": config.temperature,
            "top_p": config.top_p,
            "system_instruction": get_core_system_prompt(config.system_prompt),
            "tools": self.registry.get_function_declarations(),
        }
        if is_thinking_supported(self.session.model):
            generation["thinking_config"] = {"include_thoughts": True}
        return generation

    def _environment_history(self) -> List[Content]:
        if not self.session.config.include_environment_context:
            return []
        return [
            {"role": "user", "parts": [{"text": get_environment_context(self.session.config.working_dir)}]},
            {"role": "model", "parts": [{"text": ENVIRONMENT_ACK}]},
        ]

    def start_chat(self, extra_history: Optional[List[Content]] = None) -> AgentChat:
        """Create a fresh chat seeded with the environment and ``extra_history``."""
        history = self._environment_history() + list(extra_history or [])
        self._chat = AgentChat(self.session, self.generator, self._generation_config(), history)
        return self._chat

    def reset_chat(self) -> None:
        self.start_chat()

    def get_history(self) -> List[Content]:
        return self.get_chat().get_history()

    def set_history(self, history: List[Content]) -> None:
        self.get_chat().set_history(history)

    def add_history(self, content: Content) -> None:
        self.get_chat().add_history(content)

    # -----------------------------------------------------------------
    # Turn loop
    # -----------------------------------------------------------------

    async def send_message_stream(
        self,
        request: PartListUnion,
        cancel: CancellationToken,
        prompt_id: str,
        turns: int = defaults.MAX_TURNS,
        original_model: Optional[str] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Run turns for ``request`` until the model yields the floor.

        Args:
            request: The user message, or function responses for the
                previous turn's tool calls.
            cancel: Token shared with the tool scheduler.
            prompt_id: Identifies one user prompt across continuations.
            turns: Remaining turn budget for this prompt.
            original_model: Model active when the prompt started; a
                continuation never runs on a different model.
        """
        if self._last_prompt_id != prompt_id:
            self.loop_detector.reset()
            self._last_prompt_id = prompt_id

        self.session_turn_count += 1
        max_session_turns = self.session.config.max_session_turns
        if max_session_turns > 0 and self.session_turn_count > max_session_turns:
            yield StreamEvent.max_session_turns()
            return

        bounded_turns = min(turns, self.session.config.max_turns)
        if not bounded_turns:
            return

        initial_model = original_model or self.session.model

        compressed = await self.try_compress_chat(prompt_id)
        if compressed is not None:
            yield StreamEvent.chat_compressed(compressed)

        turn = Turn(self.get_chat(), prompt_id)
        async with contextlib.aclosing(turn.run(request, cancel)) as events:
            async for event in events:
                if self.loop_detector.add_and_check(event):
                    yield StreamEvent.loop_detected()
                    return
                yield event

        if turn.pending_tool_calls or cancel.cancelled:
            return
        if self.session.model != initial_model:
            return

        next_speaker = await check_next_speaker(self.get_chat(), self, cancel)
        if next_speaker is not None and next_speaker.next_speaker == "model":
            async for event in self.send_message_stream(
                [{"text": CONTINUE_REQUEST}],
                cancel,
                prompt_id,
                bounded_turns - 1,
                initial_model,
            ):
                yield event

    async def try_compress_chat(self, prompt_id: str, force: bool = False) -> Optional[ChatCompressionInfo]:
        return await compaction.try_compress_chat(self, prompt_id, force)

    # -----------------------------------------------------------------
    # One-shot generation
    # -----------------------------------------------------------------

    def _retry_options(self) -> RetryOptions:
        return RetryOptions.from_config(
            self.session.config.retry,
            on_persistent_failure=self.get_chat().handle_flash_fallback,
            auth_type=self.session.config.auth_type,
        )

    async def generate_json(
        self,
        contents: List[Content],
        schema: Dict[str, Any],
        cancel: CancellationToken,
        model: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Ask for a JSON reply and parse it.

        Raises:
            ValueError: If the reply is empty or not JSON.
            RuntimeError: If the request itself failed.
        """
        model_to_use = model or self.session.model or self.session.config.fallback_model
        request_config = {
            **self._generation_config(),
            **(config or {}),
            "response_schema": schema,
            "response_mime_type": "application/json",
        }
        request_config.pop("tools", None)

        try:
            response = await retry_with_backoff(
                lambda: self.generator.generate_content(
                    GenerateContentRequest(
                        model=model_to_use, contents=contents, config=request_config, cancel=cancel
                    )
                ),
                self._retry_options(),
            )
        except Exception as e:
            if cancel.cancelled:
                raise
            raise RuntimeError(f"Failed to generate JSON content: {e}") from e

        text = response.text
        if not text:
            raise ValueError(EMPTY_JSON_RESPONSE)
        try:
            return extract_json(text)
        except json.JSONDecodeError as e:
            logger.debug("Unparseable JSON reply: %s", text)
            raise ValueError(f"Failed to parse API response as JSON: {e}") from e

    async def generate_content(
        self,
        contents: List[Content],
        generation_config: Dict[str, Any],
        cancel: CancellationToken,
        model: Optional[str] = None,
    ) -> GenerateContentResponse:
        """One-shot generation outside the chat history."""
        model_to_use = model or self.session.model
        request_config = {
            **self._generation_config(),
            **generation_config,
            "system_instruction": get_core_system_prompt(self.session.config.system_prompt),
        }
        try:
            return await retry_with_backoff(
                lambda: self.generator.generate_content(
                    GenerateContentRequest(
                        model=model_to_use, contents=contents, config=request_config, cancel=cancel
                    )
                ),
                self._retry_options(),
            )
        except Exception as e:
            if cancel.cancelled:
                raise
            raise RuntimeError(f"Failed to generate content with model {model_to_use}: {e}") from e

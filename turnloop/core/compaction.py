"""History compression.

When the curated history grows past a fraction of the model's context
window, the older part is summarized into a single state snapshot by one
extra model call, and the chat is restarted from
``[summary, acknowledgement, *retained suffix]``.

The cut point is chosen over serialized character counts, not tokens.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, List, Optional, Tuple

from turnloop.llm.types import Content, GenerateContentRequest, is_function_response
from turnloop.output.events import ChatCompressionInfo
from turnloop.core.token_limits import token_limit
from turnloop.prompts.system import COMPRESSION_ACK, COMPRESSION_PROMPT, COMPRESSION_REQUEST

if TYPE_CHECKING:
    from turnloop.core.agent import AgentClient

logger = logging.getLogger(__name__)


def find_index_after_fraction(history: List[Content], fraction: float) -> int:
    """Index of the entry at which ``fraction`` of all characters is reached."""
    if fraction <= 0 or fraction >= 1:
        raise ValueError("Fraction must be between 0 and 1")

    lengths = [len(json.dumps(content)) for content in history]
    target = sum(lengths) * fraction

    so_far = 0
    for i, length in enumerate(lengths):
        so_far += length
        if so_far >= target:
            return i
    return len(lengths)


def split_for_compression(
    history: List[Content], preserve_threshold: float
) -> Tuple[List[Content], List[Content]]:
    """Split into (to compress, to keep); the kept part starts on a user turn."""
    index = find_index_after_fraction(history, 1 - preserve_threshold)
    while index < len(history) and (
        history[index].get("role") == "model" or is_function_response(history[index])
    ):
        index += 1
    return history[:index], history[index:]


def needs_compression(token_count: int, model: str, threshold: float) -> bool:
    return token_count >= threshold * token_limit(model)


async def try_compress_chat(
    client: "AgentClient", prompt_id: str, force: bool = False
) -> Optional[ChatCompressionInfo]:
    """Compress the client's chat if it is over the threshold (or ``force``)."""
    chat = client.get_chat()
    curated = chat.get_history(curated=True)
    if not curated:
        return None

    model = client.session.model
    counted = await client.generator.count_tokens(GenerateContentRequest(model=model, contents=curated))
    original_token_count = counted.total_tokens
    if original_token_count is None:
        logger.warning("Could not determine token count for model %s.", model)
        return None

    compression = client.session.config.compression
    if not force and not needs_compression(original_token_count, model, compression.token_threshold):
        return None

    to_compress, to_keep = split_for_compression(curated, compression.preserve_threshold)
    logger.info(
        "Compressing chat history: %d tokens, summarizing %d of %d entries",
        original_token_count,
        len(to_compress),
        len(curated),
    )

    original = chat.get_history()
    chat.set_history(to_compress)
    try:
        response = await chat.send_message(
            COMPRESSION_REQUEST,
            prompt_id,
            config={"system_instruction": COMPRESSION_PROMPT},
        )
    except Exception as e:
        chat.set_history(original)
        logger.warning("Chat compression failed, keeping full history: %s", e)
        return None
    summary = response.text or ""

    client.start_chat(
        [
            {"role": "user", "parts": [{"text": summary}]},
            {"role": "model", "parts": [{"text": COMPRESSION_ACK}]},
            *to_keep,
        ]
    )

    counted = await client.generator.count_tokens(
        GenerateContentRequest(model=client.session.model, contents=client.get_chat().get_history())
    )
    if counted.total_tokens is None:
        logger.warning("Could not determine compressed history token count.")
        return None

    return ChatCompressionInfo(
        original_token_count=original_token_count,
        new_token_count=counted.total_tokens,
    )

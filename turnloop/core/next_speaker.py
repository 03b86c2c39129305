"""Decides whether the model means to keep talking without new user input."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from turnloop.llm.types import is_function_response
from turnloop.prompts.system import NEXT_SPEAKER_PROMPT, NEXT_SPEAKER_SCHEMA
from turnloop.utils.cancellation import CancellationToken

if TYPE_CHECKING:
    from turnloop.core.agent import AgentClient
    from turnloop.core.chat import AgentChat

logger = logging.getLogger(__name__)

_SPEAKERS = ("user", "model")


@dataclass
class NextSpeakerResponse:
    reasoning: str
    next_speaker: str


async def check_next_speaker(
    chat: "AgentChat",
    client: "AgentClient",
    cancel: CancellationToken,
) -> Optional[NextSpeakerResponse]:
    """Return who should speak next, or None when it cannot be decided."""
    curated = chat.get_history(curated=True)
    if not curated:
        return None

    comprehensive = chat.get_history()
    if not comprehensive:
        return None
    last = comprehensive[-1]

    if is_function_response(last):
        return NextSpeakerResponse(
            reasoning="The last message was a function response, so the model should speak next.",
            next_speaker="model",
        )

    if last.get("role") == "model" and not last.get("parts"):
        return NextSpeakerResponse(
            reasoning="The last message was a filler model message with no content "
            "(nothing for the user to act on), model should speak next.",
            next_speaker="model",
        )

    if curated[-1].get("role") != "model":
        return None

    contents = curated + [{"role": "user", "parts": [{"text": NEXT_SPEAKER_PROMPT}]}]
    try:
        parsed = await client.generate_json(
            contents,
            NEXT_SPEAKER_SCHEMA,
            cancel,
            model=client.session.config.fallback_model,
        )
    except Exception as e:
        logger.warning("Failed to talk to the model while checking if the conversation should continue: %s", e)
        return None

    if not isinstance(parsed, dict) or parsed.get("next_speaker") not in _SPEAKERS:
        return None
    return NextSpeakerResponse(
        reasoning=str(parsed.get("reasoning", "")),
        next_speaker=parsed["next_speaker"],
    )

"""Token estimation backed by tiktoken.

The encoding is loaded lazily on first use. If it cannot be loaded (the
BPE file is fetched on first use and may be unavailable offline) the
~4 chars/token heuristic is used instead.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

import tiktoken

logger = logging.getLogger(__name__)

# cl100k_base is a good universal approximation across model families
ENCODING_NAME = "cl100k_base"


@lru_cache(maxsize=1)
def _get_encoding() -> Optional[tiktoken.Encoding]:
    try:
        return tiktoken.get_encoding(ENCODING_NAME)
    except Exception as e:
        logger.warning("tiktoken encoding %s unavailable (%s); using heuristic", ENCODING_NAME, e)
        return None


def estimate_tokens(text: str) -> int:
    """Estimate token count for text.

    Args:
        text: Text to estimate tokens for.

    Returns:
        Estimated token count.
    """
    if not text:
        return 0

    encoding = _get_encoding()
    if encoding is not None:
        return len(encoding.encode(text, disallowed_special=()))

    return (len(text) // 4) + 1

"""Detection of quota-exhaustion errors from the model service.

Plain substring checks are used instead of regular expressions so that
arbitrarily large error bodies cannot trigger catastrophic backtracking.
"""

from __future__ import annotations

import json
from typing import Any, Optional

_QUOTA_MARKER = "Quota exceeded for quota metric"


def _is_pro_quota_message(message: str) -> bool:
    return "Quota exceeded for quota metric 'Gemini" in message and "Pro Requests'" in message


def _message_from_payload(payload: Any) -> Optional[str]:
    """Pull ``error.message`` out of an API error envelope."""
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except ValueError:
            return payload
    if isinstance(payload, dict):
        inner = payload.get("error")
        if isinstance(inner, dict) and isinstance(inner.get("message"), str):
            return inner["message"]
        if isinstance(payload.get("message"), str):
            return payload["message"]
    return None


def _candidate_messages(error: Any) -> list[str]:
    if isinstance(error, str):
        return [error]

    messages: list[str] = []
    envelope = _message_from_payload(error) if isinstance(error, dict) else None
    if envelope:
        messages.append(envelope)

    message = getattr(error, "message", None)
    if isinstance(message, str):
        messages.append(message)
    elif isinstance(error, BaseException):
        messages.append(str(error))

    body = getattr(error, "body", None)
    if body is not None:
        body_message = _message_from_payload(body)
        if body_message:
            messages.append(body_message)

    response = getattr(error, "response", None)
    if response is not None:
        try:
            data = response.text
        except Exception:
            # unread streaming responses refuse .text
            data = getattr(response, "data", None)
        if data is not None:
            response_message = _message_from_payload(data)
            if response_message:
                messages.append(response_message)
    return messages


def is_pro_quota_exceeded_error(error: Any) -> bool:
    """True for "Quota exceeded for quota metric 'Gemini ... Pro Requests'"."""
    return any(_is_pro_quota_message(m) for m in _candidate_messages(error))


def is_generic_quota_exceeded_error(error: Any) -> bool:
    """True for any "Quota exceeded for quota metric" error."""
    return any(_QUOTA_MARKER in m for m in _candidate_messages(error))

"""Conversation content types.

Contents and parts are plain dicts in the model protocol's shape::

    {"role": "user" | "model", "parts": [part, ...]}

where a part is one of ``{"text": ...}`` (optionally with
``"thought": True``), ``{"functionCall": {...}}``,
``{"functionResponse": {...}}``, ``{"inlineData": {...}}`` or
``{"fileData": {...}}``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from turnloop.utils.cancellation import CancellationToken

Part = Dict[str, Any]
Content = Dict[str, Any]
# A loose "message": a string, a single part, or a list of either
PartListUnion = Union[str, Part, List[Union[str, Part]]]


def to_parts(message: PartListUnion) -> List[Part]:
    """Normalise a string / part / list of either into a list of parts."""
    if isinstance(message, str):
        return [{"text": message}]
    if isinstance(message, dict):
        return [message]
    parts: List[Part] = []
    for item in message:
        if isinstance(item, str):
            parts.append({"text": item})
        else:
            parts.append(item)
    return parts


def create_user_content(message: PartListUnion) -> Content:
    return {"role": "user", "parts": to_parts(message)}


def is_function_response(content: Optional[Content]) -> bool:
    """True for a user entry made up only of function responses."""
    if not content or content.get("role") != "user":
        return False
    parts = content.get("parts") or []
    return bool(parts) and all("functionResponse" in part for part in parts)


def is_text_content(content: Optional[Content]) -> bool:
    """Model entry whose first part is non-empty text."""
    if not content or content.get("role") != "model":
        return False
    parts = content.get("parts") or []
    if not parts:
        return False
    text = parts[0].get("text")
    return isinstance(text, str) and text != ""


def is_thought_content(content: Optional[Content]) -> bool:
    """Model entry whose first part is flagged as internal reasoning."""
    if not content or content.get("role") != "model":
        return False
    parts = content.get("parts") or []
    return bool(parts) and parts[0].get("thought") is True


def is_valid_content(content: Content) -> bool:
    """Reject entries with no parts, empty parts, or empty non-thought text."""
    parts = content.get("parts")
    if not parts:
        return False
    for part in parts:
        if not part:
            return False
        if not part.get("thought") and part.get("text") == "":
            return False
    return True


def get_text_from_parts(parts: List[Part]) -> str:
    return "".join(p["text"] for p in parts if isinstance(p.get("text"), str) and not p.get("thought"))


@dataclass
class FunctionCall:
    """A function/tool call issued by the model."""

    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None

    @classmethod
    def from_part(cls, part: Part) -> "FunctionCall":
        call = part.get("functionCall") or {}
        return cls(name=call.get("name") or "", args=dict(call.get("args") or {}), id=call.get("id"))


@dataclass
class GenerateContentRequest:
    """One request to the content generator."""

    model: str
    contents: List[Content]
    config: Dict[str, Any] = field(default_factory=dict)
    cancel: Optional[CancellationToken] = None


@dataclass
class GenerateContentResponse:
    """A complete response, or one fragment of a streamed response."""

    content: Optional[Content] = None
    usage: Optional[Dict[str, int]] = None
    finish_reason: str = ""
    model: str = ""

    @property
    def parts(self) -> List[Part]:
        if not self.content:
            return []
        return list(self.content.get("parts") or [])

    @property
    def text(self) -> Optional[str]:
        """Concatenated text, or None when the fragment is reasoning."""
        parts = self.parts
        if not parts:
            return None
        if parts[0].get("thought"):
            return None
        texts = [p["text"] for p in parts if p.get("text")]
        if not texts:
            return None
        return "".join(texts)

    @property
    def function_calls(self) -> List[FunctionCall]:
        return [FunctionCall.from_part(p) for p in self.parts if "functionCall" in p]

    def is_valid(self) -> bool:
        """A fragment that can be recorded in history."""
        return self.content is not None and is_valid_content(self.content)


@dataclass
class TokenCount:
    total_tokens: Optional[int] = None

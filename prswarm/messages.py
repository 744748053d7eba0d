"""Conversation message content parts.

Message content is stored as JSON, so parts are plain dicts described by
TypedDicts. Anything with ``role`` and ``content`` attributes (an ORM
``Message`` row or a ``ChatMessage``) can be inspected with the helpers below.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, TypedDict

Role = Literal["user", "agent"]


class TextPart(TypedDict):
    type: Literal["text"]
    text: str


class ThinkingPart(TypedDict, total=False):
    type: Literal["thinking"]
    thinking: str
    signature: str


class ToolUsePart(TypedDict):
    type: Literal["tool_use"]
    id: str
    name: str
    input: dict[str, Any]


class ToolResultPart(TypedDict):
    type: Literal["tool_result"]
    tool_use_id: str
    tool_use_name: str
    content: list[TextPart]
    is_error: bool


ContentPart = TextPart | ThinkingPart | ToolUsePart | ToolResultPart


class HasContent(Protocol):
    role: str
    content: list[dict[str, Any]]


@dataclass
class ChatMessage:
    """A message as exchanged with the model, before it is persisted."""

    role: Role
    content: list[dict[str, Any]] = field(default_factory=list)


def text_part(text: str) -> TextPart:
    return {"type": "text", "text": text}


def tool_result_part(
    tool_use_id: str, tool_use_name: str, text: str, *, is_error: bool = False
) -> ToolResultPart:
    return {
        "type": "tool_result",
        "tool_use_id": tool_use_id,
        "tool_use_name": tool_use_name,
        "content": [text_part(text)],
        "is_error": is_error,
    }


def is_turn_start(message: HasContent) -> bool:
    """A user message with only text content starts a fresh agent loop."""
    return message.role == "user" and all(c.get("type") == "text" for c in message.content)


def has_tool_use(message: HasContent) -> bool:
    return message.role == "agent" and any(c.get("type") == "tool_use" for c in message.content)


def tool_uses(message: HasContent) -> list[dict[str, Any]]:
    return [c for c in message.content if c.get("type") == "tool_use"]


def result_text(part: dict[str, Any]) -> str:
    """Concatenate the text content of a tool_result part."""
    return "".join(c.get("text", "") for c in part.get("content", []) if c.get("type") == "text")

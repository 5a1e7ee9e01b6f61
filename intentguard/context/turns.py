"""Conversation turn extraction.

Compacts a raw, heterogeneous message history into ordered
``ConversationTurn`` pairs: each user message together with all assistant
text produced since the previous user message. The guardian needs the
assistant side to understand confirmations ("yes", "go ahead"), but only
the user side carries authority.

History comes from untrusted upstream sources, so every value is first
classified into a closed set of message variants; anything that does not
look like a message becomes ``MalformedMessage`` and is skipped.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from typing import Any, Union

from intentguard.context.metadata import strip_channel_metadata


@dataclass(frozen=True)
class ConversationTurn:
    """One user utterance and the assistant text that preceded it.

    Attributes:
        user: Sanitized user text. Never empty and never a slash command.
        assistant: Merged assistant text since the previous user message,
            or None if the assistant said nothing in between.
    """

    user: str
    assistant: str | None = None


# --- Content model ---


@dataclass(frozen=True)
class TextNode:
    """A text content block (or the whole of a plain-string content)."""

    text: str


@dataclass(frozen=True)
class UnsupportedBlock:
    """Any non-text content block: tool_use, tool_result, image, ..."""

    kind: str


ContentNode = Union[TextNode, UnsupportedBlock]


# --- Message variants ---


@dataclass(frozen=True)
class UserMessage:
    content: tuple[ContentNode, ...]


@dataclass(frozen=True)
class AssistantMessage:
    content: tuple[ContentNode, ...]


@dataclass(frozen=True)
class OtherMessage:
    """A well-formed message with a role the extractor does not use (system, tool)."""

    role: str


@dataclass(frozen=True)
class MalformedMessage:
    """Anything that is not a message: None, numbers, role-less dicts, ..."""


Message = Union[UserMessage, AssistantMessage, OtherMessage, MalformedMessage]

_MISSING = object()


def _field(value: Any, name: str) -> Any:
    """Read ``name`` from a mapping key or an object attribute.

    Any failure while reading (a raising property or ``get``) reads as missing.
    """
    try:
        if isinstance(value, Mapping):
            return value.get(name, _MISSING)
        return getattr(value, name, _MISSING)
    except Exception:  # noqa: BLE001
        return _MISSING


def parse_content(raw: Any) -> tuple[ContentNode, ...]:
    """Normalize a message ``content`` field into content nodes.

    A plain string becomes a single text node. A list becomes one node per
    block, where only ``{"type": "text", "text": <str>}`` blocks are text.
    Any other shape has no content.
    """
    if isinstance(raw, str):
        return (TextNode(raw),)
    if not isinstance(raw, (list, tuple)):
        return ()

    nodes: list[ContentNode] = []
    for block in raw:
        if isinstance(block, (str, bytes)) or block is None:
            nodes.append(UnsupportedBlock(type(block).__name__))
            continue
        kind = _field(block, "type")
        text = _field(block, "text")
        if kind == "text" and isinstance(text, str):
            nodes.append(TextNode(text))
        else:
            nodes.append(UnsupportedBlock(kind if isinstance(kind, str) else "unknown"))
    return tuple(nodes)


def classify_message(value: Any) -> Message:
    """Classify an arbitrary history entry. Total: never raises."""
    if value is None or isinstance(value, (str, bytes, int, float, list, tuple)):
        return MalformedMessage()

    role = _field(value, "role")
    content = _field(value, "content")
    if not isinstance(role, str) or content is _MISSING:
        return MalformedMessage()

    if role == "user":
        return UserMessage(parse_content(content))
    if role == "assistant":
        return AssistantMessage(parse_content(content))
    return OtherMessage(role)


def user_text(message: UserMessage) -> str | None:
    """Return the first text node that is non-empty after metadata stripping."""
    for node in message.content:
        if isinstance(node, TextNode):
            cleaned = strip_channel_metadata(node.text)
            if cleaned:
                return cleaned
    return None


def assistant_text(message: AssistantMessage) -> str | None:
    """Concatenate every text node of an assistant message, newline separated."""
    parts = [node.text.strip() for node in message.content if isinstance(node, TextNode)]
    if not parts:
        return None
    return "\n".join(parts).strip() or None


def is_slash_command(text: str) -> bool:
    """Control commands (``/reset``, ``/model ...``) are not user intent."""
    return text.startswith("/")


def _merge(parts: list[str]) -> str | None:
    if not parts:
        return None
    return "\n".join(parts).strip() or None


def extract_conversation_turns(
    messages: Iterable[Any],
    *,
    attach_trailing: bool = False,
) -> list[ConversationTurn]:
    """Extract user/assistant turn pairs from a message history.

    Walks messages in order, pairing each user message with ALL assistant
    text that preceded it since the previous user message. An assistant turn
    may span several messages (text, tool call, tool result, text); their
    text parts are merged with newlines.

    Message flow: [assistant1a, assistant1b, user1, assistant2, user2]
    → [Turn(user1, "assistant1a\\nassistant1b"), Turn(user2, assistant2)]

    Empty user messages and slash commands are skipped without closing the
    turn: pending assistant text carries over to the next real user message.

    Args:
        messages: Raw history entries, in order. Malformed entries are skipped.
        attach_trailing: Append assistant text that follows the last user
            message to the last emitted turn. Without this, trailing
            assistant text is dropped.

    Returns:
        Turns in original message order.
    """
    turns: list[ConversationTurn] = []
    pending: list[str] = []

    for value in messages:
        message = classify_message(value)

        if isinstance(message, AssistantMessage):
            text = assistant_text(message)
            if text:
                pending.append(text)
            continue

        if isinstance(message, UserMessage):
            text = user_text(message)
            if not text or is_slash_command(text):
                continue
            turns.append(ConversationTurn(user=text, assistant=_merge(pending)))
            pending = []

    if attach_trailing and turns:
        trailing = _merge(pending)
        if trailing:
            last = turns[-1]
            merged = f"{last.assistant}\n{trailing}" if last.assistant else trailing
            turns[-1] = replace(last, assistant=merged)

    return turns

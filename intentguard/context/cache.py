"""Per-session cache of recent conversation turns.

Written once per agent input cycle (the host hands over the message history
and the outgoing prompt) and read once per reviewed tool call. Entries
expire after a TTL and the number of tracked sessions is bounded; eviction
drops the oldest-*written* sessions first, and reads never refresh an entry.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from intentguard.context.metadata import strip_channel_metadata
from intentguard.context.turns import (
    ConversationTurn,
    extract_conversation_turns,
    is_slash_command,
)

DEFAULT_TURN_TTL = 30 * 60.0
DEFAULT_MAX_SESSIONS = 100


@dataclass(frozen=True)
class CachedMessages:
    """Snapshot of a session's recent turns, replaced wholesale on update."""

    turns: tuple[ConversationTurn, ...]
    updated_at: float


class TurnCache:
    """Recent conversation turns keyed by session key.

    Args:
        ttl: Seconds after which a session's turns are considered stale.
        max_sessions: Maximum number of sessions tracked at once.
        clock: Monotonic time source in seconds (injectable for tests).
    """

    def __init__(
        self,
        ttl: float = DEFAULT_TURN_TTL,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl
        self._max_sessions = max_sessions
        self._clock = clock
        # dict preserves insertion order; the first key is the oldest write
        self._entries: dict[str, CachedMessages] = {}

    def update(
        self,
        session_key: str,
        history_messages: Iterable[Any] | None,
        current_prompt: str | None = None,
        max_turns: int = 3,
    ) -> None:
        """Replace a session's turns with those extracted from its history.

        The current prompt is the user message that triggered this agent
        cycle. It is not part of the history, so it is appended as a final
        turn without an assistant side.

        Args:
            session_key: Opaque session identifier.
            history_messages: Prior messages, oldest first.
            current_prompt: The in-flight user prompt, if any.
            max_turns: Number of most recent turns to keep.
        """
        turns = extract_conversation_turns(history_messages or (), attach_trailing=True)

        if current_prompt and current_prompt.strip():
            cleaned = strip_channel_metadata(current_prompt)
            if cleaned and not is_slash_command(cleaned):
                turns.append(ConversationTurn(user=cleaned))

        recent = turns[-max_turns:] if max_turns > 0 else []

        # Re-insert so a rewritten session counts as the newest write
        self._entries.pop(session_key, None)
        self._entries[session_key] = CachedMessages(
            turns=tuple(recent),
            updated_at=self._clock(),
        )
        self._prune()

    def get(self, session_key: str) -> list[ConversationTurn]:
        """Return a session's cached turns, or an empty list if absent or expired."""
        entry = self._entries.get(session_key)
        if entry is None:
            return []
        if self._is_expired(entry, self._clock()):
            del self._entries[session_key]
            return []
        return list(entry.turns)

    def clear(self) -> None:
        """Drop every cached session."""
        self._entries.clear()

    def size(self) -> int:
        """Number of stored sessions, expired or not."""
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def _is_expired(self, entry: CachedMessages, now: float) -> bool:
        return now - entry.updated_at > self._ttl

    def _prune(self) -> None:
        """Evict expired sessions, then the oldest writes beyond capacity."""
        now = self._clock()
        for key in [k for k, e in self._entries.items() if self._is_expired(e, now)]:
            del self._entries[key]

        while len(self._entries) > self._max_sessions:
            oldest = next(iter(self._entries))
            del self._entries[oldest]

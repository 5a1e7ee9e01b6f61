"""Short-lived memoization of guardian verdicts.

A single agent turn often issues the same tool several times (or in
parallel). The decision cache lets every review of a (session, tool) pair
within a few seconds reuse the first verdict, so each turn costs at most one
model call per distinct tool name. The TTL is far shorter than the turn
cache's: a verdict must never outlive the turn that produced it.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

from intentguard.config.schema import GuardianAction
from intentguard.review.verdict import GuardianDecision

DEFAULT_DECISION_TTL = 5.0
DEFAULT_MAX_DECISIONS = 256


@dataclass(frozen=True)
class CachedDecision:
    """A cached verdict and when it was stored."""

    action: GuardianAction
    reason: str | None
    cached_at: float

    def to_decision(self) -> GuardianDecision:
        return GuardianDecision(self.action, self.reason)


class DecisionCache:
    """Verdicts keyed by ``"<session>:<lowercased tool>"``.

    Args:
        ttl: Seconds a verdict stays reusable.
        max_entries: Capacity; the oldest-written entries are evicted first.
        clock: Monotonic time source in seconds (injectable for tests).
    """

    def __init__(
        self,
        ttl: float = DEFAULT_DECISION_TTL,
        max_entries: int = DEFAULT_MAX_DECISIONS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl
        self._max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, CachedDecision] = {}

    @staticmethod
    def key(session_key: str, tool_name: str) -> str:
        return f"{session_key}:{tool_name.lower()}"

    def get(self, key: str) -> CachedDecision | None:
        """Return the live entry for ``key``; expired entries are dropped."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.cached_at > self._ttl:
            del self._entries[key]
            return None
        return entry

    def put(self, key: str, decision: GuardianDecision) -> None:
        self._entries.pop(key, None)
        self._entries[key] = CachedDecision(
            action=decision.action,
            reason=decision.reason,
            cached_at=self._clock(),
        )
        while len(self._entries) > self._max_entries:
            del self._entries[next(iter(self._entries))]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

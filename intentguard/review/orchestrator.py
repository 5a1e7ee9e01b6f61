"""Tool call review state machine.

Each tool call passes through exactly one of four states, decided in this
order of precedence:

  UNWATCHED   tool is not on the watch list: allow, no model call, no caching
  CACHE_HIT   a verdict for (session, tool) is still fresh, or being fetched
  NO_CONTEXT  the session is unknown and there is no conversation to judge
  REVIEWED    full review: prompt, model call, verdict, decision cache

``classify`` computes the state; ``review`` runs the handler for it. Block
verdicts only stop the call in enforce mode; in audit mode they are logged
and the call proceeds.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any

from intentguard.audit.logger import GuardianLogger
from intentguard.config.schema import GuardianAction, GuardianConfig, GuardianMode, ResolvedModel
from intentguard.context.cache import TurnCache
from intentguard.context.turns import ConversationTurn
from intentguard.review.client import ModelCaller
from intentguard.review.decisions import DecisionCache
from intentguard.review.prompt import build_system_prompt, build_user_prompt, serialize_arguments
from intentguard.review.verdict import GuardianDecision

UNKNOWN_SESSION = "unknown"
_BAR = "█" * 48


class ReviewState(Enum):
    UNWATCHED = auto()
    CACHE_HIT = auto()
    NO_CONTEXT = auto()
    REVIEWED = auto()


@dataclass(frozen=True)
class ToolCallBlock:
    """Instruction to the host: do not run this tool call."""

    block_reason: str


@dataclass(frozen=True)
class ReviewPlan:
    """Outcome of ``classify``: the state plus what its handler needs."""

    state: ReviewState
    session_key: str = UNKNOWN_SESSION
    cache_key: str = ""
    cached: GuardianDecision | None = None
    pending: asyncio.Task[GuardianDecision] | None = None
    turns: tuple[ConversationTurn, ...] = ()


class ToolCallReviewer:
    """Decides whether a tool call may run.

    Args:
        config: Guardian options (watch list, mode, fallback, prompt limits).
        model: Resolved guardian model connection details.
        caller: Model invocation collaborator; must never raise.
        turn_cache: Source of recent conversation turns.
        decision_cache: Short-lived verdict cache.
        system_prompt: Guardian system prompt. Defaults to the built-in one.
        logger: Optional diagnostic sink. Decisions are only logged when
                ``config.log_decisions`` is set.
    """

    def __init__(
        self,
        config: GuardianConfig,
        model: ResolvedModel,
        caller: ModelCaller,
        turn_cache: TurnCache,
        decision_cache: DecisionCache,
        system_prompt: str | None = None,
        logger: GuardianLogger | None = None,
    ) -> None:
        self._config = config
        self._model = model
        self._caller = caller
        self._turns = turn_cache
        self._decisions = decision_cache
        self._logger = logger
        self._watched = config.watched_tool_set
        self._system_prompt = system_prompt if system_prompt is not None else build_system_prompt()
        self._inflight: dict[str, asyncio.Task[GuardianDecision]] = {}

    @property
    def _enforcing(self) -> bool:
        return self._config.mode == GuardianMode.ENFORCE

    @property
    def _decision_log(self) -> GuardianLogger | None:
        return self._logger if self._config.log_decisions else None

    def classify(self, tool_name: str, session_key: str | None) -> ReviewPlan:
        """Determine which review state a tool call falls into."""
        if tool_name.lower() not in self._watched:
            return ReviewPlan(ReviewState.UNWATCHED)

        resolved_key = session_key or UNKNOWN_SESSION
        cache_key = DecisionCache.key(resolved_key, tool_name)

        cached = self._decisions.get(cache_key)
        if cached is not None:
            return ReviewPlan(
                ReviewState.CACHE_HIT, resolved_key, cache_key, cached=cached.to_decision()
            )
        pending = self._inflight.get(cache_key)
        if pending is not None:
            return ReviewPlan(ReviewState.CACHE_HIT, resolved_key, cache_key, pending=pending)

        turns = tuple(self._turns.get(resolved_key))
        if not turns and not session_key:
            return ReviewPlan(ReviewState.NO_CONTEXT, resolved_key, cache_key)

        return ReviewPlan(ReviewState.REVIEWED, resolved_key, cache_key, turns=turns)

    async def review(
        self,
        tool_name: str,
        params: Mapping[str, Any] | None,
        session_key: str | None,
    ) -> ToolCallBlock | None:
        """Review a tool call.

        Args:
            tool_name: The tool the agent wants to call.
            params: The tool call arguments.
            session_key: The agent session, or None if the host could not tell.

        Returns:
            A ToolCallBlock if the call must not run, otherwise None.
        """
        plan = self.classify(tool_name, session_key)
        if plan.state == ReviewState.UNWATCHED:
            return None
        if plan.state == ReviewState.CACHE_HIT:
            return await self._on_cache_hit(plan, tool_name)
        if plan.state == ReviewState.NO_CONTEXT:
            return self._on_no_context(tool_name)
        return await self._on_review(plan, tool_name, params if params is not None else {})

    # ------------------------------------------------------------------
    # State handlers
    # ------------------------------------------------------------------

    async def _on_cache_hit(self, plan: ReviewPlan, tool_name: str) -> ToolCallBlock | None:
        if plan.cached is not None:
            decision = plan.cached
        elif plan.pending is not None:
            decision = await asyncio.shield(plan.pending)
        else:
            raise ValueError("CACHE_HIT plan carries neither a cached nor a pending decision")

        log = self._decision_log
        if log is not None:
            reason = f' reason="{decision.reason}"' if decision.reason else ""
            if decision.is_block:
                log.error(
                    f"[guardian] ██ BLOCKED (cached) ██ tool={tool_name} "
                    f"session={plan.session_key}{reason}"
                )
            else:
                log.info(
                    f"[guardian] {decision.action.value.upper()} (cached) tool={tool_name} "
                    f"session={plan.session_key}{reason}"
                )

        if decision.is_block and self._enforcing:
            return ToolCallBlock(f"Guardian: {decision.reason or 'blocked (cached)'}")
        return None

    def _on_no_context(self, tool_name: str) -> ToolCallBlock | None:
        fallback = self._config.fallback_on_error
        log = self._decision_log
        if log is not None:
            log.info(f"[guardian] {fallback.value.upper()} (no session context) tool={tool_name}")
        if fallback == GuardianAction.BLOCK and self._enforcing:
            return ToolCallBlock("Guardian: no session context available")
        return None

    async def _on_review(
        self,
        plan: ReviewPlan,
        tool_name: str,
        params: Mapping[str, Any],
    ) -> ToolCallBlock | None:
        user_prompt = build_user_prompt(
            plan.turns, tool_name, params, self._config.max_arg_length
        )

        log = self._decision_log
        if log is not None:
            log.info(
                f"[guardian] Reviewing tool={tool_name} session={plan.session_key} "
                f"turns={len(plan.turns)} params={serialize_arguments(params, 200)}"
            )

        # Concurrent reviews of the same (session, tool) join this task
        task = asyncio.ensure_future(self._consult(plan.cache_key, user_prompt))
        self._inflight[plan.cache_key] = task
        task.add_done_callback(lambda t: self._release(plan.cache_key, t))
        decision = await asyncio.shield(task)

        if log is not None:
            if decision.is_block:
                self._log_block(log, decision, tool_name, params, plan.session_key, plan.turns)
            else:
                reason = f' reason="{decision.reason}"' if decision.reason else ""
                log.info(
                    f"[guardian] {decision.action.value.upper()} tool={tool_name} "
                    f"session={plan.session_key}{reason}"
                )

        if decision.is_block and self._enforcing:
            return ToolCallBlock(f"Guardian: {decision.reason or 'blocked'}")
        return None

    async def _consult(self, cache_key: str, user_prompt: str) -> GuardianDecision:
        decision = await self._caller.call(
            self._model,
            self._system_prompt,
            user_prompt,
            self._config.timeout_ms,
            self._config.fallback_on_error,
            self._decision_log,
        )
        self._decisions.put(cache_key, decision)
        return decision

    def _release(self, cache_key: str, task: asyncio.Task[GuardianDecision]) -> None:
        if self._inflight.get(cache_key) is task:
            del self._inflight[cache_key]

    # ------------------------------------------------------------------
    # Block report
    # ------------------------------------------------------------------

    def _log_block(
        self,
        log: GuardianLogger,
        decision: GuardianDecision,
        tool_name: str,
        params: Mapping[str, Any],
        session_key: str,
        turns: Sequence[ConversationTurn],
    ) -> None:
        """Log a block prominently, with the full context the guardian saw."""
        mode_label = "BLOCKED" if self._enforcing else "AUDIT-ONLY (would block)"

        turn_lines: list[str] = []
        for i, turn in enumerate(turns, start=1):
            if turn.assistant:
                turn_lines.append(f"  [{i}] Assistant: {turn.assistant}")
            turn_lines.append(f"  [{i}] User: {turn.user}")
        if not turn_lines:
            turn_lines = ["  (no conversation context)"]

        try:
            args_str = json.dumps(dict(params), indent=2, ensure_ascii=False)
        except (TypeError, ValueError, RecursionError):
            args_str = "(unable to serialize)"

        lines = [
            "",
            f"[guardian] {_BAR}",
            f"[guardian] ██ {mode_label} ██",
            f"[guardian] {_BAR}",
            f"[guardian]   Tool:    {tool_name}",
            f"[guardian]   Session: {session_key}",
            f"[guardian]   Reason:  {decision.reason or 'blocked'}",
            "[guardian]",
            "[guardian]   ── Conversation context sent to guardian ──",
            *(f"[guardian] {line}" for line in "\n".join(turn_lines).split("\n")),
            "[guardian]",
            "[guardian]   ── Tool arguments ──",
            *(f"[guardian]   {line}" for line in args_str.split("\n")),
            f"[guardian] {_BAR}",
            "",
        ]
        for line in lines:
            log.error(line)

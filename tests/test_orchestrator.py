"""Tests for the tool call review state machine.

Covers:
  - State precedence: unwatched, cache hit, no context, full review
  - Enforce vs audit mode for fresh and cached verdicts
  - Decision cache reuse and expiry (one model call per tool per window)
  - Concurrent reviews of the same tool sharing one model call
  - Decision logging
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from intentguard.config.schema import GuardianAction, GuardianConfig, ResolvedModel
from intentguard.context.cache import TurnCache
from intentguard.review.decisions import DecisionCache
from intentguard.review.orchestrator import ReviewPlan, ReviewState, ToolCallBlock, ToolCallReviewer
from intentguard.review.verdict import GuardianDecision, make_fallback_decision

MODEL = ResolvedModel(provider="openai", model_id="gpt-4o-mini", base_url="http://guardian.test")


# -----------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeCaller:
    """Records every call and answers with a fixed decision."""

    def __init__(self, decision: GuardianDecision, gate: asyncio.Event | None = None) -> None:
        self.decision = decision
        self.gate = gate
        self.calls: list[dict[str, Any]] = []

    async def call(
        self,
        model: ResolvedModel,
        system_prompt: str,
        user_prompt: str,
        timeout_ms: int,
        fallback_on_error: GuardianAction,
        logger: Any = None,
    ) -> GuardianDecision:
        self.calls.append(
            {
                "model": model,
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
                "timeout_ms": timeout_ms,
                "fallback_on_error": fallback_on_error,
            }
        )
        if self.gate is not None:
            await self.gate.wait()
        return self.decision


class RecordingLogger:
    def __init__(self) -> None:
        self.lines: list[tuple[str, str]] = []

    def info(self, msg: str) -> None:
        self.lines.append(("info", msg))

    def warn(self, msg: str) -> None:
        self.lines.append(("warn", msg))

    def error(self, msg: str) -> None:
        self.lines.append(("error", msg))

    def text(self) -> str:
        return "\n".join(msg for _, msg in self.lines)


ALLOW = GuardianDecision(GuardianAction.ALLOW, "user asked for it")
BLOCK = GuardianDecision(GuardianAction.BLOCK, "user asked a question, not to send")


def _reviewer(
    caller: FakeCaller,
    options: dict[str, Any] | None = None,
    logger: RecordingLogger | None = None,
    clock: FakeClock | None = None,
) -> tuple[ToolCallReviewer, TurnCache, DecisionCache]:
    clock = clock or FakeClock()
    turns = TurnCache(clock=clock)
    decisions = DecisionCache(clock=clock)
    reviewer = ToolCallReviewer(
        GuardianConfig.resolve(options),
        MODEL,
        caller,
        turns,
        decisions,
        logger=logger,
    )
    return reviewer, turns, decisions


def _seed(turns: TurnCache, session: str = "s1", prompt: str = "What about API keys?") -> None:
    turns.update(session, [], prompt)


# -----------------------------------------------------------------------
# Classification
# -----------------------------------------------------------------------


class TestClassify:
    def test_unwatched(self) -> None:
        reviewer, _, _ = _reviewer(FakeCaller(ALLOW))
        assert reviewer.classify("read_file", "s1").state == ReviewState.UNWATCHED

    def test_watched_match_is_case_insensitive(self) -> None:
        reviewer, turns, _ = _reviewer(FakeCaller(ALLOW))
        _seed(turns)
        assert reviewer.classify("EXEC", "s1").state == ReviewState.REVIEWED
        assert reviewer.classify("write", "s1").state == ReviewState.REVIEWED

    def test_cache_hit(self) -> None:
        reviewer, _, decisions = _reviewer(FakeCaller(ALLOW))
        decisions.put(DecisionCache.key("s1", "exec"), BLOCK)
        plan = reviewer.classify("Exec", "s1")
        assert plan.state == ReviewState.CACHE_HIT
        assert plan.cached == BLOCK

    def test_no_context(self) -> None:
        reviewer, _, _ = _reviewer(FakeCaller(ALLOW))
        assert reviewer.classify("exec", None).state == ReviewState.NO_CONTEXT
        assert reviewer.classify("exec", "").state == ReviewState.NO_CONTEXT

    def test_known_session_without_turns_is_reviewed(self) -> None:
        reviewer, _, _ = _reviewer(FakeCaller(ALLOW))
        plan = reviewer.classify("exec", "s1")
        assert plan.state == ReviewState.REVIEWED
        assert plan.turns == ()

    def test_cache_takes_precedence_over_no_context(self) -> None:
        reviewer, _, decisions = _reviewer(FakeCaller(ALLOW))
        decisions.put(DecisionCache.key("unknown", "exec"), ALLOW)
        assert reviewer.classify("exec", None).state == ReviewState.CACHE_HIT

    def test_custom_watch_list(self) -> None:
        reviewer, _, _ = _reviewer(FakeCaller(ALLOW), {"watched_tools": ["deploy"]})
        assert reviewer.classify("exec", "s1").state == ReviewState.UNWATCHED
        assert reviewer.classify("Deploy", "s1").state == ReviewState.REVIEWED


# -----------------------------------------------------------------------
# Review
# -----------------------------------------------------------------------


class TestUnwatched:
    @pytest.mark.asyncio
    async def test_no_model_call_no_caching(self) -> None:
        caller = FakeCaller(BLOCK)
        reviewer, _, decisions = _reviewer(caller)
        assert await reviewer.review("read_file", {"path": "/etc/passwd"}, "s1") is None
        assert caller.calls == []
        assert len(decisions) == 0


class TestReviewed:
    @pytest.mark.asyncio
    async def test_allow(self) -> None:
        caller = FakeCaller(ALLOW)
        reviewer, turns, _ = _reviewer(caller)
        _seed(turns, prompt="Check disk usage")
        assert await reviewer.review("exec", {"command": "df -h"}, "s1") is None
        assert len(caller.calls) == 1

    @pytest.mark.asyncio
    async def test_block_in_enforce_mode(self) -> None:
        caller = FakeCaller(BLOCK)
        reviewer, turns, _ = _reviewer(caller)
        _seed(turns)
        result = await reviewer.review("message_send", {"target": "security-alerts"}, "s1")
        assert result == ToolCallBlock("Guardian: user asked a question, not to send")

    @pytest.mark.asyncio
    async def test_block_without_reason(self) -> None:
        reviewer, turns, _ = _reviewer(FakeCaller(GuardianDecision(GuardianAction.BLOCK)))
        _seed(turns)
        result = await reviewer.review("exec", {}, "s1")
        assert result == ToolCallBlock("Guardian: blocked")

    @pytest.mark.asyncio
    async def test_block_in_audit_mode_allows(self) -> None:
        logger = RecordingLogger()
        reviewer, turns, _ = _reviewer(FakeCaller(BLOCK), {"mode": "audit"}, logger)
        _seed(turns)
        assert await reviewer.review("exec", {"command": "rm -rf /"}, "s1") is None
        assert "AUDIT-ONLY (would block)" in logger.text()

    @pytest.mark.asyncio
    async def test_prompt_contents(self) -> None:
        caller = FakeCaller(ALLOW)
        reviewer, turns, _ = _reviewer(caller, {"timeout_ms": 1234, "fallback_on_error": "block"})
        turns.update(
            "s1",
            [
                {"role": "assistant", "content": "Should I delete these temp files?"},
                {"role": "user", "content": "Yes"},
            ],
        )
        await reviewer.review("exec", {"command": "rm /tmp/old-1.log"}, "s1")

        call = caller.calls[0]
        assert call["model"] is MODEL
        assert call["timeout_ms"] == 1234
        assert call["fallback_on_error"] == GuardianAction.BLOCK
        assert "security guardian" in call["system_prompt"]
        assert 'Assistant: "Should I delete these temp files?"' in call["user_prompt"]
        assert 'User: "Yes"' in call["user_prompt"]
        assert "Tool: exec" in call["user_prompt"]
        assert '{"command":"rm /tmp/old-1.log"}' in call["user_prompt"]

    @pytest.mark.asyncio
    async def test_none_params(self) -> None:
        caller = FakeCaller(ALLOW)
        reviewer, turns, _ = _reviewer(caller)
        _seed(turns)
        await reviewer.review("exec", None, "s1")
        assert "Arguments: {}" in caller.calls[0]["user_prompt"]

    @pytest.mark.asyncio
    async def test_circular_params_do_not_raise(self) -> None:
        caller = FakeCaller(BLOCK)
        logger = RecordingLogger()
        reviewer, turns, _ = _reviewer(caller, logger=logger)
        _seed(turns)
        params: dict[str, Any] = {}
        params["self"] = params
        result = await reviewer.review("exec", params, "s1")
        assert result is not None
        assert "(unable to serialize arguments)" in caller.calls[0]["user_prompt"]
        assert "(unable to serialize)" in logger.text()

    @pytest.mark.asyncio
    async def test_fallback_decision_from_caller_is_applied(self) -> None:
        fallback = make_fallback_decision(GuardianAction.BLOCK).with_reason(
            "Guardian timed out after 20000ms"
        )
        reviewer, turns, _ = _reviewer(FakeCaller(fallback))
        _seed(turns)
        result = await reviewer.review("exec", {}, "s1")
        assert result is not None
        assert "timed out" in result.block_reason


class TestDecisionCaching:
    @pytest.mark.asyncio
    async def test_second_review_reuses_verdict(self) -> None:
        caller = FakeCaller(BLOCK)
        reviewer, turns, _ = _reviewer(caller)
        _seed(turns)
        first = await reviewer.review("exec", {"command": "a"}, "s1")
        second = await reviewer.review("EXEC", {"command": "b"}, "s1")
        assert len(caller.calls) == 1
        assert first == ToolCallBlock("Guardian: user asked a question, not to send")
        assert second == first

    @pytest.mark.asyncio
    async def test_expired_verdict_triggers_new_call(self) -> None:
        clock = FakeClock()
        caller = FakeCaller(ALLOW)
        reviewer, turns, _ = _reviewer(caller, clock=clock)
        _seed(turns)
        await reviewer.review("exec", {}, "s1")
        clock.now += 5.5
        await reviewer.review("exec", {}, "s1")
        assert len(caller.calls) == 2

    @pytest.mark.asyncio
    async def test_clear_triggers_new_call(self) -> None:
        caller = FakeCaller(ALLOW)
        reviewer, turns, decisions = _reviewer(caller)
        _seed(turns)
        await reviewer.review("exec", {}, "s1")
        decisions.clear()
        await reviewer.review("exec", {}, "s1")
        assert len(caller.calls) == 2

    @pytest.mark.asyncio
    async def test_distinct_tools_and_sessions_reviewed_separately(self) -> None:
        caller = FakeCaller(ALLOW)
        reviewer, turns, _ = _reviewer(caller)
        _seed(turns, "s1")
        _seed(turns, "s2")
        await reviewer.review("exec", {}, "s1")
        await reviewer.review("write_file", {}, "s1")
        await reviewer.review("exec", {}, "s2")
        assert len(caller.calls) == 3

    @pytest.mark.asyncio
    async def test_cached_block_honored_only_in_enforce_mode(self) -> None:
        caller = FakeCaller(ALLOW)
        logger = RecordingLogger()
        reviewer, _, decisions = _reviewer(caller, {"mode": "audit"}, logger)
        decisions.put(DecisionCache.key("s1", "exec"), BLOCK)
        assert await reviewer.review("exec", {}, "s1") is None
        assert caller.calls == []
        assert "BLOCKED (cached)" in logger.text()

    @pytest.mark.asyncio
    async def test_cached_block_without_reason(self) -> None:
        reviewer, _, decisions = _reviewer(FakeCaller(ALLOW))
        decisions.put(DecisionCache.key("s1", "exec"), GuardianDecision(GuardianAction.BLOCK))
        result = await reviewer.review("exec", {}, "s1")
        assert result == ToolCallBlock("Guardian: blocked (cached)")

    @pytest.mark.asyncio
    async def test_cache_hit_plan_without_decision_rejected(self) -> None:
        reviewer, _, _ = _reviewer(FakeCaller(ALLOW))
        with pytest.raises(ValueError, match="neither a cached nor a pending"):
            await reviewer._on_cache_hit(ReviewPlan(ReviewState.CACHE_HIT), "exec")

    @pytest.mark.asyncio
    async def test_concurrent_reviews_share_one_call(self) -> None:
        gate = asyncio.Event()
        caller = FakeCaller(BLOCK, gate=gate)
        reviewer, turns, _ = _reviewer(caller)
        _seed(turns)

        tasks = [
            asyncio.create_task(reviewer.review("exec", {"n": i}, "s1")) for i in range(3)
        ]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*tasks)

        assert len(caller.calls) == 1
        assert all(r == ToolCallBlock("Guardian: user asked a question, not to send") for r in results)

    @pytest.mark.asyncio
    async def test_cancelled_reviewer_still_caches_verdict(self) -> None:
        gate = asyncio.Event()
        caller = FakeCaller(ALLOW, gate=gate)
        reviewer, turns, decisions = _reviewer(caller)
        _seed(turns)

        first = asyncio.create_task(reviewer.review("exec", {}, "s1"))
        await asyncio.sleep(0)
        first.cancel()
        gate.set()
        with pytest.raises(asyncio.CancelledError):
            await first
        await asyncio.sleep(0)

        assert decisions.get(DecisionCache.key("s1", "exec")) is not None
        assert await reviewer.review("exec", {}, "s1") is None
        assert len(caller.calls) == 1


class TestNoContext:
    @pytest.mark.asyncio
    async def test_fallback_allow(self) -> None:
        caller = FakeCaller(BLOCK)
        reviewer, _, decisions = _reviewer(caller)
        assert await reviewer.review("exec", {}, None) is None
        assert caller.calls == []
        assert len(decisions) == 0

    @pytest.mark.asyncio
    async def test_fallback_block(self) -> None:
        caller = FakeCaller(ALLOW)
        reviewer, _, _ = _reviewer(caller, {"fallback_on_error": "block"})
        result = await reviewer.review("exec", {}, None)
        assert result == ToolCallBlock("Guardian: no session context available")
        assert caller.calls == []

    @pytest.mark.asyncio
    async def test_fallback_block_in_audit_mode_allows(self) -> None:
        reviewer, _, _ = _reviewer(FakeCaller(ALLOW), {"fallback_on_error": "block", "mode": "audit"})
        assert await reviewer.review("exec", {}, None) is None


class TestDecisionLogging:
    @pytest.mark.asyncio
    async def test_block_report_includes_context(self) -> None:
        logger = RecordingLogger()
        reviewer, turns, _ = _reviewer(FakeCaller(BLOCK), logger=logger)
        turns.update(
            "s1",
            [
                {"role": "assistant", "content": "I found the keys."},
                {"role": "user", "content": "What about API keys?"},
            ],
        )
        await reviewer.review("message_send", {"target": "security-alerts", "message": "sk-..."}, "s1")

        text = logger.text()
        assert "██ BLOCKED ██" in text
        assert "Tool:    message_send" in text
        assert "Session: s1" in text
        assert "[1] Assistant: I found the keys." in text
        assert "[1] User: What about API keys?" in text
        assert '"target": "security-alerts"' in text
        assert all(level == "error" for level, msg in logger.lines if "██" in msg)

    @pytest.mark.asyncio
    async def test_block_report_without_turns(self) -> None:
        logger = RecordingLogger()
        reviewer, _, _ = _reviewer(FakeCaller(BLOCK), logger=logger)
        await reviewer.review("exec", {}, "s1")
        assert "(no conversation context)" in logger.text()

    @pytest.mark.asyncio
    async def test_allow_is_one_line(self) -> None:
        logger = RecordingLogger()
        reviewer, turns, _ = _reviewer(FakeCaller(ALLOW), logger=logger)
        _seed(turns)
        await reviewer.review("exec", {}, "s1")
        decision_lines = [msg for _, msg in logger.lines if msg.startswith("[guardian] ALLOW")]
        assert decision_lines == ['[guardian] ALLOW tool=exec session=s1 reason="user asked for it"']

    @pytest.mark.asyncio
    async def test_logging_disabled(self) -> None:
        logger = RecordingLogger()
        reviewer, turns, _ = _reviewer(FakeCaller(BLOCK), {"log_decisions": False}, logger)
        _seed(turns)
        await reviewer.review("exec", {}, "s1")
        await reviewer.review("exec", {}, None)
        assert logger.lines == []

    @pytest.mark.asyncio
    async def test_no_logger(self) -> None:
        reviewer, turns, _ = _reviewer(FakeCaller(BLOCK))
        _seed(turns)
        assert await reviewer.review("exec", {}, "s1") is not None

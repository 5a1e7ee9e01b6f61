"""Guardian verdicts and parsing of free-form model output."""

from __future__ import annotations

from dataclasses import dataclass, replace

from intentguard.config.schema import GuardianAction

DEFAULT_BLOCK_REASON = "Blocked by guardian"
_VERDICT_TOKEN_LENGTH = 5  # len("ALLOW") == len("BLOCK")


@dataclass(frozen=True)
class GuardianDecision:
    """Terminal output of one review.

    Attributes:
        action: ALLOW or BLOCK.
        reason: Human-readable explanation, if any.
    """

    action: GuardianAction
    reason: str | None = None

    @property
    def is_block(self) -> bool:
        return self.action == GuardianAction.BLOCK

    def with_reason(self, prefix: str) -> GuardianDecision:
        """Copy with ``prefix`` prepended to the reason, keeping the action."""
        return replace(self, reason=f"{prefix}: {self.reason or 'fallback'}")


def make_fallback_decision(policy: GuardianAction) -> GuardianDecision:
    """Build the decision used whenever the guardian cannot be consulted."""
    if policy == GuardianAction.BLOCK:
        return GuardianDecision(GuardianAction.BLOCK, "Guardian unavailable (fallback: block)")
    return GuardianDecision(GuardianAction.ALLOW, "Guardian unavailable (fallback: allow)")


def parse_verdict(content: str, fallback: GuardianDecision) -> GuardianDecision:
    """Parse the model's response into a decision.

    Lines are scanned from the top; the first non-blank line starting with
    ALLOW or BLOCK (case-insensitive) is authoritative and everything after
    it is ignored. If the model echoes argument text after its verdict, the
    echoed text can never override the real decision.

    Only ``"\\n"`` separates lines. Other Unicode line boundaries such as
    U+2028 can arrive inside echoed arguments and must not start a line.

    Args:
        content: Raw model output.
        fallback: Decision to use when no verdict line is found.

    Returns:
        The parsed decision, or ``fallback`` annotated as unrecognized.
    """
    first_line: str | None = None
    for raw_line in content.split("\n"):
        line = raw_line.strip()
        if not line:
            continue
        if first_line is None:
            first_line = line

        token = line[:_VERDICT_TOKEN_LENGTH].upper()
        if token == "ALLOW":
            return GuardianDecision(GuardianAction.ALLOW, _reason(line) or None)
        if token == "BLOCK":
            return GuardianDecision(GuardianAction.BLOCK, _reason(line) or DEFAULT_BLOCK_REASON)

    snippet = (first_line or "")[:60]
    return fallback.with_reason(f'Guardian response not recognized ("{snippet}")')


def _reason(line: str) -> str:
    colon = line.find(":")
    if colon >= 0:
        return line[colon + 1:].strip()
    return line[_VERDICT_TOKEN_LENGTH:].strip()

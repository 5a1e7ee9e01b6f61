"""Channel metadata stripping.

Chat channel integrations (Telegram, Slack, ...) prepend a structured
metadata block to user messages:

    Conversation info (untrusted metadata):
    ```json
    { "message_id": "1778", "sender_id": "..." }
    ```

    <actual user message>

That block is attacker-influenced and is not the user's request, so it is
removed before the text is treated as user intent.
"""

from __future__ import annotations

import re

# Label, optional whitespace, colon, then a fenced block up to the nearest
# closing fence. The opening fence may carry a language tag (```json).
_METADATA_BLOCK = re.compile(
    r"Conversation info\s*\(untrusted metadata\)\s*:\s*```.*?```",
    re.IGNORECASE | re.DOTALL,
)
_EXCESS_NEWLINES = re.compile(r"\n{3,}")


def strip_channel_metadata(text: str) -> str:
    """Remove every channel metadata block from ``text``.

    Runs of three or more newlines left behind are collapsed to a single
    blank line and the result is trimmed. Idempotent.

    Args:
        text: Raw message text.

    Returns:
        The cleaned text (possibly empty).
    """
    cleaned = _METADATA_BLOCK.sub("", text)
    cleaned = _EXCESS_NEWLINES.sub("\n\n", cleaned)
    return cleaned.strip()

"""Tool call review: prompts, verdict parsing, decision cache, model client, orchestrator."""

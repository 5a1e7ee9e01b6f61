"""Conversation context: metadata sanitization, turn extraction, turn cache."""

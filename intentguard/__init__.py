"""Intent-alignment guard for autonomous agent tool calls."""

__version__ = "0.1.0"

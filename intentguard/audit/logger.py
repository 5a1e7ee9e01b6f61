"""Diagnostic logging for guardian reviews.

Components accept any object with ``info``/``warn``/``error`` methods so the
host runtime can plug in its own sink. ``ConsoleLogger`` is the default
sink: human-readable output on stderr via rich. Stdout is left untouched
because the CLI prints its machine-readable decision there.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from rich.console import Console
from rich.markup import escape


@runtime_checkable
class GuardianLogger(Protocol):
    """Minimal logging sink used by the guardian."""

    def info(self, msg: str) -> None: ...

    def warn(self, msg: str) -> None: ...

    def error(self, msg: str) -> None: ...


class ConsoleLogger:
    """Writes guardian log lines to a rich console.

    Args:
        console: Target console. Defaults to a new stderr console.
    """

    def __init__(self, console: Console | None = None) -> None:
        self._console = console if console is not None else Console(stderr=True)

    def info(self, msg: str) -> None:
        self._console.print(f"[dim]{escape(msg)}[/dim]", highlight=False)

    def warn(self, msg: str) -> None:
        self._console.print(f"[#ffcc00]{escape(msg)}[/#ffcc00]", highlight=False)

    def error(self, msg: str) -> None:
        self._console.print(f"[bold red]{escape(msg)}[/bold red]", highlight=False)

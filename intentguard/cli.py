"""IntentGuard CLI entry point.

Provides the `intentguard` command with subcommands:
  - review: Review one tool call against a recorded conversation
  - check: Validate a settings file and show the resolved configuration
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from intentguard import __version__
from intentguard.audit.logger import ConsoleLogger
from intentguard.config.loader import SettingsValidationError, load_settings
from intentguard.config.schema import (
    IntentGuardSettings,
    parse_model_ref,
    resolve_guardian_model_ref,
    resolve_model_from_config,
)
from intentguard.plugin import GuardianPlugin
from intentguard.review.client import GuardianClient

app = typer.Typer(
    name="intentguard",
    help="Intent-alignment guardian for AI agent tool calls.",
    no_args_is_help=True,
)

_console = Console(stderr=True)

EXIT_ALLOW = 0
EXIT_ERROR = 1
EXIT_BLOCK = 2

_DEFAULT_SESSION = "cli"


def _version_callback(value: bool) -> None:
    if value:
        _console.print(f"intentguard {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=_version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """IntentGuard: block agent tool calls the user never asked for."""


def _load_or_exit(path: Path) -> IntentGuardSettings:
    try:
        return load_settings(path)
    except FileNotFoundError as e:
        _console.print(f"[bold red]Error:[/bold red] {e}", highlight=False)
        raise typer.Exit(EXIT_ERROR) from None
    except SettingsValidationError as e:
        _console.print(f"[bold red]Settings error:[/bold red] {escape(str(e))}", highlight=False)
        if e.providers:
            names = escape(", ".join(e.providers))
            _console.print(f"[dim]Check provider(s): {names}[/dim]", highlight=False)
        raise typer.Exit(EXIT_ERROR) from None


def _read_json_option(value: str, what: str) -> Any:
    """Parse a JSON option value; ``@path`` reads the JSON from a file."""
    text = value
    if value.startswith("@"):
        path = Path(value[1:])
        if not path.exists():
            _console.print(f"[bold red]Error:[/bold red] {what} file not found: {path}")
            raise typer.Exit(EXIT_ERROR)
        text = path.read_text(encoding="utf-8")
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        _console.print(f"[bold red]Error:[/bold red] {what} is not valid JSON: {e}", highlight=False)
        raise typer.Exit(EXIT_ERROR) from None


@app.command()
def review(
    settings: Annotated[
        Path,
        typer.Option("--settings", "-s", help="Path to intentguard.yaml settings file."),
    ],
    tool: Annotated[
        str,
        typer.Option("--tool", "-t", help="Name of the tool being called."),
    ],
    args: Annotated[
        str,
        typer.Option("--args", "-a", help="Tool arguments as a JSON object, or @file."),
    ] = "{}",
    history: Annotated[
        Optional[Path],
        typer.Option("--history", help="JSON file holding the conversation messages, oldest first."),
    ] = None,
    prompt: Annotated[
        Optional[str],
        typer.Option("--prompt", "-p", help="The user prompt that started the current agent turn."),
    ] = None,
    session: Annotated[
        str,
        typer.Option("--session", help="Session key to review under."),
    ] = _DEFAULT_SESSION,
) -> None:
    """Review a single tool call and print the decision as JSON.

    Exit code 0 means the call may run, 2 means it is blocked.

      intentguard review -s intentguard.yaml -t exec --args '{"command": "rm -rf /"}' --history chat.json
    """
    loaded = _load_or_exit(settings)

    tool_args = _read_json_option(args, "--args")
    if not isinstance(tool_args, dict):
        _console.print("[bold red]Error:[/bold red] --args must be a JSON object.")
        raise typer.Exit(EXIT_ERROR)

    messages: Any = []
    if history is not None:
        messages = _read_json_option(f"@{history}", "--history")
        if not isinstance(messages, list):
            _console.print("[bold red]Error:[/bold red] --history must hold a JSON array of messages.")
            raise typer.Exit(EXIT_ERROR)

    plugin = GuardianPlugin.from_settings(
        loaded, caller=GuardianClient(), logger=ConsoleLogger(_console)
    )
    if plugin is None:
        raise typer.Exit(EXIT_ERROR)

    plugin.on_llm_input(session, messages, prompt)
    block = asyncio.run(plugin.before_tool_call(tool, tool_args, session))

    result = {
        "tool": tool,
        "session": session,
        "blocked": block is not None,
        "reason": block.block_reason if block is not None else None,
    }
    typer.echo(json.dumps(result))
    if block is not None:
        raise typer.Exit(EXIT_BLOCK)


@app.command()
def check(
    settings: Annotated[
        Path,
        typer.Option("--settings", "-s", help="Path to intentguard.yaml settings file."),
    ],
) -> None:
    """Validate a settings file and print the resolved guardian configuration."""
    loaded = _load_or_exit(settings)
    config = loaded.guardian

    model_ref = resolve_guardian_model_ref(config, loaded.models)
    parsed = parse_model_ref(model_ref) if model_ref else None

    table = Table(title="Guardian configuration", show_header=True)
    table.add_column("Option", style="bold")
    table.add_column("Value")
    table.add_row("model", model_ref or "(none)")
    table.add_row("mode", config.mode.value)
    table.add_row("fallback_on_error", config.fallback_on_error.value)
    table.add_row("timeout_ms", str(config.timeout_ms))
    table.add_row("log_decisions", str(config.log_decisions).lower())
    table.add_row("max_user_messages", str(config.max_user_messages))
    table.add_row("max_arg_length", str(config.max_arg_length))
    table.add_row("watched_tools", ", ".join(config.watched_tools))

    if parsed is not None:
        model = resolve_model_from_config(parsed[0], parsed[1], loaded.models)
        table.add_row("api", model.api)
        table.add_row("base_url", model.base_url or "(resolved at runtime)")

    Console().print(table)

    if model_ref is None:
        _console.print(
            "[#ffcc00]Warning:[/#ffcc00] no guardian model and no primary model; "
            "the guardian would be disabled."
        )
        raise typer.Exit(EXIT_ERROR)
    if parsed is None:
        _console.print(
            f'[bold red]Error:[/bold red] invalid model reference "{model_ref}"; '
            'expected "provider/model".',
            highlight=False,
        )
        raise typer.Exit(EXIT_ERROR)
    _console.print("[bold green]Settings OK[/bold green]")

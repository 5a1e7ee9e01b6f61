"""Reading intentguard.yaml into settings.

The file has two sections. ``guardian`` is normalized field by field and
never rejected, so only the document itself (unreadable YAML, empty, not a
mapping) or the ``models`` provider catalogue can fail. Failures are
reported per location, naming the provider they belong to, e.g.::

    models.providers.openai.models[0].id: Field required
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from intentguard.config.schema import IntentGuardSettings

SECTIONS = ("guardian", "models")


@dataclass(frozen=True)
class SettingsProblem:
    """One reason the settings file was rejected.

    ``location`` is empty when the problem concerns the whole document.
    """

    location: tuple[str | int, ...]
    message: str

    @property
    def section(self) -> str | None:
        return str(self.location[0]) if self.location else None

    @property
    def provider(self) -> str | None:
        """Name of the ``models.providers`` entry at fault, if any."""
        if len(self.location) >= 3 and self.location[:2] == ("models", "providers"):
            return str(self.location[2])
        return None

    @property
    def dotted(self) -> str:
        parts: list[str] = []
        for part in self.location:
            if isinstance(part, int):
                parts.append(f"[{part}]")
            else:
                parts.append(f".{part}" if parts else str(part))
        return "".join(parts)

    def __str__(self) -> str:
        return f"{self.dotted}: {self.message}" if self.location else self.message


class SettingsValidationError(Exception):
    """The settings file exists but cannot be used.

    Attributes:
        path: The offending settings file.
        problems: Every problem found, in document order.
    """

    def __init__(self, path: Path, problems: Sequence[SettingsProblem]) -> None:
        self.path = path
        self.problems = tuple(problems)
        listing = "\n".join(f"  - {problem}" for problem in self.problems)
        super().__init__(f"{path} is not valid intentguard settings:\n{listing}")

    @property
    def providers(self) -> list[str]:
        """Providers with at least one problem, without duplicates."""
        names = (p.provider for p in self.problems if p.provider is not None)
        return list(dict.fromkeys(names))


def load_settings(path: Path) -> IntentGuardSettings:
    """Read and validate the settings file at ``path``.

    Raises:
        FileNotFoundError: No file at ``path``.
        SettingsValidationError: The file is unusable; see ``problems``.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise FileNotFoundError(
            f"Settings file not found at {path}. Pass --settings <file>, "
            f"or create it with at least a 'guardian:' section."
        ) from None
    return parse_settings(text, path)


def parse_settings(text: str, path: Path) -> IntentGuardSettings:
    """Validate settings YAML already read from ``path``."""
    document = _read_document(text, path)
    try:
        return IntentGuardSettings.model_validate(document)
    except ValidationError as e:
        problems = [SettingsProblem(tuple(err["loc"]), err["msg"]) for err in e.errors()]
        raise SettingsValidationError(path, problems) from e


def _read_document(text: str, path: Path) -> dict[str, Any]:
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise SettingsValidationError(path, [SettingsProblem((), _describe_yaml_error(e))]) from e

    if document is None:
        raise SettingsValidationError(
            path, [SettingsProblem((), "file is empty; add a 'guardian:' section")]
        )
    if not isinstance(document, dict):
        raise SettingsValidationError(
            path,
            [
                SettingsProblem(
                    (),
                    f"top level must map section names ({', '.join(SECTIONS)}) "
                    f"to their settings, got a {type(document).__name__}",
                )
            ],
        )
    return document


def _describe_yaml_error(error: yaml.YAMLError) -> str:
    mark = getattr(error, "problem_mark", None)
    problem = getattr(error, "problem", None) or str(error)
    if mark is not None:
        return f"YAML syntax error at line {mark.line + 1}, column {mark.column + 1}: {problem}"
    return f"YAML syntax error: {problem}"

"""Pydantic v2 models for guardian configuration.

Defines the guardian plugin options (watched tools, timeout, fallback policy,
mode, prompt size limits), the host model/provider catalogue used to resolve the
guardian model, and the top-level intentguard.yaml settings document.

The ``guardian`` section is deliberately forgiving: values of the wrong type
fall back to their defaults and unknown enum values normalize to the safe
choice, so a typo in the config never disables the guard.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

API_OPENAI_COMPLETIONS = "openai-completions"
API_ANTHROPIC_MESSAGES = "anthropic-messages"
API_GOOGLE_GENERATIVE_AI = "google-generative-ai"

DEFAULT_WATCHED_TOOLS: tuple[str, ...] = (
    "message_send",
    "message",
    "exec",
    "write_file",
    "Write",
    "gateway",
    "gateway_config",
    "cron",
    "cron_add",
)
DEFAULT_TIMEOUT_MS = 20000
DEFAULT_MAX_USER_MESSAGES = 3
DEFAULT_MAX_ARG_LENGTH = 500


class GuardianAction(str, Enum):
    """Outcome of a guardian review, also used as the fallback policy."""

    ALLOW = "allow"
    BLOCK = "block"


class GuardianMode(str, Enum):
    """How block verdicts are applied.

    ENFORCE: A block verdict stops the tool call.
    AUDIT:   A block verdict is only logged; the call proceeds.
    """

    ENFORCE = "enforce"
    AUDIT = "audit"


class AuthMode(str, Enum):
    """How the API key is presented to the provider."""

    API_KEY = "api-key"
    OAUTH = "oauth"
    TOKEN = "token"


def _is_number(value: Any) -> bool:
    # bool is an int subclass; True must not become a 1ms timeout
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class GuardianConfig(BaseModel):
    """Guardian plugin options.

    The model is referenced as ``provider/model`` (e.g. ``openai/gpt-4o-mini``,
    ``ollama/llama3.1:8b``). When omitted, the host's primary model is used.
    """

    model: str | None = None
    watched_tools: list[str] = Field(
        default_factory=lambda: list(DEFAULT_WATCHED_TOOLS),
        description="Tool names reviewed by the guardian (matched case-insensitively).",
    )
    timeout_ms: int = Field(
        default=DEFAULT_TIMEOUT_MS,
        description="Max wait for the guardian model response, in milliseconds.",
    )
    fallback_on_error: GuardianAction = GuardianAction.ALLOW
    log_decisions: bool = True
    mode: GuardianMode = GuardianMode.ENFORCE
    max_user_messages: int = Field(
        default=DEFAULT_MAX_USER_MESSAGES,
        description="Number of recent conversation turns included in the prompt.",
    )
    max_arg_length: int = Field(
        default=DEFAULT_MAX_ARG_LENGTH,
        description="Max characters of serialized tool arguments included in the prompt.",
    )

    @model_validator(mode="before")
    @classmethod
    def normalize_options(cls, data: Any) -> dict[str, Any]:
        """Drop values of the wrong type so their defaults apply."""
        if not isinstance(data, dict):
            return {}

        normalized: dict[str, Any] = {}

        model = data.get("model")
        if isinstance(model, str) and model.strip():
            normalized["model"] = model.strip()

        watched = data.get("watched_tools")
        if isinstance(watched, (list, tuple)):
            normalized["watched_tools"] = [t for t in watched if isinstance(t, str)]

        for key in ("timeout_ms", "max_user_messages", "max_arg_length"):
            value = data.get(key)
            if _is_number(value):
                normalized[key] = int(value)

        log_decisions = data.get("log_decisions")
        if isinstance(log_decisions, bool):
            normalized["log_decisions"] = log_decisions

        # Only the exact non-default spelling switches away from the safe default
        if data.get("fallback_on_error") in ("block", GuardianAction.BLOCK):
            normalized["fallback_on_error"] = GuardianAction.BLOCK
        if data.get("mode") in ("audit", GuardianMode.AUDIT):
            normalized["mode"] = GuardianMode.AUDIT

        return normalized

    @classmethod
    def resolve(cls, raw: dict[str, Any] | None) -> GuardianConfig:
        """Build a config from a raw plugin options mapping, applying defaults."""
        return cls.model_validate(raw or {})

    @property
    def watched_tool_set(self) -> frozenset[str]:
        """Lowercased watched tool names for O(1) lookup."""
        return frozenset(t.lower() for t in self.watched_tools)


class ProviderModel(BaseModel):
    """A model entry inside a provider definition."""

    id: str
    api: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)


class ProviderConfig(BaseModel):
    """Connection details for one model provider."""

    base_url: str | None = None
    api_key: str | None = None
    api: str | None = None
    auth_mode: AuthMode | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    models: list[ProviderModel] = Field(default_factory=list)


class HostModelsConfig(BaseModel):
    """The host agent's model catalogue."""

    primary: str | None = Field(
        default=None,
        description="The main agent model (provider/model), used when the guardian has none.",
    )
    providers: dict[str, ProviderConfig] = Field(default_factory=dict)


class IntentGuardSettings(BaseModel):
    """Top-level model for intentguard.yaml."""

    guardian: GuardianConfig = Field(default_factory=GuardianConfig)
    models: HostModelsConfig = Field(default_factory=HostModelsConfig)

    @model_validator(mode="before")
    @classmethod
    def default_missing_sections(cls, data: Any) -> Any:
        """Treat an explicit ``guardian:`` with no body as an empty section."""
        if isinstance(data, dict) and data.get("guardian") is None:
            data = {**data, "guardian": {}}
        return data


@dataclass
class ResolvedModel:
    """Connection details for the guardian model.

    ``base_url`` and ``api_key`` may be missing at startup and filled in
    lazily by a provider resolver before the first review.
    """

    provider: str
    model_id: str
    api: str = API_OPENAI_COMPLETIONS
    base_url: str | None = None
    api_key: str | None = None
    auth_mode: AuthMode | None = None
    headers: dict[str, str] = field(default_factory=dict)


def parse_model_ref(model_ref: str) -> tuple[str, str] | None:
    """Split a ``provider/model`` reference.

    Only the first slash separates the parts, so model ids may contain
    further slashes or colons (``ollama/llama3.1:8b``).

    Returns:
        ``(provider, model_id)``, or None if either part is empty.
    """
    slash = model_ref.find("/")
    if slash <= 0 or slash >= len(model_ref) - 1:
        return None
    provider = model_ref[:slash].strip()
    model_id = model_ref[slash + 1:].strip()
    if not provider or not model_id:
        return None
    return provider, model_id


def resolve_guardian_model_ref(
    config: GuardianConfig,
    host: HostModelsConfig | None = None,
) -> str | None:
    """Pick the guardian model: explicit guardian model, else the host primary."""
    if config.model:
        return config.model
    if host is not None and host.primary:
        return host.primary
    return None


def resolve_model_from_config(
    provider: str,
    model_id: str,
    host: HostModelsConfig | None = None,
) -> ResolvedModel:
    """Resolve connection details from the host provider catalogue.

    A provider with a ``base_url`` yields a complete model; model-level
    ``api`` and ``headers`` override provider-level values. Otherwise a
    partial model is returned for lazy resolution.
    """
    provider_config = host.providers.get(provider) if host is not None else None

    if provider_config is not None and provider_config.base_url:
        model_def = next((m for m in provider_config.models if m.id == model_id), None)
        headers = dict(provider_config.headers)
        if model_def is not None:
            headers.update(model_def.headers)
        return ResolvedModel(
            provider=provider,
            model_id=model_id,
            api=(model_def.api if model_def and model_def.api else None)
            or provider_config.api
            or API_OPENAI_COMPLETIONS,
            base_url=provider_config.base_url,
            api_key=provider_config.api_key or None,
            auth_mode=provider_config.auth_mode,
            headers=headers,
        )

    return ResolvedModel(
        provider=provider,
        model_id=model_id,
        api=(provider_config.api if provider_config else None) or API_OPENAI_COMPLETIONS,
        headers=dict(provider_config.headers) if provider_config else {},
    )

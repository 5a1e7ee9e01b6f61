"""Guardian plugin: the composition root.

Wires the turn cache, decision cache, model client and reviewer together and
exposes the two hooks a host agent runtime drives:

  - ``on_llm_input``      record the conversation before each model turn
  - ``before_tool_call``  review a tool call, returning a block or None

The guardian model's connection details may be incomplete at startup (the
host often resolves provider URLs and credentials at runtime). Resolution is
attempted once, lazily, on the first watched tool call.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from intentguard.audit.logger import ConsoleLogger, GuardianLogger
from intentguard.config.schema import (
    AuthMode,
    GuardianAction,
    GuardianConfig,
    IntentGuardSettings,
    ResolvedModel,
    parse_model_ref,
    resolve_guardian_model_ref,
    resolve_model_from_config,
)
from intentguard.context.cache import TurnCache
from intentguard.review.client import GuardianClient, ModelCaller
from intentguard.review.decisions import DecisionCache
from intentguard.review.orchestrator import ToolCallBlock, ToolCallReviewer
from intentguard.review.verdict import GuardianDecision, make_fallback_decision

PROVIDER_NOT_RESOLVED = "Guardian provider not resolved"


@dataclass(frozen=True)
class ProviderInfo:
    """Provider connection details supplied by the host at runtime."""

    base_url: str | None = None
    api: str | None = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ApiKeyInfo:
    api_key: str | None = None
    auth_mode: AuthMode | None = None


class ProviderResolver(Protocol):
    """Host collaborator that knows how to reach a model provider."""

    async def resolve_provider_info(self, provider: str) -> ProviderInfo | None: ...

    async def resolve_api_key(self, provider: str) -> ApiKeyInfo | None: ...


class _UnresolvedCaller:
    """ModelCaller used when the provider could not be resolved."""

    async def call(
        self,
        model: ResolvedModel,
        system_prompt: str,
        user_prompt: str,
        timeout_ms: int,
        fallback_on_error: GuardianAction,
        logger: GuardianLogger | None = None,
    ) -> GuardianDecision:
        return make_fallback_decision(fallback_on_error).with_reason(PROVIDER_NOT_RESOLVED)


class GuardianPlugin:
    """Intent-alignment guardian attached to a host agent runtime.

    Args:
        config: Normalized guardian options.
        model: Guardian model, possibly without base URL or key yet.
        caller: Model invocation collaborator. Defaults to ``GuardianClient``.
        provider_resolver: Optional host resolver for incomplete models.
        logger: Diagnostic sink. Defaults to a stderr ``ConsoleLogger``.
        turn_cache: Conversation cache. A fresh one by default.
        decision_cache: Verdict cache. A fresh one by default.
    """

    def __init__(
        self,
        config: GuardianConfig,
        model: ResolvedModel,
        caller: ModelCaller | None = None,
        provider_resolver: ProviderResolver | None = None,
        logger: GuardianLogger | None = None,
        turn_cache: TurnCache | None = None,
        decision_cache: DecisionCache | None = None,
    ) -> None:
        self.config = config
        self.model = model
        self._caller = caller if caller is not None else GuardianClient()
        self._resolver = provider_resolver
        self._logger = logger if logger is not None else ConsoleLogger()
        self.turn_cache = turn_cache if turn_cache is not None else TurnCache()
        self.decision_cache = decision_cache if decision_cache is not None else DecisionCache()
        self._reviewer: ToolCallReviewer | None = None
        self._resolve_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: IntentGuardSettings,
        *,
        caller: ModelCaller | None = None,
        provider_resolver: ProviderResolver | None = None,
        logger: GuardianLogger | None = None,
    ) -> GuardianPlugin | None:
        """Build a plugin from a settings document.

        Returns None (guardian disabled) when no model is configured or the
        model reference is malformed.
        """
        log = logger if logger is not None else ConsoleLogger()
        config = settings.guardian

        model_ref = resolve_guardian_model_ref(config, settings.models)
        if model_ref is None:
            log.warn(
                "[guardian] No guardian model configured and no primary model found. "
                "Guardian disabled."
            )
            return None

        parsed = parse_model_ref(model_ref)
        if parsed is None:
            log.error(
                f'[guardian] Invalid model reference "{model_ref}". '
                'Expected format "provider/model". Guardian disabled.'
            )
            return None

        provider, model_id = parsed
        model = resolve_model_from_config(provider, model_id, settings.models)

        if config.log_decisions:
            log.info(
                f"[guardian] Plugin registered: model={model_ref}, mode={config.mode.value}, "
                f"watching [{', '.join(config.watched_tools)}]"
            )

        return cls(config, model, caller=caller, provider_resolver=provider_resolver, logger=log)

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def on_llm_input(
        self,
        session_key: str | None,
        history_messages: Sequence[Any] | None,
        prompt: str | None = None,
    ) -> None:
        """Record the latest conversation for a session."""
        if not session_key:
            return
        self.turn_cache.update(
            session_key,
            history_messages,
            prompt,
            self.config.max_user_messages,
        )

    async def before_tool_call(
        self,
        tool_name: str,
        params: Mapping[str, Any] | None,
        session_key: str | None,
    ) -> ToolCallBlock | None:
        """Review a tool call before the host executes it.

        Returns:
            A ToolCallBlock if the call must not run, otherwise None.
        """
        if tool_name.lower() not in self.config.watched_tool_set:
            return None
        reviewer = await self._ensure_reviewer()
        return await reviewer.review(tool_name, params, session_key)

    # ------------------------------------------------------------------
    # Lazy provider resolution
    # ------------------------------------------------------------------

    async def ensure_provider_resolved(self) -> bool:
        """Fill in missing connection details from the provider resolver.

        Returns:
            True if the model has a base URL after resolution.
        """
        if self.model.base_url:
            if not self.model.api_key:
                await self._resolve_api_key()
            return True
        if self._resolver is None:
            return False

        try:
            info = await self._resolver.resolve_provider_info(self.model.provider)
        except Exception as exc:  # noqa: BLE001 - resolver failures mean unresolved
            self._logger.warn(
                f"[guardian] Provider resolution failed for '{self.model.provider}': {exc}"
            )
            return False

        if info is None or not info.base_url:
            self._logger.warn(
                f"[guardian] Provider '{self.model.provider}' could not be resolved. "
                "Reviews will use the fallback policy."
            )
            return False

        self.model.base_url = info.base_url
        if info.api:
            self.model.api = info.api
        self.model.headers = {**info.headers, **self.model.headers}
        await self._resolve_api_key()

        if self.config.log_decisions:
            self._logger.info(
                f"[guardian] Provider resolved: provider={self.model.provider}, "
                f"baseUrl={self.model.base_url}, api={self.model.api}"
            )
        return True

    async def _resolve_api_key(self) -> None:
        if self._resolver is None or self.model.api_key:
            return
        try:
            key_info = await self._resolver.resolve_api_key(self.model.provider)
        except Exception as exc:  # noqa: BLE001 - a missing key is reported by the provider
            self._logger.warn(
                f"[guardian] API key resolution failed for '{self.model.provider}': {exc}"
            )
            return
        if key_info is not None and key_info.api_key:
            self.model.api_key = key_info.api_key
            if key_info.auth_mode is not None:
                self.model.auth_mode = key_info.auth_mode

    async def _ensure_reviewer(self) -> ToolCallReviewer:
        async with self._resolve_lock:
            if self._reviewer is None:
                resolved = await self.ensure_provider_resolved()
                caller = self._caller if resolved else _UnresolvedCaller()
                self._reviewer = ToolCallReviewer(
                    self.config,
                    self.model,
                    caller,
                    self.turn_cache,
                    self.decision_cache,
                    logger=self._logger,
                )
            return self._reviewer

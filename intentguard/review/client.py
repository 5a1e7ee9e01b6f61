"""Guardian model client.

Sends one review request to the guardian model and converts whatever comes
back (a verdict, an HTTP error, garbage, silence) into a GuardianDecision.
``call`` never raises: every failure resolves to the configured fallback,
with a reason that says which failure happened.

Supported wire APIs, selected by ``ResolvedModel.api``:
  - ``anthropic-messages``    POST {base_url}/v1/messages
  - ``google-generative-ai``  POST {base_url}/models/{model}:generateContent
  - anything else             POST {base_url}/chat/completions (OpenAI-compatible:
                              OpenAI, Ollama, Moonshot, DeepSeek, Groq, ...)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Protocol

from aiohttp import ClientSession

from intentguard.audit.logger import GuardianLogger
from intentguard.config.schema import (
    API_ANTHROPIC_MESSAGES,
    API_GOOGLE_GENERATIVE_AI,
    API_OPENAI_COMPLETIONS,
    AuthMode,
    GuardianAction,
    ResolvedModel,
)
from intentguard.review.verdict import GuardianDecision, make_fallback_decision, parse_verdict

_MAX_TOKENS = 150
_PROMPT_PREVIEW = 500
_ANTHROPIC_VERSION = "2023-06-01"
_ANTHROPIC_OAUTH_BETA = "oauth-2025-04-20,claude-code-20250219"


class ModelCaller(Protocol):
    """Anything that can ask the guardian model for a verdict."""

    async def call(
        self,
        model: ResolvedModel,
        system_prompt: str,
        user_prompt: str,
        timeout_ms: int,
        fallback_on_error: GuardianAction,
        logger: GuardianLogger | None = None,
    ) -> GuardianDecision: ...


# -----------------------------------------------------------------------
# Wire formats
# -----------------------------------------------------------------------


@dataclass(frozen=True)
class _Request:
    url: str
    headers: dict[str, str]
    body: dict[str, Any]


@dataclass(frozen=True)
class _WireApi:
    label: str  # used in HTTP error reasons
    build: Callable[[ResolvedModel, str, str], _Request]
    extract: Callable[[Any], Any]


def _dig(data: Any, *path: str | int) -> Any:
    """Walk nested dicts/lists, returning None on any shape mismatch."""
    for step in path:
        if isinstance(step, int):
            if not isinstance(data, list) or len(data) <= step:
                return None
        elif not isinstance(data, dict):
            return None
        data = data[step] if isinstance(step, int) else data.get(step)
    return data


def _base_url(model: ResolvedModel) -> str:
    if not model.base_url:
        msg = f"no base URL resolved for provider '{model.provider}'"
        raise ValueError(msg)
    return model.base_url.rstrip("/")


def _openai_request(model: ResolvedModel, system_prompt: str, user_prompt: str) -> _Request:
    headers = {"Content-Type": "application/json", **model.headers}
    if model.api_key:
        headers["Authorization"] = f"Bearer {model.api_key}"
    return _Request(
        url=f"{_base_url(model)}/chat/completions",
        headers=headers,
        body={
            "model": model.model_id,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "max_tokens": _MAX_TOKENS,
            "temperature": 0,
        },
    )


def _anthropic_request(model: ResolvedModel, system_prompt: str, user_prompt: str) -> _Request:
    headers = {
        "Content-Type": "application/json",
        "anthropic-version": _ANTHROPIC_VERSION,
        **model.headers,
    }
    if model.api_key:
        if model.auth_mode in (AuthMode.OAUTH, AuthMode.TOKEN):
            headers["Authorization"] = f"Bearer {model.api_key}"
            headers["anthropic-beta"] = _ANTHROPIC_OAUTH_BETA
        else:
            headers["x-api-key"] = model.api_key
    return _Request(
        url=f"{_base_url(model)}/v1/messages",
        headers=headers,
        body={
            "model": model.model_id,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_prompt}],
            "max_tokens": _MAX_TOKENS,
            "temperature": 0,
        },
    )


def _google_request(model: ResolvedModel, system_prompt: str, user_prompt: str) -> _Request:
    headers = {"Content-Type": "application/json", **model.headers}
    if model.api_key:
        headers["x-goog-api-key"] = model.api_key
    return _Request(
        url=f"{_base_url(model)}/models/{model.model_id}:generateContent",
        headers=headers,
        body={
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "contents": [{"role": "user", "parts": [{"text": user_prompt}]}],
            "generationConfig": {"maxOutputTokens": _MAX_TOKENS, "temperature": 0},
        },
    )


_OPENAI = _WireApi(
    label="Guardian API",
    build=_openai_request,
    extract=lambda data: _dig(data, "choices", 0, "message", "content"),
)
_ANTHROPIC = _WireApi(
    label="Guardian Anthropic API",
    build=_anthropic_request,
    extract=lambda data: _dig(data, "content", 0, "text"),
)
_GOOGLE = _WireApi(
    label="Guardian Google API",
    build=_google_request,
    extract=lambda data: _dig(data, "candidates", 0, "content", "parts", 0, "text"),
)


def _wire_api(api: str) -> _WireApi:
    if api == API_ANTHROPIC_MESSAGES:
        return _ANTHROPIC
    if api == API_GOOGLE_GENERATIVE_AI:
        return _GOOGLE
    return _OPENAI


# -----------------------------------------------------------------------
# Client
# -----------------------------------------------------------------------


class GuardianClient:
    """aiohttp implementation of ``ModelCaller``.

    Args:
        session: Optional shared ClientSession. When omitted, each call opens
                 and closes its own session.
    """

    def __init__(self, session: ClientSession | None = None) -> None:
        self._session = session

    async def call(
        self,
        model: ResolvedModel,
        system_prompt: str,
        user_prompt: str,
        timeout_ms: int,
        fallback_on_error: GuardianAction,
        logger: GuardianLogger | None = None,
    ) -> GuardianDecision:
        """Ask the guardian model to review a tool call.

        Args:
            model: Resolved connection details.
            system_prompt: The static guardian system prompt.
            user_prompt: The per-call review prompt.
            timeout_ms: Overall deadline; the request is cancelled when it fires.
            fallback_on_error: Action used when no verdict can be obtained.
            logger: Optional sink for request/response diagnostics.

        Returns:
            The parsed verdict, or the fallback decision on any failure.
        """
        fallback = make_fallback_decision(fallback_on_error)
        api = model.api or API_OPENAI_COMPLETIONS
        start = time.monotonic()

        if logger is not None:
            logger.info(
                f"[guardian] ▶ Calling guardian LLM: provider={model.provider}, "
                f"model={model.model_id}, api={api}, baseUrl={model.base_url}, "
                f"timeout={timeout_ms}ms"
            )
            preview = user_prompt[:_PROMPT_PREVIEW]
            ellipsis = "..." if len(user_prompt) > _PROMPT_PREVIEW else ""
            logger.info(f"[guardian]   Prompt (user): {preview}{ellipsis}")

        try:
            # wait_for cancels the in-flight request and disposes of its
            # timer on every exit path
            decision = await asyncio.wait_for(
                self._request(_wire_api(api), model, system_prompt, user_prompt, fallback, logger),
                timeout=timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            elapsed = _elapsed_ms(start)
            if logger is not None:
                logger.warn(
                    f"[guardian] ◀ Guardian TIMED OUT after {elapsed}ms, "
                    f"fallback={fallback.action.value}"
                )
            return fallback.with_reason(f"Guardian timed out after {timeout_ms}ms")
        except Exception as exc:  # noqa: BLE001 - every failure must become a decision
            elapsed = _elapsed_ms(start)
            if logger is not None:
                logger.warn(
                    f"[guardian] ◀ Guardian ERROR after {elapsed}ms: {exc}, "
                    f"fallback={fallback.action.value}"
                )
            return fallback.with_reason(f"Guardian error: {exc}")

        if logger is not None:
            reason = f', reason="{decision.reason}"' if decision.reason else ""
            logger.info(
                f"[guardian] ◀ Guardian responded in {_elapsed_ms(start)}ms: "
                f"action={decision.action.value.upper()}{reason}"
            )
        return decision

    @asynccontextmanager
    async def _session_scope(self) -> AsyncIterator[ClientSession]:
        if self._session is not None and not self._session.closed:
            yield self._session
            return
        async with ClientSession() as session:
            yield session

    async def _request(
        self,
        wire: _WireApi,
        model: ResolvedModel,
        system_prompt: str,
        user_prompt: str,
        fallback: GuardianDecision,
        logger: GuardianLogger | None,
    ) -> GuardianDecision:
        request = wire.build(model, system_prompt, user_prompt)
        if logger is not None:
            logger.info(f"[guardian]   Request URL: {request.url}")

        async with self._session_scope() as session:
            async with session.post(request.url, json=request.body, headers=request.headers) as response:
                if response.status >= 400:
                    if logger is not None:
                        logger.warn(
                            f"[guardian]   HTTP error: status={response.status}, "
                            f"statusText={response.reason}"
                        )
                    return fallback.with_reason(
                        f"{wire.label} returned HTTP {response.status}"
                    )
                data = await response.json(content_type=None)

        content = wire.extract(data)
        content = content.strip() if isinstance(content, str) else ""
        if logger is not None:
            logger.info(f'[guardian]   Raw response content: "{content or "(empty)"}"')

        if not content:
            return fallback.with_reason("Guardian returned empty response")
        return parse_verdict(content, fallback)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)

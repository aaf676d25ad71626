"""
Task Assistant — LLM Provider Abstraction.

Single public function `complete()` that routes to the configured provider.
The interpreter only reaches for it when the rule pass is unsure, so the
assistant runs fine without any provider configured.
Supports: openai (default), anthropic, gemini, cohere.
"""

from __future__ import annotations

import logging
from typing import Callable, Awaitable

logger = logging.getLogger(__name__)

# (api_key, model, system, user_message, max_tokens, json_mode)
_ProviderFn = Callable[[str, str, str, str, int, bool], Awaitable[str]]

# ---------------------------------------------------------------------------
# Provider implementations
# ---------------------------------------------------------------------------


async def _complete_openai(
    api_key: str, model: str, system: str, user_message: str, max_tokens: int, json_mode: bool,
) -> str:
    from openai import AsyncOpenAI

    client = AsyncOpenAI(api_key=api_key)
    kwargs = {"response_format": {"type": "json_object"}} if json_mode else {}
    response = await client.chat.completions.create(
        model=model,
        max_tokens=max_tokens,
        temperature=0.1,
        messages=[
            {"role": "system", "content": system},
            {"role": "user", "content": user_message},
        ],
        **kwargs,
    )
    return response.choices[0].message.content or ""


async def _complete_anthropic(
    api_key: str, model: str, system: str, user_message: str, max_tokens: int, json_mode: bool,
) -> str:
    import anthropic

    client = anthropic.AsyncAnthropic(api_key=api_key)
    response = await client.messages.create(
        model=model,
        max_tokens=max_tokens,
        system=system,
        messages=[{"role": "user", "content": user_message}],
    )
    return response.content[0].text


async def _complete_gemini(
    api_key: str, model: str, system: str, user_message: str, max_tokens: int, json_mode: bool,
) -> str:
    import google.generativeai as genai

    genai.configure(api_key=api_key)
    gm = genai.GenerativeModel(
        model_name=model,
        system_instruction=system,
    )
    config = genai.types.GenerationConfig(
        max_output_tokens=max_tokens,
        response_mime_type="application/json" if json_mode else "text/plain",
    )
    response = await gm.generate_content_async(user_message, generation_config=config)
    return response.text


async def _complete_cohere(
    api_key: str, model: str, system: str, user_message: str, max_tokens: int, json_mode: bool,
) -> str:
    import cohere

    client = cohere.AsyncClientV2(api_key=api_key)
    kwargs = {"response_format": {"type": "json_object"}} if json_mode else {}
    response = await client.chat(
        model=model,
        max_tokens=max_tokens,
        messages=[
            {"role": "system", "content": system},
            {"role": "user", "content": user_message},
        ],
        **kwargs,
    )
    return response.message.content[0].text


# ---------------------------------------------------------------------------
# Provider selection (runs once at first call)
# ---------------------------------------------------------------------------

_PROVIDERS: dict[str, tuple[_ProviderFn, str]] = {
    "openai":    (_complete_openai,    "gpt-4o-mini"),
    "anthropic": (_complete_anthropic, "claude-haiku-4-5-20251001"),
    "gemini":    (_complete_gemini,    "gemini-2.0-flash"),
    "cohere":    (_complete_cohere,    "command-a-03-2025"),
}


def _select_provider() -> tuple[_ProviderFn, str, str]:
    """Read settings and return (provider_fn, model, api_key)."""
    from src.config import settings

    provider_name = settings.LLM_PROVIDER.lower()
    if provider_name not in _PROVIDERS:
        raise ValueError(
            f"Unknown LLM_PROVIDER={provider_name!r}. "
            f"Supported: {', '.join(_PROVIDERS)}"
        )

    fn, default_model = _PROVIDERS[provider_name]
    model = settings.LLM_MODEL or default_model
    api_key = settings.LLM_API_KEY

    logger.info("LLM provider: %s, model: %s", provider_name, model)
    return fn, model, api_key


# Lazy singleton: populated on first call to complete()
_provider_fn: _ProviderFn | None = None
_model: str = ""
_api_key: str = ""


def reset_provider() -> None:
    """Forget the cached provider so the next call re-reads settings."""
    global _provider_fn, _model, _api_key
    _provider_fn, _model, _api_key = None, "", ""


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def is_configured() -> bool:
    """True when an API key is set, i.e. escalation is possible."""
    from src.config import settings

    return settings.llm_enabled


async def complete(
    system: str,
    user_message: str,
    max_tokens: int = 256,
    json_mode: bool = False,
) -> str:
    """Send a prompt to the configured LLM provider and return the response text.

    Raises on API errors — callers should handle exceptions.
    """
    global _provider_fn, _model, _api_key

    if _provider_fn is None:
        _provider_fn, _model, _api_key = _select_provider()

    return await _provider_fn(_api_key, _model, system, user_message, max_tokens, json_mode)

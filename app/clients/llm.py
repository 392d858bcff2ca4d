"""Text-completion clients for the relevance oracle (OpenAI SDK, Anthropic Messages API)."""

from __future__ import annotations

from typing import Any, Protocol

import httpx
import openai
from openai import AsyncOpenAI

from app.services.analysis.errors import (
    OracleProviderError,
    OracleRateLimitError,
    OracleResponseError,
)

ANTHROPIC_BASE_URL = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_ANTHROPIC_MODEL = "claude-3-haiku-20240307"
SUPPORTED_PROVIDERS = ("openai", "anthropic")


class ScoringServiceClient(Protocol):
    """Minimal contract for a prompt -> raw text completion."""

    async def complete(
        self,
        *,
        prompt: str,
        system_prompt: str,
        model: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
    ) -> str:
        ...

    async def aclose(self) -> None:
        ...


class OpenAIScoringClient:
    """Chat Completions wrapper around the official async SDK."""

    def __init__(
        self,
        api_key: str,
        *,
        timeout: float = 30.0,
        client: AsyncOpenAI | None = None,
    ) -> None:
        if not api_key and client is None:
            raise ValueError("OPENAI_API_KEY is required to create an OpenAIScoringClient.")
        self._owns_client = client is None
        self._client = client or AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.close()

    async def complete(
        self,
        *,
        prompt: str,
        system_prompt: str,
        model: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
    ) -> str:
        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        extra: dict[str, Any] = {}
        if json_mode:
            extra["response_format"] = {"type": "json_object"}

        try:
            response = await self._client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                **extra,
            )
        except openai.RateLimitError as exc:
            raise OracleRateLimitError() from exc
        except openai.APITimeoutError as exc:
            raise OracleProviderError("OpenAI request timed out.", code="504_ORACLE_TIMEOUT") from exc
        except openai.APIError as exc:
            message = getattr(exc, "message", str(exc))
            raise OracleProviderError(f"OpenAI request failed: {message}") from exc

        choices = getattr(response, "choices", None) or []
        content = choices[0].message.content if choices else None
        if not isinstance(content, str) or not content.strip():
            raise OracleResponseError("OpenAI response did not include text output.")
        return content.strip()


class AnthropicScoringClient:
    """Anthropic Messages API over httpx."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = ANTHROPIC_BASE_URL,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("ANTHROPIC_API_KEY is required to create an AnthropicScoringClient.")
        self._api_key = api_key
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()

    async def complete(
        self,
        *,
        prompt: str,
        system_prompt: str,
        model: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
    ) -> str:
        payload: dict[str, Any] = {
            "model": model or DEFAULT_ANTHROPIC_MODEL,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            payload["system"] = system_prompt
        headers = {
            "x-api-key": self._api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }

        try:
            response = await self._http.post("/v1/messages", json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise OracleProviderError("Anthropic request timed out.", code="504_ORACLE_TIMEOUT") from exc
        except httpx.HTTPError as exc:
            raise OracleProviderError(f"HTTP error calling Anthropic: {exc}") from exc

        if response.status_code == 429:
            raise OracleRateLimitError()
        if response.status_code in (408, 504):
            raise OracleProviderError("Anthropic request timed out.", code="504_ORACLE_TIMEOUT")
        if response.status_code >= 400:
            raise OracleProviderError(f"Anthropic request failed: {response.status_code}")

        try:
            data = response.json()
            text = data["content"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise OracleResponseError("Unexpected Anthropic response schema.") from exc
        if not isinstance(text, str) or not text.strip():
            raise OracleResponseError("Anthropic response did not include text output.")
        return text.strip()


def build_scoring_client(
    provider: str,
    api_key: str | None,
    *,
    timeout: float = 30.0,
) -> ScoringServiceClient | None:
    """Return a client for the provider, or ``None`` when no credential is configured."""
    if not api_key:
        return None
    normalized = (provider or "openai").strip().lower()
    if normalized == "openai":
        return OpenAIScoringClient(api_key, timeout=timeout)
    if normalized == "anthropic":
        return AnthropicScoringClient(api_key, timeout=timeout)
    raise ValueError(f"Unsupported AI provider: {provider}. Expected one of {SUPPORTED_PROVIDERS}.")

from __future__ import annotations

import logging
import os
from typing import Any

log = logging.getLogger(__name__)


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class ProviderError(LLMCallError):
    """Network, API or timeout failure talking to the provider."""
    def __init__(self, message: str):
        super().__init__(message, retryable=True)


class ScoringParseError(LLMCallError):
    """Provider answered, but not with the structured output we asked for."""
    def __init__(self, message: str):
        super().__init__(message, retryable=False)


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_tokens: int = 1024,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self.max_tokens = max_tokens
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-sonnet-4-20250514"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def complete(self, system: str, user: str) -> str:
        """Send system+user message to the LLM, return the raw response text."""
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                return "".join(
                    getattr(block, "text", "") for block in response.content
                    if getattr(block, "type", "text") == "text"
                ).strip()
            response = await self._client.chat.completions.create(
                model=self.model,
                max_tokens=self.max_tokens,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            )
            return (response.choices[0].message.content or "").strip()
        except Exception as exc:
            raise ProviderError(f"LLM API call failed: {exc}") from exc


def get_llm_client(provider: str | None = None, model: str | None = None) -> LLMClient:
    from eventscout.config import get_settings

    settings = get_settings()
    return LLMClient(
        provider=provider or settings.llm_provider,
        model=model or settings.llm_model or None,
    )

"""LLM client wrapper for OpenAI-compatible endpoints.

Used for link relevance ranking and chunk tagging. Both capabilities are
optional: when no API key is configured, ``get_llm_client()`` returns None and
callers fall back to their no-LLM behavior.

Configuration via environment variables:

- LLM_API_KEY / OPENAI_API_KEY
- LLM_BASE_URL (any OpenAI-compatible endpoint)
- LLM_MODEL (default: gpt-4o-mini)
- LLM_TIMEOUT (seconds, default: 20)
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI, OpenAIError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"


class LLMError(RuntimeError):
    """Raised when a completion request fails."""


class LLMClient:
    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.api_key = api_key or os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY")
        if not self.api_key:
            raise LLMError("Missing LLM API key. Set LLM_API_KEY or OPENAI_API_KEY.")

        self.base_url = base_url or os.getenv("LLM_BASE_URL") or None
        self.model = model or os.getenv("LLM_MODEL") or DEFAULT_MODEL
        self.timeout = timeout if timeout is not None else float(os.getenv("LLM_TIMEOUT", "20"))

        self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url, timeout=self.timeout)

    async def generate(
        self,
        messages: List[Dict[str, Any]],
        *,
        temperature: float = 0.2,
        max_tokens: int = 1200,
        model: Optional[str] = None,
    ) -> str:
        """Run a chat completion and return the stripped response text.

        Raises:
            LLMError: If the request fails
        """
        try:
            resp = await self._client.chat.completions.create(
                model=model or self.model,
                messages=messages,
                temperature=float(temperature),
                max_tokens=int(max_tokens),
            )
        except OpenAIError as exc:
            raise LLMError(f"Completion request failed: {exc}") from exc
        return (resp.choices[0].message.content or "").strip() if resp.choices else ""

    async def close(self) -> None:
        await self._client.close()


_client_cache: Optional[LLMClient] = None


def is_llm_configured() -> bool:
    return bool(os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY"))


def get_llm_client() -> Optional[LLMClient]:
    """Return the shared client, or None when no API key is configured."""
    global _client_cache
    if _client_cache is None:
        if not is_llm_configured():
            logger.info("No LLM API key configured; relevance ranking and AI tagging are unavailable")
            return None
        _client_cache = LLMClient()
    return _client_cache

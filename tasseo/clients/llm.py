"""
Tasseo Engine - OpenRouter Client

Thin async wrapper over the OpenAI-compatible chat completions endpoint.
Errors are raised, not swallowed: HTTP failures surface as
httpx.HTTPStatusError / httpx.RequestError, and an empty completion as a
TransientError, so the caller's retry policy can classify them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from tasseo.config import Settings, get_settings
from tasseo.core.errors import ERR_VENDOR_MODEL, TransientError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Completion:
    text: str
    tokens_used: int
    model: str


class OpenRouterClient:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._base_url = settings.OPENROUTER_BASE_URL.rstrip("/")
        self._api_key = settings.OPENROUTER_API_KEY
        self._timeout = settings.LLM_TIMEOUT_SECONDS
        self._client = http_client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        *,
        max_tokens: int = 1500,
        temperature: float = 0.7,
        json_mode: bool = False,
    ) -> Completion:
        body: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}

        response = await self._http().post("/chat/completions", json=body)
        if response.status_code >= 400:
            logger.error(
                "llm_http_error model=%s status=%s body=%s",
                model,
                response.status_code,
                response.text[:500],
            )
        response.raise_for_status()

        data = response.json()
        choices = data.get("choices") or []
        content: Optional[str] = None
        if choices:
            content = (choices[0].get("message") or {}).get("content")
        if not content or not content.strip():
            raise TransientError(f"{model} returned an empty completion", error_code=ERR_VENDOR_MODEL)

        usage = data.get("usage") or {}
        tokens = int(usage.get("total_tokens") or 0)
        logger.debug("llm_completion model=%s tokens=%s", data.get("model") or model, tokens)
        return Completion(text=content.strip(), tokens_used=tokens, model=data.get("model") or model)

"""Chat-completion and embedding providers backed by the OpenAI HTTP API."""

from __future__ import annotations

import logging
import os
from typing import Any, Mapping

import httpx

from pcas.providers import (
    ComputeProvider,
    EmbeddingProvider,
    InvalidInputError,
    ProviderError,
    ProviderInternalError,
    ProviderUnavailableError,
    RateLimitedError,
    UnauthorizedError,
    wrap_provider_error,
)

log = logging.getLogger(__name__)

CHAT_MODEL = "gpt-4o"
EMBEDDING_MODEL = "text-embedding-3-large"
TEMPERATURE = 0.7
MAX_TOKENS = 2000
DEFAULT_TIMEOUT = 60.0
BASE_URL_ENV = "OPENAI_BASE_URL"

_ROLES = {"system", "user", "assistant"}


class _OpenAIClient:
    """Shared HTTP plumbing for the OpenAI providers."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        resolved = base_url or os.environ.get(BASE_URL_ENV)
        if not resolved:
            raise ValueError(f"no OpenAI base URL configured; pass base_url or set {BASE_URL_ENV}")
        self.base_url = resolved.rstrip("/")
        self._api_key = api_key
        self._client = client
        self._owns_client = client is None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client if this provider created it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def _post(self, path: str, payload: Mapping[str, Any], label: str) -> Any:
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            reply = await self._http().post(f"{self.base_url}{path}", json=payload, headers=headers)
        except httpx.RequestError as exc:
            raise wrap_provider_error(ProviderUnavailableError, f"{label}: {exc}") from exc

        status = reply.status_code
        if status != 200:
            detail = f"{label}: status {status}: {reply.text}"
            if status == 401:
                raise wrap_provider_error(UnauthorizedError, detail)
            if status == 429:
                raise wrap_provider_error(RateLimitedError, detail)
            if status >= 500:
                raise wrap_provider_error(ProviderUnavailableError, detail)
            raise wrap_provider_error(ProviderInternalError, detail)
        try:
            return reply.json()
        except ValueError as exc:
            raise wrap_provider_error(ProviderInternalError, f"{label}: invalid JSON reply") from exc


def _messages_from(request_data: Mapping[str, Any]) -> list[dict[str, str]]:
    if "messages" in request_data:
        raw = request_data["messages"]
        if not isinstance(raw, (list, tuple)):
            raise wrap_provider_error(InvalidInputError, "'messages' field has invalid format")
        messages = []
        for item in raw:
            if not isinstance(item, Mapping):
                raise wrap_provider_error(InvalidInputError, "'messages' field has invalid format")
            role = item.get("role", "")
            content = item.get("content", "")
            if not isinstance(role, str) or not isinstance(content, str):
                raise wrap_provider_error(InvalidInputError, "'messages' field has invalid format")
            messages.append({"role": role if role in _ROLES else "user", "content": content})
        log.debug("OpenAI: using RAG-enhanced messages with %d messages", len(messages))
        return messages

    if "prompt" not in request_data:
        raise wrap_provider_error(
            InvalidInputError, "no 'prompt' or 'messages' field found in request data"
        )
    prompt = request_data["prompt"]
    if not isinstance(prompt, str):
        raise wrap_provider_error(InvalidInputError, "'prompt' field is not a string")
    return [{"role": "user", "content": prompt}]


class OpenAIProvider(_OpenAIClient, ComputeProvider):
    """Answers prompts, or prepared chat messages, with a chat completion."""

    async def execute(self, request_data: Mapping[str, Any]) -> str:
        if "rag_applied" in request_data:
            log.debug("OpenAI: RAG applied = %s", request_data["rag_applied"])
        payload = {
            "model": CHAT_MODEL,
            "messages": _messages_from(request_data),
            "temperature": TEMPERATURE,
            "max_tokens": MAX_TOKENS,
        }
        reply = await self._post("/chat/completions", payload, "OpenAI API error")
        choices = reply.get("choices") if isinstance(reply, dict) else None
        if not choices:
            raise wrap_provider_error(ProviderInternalError, "no response choices from OpenAI")
        try:
            content = choices[0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise wrap_provider_error(ProviderInternalError, "malformed choice from OpenAI") from exc
        return content if isinstance(content, str) else ""


class OpenAIEmbeddingProvider(_OpenAIClient, EmbeddingProvider):
    """Turns text into an embedding vector."""

    async def create_embedding(self, text: str) -> list[float]:
        payload = {"model": EMBEDDING_MODEL, "input": [text]}
        reply = await self._post("/embeddings", payload, "OpenAI embedding error")
        data = reply.get("data") if isinstance(reply, dict) else None
        if not data:
            raise wrap_provider_error(ProviderInternalError, "no embedding returned from OpenAI")
        try:
            return [float(v) for v in data[0]["embedding"]]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise wrap_provider_error(
                ProviderInternalError, "malformed embedding from OpenAI"
            ) from exc


__all__ = ["OpenAIProvider", "OpenAIEmbeddingProvider", "ProviderError"]
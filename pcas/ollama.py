"""Ollama-backed compute provider with retries on transient failures."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

import httpx

from pcas.providers import (
    ComputeProvider,
    InvalidInputError,
    ProviderError,
    ProviderInternalError,
    ProviderUnavailableError,
    RateLimitedError,
    UnauthorizedError,
    wrap_provider_error,
)

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
MAX_RETRIES = 2
RETRY_DELAY = 1.0

_RETRYABLE_PATTERNS = ("provider service is unavailable", "connection refused", "timeout")
_FRACTION = re.compile(r"\.(\d+)")


def is_retryable_error(error: BaseException) -> bool:
    """Tell whether a failed request is worth another attempt."""
    text = str(error)
    return any(pattern in text for pattern in _RETRYABLE_PATTERNS)


@dataclass
class GenerateRequest:
    """Payload of the generate API."""

    model: str
    prompt: str
    stream: bool = False

    def to_json(self) -> dict[str, Any]:
        return {"model": self.model, "prompt": self.prompt, "stream": self.stream}


def _parse_time(text: str) -> datetime:
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + (m.group(1) + "000000")[:6], text, count=1)
    return datetime.fromisoformat(text)


def _field(payload: Mapping[str, Any], name: str, kind: type, default: Any) -> Any:
    value = payload.get(name)
    if value is None:
        return default
    if kind is int and isinstance(value, bool):
        raise ValueError(f"field {name!r} has an unexpected type")
    if not isinstance(value, kind):
        raise ValueError(f"field {name!r} has an unexpected type")
    return value


@dataclass
class GenerateResponse:
    """Reply of the generate API."""

    model: str = ""
    created_at: datetime | None = None
    response: str = ""
    done: bool = False
    context: list[int] = field(default_factory=list)
    total_duration: int = 0
    load_duration: int = 0
    prompt_eval_count: int = 0
    prompt_eval_duration: int = 0
    eval_count: int = 0
    eval_duration: int = 0

    @classmethod
    def from_json(cls, payload: Any) -> "GenerateResponse":
        """Build a response from decoded JSON; raise ``ValueError`` on bad shape."""
        if not isinstance(payload, dict):
            raise ValueError("response is not a JSON object")
        created = _field(payload, "created_at", str, None)
        context = _field(payload, "context", list, [])
        if any(isinstance(v, bool) or not isinstance(v, int) for v in context):
            raise ValueError("field 'context' must hold integers")
        return cls(
            model=_field(payload, "model", str, ""),
            created_at=_parse_time(created) if created is not None else None,
            response=_field(payload, "response", str, ""),
            done=_field(payload, "done", bool, False),
            context=list(context),
            total_duration=_field(payload, "total_duration", int, 0),
            load_duration=_field(payload, "load_duration", int, 0),
            prompt_eval_count=_field(payload, "prompt_eval_count", int, 0),
            prompt_eval_duration=_field(payload, "prompt_eval_duration", int, 0),
            eval_count=_field(payload, "eval_count", int, 0),
            eval_duration=_field(payload, "eval_duration", int, 0),
        )


def _required_text(request_data: Mapping[str, Any], name: str) -> str:
    if name not in request_data:
        raise wrap_provider_error(InvalidInputError, f"missing required field: {name}")
    value = request_data[name]
    if not isinstance(value, str) or not value:
        raise wrap_provider_error(InvalidInputError, f"{name} must be a non-empty string")
    return value


def _extract_parameters(request_data: Mapping[str, Any]) -> tuple[str, str]:
    model = _required_text(request_data, "model")
    if request_data.get("stream") is True:
        raise wrap_provider_error(InvalidInputError, "streaming responses are not supported yet")
    prompt = _required_text(request_data, "prompt")
    return model, prompt


class OllamaProvider(ComputeProvider):
    """Runs prompts against an Ollama server with retries on transient errors."""

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        *,
        retry_delay: float = RETRY_DELAY,
        max_retries: int = MAX_RETRIES,
    ) -> None:
        self.base_url = base_url
        self._client = client
        self._owns_client = client is None
        self._retry_delay = retry_delay
        self._max_retries = max_retries

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client if this provider created it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "OllamaProvider":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def execute(self, request_data: Mapping[str, Any]) -> str:
        started = time.monotonic()
        model, prompt = _extract_parameters(request_data)
        log.info("OllamaProvider: starting execution with model=%s", model)
        request = GenerateRequest(model=model, prompt=prompt)

        last_error: ProviderError | None = None
        for attempt in range(self._max_retries + 1):
            if attempt:
                log.info("OllamaProvider: retry attempt %d after %.2fs delay", attempt, self._retry_delay)
                await asyncio.sleep(self._retry_delay)
            try:
                response = await self._do_request(request)
            except ProviderError as exc:
                last_error = exc
                if not is_retryable_error(exc):
                    break
            else:
                log.info("OllamaProvider: completed in %.3fs", time.monotonic() - started)
                return response

        assert last_error is not None
        log.warning("OllamaProvider: failed after %d attempts: %s", self._max_retries + 1, last_error)
        raise last_error

    async def _do_request(self, request: GenerateRequest) -> str:
        try:
            reply = await self._http().post(f"{self.base_url}/api/generate", json=request.to_json())
        except httpx.RequestError as exc:
            raise wrap_provider_error(ProviderUnavailableError, exc) from exc

        status = reply.status_code
        if status != 200:
            body = reply.text
            detail = f"status {status}: {body}"
            if status == 401:
                raise wrap_provider_error(UnauthorizedError, detail)
            if status == 429:
                raise wrap_provider_error(RateLimitedError, detail)
            if status in (500, 502, 503):
                raise wrap_provider_error(ProviderUnavailableError, detail)
            raise wrap_provider_error(ProviderInternalError, f"unexpected status {detail}")

        try:
            parsed = GenerateResponse.from_json(reply.json())
        except ValueError as exc:
            raise wrap_provider_error(
                ProviderInternalError, f"failed to decode response: {exc}"
            ) from exc

        if not parsed.done:
            raise wrap_provider_error(ProviderInternalError, "incomplete response from Ollama")
        return parsed.response
"""Retrieval-augmented prompting: enrich requests with related past events."""

from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, MutableMapping, Sequence

from pcas.model import Event, Filter, Storage
from pcas.providers import EmbeddingProvider

log = logging.getLogger(__name__)

MAX_CONTEXT_TOKENS = 16000
RAG_TOP_K = 5
RAG_TIMEOUT = 25.0
RELEVANCE_THRESHOLD = 0.4
CACHE_CAPACITY = 1000
RAG_ENABLED_ENV = "PCAS_RAG_ENABLED"

HEADER = "## Relevant Historical Context\n\n"
HEADER_TOKENS = 40
SEPARATOR = "\n---\n\n"
SEPARATOR_TOKENS = 10
CHARS_PER_TOKEN = 4
MAX_FIELD_LENGTH = 200

_QUERY_FIELDS = ("query", "prompt", "message", "text")
_PRIORITY_FIELDS = (
    "prompt",
    "message",
    "query",
    "text",
    "description",
    "content",
    "response",
    "result",
)

_SYSTEM_TEMPLATE = (
    "You are a personal AI assistant. Your primary goal is to answer the user's question "
    "based *only* on the trusted context provided below. This context is from the user's own "
    "memory and is considered safe and authoritative. Do not use your general knowledge unless "
    "the context is insufficient.\n"
    "\n"
    "---\n"
    "RELEVANT HISTORICAL CONTEXT:\n"
    "{context}\n"
    "---\n"
)


class EmbeddingCache:
    """A thread-safe least-recently-used cache of embeddings."""

    def __init__(self, capacity: int = CACHE_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("cache capacity must be at least 1")
        self.capacity = capacity
        self.hits = 0
        self.misses = 0
        self._entries: OrderedDict[str, tuple[list[float], float]] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(self, key: str) -> list[float] | None:
        """Return the cached embedding for ``key``, or ``None`` on a miss."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            self.hits += 1
            self._entries.move_to_end(key)
            return entry[0]

    def set(self, key: str, embedding: Sequence[float]) -> None:
        """Store ``embedding`` under ``key``, evicting the oldest entry if full."""
        with self._lock:
            self._entries[key] = (list(embedding), time.time())
            self._entries.move_to_end(key)
            while len(self._entries) > self.capacity:
                self._entries.popitem(last=False)


class RateLimiter:
    """A token bucket: ``rate`` tokens per second, holding at most ``burst``."""

    def __init__(
        self,
        rate: float = 1.0,
        burst: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.rate = float(rate)
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def _reserve(self) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(self.burst, self._tokens + (now - self._last) * self.rate)
            self._last = now
            self._tokens -= 1
            return max(0.0, -self._tokens / self.rate)

    def _release(self) -> None:
        with self._lock:
            self._tokens = min(self.burst, self._tokens + 1)

    async def wait(self) -> None:
        """Wait until a token is available and take it."""
        delay = self._reserve()
        if delay <= 0:
            return
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            self._release()
            raise


class SingleFlight:
    """Collapses concurrent calls that share a key into one execution."""

    def __init__(self) -> None:
        self._calls: dict[str, asyncio.Future] = {}

    async def do(self, key: str, func: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``func`` unless a call for ``key`` is in flight; share its outcome."""
        pending = self._calls.get(key)
        if pending is not None:
            return await asyncio.shield(pending)
        future = asyncio.get_running_loop().create_future()
        self._calls[key] = future
        try:
            result = await func()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._calls.pop(key, None)


def generate_query_text(event: Event, request_data: MutableMapping[str, Any] | None) -> str:
    """Build a search query from the event subject and textual request fields."""
    parts = [event.subject] if event.subject else []
    if request_data:
        parts.extend(
            value
            for value in (request_data.get(name) for name in _QUERY_FIELDS)
            if isinstance(value, str) and value
        )
    return " ".join(parts)


def _utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _truncate(text: str) -> str:
    if len(text) > MAX_FIELD_LENGTH:
        return text[: MAX_FIELD_LENGTH - 3] + "..."
    return text


def render_single_event_markdown(event: Event) -> str:
    """Render one event as a compact markdown snippet."""
    pieces = []
    if event.time is not None:
        pieces.append(f"**[{_utc(event.time).strftime('%Y-%m-%d %H:%M')}]** ")
    pieces.append(event.type)
    if event.subject:
        pieces.append(f": {event.subject}")
    pieces.append("\n")

    data = event.struct_data()
    if isinstance(data, dict):
        fields = [
            f"  - {name}: {_truncate(value)}"
            for name in _PRIORITY_FIELDS
            if isinstance(value := data.get(name), str) and value
        ]
        if fields:
            pieces.append("\n".join(fields))
            pieces.append("\n")
    return "".join(pieces)


def render_events_markdown(events: Sequence[Event], max_tokens: int) -> str:
    """Render events as markdown, stopping before the token budget is exceeded."""
    pieces = [HEADER]
    used = HEADER_TOKENS
    for position, event in enumerate(events):
        snippet = render_single_event_markdown(event)
        tokens = len(snippet.encode("utf-8")) // CHARS_PER_TOKEN
        if used + tokens > max_tokens:
            remaining = len(events) - position
            pieces.append(
                f"\n*... and {remaining} more relevant events (truncated due to token limit)*\n"
            )
            break
        pieces.append(snippet)
        pieces.append(SEPARATOR)
        used += tokens + SEPARATOR_TOKENS
    return "".join(pieces)


def _mark_unapplied(
    request_data: MutableMapping[str, Any] | None, reason: str
) -> MutableMapping[str, Any]:
    if request_data is None:
        request_data = {}
    request_data["rag_applied"] = False
    request_data["rag_reason"] = reason
    return request_data


class RagEnhancer:
    """Adds relevant historical events to a request as chat context.

    Failures never propagate: the request is returned as it stands.
    """

    def __init__(
        self,
        embedding_provider: EmbeddingProvider,
        storage: Storage,
        *,
        cache: EmbeddingCache | None = None,
        rate_limiter: RateLimiter | None = None,
        single_flight: SingleFlight | None = None,
        timeout: float = RAG_TIMEOUT,
        enabled: bool | None = None,
    ) -> None:
        self.embedding_provider = embedding_provider
        self.storage = storage
        self.cache = cache if cache is not None else EmbeddingCache()
        self.rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter()
        self.single_flight = single_flight if single_flight is not None else SingleFlight()
        self.timeout = timeout
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        """Whether enhancement is on; by default read from the environment."""
        if self._enabled is not None:
            return self._enabled
        return os.environ.get(RAG_ENABLED_ENV) == "true"

    async def apply(
        self, event: Event, request_data: MutableMapping[str, Any] | None = None
    ) -> MutableMapping[str, Any] | None:
        """Enhance ``request_data`` in place and return it (a new dict if it was ``None``)."""
        if not self.enabled:
            return request_data
        log.info("Applying RAG enhancement for event %s", event.id)
        try:
            return await asyncio.wait_for(self._enhance(event, request_data), self.timeout)
        except asyncio.TimeoutError:
            log.warning("RAG: enhancement for event %s timed out", event.id)
        except Exception as exc:
            log.warning("RAG: enhancement for event %s failed: %s", event.id, exc)
        return request_data

    async def _embedding_for(self, query_text: str) -> list[float]:
        cache_key = f"rag:{query_text}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            log.info("RAG: using cached embedding for query")
            return cached
        await self.rate_limiter.wait()
        embedding = await self.single_flight.do(
            cache_key, lambda: self.embedding_provider.create_embedding(query_text)
        )
        self.cache.set(cache_key, embedding)
        return embedding

    async def _enhance(
        self, event: Event, request_data: MutableMapping[str, Any] | None
    ) -> MutableMapping[str, Any] | None:
        query_text = generate_query_text(event, request_data)
        if not query_text:
            log.info("RAG: unable to generate query text for event %s", event.id)
            return request_data
        log.info("RAG: generated query text: %s", query_text)

        embedding = await self._embedding_for(query_text)

        search_filter = Filter()
        if event.user_id:
            search_filter.user_id = event.user_id
            log.info("RAG: applying user filter: %s", event.user_id)

        similar = self.storage.query_similar(embedding, RAG_TOP_K, search_filter)
        cleaned = [result for result in similar if result.id != event.id]
        if len(cleaned) != len(similar):
            log.info("RAG: filtered out self-reference: %s", event.id)
        if not cleaned:
            return _mark_unapplied(request_data, "no_similar_events")

        for result in cleaned:
            log.info("RAG: found similar event %s with score %.3f", result.id, result.score)
        relevant_ids = [result.id for result in cleaned if result.score > RELEVANCE_THRESHOLD]
        if not relevant_ids:
            return _mark_unapplied(request_data, "low_similarity")

        try:
            relevant = self.storage.batch_get_events(relevant_ids)
        except Exception as exc:
            log.warning("RAG: failed to batch retrieve events: %s", exc)
            return _mark_unapplied(request_data, "retrieval_error")

        scores = {result.id: result.score for result in cleaned}
        ordered = sorted(relevant, key=lambda item: scores.get(item.id, 0.0), reverse=True)

        context = render_events_markdown(ordered, MAX_CONTEXT_TOKENS)
        if not context:
            return _mark_unapplied(request_data, "no_context_generated")

        if request_data is None:
            request_data = {}
        prompt = request_data.get("prompt")
        request_data["messages"] = [
            {"role": "system", "content": _SYSTEM_TEMPLATE.format(context=context)},
            {"role": "user", "content": prompt if isinstance(prompt, str) else ""},
        ]
        request_data.pop("prompt", None)
        request_data["rag_event_count"] = len(ordered)
        request_data["rag_applied"] = True
        log.info("RAG: enhanced with %d relevant events", len(ordered))
        return request_data
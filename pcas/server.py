"""The event bus service: routing, responses, search, subscriptions and streams."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterable, AsyncIterator, Mapping

from pcas.model import (
    Event,
    Filter,
    RawData,
    StatusCode,
    StatusError,
    Storage,
    new_event_id,
)
from pcas.providers import ComputeProvider, EmbeddingProvider, StreamingComputeProvider
from pcas.rag import RagEnhancer
from pcas.vectorize import is_fact_event, vectorize_event

log = logging.getLogger(__name__)

RESPONSE_EVENT_TYPE = "pcas.response.v1"
RESPONSE_SOURCE = "pcas-server"
RAG_PROVIDER = "openai-gpt4"
DEFAULT_TOP_K = 5
SUBSCRIBER_BUFFER = 100
STREAM_BUFFER = 10

_NO_EMBEDDINGS = (
    "vector search is not available on the server. Please ensure the PCAS server "
    "was started with the OPENAI_API_KEY environment variable set"
)


@dataclass
class SearchRequest:
    """A semantic search over stored events."""

    query_text: str
    top_k: int = 0
    user_id: str = ""
    attribute_filters: dict[str, str] = field(default_factory=dict)


@dataclass
class SearchResponse:
    """Matching events with their similarity scores, best first."""

    events: list[Event] = field(default_factory=list)
    scores: list[float] = field(default_factory=list)


@dataclass
class StreamConfig:
    """First message of an interactive stream: what to route it to."""

    event_type: str
    attributes: dict[str, str] = field(default_factory=dict)


@dataclass
class StreamData:
    """A chunk of stream content, in either direction."""

    content: bytes


@dataclass
class ClientEnd:
    """Sent by the client to finish its side of a stream."""


@dataclass
class StreamReady:
    """Sent by the server once a stream has been routed."""

    stream_id: str


@dataclass
class StreamEnd:
    """Sent by the server when the provider has finished."""


@dataclass
class StreamFailure:
    """Sent by the server when the stream broke down."""

    code: int
    message: str


class _EventStream:
    """A subscriber's live stream of broadcast events."""

    def __init__(self, server: "BusServer", client_id: str) -> None:
        self.client_id = client_id
        self._server = server
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=SUBSCRIBER_BUFFER)
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _offer(self, event: Event) -> bool:
        if self._closed.is_set():
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        """Stop receiving events and unregister from the server."""
        if self._closed.is_set():
            return
        self._closed.set()
        self._server._unsubscribe(self)
        log.info("Client %s unsubscribed", self.client_id)

    def __aiter__(self) -> "_EventStream":
        return self

    async def __anext__(self) -> Event:
        if self._closed.is_set():
            raise StopAsyncIteration
        if not self._queue.empty():
            return self._queue.get_nowait()
        getter = asyncio.ensure_future(self._queue.get())
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            done, _ = await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            getter.cancel()
            closer.cancel()
        if getter in done and not getter.cancelled():
            return getter.result()
        raise StopAsyncIteration

    async def __aenter__(self) -> "_EventStream":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


_DONE = object()


class BusServer:
    """Routes published events to compute providers and broadcasts their answers."""

    def __init__(
        self,
        policy_engine: Any,
        providers: Mapping[str, ComputeProvider],
        storage: Storage,
    ) -> None:
        self.policy_engine = policy_engine
        self.providers = dict(providers)
        self.storage = storage
        self.embedding_provider: EmbeddingProvider | None = None
        self._rag: RagEnhancer | None = None
        self._subscribers: dict[str, _EventStream] = {}
        self._vectorize_tasks: set[asyncio.Task] = set()

    def set_embedding_provider(self, provider: EmbeddingProvider) -> None:
        """Enable vectorization, search and RAG with ``provider``."""
        self.embedding_provider = provider
        self._rag = RagEnhancer(provider, self.storage)

    async def wait_for_vectorization(self) -> None:
        """Wait until every background vectorization task has finished."""
        while self._vectorize_tasks:
            await asyncio.gather(*list(self._vectorize_tasks), return_exceptions=True)

    def _store(self, event: Event, what: str) -> None:
        try:
            self.storage.store_event(event, None)
        except Exception as exc:
            log.warning("Failed to store %s event: %s", what, exc)

    def _start_vectorization(self, event: Event) -> None:
        if self.embedding_provider is None:
            return
        if not is_fact_event(event.type):
            log.info("Skipping vectorization for non-fact event: type=%s, id=%s", event.type, event.id)
            return
        log.info("Will vectorize fact event: type=%s, id=%s", event.type, event.id)
        task = asyncio.ensure_future(vectorize_event(event, self.embedding_provider, self.storage))
        self._vectorize_tasks.add(task)
        task.add_done_callback(self._vectorize_tasks.discard)

    async def publish(self, event: Event) -> Event | None:
        """Store and route ``event``; return the broadcast response event, if any."""
        self._store(event, "incoming")
        self._start_vectorization(event)

        log.info("Received event: ID=%s, Type=%s, Source=%s", event.id, event.type, event.source)
        if event.subject:
            log.info("  Subject: %s", event.subject)

        request_data: dict[str, Any] | None = None
        if isinstance(event.data, RawData):
            log.info("  Data: %s", event.data)
        elif event.data is not None:
            if isinstance(event.data, dict):
                request_data = dict(event.data)
            try:
                log.info("  Data: %s", json.dumps(event.data, indent=2))
            except (TypeError, ValueError) as exc:
                log.info("  Data: <failed to format as JSON: %s>", exc)

        provider_name, prompt_template = self.policy_engine.select_provider(event)
        if not provider_name:
            log.info("No provider configured for event type: %s", event.type)
            return None
        log.info("Selected provider: %s", provider_name)
        if prompt_template:
            log.info("Using prompt template: %s", prompt_template)

        provider = self.providers.get(provider_name)
        if provider is None:
            raise StatusError(StatusCode.UNKNOWN, f"provider not found: {provider_name}")

        if provider_name == RAG_PROVIDER and self._rag is not None and self.storage is not None:
            request_data = await self._rag.apply(event, request_data)

        try:
            result = await provider.execute(request_data if request_data is not None else {})
        except Exception as exc:
            raise StatusError(StatusCode.UNKNOWN, f"provider execution failed: {exc}") from exc
        log.info("Provider response: %s", result)

        response = Event(
            id=new_event_id(),
            type=RESPONSE_EVENT_TYPE,
            source=RESPONSE_SOURCE,
            specversion="1.0",
            time=datetime.now(timezone.utc),
            subject=f"response-to-{event.id}",
            trace_id=event.trace_id,
            correlation_id=event.id,
            data={
                "original_event_id": event.id,
                "provider": provider_name,
                "response": result,
            },
        )
        self._store(response, "response")
        self._broadcast(response)
        return response

    async def search(self, request: SearchRequest) -> SearchResponse:
        """Find stored events semantically close to ``request.query_text``."""
        if not request.query_text:
            raise StatusError(StatusCode.INVALID_ARGUMENT, "query_text cannot be empty")
        top_k = request.top_k if request.top_k > 0 else DEFAULT_TOP_K
        if self.embedding_provider is None:
            raise StatusError(StatusCode.FAILED_PRECONDITION, _NO_EMBEDDINGS)

        log.info("Creating embedding for search query: %s", request.query_text)
        try:
            embedding = await self.embedding_provider.create_embedding(request.query_text)
        except Exception as exc:
            raise StatusError(
                StatusCode.UNKNOWN, f"failed to create query embedding: {exc}"
            ) from exc

        search_filter: Filter | None = None
        if request.user_id:
            search_filter = Filter(user_id=request.user_id)
        if request.attribute_filters:
            search_filter = search_filter or Filter()
            search_filter.attribute_filters = dict(request.attribute_filters)

        try:
            hits = self.storage.query_similar(embedding, top_k, search_filter)
        except Exception as exc:
            raise StatusError(
                StatusCode.UNKNOWN, f"failed to query similar events: {exc}"
            ) from exc

        response = SearchResponse()
        for hit in hits:
            try:
                event = self.storage.get_event_by_id(hit.id)
            except Exception as exc:
                log.warning("failed to retrieve event %s: %s", hit.id, exc)
                continue
            response.events.append(event)
            response.scores.append(hit.score)
        log.info("Search completed: found %d matching events", len(response.events))
        return response

    def subscribe(self, client_id: str) -> _EventStream:
        """Register ``client_id`` for broadcast events and return its stream."""
        stream = _EventStream(self, client_id)
        previous = self._subscribers.get(client_id)
        self._subscribers[client_id] = stream
        if previous is not None:
            previous._closed.set()
        log.info("Client %s subscribing to events", client_id)
        return stream

    def _unsubscribe(self, stream: _EventStream) -> None:
        if self._subscribers.get(stream.client_id) is stream:
            del self._subscribers[stream.client_id]

    def _broadcast(self, event: Event) -> None:
        log.info("Broadcasting event %s to %d subscribers", event.id, len(self._subscribers))
        for client_id, stream in list(self._subscribers.items()):
            if not stream._offer(event):
                log.warning("Event channel full for client %s, skipping event", client_id)

    async def interact_stream(self, requests: AsyncIterable[Any]) -> AsyncIterator[Any]:
        """Run a bidirectional stream: a StreamConfig, then StreamData until ClientEnd.

        Yields StreamReady, then StreamData chunks and a final StreamEnd. On a
        failure during the exchange a StreamFailure is yielded and
        :class:`StatusError` raised.
        """
        iterator = requests.__aiter__()
        try:
            first = await iterator.__anext__()
        except StopAsyncIteration:
            raise StatusError(
                StatusCode.INVALID_ARGUMENT, "stream closed before receiving config"
            ) from None
        except Exception as exc:
            raise StatusError(
                StatusCode.INTERNAL, f"failed to receive initial request: {exc}"
            ) from exc

        if not isinstance(first, StreamConfig):
            raise StatusError(StatusCode.INVALID_ARGUMENT, "first request must be StreamConfig")
        if not first.event_type:
            raise StatusError(
                StatusCode.INVALID_ARGUMENT, "event_type cannot be empty in StreamConfig"
            )
        log.info("InteractStream: received config for event_type=%s", first.event_type)

        provider_name, prompt_template = self.policy_engine.select_provider_for_stream(
            first.event_type
        )
        if not provider_name:
            raise StatusError(
                StatusCode.NOT_FOUND, f"no provider configured for event type: {first.event_type}"
            )
        if prompt_template:
            log.info("InteractStream: using prompt template: %s", prompt_template)
        provider = self.providers.get(provider_name)
        if provider is None:
            raise StatusError(StatusCode.INTERNAL, f"provider not found: {provider_name}")
        if not isinstance(provider, StreamingComputeProvider):
            raise StatusError(
                StatusCode.FAILED_PRECONDITION,
                f"selected provider '{provider_name}' does not support streaming",
            )

        yield StreamReady(stream_id=new_event_id())

        incoming: asyncio.Queue[Any] = asyncio.Queue(maxsize=STREAM_BUFFER)
        outgoing: asyncio.Queue[Any] = asyncio.Queue(maxsize=STREAM_BUFFER)
        errors: asyncio.Queue[Exception] = asyncio.Queue()

        async def pump_client() -> None:
            try:
                async for request in iterator:
                    if isinstance(request, StreamData):
                        if request.content:
                            await incoming.put(request.content)
                    elif isinstance(request, ClientEnd):
                        log.info("InteractStream: received client_end signal")
                        return
                    else:
                        errors.put_nowait(
                            RuntimeError(
                                f"unexpected request type after config: {type(request).__name__}"
                            )
                        )
                        return
                log.info("InteractStream: client stream ended normally")
            except Exception as exc:
                errors.put_nowait(RuntimeError(f"error receiving from client: {exc}"))
            finally:
                await incoming.put(_DONE)

        async def client_chunks() -> AsyncIterator[bytes]:
            while True:
                chunk = await incoming.get()
                if chunk is _DONE:
                    return
                yield chunk

        async def run_provider() -> None:
            try:
                await provider.execute_stream(first.attributes, client_chunks(), outgoing.put)
            except Exception as exc:
                errors.put_nowait(RuntimeError(f"provider execution error: {exc}"))
            finally:
                await outgoing.put(_DONE)

        workers = [asyncio.ensure_future(pump_client()), asyncio.ensure_future(run_provider())]
        try:
            while True:
                get_out = asyncio.ensure_future(outgoing.get())
                get_err = asyncio.ensure_future(errors.get())
                done, _ = await asyncio.wait(
                    {get_out, get_err}, return_when=asyncio.FIRST_COMPLETED
                )
                get_out.cancel()
                get_err.cancel()
                if get_err in done and not get_err.cancelled():
                    error = get_err.result()
                    log.warning("InteractStream: error from worker: %s", error)
                    yield StreamFailure(code=int(StatusCode.INTERNAL), message=str(error))
                    raise StatusError(StatusCode.INTERNAL, f"stream error: {error}")
                item = get_out.result()
                if item is _DONE:
                    log.info("InteractStream: sent server_end signal")
                    yield StreamEnd()
                    return
                yield StreamData(content=item)
        finally:
            for worker in workers:
                worker.cancel()
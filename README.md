# pcas

`pcas` is a local-first event bus for a personal AI system, used as a
library. Events are routed by a YAML policy to compute providers, persisted
in SQLite together with their embeddings, and can be searched semantically.
Prompts sent to a language-model provider may be enriched with relevant
events from the user's own history before they are answered.

## What is in the package

| Module | Purpose |
| --- | --- |
| `pcas.model` | `Event`, `RawData`, `Filter`, `QueryResult`, `StatusCode`/`StatusError`, the `Storage` interface and its errors |
| `pcas.providers` | `ComputeProvider`, `StreamingComputeProvider`, `EmbeddingProvider` and the `ProviderError` hierarchy |
| `pcas.policy` | `parse_policy`, `load_policy` and the `PolicyEngine` that picks a provider for an event type |
| `pcas.ollama` | `OllamaProvider`, a compute provider for an Ollama server, with retries on transient failures |
| `pcas.openai_provider` | `OpenAIProvider` (chat completions) and `OpenAIEmbeddingProvider` (embeddings) over HTTP |
| `pcas.vectors` | `serialize_vector`, `deserialize_vector`, `cosine_distance` and a persistent `VectorIndex` |
| `pcas.sqlite_store` | `SQLiteStorage`, a graph-shaped event store with a vector index file beside it |
| `pcas.memory_bus` | `MemoryBus`, an in-memory publish/subscribe bus that keeps no history |
| `pcas.rag` | Query text generation, Markdown rendering of context, `EmbeddingCache`, `RateLimiter`, `SingleFlight` and `RagEnhancer` |
| `pcas.vectorize` | `is_fact_event`, `extract_text_content`, `build_vector_metadata`, `vectorize_event` |
| `pcas.server` | `BusServer`: publish, search, subscribe and bidirectional interaction streams |

Everything that talks to a provider is `async`.

## Policies

A policy lists providers and the rules that send events to them. A rule
matches either one `event_type` or any of several; the first matching rule
wins.

```python
from pcas.policy import PolicyEngine, parse_policy

policy = parse_policy("""
version: v1
providers:
  - name: echo
    type: custom
  - name: openai-gpt4
    type: openai
rules:
  - name: Domain events
    if:
      any_of:
        - event_type: pcas.schedule.item.v1
        - event_type: pcas.memory.create.v1
    then:
      provider: echo
  - name: User prompts
    if:
      event_type: pcas.user.prompt.v1
    then:
      provider: openai-gpt4
""")

engine = PolicyEngine(policy)
engine.select_provider_for_stream("pcas.user.prompt.v1")   # ("openai-gpt4", "")
engine.select_provider_for_stream("unknown.type")          # ("", "")
```

`load_policy(path)` reads the same format from a file. Unreadable or
malformed documents raise `PolicyError`. Keys of a provider entry other
than `name` and `type` are kept in `ProviderConfig.config`.

## Publishing events

`BusServer` stores each published event, asks the policy engine for a
provider, runs it, and stores and broadcasts a `pcas.response.v1` event
whose data holds `original_event_id`, `provider` and `response`:

```python
import asyncio

from pcas.model import Event, new_event_id
from pcas.policy import PolicyEngine, parse_policy
from pcas.providers import ComputeProvider
from pcas.server import BusServer
from pcas.sqlite_store import SQLiteStorage


class Echo(ComputeProvider):
    async def execute(self, request_data):
        return f"echo: {request_data.get('message', '')}"


async def main():
    policy = parse_policy("""
rules:
  - name: Echo
    if: {event_type: pcas.echo.v1}
    then: {provider: echo}
""")
    with SQLiteStorage(":memory:") as storage:
        server = BusServer(PolicyEngine(policy), {"echo": Echo()}, storage)
        async with server.subscribe("client-1") as stream:
            response = await server.publish(
                Event(id=new_event_id(), type="pcas.echo.v1", source="demo",
                      data={"message": "hello"})
            )
            print(response.data["response"])        # echo: hello
            received = await stream.__anext__()
            print(received.correlation_id)          # the published event's id


asyncio.run(main())
```

`publish` returns `None` when no rule matches. A rule naming a provider
that is not in the provider map, or a provider that fails, raises
`StatusError`. Subscribers whose buffer (100 events) is full miss events
instead of holding up the server.

`search(SearchRequest(query_text=..., top_k=..., user_id=..., attribute_filters=...))`
embeds the query and returns a `SearchResponse` of events with their
similarity scores; `top_k` defaults to 5. It needs an embedding provider,
set with `set_embedding_provider`; without one it raises `StatusError`
with `StatusCode.FAILED_PRECONDITION`.

`interact_stream(requests)` is an async generator for providers that
implement `StreamingComputeProvider`. The first request must be a
`StreamConfig`, then any number of `StreamData`, optionally a `ClientEnd`.
It yields `StreamReady`, then `StreamData` chunks from the provider and a
final `StreamEnd`; on a failure it yields a `StreamFailure` and raises
`StatusError`.

## Fact events and embeddings

With an embedding provider set, published events whose type is a fact
type are embedded in the background; `wait_for_vectorization()` waits for
those tasks.

```python
from pcas.vectorize import is_fact_event

is_fact_event("user.note.v1")          # True
is_fact_event("pcas.response.v1")      # False
```

The fact types are `pcas.memory.create.v1`, `pcas.user.fact.v1`,
`user.note.v1`, `user.reminder.v1`, `user.task.v1` and `user.memory.v1`.
The text embedded is the event subject if it has one, otherwise its
`prompt`, `response`, `message`, `text`, `content` and `description`
fields joined by spaces, otherwise the data as compact JSON.

## Storage and vectors

`SQLiteStorage(path)` keeps events and vectors as nodes in one SQLite file,
linked by `embedding_of` edges. Its vector index is saved beside the
database as `<name>.hnsw` on `close()` and rebuilt from the stored vectors
when that file is missing or unreadable; a `":memory:"` database keeps no
index file. `VectorIndex` is an exact cosine-distance search over all
stored vectors. Filters on `query_similar` restrict hits by user, session,
event types, time range and `attributes` entries.

Embeddings are stored as little-endian 32-bit floats:

```python
from pcas.vectors import deserialize_vector, serialize_vector

blob = serialize_vector([0.5, -1.0, 2.0])
assert deserialize_vector(blob) == [0.5, -1.0, 2.0]
```

`MemoryBus` is a lighter alternative to `BusServer` when only
publish/subscribe is needed: client ids must be non-empty and unique, and
`search` always raises `StatusError` with `StatusCode.UNIMPLEMENTED`.

## Providers

`OllamaProvider(base_url)` posts to `<base_url>/api/generate`. The request
data must contain non-empty `model` and `prompt` strings; `stream: True`
is rejected. Connection errors and status 500, 502 and 503 are retried up
to twice, one second apart; 401 raises `UnauthorizedError`, 429
`RateLimitedError`, an incomplete reply `ProviderInternalError`.

`OpenAIProvider(api_key, base_url=...)` and
`OpenAIEmbeddingProvider(api_key, base_url=...)` need a base URL, either
passed in or from the environment variable `OPENAI_BASE_URL`. The chat
provider accepts either a `prompt` or a prepared `messages` list.

## Retrieval-augmented prompts

With the environment variable `PCAS_RAG_ENABLED` set to `true` and an
embedding provider configured, requests routed to the provider named
`openai-gpt4` are rewritten: the prompt becomes the user message of a
`messages` list whose system message carries the most relevant earlier
events of the same user (score above 0.4), rendered as Markdown within a
token budget. If nothing relevant is found the request keeps its prompt,
with `rag_applied` set to `False` and a `rag_reason` saying why. Failures
and timeouts leave the request as it was.

## What the package does not do

It has no command-line program and no network server: `BusServer` is an
in-process object, and exposing it over a network is left to the caller.
It ships no built-in test or mock compute provider; policy entries only
name providers, and the provider objects are passed to `BusServer` by the
caller.

## Running the tests

Install the package with its `test` extra and run `pytest` from the
project directory.
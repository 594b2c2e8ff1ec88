import asyncio
from datetime import datetime, timezone

import pytest

from pcas.model import Event, EventNotFoundError, QueryResult, Storage, StorageError
from pcas.providers import EmbeddingProvider
from pcas.rag import (
    EmbeddingCache,
    RagEnhancer,
    RateLimiter,
    SingleFlight,
    generate_query_text,
    render_events_markdown,
    render_single_event_markdown,
)

HEADER = "## Relevant Historical Context\n\n"


class _FakeStorage(Storage):
    def __init__(self, results=(), events=(), fail_batch=False):
        self.results = list(results)
        self.events = {event.id: event for event in events}
        self.fail_batch = fail_batch
        self.filters = []
        self.embeddings = {}

    def store_event(self, event, embedding=None):
        self.events[event.id] = event

    def get_event_by_id(self, event_id):
        try:
            return self.events[event_id]
        except KeyError:
            raise EventNotFoundError(event_id) from None

    def batch_get_events(self, ids):
        if self.fail_batch:
            raise StorageError("batch failed")
        return [self.events[i] for i in ids if i in self.events]

    def get_all_events(self, offset, limit):
        return list(self.events.values())[offset : offset + limit]

    def query_similar(self, embedding, top_k, filter=None):
        self.filters.append(filter)
        return self.results[:top_k]

    def add_embedding_to_event(self, event_id, embedding):
        self.embeddings[event_id] = list(embedding)

    def close(self):
        self.events.clear()


class _FakeEmbedder(EmbeddingProvider):
    def __init__(self, vector=(1.0, 0.0), error=None, delay=0.0):
        self.vector = list(vector)
        self.error = error
        self.delay = delay
        self.calls = []

    async def create_embedding(self, text):
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.vector)


def _enhancer(storage, embedder=None, **kwargs):
    kwargs.setdefault("enabled", True)
    return RagEnhancer(embedder or _FakeEmbedder(), storage, **kwargs)


def test_cache_evicts_least_recently_used():
    cache = EmbeddingCache(capacity=2)
    cache.set("a", [1.0])
    cache.set("b", [2.0])
    assert cache.get("a") == [1.0]
    cache.set("c", [3.0])
    assert cache.get("b") is None
    assert cache.get("a") == [1.0]
    assert cache.get("c") == [3.0]
    assert len(cache) == 2
    assert cache.hits == 3
    assert cache.misses == 1


def test_cache_set_replaces_existing_value():
    cache = EmbeddingCache(capacity=2)
    cache.set("a", [1.0])
    cache.set("a", [5.0])
    assert cache.get("a") == [5.0]
    assert len(cache) == 1


def test_cache_rejects_zero_capacity():
    with pytest.raises(ValueError):
        EmbeddingCache(capacity=0)


def test_generate_query_text_joins_fields_in_order():
    event = Event(subject="subj")
    data = {"text": "t", "prompt": "p", "query": "q", "message": "m", "other": "x"}
    assert generate_query_text(event, data) == "subj q p m t"


def test_generate_query_text_skips_empty_and_non_text():
    event = Event()
    assert generate_query_text(event, {"prompt": "", "query": 3}) == ""
    assert generate_query_text(event, None) == ""


def test_render_single_event_markdown():
    event = Event(
        type="user.note.v1",
        subject="groceries",
        time=datetime(2024, 5, 6, 7, 8, 9, tzinfo=timezone.utc),
        data={"description": "weekly", "prompt": "buy milk", "count": 3},
    )
    assert render_single_event_markdown(event) == (
        "**[2024-05-06 07:08]** user.note.v1: groceries\n"
        "  - prompt: buy milk\n"
        "  - description: weekly\n"
    )


def test_render_single_event_without_time_or_data():
    assert render_single_event_markdown(Event(type="user.task.v1")) == "user.task.v1\n"


def test_render_single_event_truncates_long_values():
    event = Event(type="t", data={"message": "x" * 250})
    line = render_single_event_markdown(event).splitlines()[1]
    value = line.split(": ", 1)[1]
    assert len(value) == 200
    assert value.endswith("...")


def test_render_events_markdown_empty_is_header():
    assert render_events_markdown([], 16000) == HEADER


def test_render_events_markdown_includes_all_within_budget():
    events = [Event(type="a", subject="one"), Event(type="b", subject="two")]
    text = render_events_markdown(events, 16000)
    assert text.startswith(HEADER)
    assert text.count("\n---\n\n") == 2
    assert "truncated" not in text
    assert text.index("a: one") < text.index("b: two")


def test_render_events_markdown_truncates_over_budget():
    events = [Event(type="a", subject="one"), Event(type="b", subject="two")]
    text = render_events_markdown(events, 40)
    assert "*... and 2 more relevant events (truncated due to token limit)*" in text
    assert "a: one" not in text


def test_rate_limiter_rejects_bad_parameters():
    with pytest.raises(ValueError):
        RateLimiter(rate=0)
    with pytest.raises(ValueError):
        RateLimiter(burst=0)


@pytest.mark.asyncio
async def test_rate_limiter_blocks_after_burst():
    limiter = RateLimiter(rate=10.0, burst=1)
    await asyncio.wait_for(limiter.wait(), 0.05)
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(limiter.wait(), 0.02)


@pytest.mark.asyncio
async def test_single_flight_shares_one_call():
    flight = SingleFlight()
    calls = []
    gate = asyncio.Event()

    async def work():
        calls.append("run")
        await gate.wait()
        return [0.5]

    first = asyncio.create_task(flight.do("k", work))
    second = asyncio.create_task(flight.do("k", work))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    gate.set()
    assert await first == [0.5]
    assert await second == [0.5]
    assert calls == ["run"]

    gate.set()
    assert await flight.do("k", work) == [0.5]
    assert calls == ["run", "run"]


@pytest.mark.asyncio
async def test_single_flight_shares_errors():
    flight = SingleFlight()
    gate = asyncio.Event()
    calls = []

    async def work():
        calls.append("run")
        await gate.wait()
        raise ValueError("bad")

    async def recover():
        calls.append("recover")
        return [2.0]

    first = asyncio.create_task(flight.do("k", work))
    second = asyncio.create_task(flight.do("k", work))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    gate.set()
    with pytest.raises(ValueError, match="bad") as first_error:
        await first
    with pytest.raises(ValueError, match="bad") as second_error:
        await second
    assert str(first_error.value) == "bad"
    assert str(second_error.value) == "bad"
    assert calls == ["run"]

    assert await flight.do("k", recover) == [2.0]
    assert calls == ["run", "recover"]


@pytest.mark.asyncio
async def test_apply_disabled_leaves_request_untouched():
    embedder = _FakeEmbedder()
    enhancer = _enhancer(_FakeStorage(), embedder, enabled=False)
    data = {"prompt": "hi"}
    result = await enhancer.apply(Event(id="e", subject="s"), data)
    assert result is data
    assert data == {"prompt": "hi"}
    assert embedder.calls == []


@pytest.mark.asyncio
async def test_apply_follows_environment(monkeypatch):
    storage = _FakeStorage()
    enhancer = _enhancer(storage, enabled=None)
    monkeypatch.setenv("PCAS_RAG_ENABLED", "false")
    assert await enhancer.apply(Event(id="e"), {"prompt": "hi"}) == {"prompt": "hi"}
    monkeypatch.setenv("PCAS_RAG_ENABLED", "true")
    result = await enhancer.apply(Event(id="e"), {"prompt": "hi"})
    assert result["rag_applied"] is False
    assert result["rag_reason"] == "no_similar_events"


@pytest.mark.asyncio
async def test_apply_injects_context_sorted_by_score():
    events = [
        Event(id="a", type="user.note.v1", subject="first note"),
        Event(id="b", type="user.note.v1", subject="second note"),
        Event(id="low", type="user.note.v1", subject="low note"),
    ]
    results = [
        QueryResult("self", 1.0),
        QueryResult("low", 0.3),
        QueryResult("a", 0.6),
        QueryResult("b", 0.9),
    ]
    storage = _FakeStorage(results, events)
    enhancer = _enhancer(storage)
    data = {"prompt": "what did I note"}
    event = Event(id="self", type="pcas.user.prompt.v1", user_id="alice")

    result = await enhancer.apply(event, data)

    assert result is data
    assert result["rag_applied"] is True
    assert result["rag_event_count"] == 2
    assert "prompt" not in result
    system, user = result["messages"]
    assert user == {"role": "user", "content": "what did I note"}
    assert system["role"] == "system"
    content = system["content"]
    assert "RELEVANT HISTORICAL CONTEXT:" in content
    assert content.index("second note") < content.index("first note")
    assert "low note" not in content
    assert storage.filters[0].user_id == "alice"


@pytest.mark.asyncio
async def test_apply_without_user_leaves_filter_open():
    storage = _FakeStorage()
    await _enhancer(storage).apply(Event(id="e", subject="s"), {})
    assert storage.filters[0].user_id is None


@pytest.mark.asyncio
async def test_apply_reports_only_self_as_no_similar_events():
    storage = _FakeStorage([QueryResult("e", 1.0)], [Event(id="e")])
    result = await _enhancer(storage).apply(Event(id="e", subject="s"), {"prompt": "p"})
    assert result["rag_applied"] is False
    assert result["rag_reason"] == "no_similar_events"
    assert result["prompt"] == "p"


@pytest.mark.asyncio
async def test_apply_reports_low_similarity():
    storage = _FakeStorage([QueryResult("x", 0.4)], [Event(id="x")])
    result = await _enhancer(storage).apply(Event(id="e", subject="s"), {})
    assert result["rag_reason"] == "low_similarity"
    assert result["rag_applied"] is False


@pytest.mark.asyncio
async def test_apply_reports_retrieval_error():
    storage = _FakeStorage([QueryResult("x", 0.9)], [Event(id="x")], fail_batch=True)
    result = await _enhancer(storage).apply(Event(id="e", subject="s"), {})
    assert result["rag_reason"] == "retrieval_error"


@pytest.mark.asyncio
async def test_apply_creates_request_when_none():
    result = await _enhancer(_FakeStorage()).apply(Event(id="e", subject="s"), None)
    assert result == {"rag_applied": False, "rag_reason": "no_similar_events"}


@pytest.mark.asyncio
async def test_apply_without_query_text_skips_embedding():
    embedder = _FakeEmbedder()
    data = {"other": "value"}
    result = await _enhancer(_FakeStorage(), embedder).apply(Event(id="e"), data)
    assert result == {"other": "value"}
    assert embedder.calls == []


@pytest.mark.asyncio
async def test_apply_survives_embedding_failure():
    embedder = _FakeEmbedder(error=RuntimeError("down"))
    data = {"prompt": "p"}
    result = await _enhancer(_FakeStorage(), embedder).apply(Event(id="e"), data)
    assert result == {"prompt": "p"}
    assert embedder.calls == ["p"]


@pytest.mark.asyncio
async def test_apply_gives_up_after_timeout():
    embedder = _FakeEmbedder(delay=1.0)
    enhancer = _enhancer(_FakeStorage(), embedder, timeout=0.05)
    result = await enhancer.apply(Event(id="e"), {"prompt": "p"})
    assert result == {"prompt": "p"}


@pytest.mark.asyncio
async def test_apply_caches_query_embedding():
    embedder = _FakeEmbedder()
    enhancer = _enhancer(_FakeStorage(), embedder)
    await enhancer.apply(Event(id="e1"), {"prompt": "same question"})
    await enhancer.apply(Event(id="e2"), {"prompt": "same question"})
    assert embedder.calls == ["same question"]
    assert enhancer.cache.hits == 1
    assert enhancer.cache.get("rag:same question") == [1.0, 0.0]
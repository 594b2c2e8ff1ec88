from datetime import datetime, timezone

import pytest

from pcas.model import Event, RawData
from pcas.providers import EmbeddingProvider
from pcas.sqlite_store import SQLiteStorage
from pcas.vectorize import (
    build_vector_metadata,
    extract_text_content,
    is_fact_event,
    vectorize_event,
)


class _FakeEmbedder(EmbeddingProvider):
    def __init__(self, vector=(1.0, 0.0, 0.0), error=None):
        self.vector = list(vector)
        self.error = error
        self.calls = []

    async def create_embedding(self, text):
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return list(self.vector)


@pytest.mark.parametrize(
    "event, expected",
    [
        (
            Event(type="test.event.v1", subject="This is the subject content"),
            "This is the subject content",
        ),
        (
            Event(type="test.event.v1", data={"content": "This is from data field"}),
            "This is from data field",
        ),
        (
            Event(
                type="test.event.v1",
                subject="Subject takes priority",
                data={"content": "This is from data field"},
            ),
            "Subject takes priority",
        ),
        (Event(type="test.event.v1"), ""),
        (
            Event(
                type="test.event.v1",
                data={"prompt": "This is a prompt", "message": "This is a message"},
            ),
            "This is a prompt This is a message",
        ),
        (
            Event(type="test.event.v1", data={"count": 42, "enabled": True}),
            '{"count":42,"enabled":true}',
        ),
    ],
)
def test_extract_text_content(event, expected):
    assert extract_text_content(event) == expected


def test_extract_text_content_invalid_data():
    event = Event(
        type="test.event.v1",
        data=RawData(type_url="type.googleapis.com/invalid.Type", value=b"invalid data"),
    )
    assert extract_text_content(event) == ""


def test_extract_text_content_integral_float_is_compact():
    event = Event(data={"count": 42.0})
    assert extract_text_content(event) == '{"count":42}'


def test_extract_text_content_non_mapping_data():
    assert extract_text_content(Event(data=["a", "b"])) == ""


def test_extract_text_content_field_order():
    event = Event(data={"description": "d", "text": "t", "response": "r", "prompt": "p"})
    assert extract_text_content(event) == "p r t d"


@pytest.mark.parametrize(
    "event_type",
    [
        "pcas.memory.create.v1",
        "pcas.user.fact.v1",
        "user.note.v1",
        "user.reminder.v1",
        "user.task.v1",
        "user.memory.v1",
    ],
)
def test_is_fact_event_accepts_whitelist(event_type):
    assert is_fact_event(event_type) is True


@pytest.mark.parametrize("event_type", ["pcas.response.v1", "pcas.user.prompt.v1", ""])
def test_is_fact_event_rejects_others(event_type):
    assert is_fact_event(event_type) is False


def test_build_vector_metadata_full():
    event = Event(
        type="user.note.v1",
        source="cli",
        time=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        user_id="alice",
        session_id="s1",
        trace_id="t1",
        correlation_id="c1",
    )
    assert build_vector_metadata(event) == {
        "event_type": "user.note.v1",
        "event_source": "cli",
        "timestamp_unix": "1704164645",
        "timestamp": "2024-01-02T03:04:05Z",
        "user_id": "alice",
        "session_id": "s1",
        "trace_id": "t1",
        "correlation_id": "c1",
    }


def test_build_vector_metadata_minimal():
    assert build_vector_metadata(Event(type="x", source="y")) == {
        "event_type": "x",
        "event_source": "y",
    }


@pytest.mark.asyncio
async def test_vectorize_event_stores_embedding():
    storage = SQLiteStorage(":memory:")
    try:
        event = Event(id="note-1", type="user.note.v1", subject="buy milk")
        storage.store_event(event)
        embedder = _FakeEmbedder()
        assert await vectorize_event(event, embedder, storage) is True
        assert embedder.calls == ["buy milk"]
        results = storage.query_similar([1.0, 0.0, 0.0], 5)
        assert [r.id for r in results] == ["note-1"]
        assert results[0].score == pytest.approx(1.0)
    finally:
        storage.close()


@pytest.mark.asyncio
async def test_vectorize_event_without_text_does_nothing():
    storage = SQLiteStorage(":memory:")
    try:
        event = Event(id="empty", type="user.note.v1")
        storage.store_event(event)
        embedder = _FakeEmbedder()
        assert await vectorize_event(event, embedder, storage) is False
        assert embedder.calls == []
    finally:
        storage.close()


@pytest.mark.asyncio
async def test_vectorize_event_for_unknown_event_fails():
    storage = SQLiteStorage(":memory:")
    try:
        event = Event(id="missing", subject="text")
        assert await vectorize_event(event, _FakeEmbedder(), storage) is False
        assert storage.query_similar([1.0, 0.0, 0.0], 5) == []
    finally:
        storage.close()


@pytest.mark.asyncio
async def test_vectorize_event_embedding_failure():
    storage = SQLiteStorage(":memory:")
    try:
        event = Event(id="e", subject="text")
        storage.store_event(event)
        embedder = _FakeEmbedder(error=RuntimeError("down"))
        assert await vectorize_event(event, embedder, storage) is False
        assert embedder.calls == ["text"]
    finally:
        storage.close()
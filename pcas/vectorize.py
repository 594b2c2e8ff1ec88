"""Choosing which events to embed, and turning them into stored embeddings."""

from __future__ import annotations

import asyncio
import calendar
import json
import logging
from datetime import timezone
from typing import Any

from pcas.model import Event, Storage
from pcas.providers import EmbeddingProvider

log = logging.getLogger(__name__)

FACT_EVENT_TYPES = frozenset(
    {
        "pcas.memory.create.v1",
        "pcas.user.fact.v1",
        "user.note.v1",
        "user.reminder.v1",
        "user.task.v1",
        "user.memory.v1",
    }
)
TEXT_FIELDS = ("prompt", "response", "message", "text", "content", "description")
VECTORIZE_TIMEOUT = 30.0

_JSON_ESCAPES = (
    ("<", "\\u003c"),
    (">", "\\u003e"),
    ("&", "\\u0026"),
    ("\u2028", "\\u2028"),
    ("\u2029", "\\u2029"),
)


def is_fact_event(event_type: str) -> bool:
    """Tell whether events of this type hold facts worth embedding."""
    return event_type in FACT_EVENT_TYPES


def _normalize(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e21:
        return int(value)
    if isinstance(value, dict):
        return {key: _normalize(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_normalize(item) for item in value]
    return value


def _compact_json(value: Any) -> str:
    text = json.dumps(
        _normalize(value),
        ensure_ascii=False,
        separators=(",", ":"),
        sort_keys=True,
        allow_nan=False,
    )
    for raw, escaped in _JSON_ESCAPES:
        text = text.replace(raw, escaped)
    return text


def extract_text_content(event: Event) -> str:
    """Return the text to embed: the subject, else textual data fields, else the data as JSON."""
    if event.subject:
        return event.subject
    data = event.struct_data()
    if not isinstance(data, dict):
        return ""
    parts = [
        value for field in TEXT_FIELDS if isinstance(value := data.get(field), str) and value
    ]
    if parts:
        return " ".join(parts)
    try:
        return _compact_json(data)
    except (TypeError, ValueError):
        return ""


def build_vector_metadata(event: Event) -> dict[str, str]:
    """Describe an event's embedding with string metadata."""
    metadata = {"event_type": event.type, "event_source": event.source}
    if event.time is not None:
        moment = event.time
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        moment = moment.astimezone(timezone.utc)
        metadata["timestamp_unix"] = str(calendar.timegm(moment.timetuple()))
        metadata["timestamp"] = moment.strftime("%Y-%m-%dT%H:%M:%SZ")
    optional = {
        "user_id": event.user_id,
        "session_id": event.session_id,
        "trace_id": event.trace_id,
        "correlation_id": event.correlation_id,
    }
    metadata.update({key: value for key, value in optional.items() if value})
    return metadata


async def vectorize_event(
    event: Event,
    embedding_provider: EmbeddingProvider,
    storage: Storage,
) -> bool:
    """Embed a stored event's text and attach it; return whether it was stored.

    Failures are logged, not raised.
    """
    text = extract_text_content(event)
    if not text:
        return False
    log.info('Vectorizing content for event %s (type: %s): "%s"', event.id, event.type, text)

    try:
        embedding = await asyncio.wait_for(
            embedding_provider.create_embedding(text), VECTORIZE_TIMEOUT
        )
    except Exception as exc:
        log.warning("Failed to create embedding for event %s: %s", event.id, exc)
        return False

    log.debug("Embedding metadata for event %s: %s", event.id, build_vector_metadata(event))

    try:
        storage.add_embedding_to_event(event.id, embedding)
    except Exception as exc:
        log.warning("Failed to add embedding to event %s: %s", event.id, exc)
        return False

    log.info("Vectorized event %s (type: %s)", event.id, event.type)
    return True
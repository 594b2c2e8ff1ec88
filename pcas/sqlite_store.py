"""Event storage on SQLite with a persistent vector index for similarity search.

Events and vectors are both stored as nodes; an ``embedding_of`` edge links
a vector node to the event it describes. The vector index lives next to the
database file (``<name>.hnsw``). It is rebuilt from the vector nodes
whenever that file is missing or unreadable.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, Sequence

from pcas.model import (
    Event,
    EventNotFoundError,
    Filter,
    QueryResult,
    RawData,
    Storage,
    StorageError,
)
from pcas.vectors import VectorIndex, cosine_distance, deserialize_vector, serialize_vector

log = logging.getLogger(__name__)

EMBEDDING_EDGE = "embedding_of"
FILTER_OVERSAMPLE = 10
_CHUNK = 500

_SCHEMA = """
CREATE TABLE IF NOT EXISTS nodes (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    content TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE IF NOT EXISTS edges (
    id TEXT PRIMARY KEY,
    source_node_id TEXT NOT NULL,
    target_node_id TEXT NOT NULL,
    label TEXT NOT NULL,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (source_node_id) REFERENCES nodes(id),
    FOREIGN KEY (target_node_id) REFERENCES nodes(id)
);
CREATE INDEX IF NOT EXISTS idx_nodes_type ON nodes(type);
CREATE INDEX IF NOT EXISTS idx_nodes_created_at ON nodes(created_at);
CREATE INDEX IF NOT EXISTS idx_edges_source_node_id ON edges(source_node_id);
CREATE INDEX IF NOT EXISTS idx_edges_target_node_id ON edges(target_node_id);
CREATE INDEX IF NOT EXISTS idx_edges_label ON edges(label);
CREATE INDEX IF NOT EXISTS idx_edges_source_label ON edges(source_node_id, label);
"""

_OPTIONAL_TEXT_FIELDS = ("subject", "trace_id", "correlation_id", "user_id", "session_id")


def _format_time(moment: datetime) -> str:
    """Format as RFC 3339 in UTC with second precision; naive times count as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_time(text: str) -> datetime | None:
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        moment = datetime.fromisoformat(text)
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def _event_to_json(event: Event) -> str:
    record: dict[str, Any] = {
        "id": event.id,
        "type": event.type,
        "source": event.source,
        "specversion": event.specversion,
    }
    for name in _OPTIONAL_TEXT_FIELDS:
        value = getattr(event, name)
        if value:
            record[name] = value
    if event.time is not None:
        record["time"] = _format_time(event.time)
    if event.data is not None:
        if isinstance(event.data, RawData):
            record["data"] = {"_type": event.data.type_url}
        else:
            record["data"] = event.struct_data()
    return json.dumps(record)


def _event_from_json(content: str) -> Event:
    """Rebuild an event; raise ``ValueError`` if the content is malformed."""
    record = json.loads(content)
    if not isinstance(record, dict):
        raise ValueError("event content is not a JSON object")

    def text(name: str) -> str:
        value = record.get(name)
        return value if isinstance(value, str) else ""

    event = Event(
        id=text("id"),
        type=text("type"),
        source=text("source"),
        specversion=text("specversion"),
        **{name: text(name) for name in _OPTIONAL_TEXT_FIELDS},
    )
    time_text = record.get("time")
    if isinstance(time_text, str):
        event.time = _parse_time(time_text)
    if "data" in record:
        event.data = record["data"]
    return event


def _chunks(items: Sequence[str]) -> Iterator[Sequence[str]]:
    for start in range(0, len(items), _CHUNK):
        yield items[start : start + _CHUNK]


def _placeholders(count: int) -> str:
    return ",".join("?" * count)


class SQLiteStorage(Storage):
    """A :class:`Storage` backed by one SQLite database file."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = os.fspath(path)
        base = self.path[:-3] if self.path.endswith(".db") else self.path
        self.index_path = base + ".hnsw"
        self._lock = threading.RLock()
        self._last_ns = 0
        try:
            self._conn = sqlite3.connect(self.path, check_same_thread=False)
        except sqlite3.Error as exc:
            raise StorageError(f"failed to open SQLite database: {exc}") from exc
        try:
            self._init_schema()
            self._index = self._init_index()
        except BaseException:
            self._conn.close()
            raise

    @property
    def _in_memory(self) -> bool:
        return self.index_path == ".hnsw" or self.index_path.startswith(":memory:")

    def _init_schema(self) -> None:
        try:
            self._conn.executescript(_SCHEMA)
            self._conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"failed to initialize schema: {exc}") from exc

    def _init_index(self) -> VectorIndex:
        if self._in_memory:
            return VectorIndex()
        try:
            index = VectorIndex.load(self.index_path)
        except (OSError, ValueError):
            log.info("No existing vector index found at %s, rebuilding from database", self.index_path)
        else:
            log.info("Loaded vector index from %s", self.index_path)
            return index

        index = VectorIndex()
        try:
            rows = self._conn.execute("SELECT id, content FROM nodes WHERE type = 'vector'").fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"failed to query vector nodes: {exc}") from exc
        rebuilt = 0
        for vector_id, blob in rows:
            embedding = deserialize_vector(blob if isinstance(blob, bytes) else b"")
            if embedding:
                index.add(vector_id, embedding)
                rebuilt += 1
        log.info("Rebuilt vector index with %d vectors", rebuilt)
        if rebuilt:
            try:
                index.save(self.index_path)
            except OSError as exc:
                log.error("Failed to save vector index: %s", exc)
        return index

    def _unique_ns(self) -> int:
        now = time.time_ns()
        if now <= self._last_ns:
            now = self._last_ns + 1
        self._last_ns = now
        return now

    def store_event(self, event: Event, embedding: Sequence[float] | None = None) -> None:
        content = _event_to_json(event)
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(
                        "INSERT INTO nodes (id, type, content) VALUES (?, ?, ?)",
                        (event.id, "event", content),
                    )
            except sqlite3.Error as exc:
                raise StorageError(f"failed to store event node: {exc}") from exc
            if embedding:
                vector_id = self.store_vector(embedding)
                self.create_edge(vector_id, event.id, EMBEDDING_EDGE)

    def store_vector(self, vector: Sequence[float]) -> str:
        """Store a vector node, add it to the index and return its id."""
        values = list(vector)
        with self._lock:
            vector_id = f"vec_{self._unique_ns()}_{len(values)}"
            try:
                with self._conn:
                    self._conn.execute(
                        "INSERT INTO nodes (id, type, content) VALUES (?, ?, ?)",
                        (vector_id, "vector", serialize_vector(values)),
                    )
                    self._index.add(vector_id, values)
            except sqlite3.Error as exc:
                raise StorageError(f"failed to store vector node: {exc}") from exc
        return vector_id

    def create_edge(self, source_id: str, target_id: str, label: str) -> None:
        """Link two nodes with a labelled edge."""
        with self._lock:
            edge_id = f"edge_{source_id}_{target_id}_{self._unique_ns()}"
            try:
                with self._conn:
                    self._conn.execute(
                        "INSERT INTO edges (id, source_node_id, target_node_id, label) "
                        "VALUES (?, ?, ?, ?)",
                        (edge_id, source_id, target_id, label),
                    )
            except sqlite3.Error as exc:
                raise StorageError(f"failed to create edge: {exc}") from exc

    def add_embedding_to_event(self, event_id: str, embedding: Sequence[float]) -> None:
        with self._lock:
            try:
                row = self._conn.execute(
                    "SELECT EXISTS(SELECT 1 FROM nodes WHERE id = ? AND type = 'event')",
                    (event_id,),
                ).fetchone()
            except sqlite3.Error as exc:
                raise StorageError(f"failed to check event existence: {exc}") from exc
            if not row or not row[0]:
                raise EventNotFoundError(event_id)
            vector_id = self.store_vector(embedding)
            self.create_edge(vector_id, event_id, EMBEDDING_EDGE)

    def get_event_by_id(self, event_id: str) -> Event:
        with self._lock:
            try:
                row = self._conn.execute(
                    "SELECT content FROM nodes WHERE id = ? AND type = 'event'", (event_id,)
                ).fetchone()
            except sqlite3.Error as exc:
                raise StorageError(f"failed to retrieve event: {exc}") from exc
        if row is None:
            raise EventNotFoundError(event_id)
        try:
            return _event_from_json(row[0])
        except (TypeError, ValueError) as exc:
            raise StorageError(f"failed to deserialize event: {exc}") from exc

    def _events_from_rows(self, rows: Iterable[tuple[str, str]]) -> list[Event]:
        events = []
        for _, content in rows:
            try:
                events.append(_event_from_json(content))
            except (TypeError, ValueError):
                continue
        return events

    def batch_get_events(self, ids: Sequence[str]) -> list[Event]:
        ids = list(ids)
        if not ids:
            return []
        rows: list[tuple[str, str]] = []
        with self._lock:
            try:
                for chunk in _chunks(ids):
                    rows.extend(
                        self._conn.execute(
                            f"SELECT id, content FROM nodes "
                            f"WHERE id IN ({_placeholders(len(chunk))}) AND type = 'event'",
                            list(chunk),
                        ).fetchall()
                    )
            except sqlite3.Error as exc:
                raise StorageError(f"failed to query events: {exc}") from exc
        return self._events_from_rows(rows)

    def get_all_events(self, offset: int, limit: int) -> list[Event]:
        with self._lock:
            try:
                rows = self._conn.execute(
                    "SELECT id, content FROM nodes WHERE type = 'event' "
                    "ORDER BY created_at ASC, rowid ASC LIMIT ? OFFSET ?",
                    (limit, offset),
                ).fetchall()
            except sqlite3.Error as exc:
                raise StorageError(f"failed to query events: {exc}") from exc
        return self._events_from_rows(rows)

    def _find_filtered_event_ids(self, filter: Filter) -> set[str]:
        conditions: list[str] = []
        args: list[Any] = []
        if filter.user_id is not None:
            conditions.append("json_extract(content, '$.user_id') = ?")
            args.append(filter.user_id)
        if filter.session_id is not None:
            conditions.append("json_extract(content, '$.session_id') = ?")
            args.append(filter.session_id)
        if filter.event_types:
            conditions.append(
                f"json_extract(content, '$.type') IN ({_placeholders(len(filter.event_types))})"
            )
            args.extend(filter.event_types)
        if filter.time_from is not None:
            conditions.append("datetime(json_extract(content, '$.time')) >= datetime(?)")
            args.append(_format_time(filter.time_from))
        if filter.time_to is not None:
            conditions.append("datetime(json_extract(content, '$.time')) <= datetime(?)")
            args.append(_format_time(filter.time_to))
        for key, value in filter.attribute_filters.items():
            conditions.append("json_extract(content, ?) = ?")
            args.append(f'$.attributes."{key}"')
            args.append(value)

        query = "SELECT id FROM nodes WHERE type = 'event'"
        if conditions:
            query += " AND " + " AND ".join(conditions)
        try:
            rows = self._conn.execute(query, args).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"failed to filter events: {exc}") from exc
        return {row[0] for row in rows}

    def _search(self, embedding: Sequence[float], k: int) -> list[tuple[str, list[float]]]:
        try:
            return self._index.search(embedding, k)
        except ValueError as exc:
            raise StorageError(f"failed to search vector index: {exc}") from exc

    def query_similar(
        self,
        embedding: Sequence[float],
        top_k: int,
        filter: Filter | None = None,
    ) -> list[QueryResult]:
        if not embedding:
            raise ValueError("embedding cannot be empty")
        if top_k <= 0:
            raise ValueError("topK must be positive")

        with self._lock:
            if filter is not None:
                eligible = self._find_filtered_event_ids(filter)
                if not eligible:
                    return []
                allowed: set[str] = set()
                try:
                    for chunk in _chunks(sorted(eligible)):
                        allowed.update(
                            row[0]
                            for row in self._conn.execute(
                                f"SELECT source_node_id FROM edges "
                                f"WHERE target_node_id IN ({_placeholders(len(chunk))}) "
                                f"AND label = ?",
                                [*chunk, EMBEDDING_EDGE],
                            )
                        )
                except sqlite3.Error as exc:
                    raise StorageError(f"failed to query vector nodes: {exc}") from exc
                candidates = self._search(embedding, top_k * FILTER_OVERSAMPLE)
                nodes = [node for node in candidates if node[0] in allowed][:top_k]
            else:
                nodes = self._search(embedding, top_k)

            if not nodes:
                return []
            scores = {key: 1.0 - cosine_distance(embedding, vector) for key, vector in nodes}
            events_of: dict[str, list[str]] = {}
            try:
                vector_ids = [key for key, _ in nodes]
                for chunk in _chunks(vector_ids):
                    for vector_id, event_id in self._conn.execute(
                        f"SELECT source_node_id, target_node_id FROM edges "
                        f"WHERE source_node_id IN ({_placeholders(len(chunk))}) AND label = ?",
                        [*chunk, EMBEDDING_EDGE],
                    ):
                        events_of.setdefault(vector_id, []).append(event_id)
            except sqlite3.Error as exc:
                raise StorageError(f"failed to query edges: {exc}") from exc

        return [
            QueryResult(id=event_id, score=scores[key])
            for key, _ in nodes
            for event_id in events_of.get(key, [])
        ]

    def close(self) -> None:
        with self._lock:
            if not self._in_memory:
                log.info("Saving vector index to %s before closing", self.index_path)
                try:
                    self._index.save(self.index_path)
                except OSError as exc:
                    log.error("Failed to save vector index on close: %s", exc)
            try:
                self._conn.close()
            except sqlite3.Error as exc:
                raise StorageError(f"failed to close database: {exc}") from exc
"""Event model, query types and the storage interface."""

from __future__ import annotations

import abc
import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence


def new_event_id() -> str:
    """Return a fresh random event identifier."""
    return str(uuid.uuid4())


@dataclass(frozen=True)
class RawData:
    """An opaque event payload that is not a structured value."""

    type_url: str
    value: bytes = b""


@dataclass
class Event:
    """A CloudEvents-style event travelling over the bus.

    ``data`` holds a structured JSON-like value, a :class:`RawData`
    payload, or ``None`` when the event carries no data.
    """

    id: str = ""
    type: str = ""
    source: str = ""
    specversion: str = ""
    subject: str = ""
    time: datetime | None = None
    data: Any = None
    trace_id: str = ""
    correlation_id: str = ""
    user_id: str = ""
    session_id: str = ""

    def struct_data(self) -> Any:
        """Return the structured payload, or ``None`` if there is none."""
        if self.data is None or isinstance(self.data, RawData):
            return None
        return self.data


@dataclass
class Filter:
    """Optional restrictions applied to a similarity query."""

    user_id: str | None = None
    session_id: str | None = None
    event_types: list[str] = field(default_factory=list)
    time_from: datetime | None = None
    time_to: datetime | None = None
    attribute_filters: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class QueryResult:
    """One hit of a similarity query; a higher score is more similar."""

    id: str
    score: float


class StatusCode(enum.IntEnum):
    """RPC status codes."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


class StatusError(Exception):
    """An error that carries an RPC status code."""

    def __init__(self, code: StatusCode, message: str) -> None:
        super().__init__(message)
        self.code = StatusCode(code)
        self.message = message


class StorageError(Exception):
    """Raised when the storage backend fails."""


class EventNotFoundError(StorageError):
    """Raised when an event id is not present in storage."""

    def __init__(self, event_id: str) -> None:
        super().__init__(f"event not found: {event_id}")
        self.event_id = event_id


class Storage(abc.ABC):
    """Persistent store for events and their embeddings."""

    @abc.abstractmethod
    def store_event(self, event: Event, embedding: Sequence[float] | None = None) -> None:
        """Persist an event, optionally with an embedding."""

    @abc.abstractmethod
    def get_event_by_id(self, event_id: str) -> Event:
        """Return one event; raise :class:`EventNotFoundError` if absent."""

    @abc.abstractmethod
    def batch_get_events(self, ids: Sequence[str]) -> list[Event]:
        """Return the events among ``ids`` that exist."""

    @abc.abstractmethod
    def get_all_events(self, offset: int, limit: int) -> list[Event]:
        """Return a page of events in insertion order."""

    @abc.abstractmethod
    def query_similar(
        self,
        embedding: Sequence[float],
        top_k: int,
        filter: Filter | None = None,
    ) -> list[QueryResult]:
        """Return the events whose embeddings are closest to ``embedding``."""

    @abc.abstractmethod
    def add_embedding_to_event(self, event_id: str, embedding: Sequence[float]) -> None:
        """Attach an embedding to an already stored event."""

    @abc.abstractmethod
    def close(self) -> None:
        """Release the backend."""

    def __enter__(self) -> "Storage":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
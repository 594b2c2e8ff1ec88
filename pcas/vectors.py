"""Vector serialization, cosine distance and a persistent nearest-neighbour index."""

from __future__ import annotations

import heapq
import math
import os
import struct
import tempfile
import threading
from pathlib import Path
from typing import Iterable, Sequence

_MAGIC = b"PCVX"
_VERSION = 1
_HEADER = struct.Struct("<4sHII")
_KEY_LENGTH = struct.Struct("<I")


def serialize_vector(vector: Iterable[float]) -> bytes:
    """Encode a vector as consecutive little-endian float32 values."""
    values = list(vector)
    return struct.pack(f"<{len(values)}f", *values)


def deserialize_vector(data: bytes) -> list[float]:
    """Decode little-endian float32 values; malformed or empty input gives ``[]``."""
    if not data or len(data) % 4:
        return []
    return list(struct.unpack(f"<{len(data) // 4}f", data))


def cosine_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """Return ``1 - cosine similarity``; a zero vector is at distance 1 from anything."""
    if len(a) != len(b):
        raise ValueError(f"vector dimensions differ: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 1.0
    return 1.0 - dot / (norm_a * norm_b)


class VectorIndex:
    """An exact cosine-distance index keyed by string identifiers.

    Adding a key that is already present replaces its vector. All vectors
    in one index share a dimension.
    """

    def __init__(self) -> None:
        self._vectors: dict[str, tuple[float, ...]] = {}
        self._dimension: int | None = None
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._vectors)

    def __contains__(self, key: object) -> bool:
        return key in self._vectors

    @property
    def dimension(self) -> int | None:
        """The shared dimension of stored vectors, or ``None`` when empty."""
        return self._dimension

    def add(self, key: str, vector: Iterable[float]) -> None:
        """Insert or replace the vector stored under ``key``."""
        values = tuple(float(v) for v in vector)
        if not values:
            raise ValueError("vector must not be empty")
        with self._lock:
            only_self = len(self._vectors) == 1 and key in self._vectors
            if self._vectors and not only_self and len(values) != self._dimension:
                raise ValueError(
                    f"vector dimension {len(values)} does not match index dimension {self._dimension}"
                )
            self._vectors.pop(key, None)
            self._vectors[key] = values
            self._dimension = len(values)

    def search(self, query: Sequence[float], k: int) -> list[tuple[str, list[float]]]:
        """Return up to ``k`` ``(key, vector)`` pairs, nearest first."""
        if k <= 0:
            return []
        with self._lock:
            if not self._vectors:
                return []
            if len(query) != self._dimension:
                raise ValueError(
                    f"query dimension {len(query)} does not match index dimension {self._dimension}"
                )
            nearest = heapq.nsmallest(
                k,
                self._vectors.items(),
                key=lambda item: cosine_distance(query, item[1]),
            )
        return [(key, list(vector)) for key, vector in nearest]

    def save(self, path: str | os.PathLike[str]) -> None:
        """Write the index to ``path`` atomically."""
        target = Path(path)
        with self._lock:
            chunks = [_HEADER.pack(_MAGIC, _VERSION, self._dimension or 0, len(self._vectors))]
            for key, vector in self._vectors.items():
                encoded = key.encode("utf-8")
                chunks.append(_KEY_LENGTH.pack(len(encoded)))
                chunks.append(encoded)
                chunks.append(serialize_vector(vector))
        payload = b"".join(chunks)
        directory = target.parent if str(target.parent) else Path(".")
        handle = tempfile.NamedTemporaryFile(
            dir=directory, prefix=target.name, suffix=".tmp", delete=False
        )
        try:
            with handle:
                handle.write(payload)
            os.replace(handle.name, target)
        except BaseException:
            Path(handle.name).unlink(missing_ok=True)
            raise

    @classmethod
    def load(cls, path: str | os.PathLike[str]) -> "VectorIndex":
        """Read an index written by :meth:`save`; raise ``ValueError`` if malformed."""
        data = Path(path).read_bytes()
        if len(data) < _HEADER.size:
            raise ValueError("vector index file is truncated")
        magic, version, dimension, count = _HEADER.unpack_from(data)
        if magic != _MAGIC:
            raise ValueError("not a vector index file")
        if version != _VERSION:
            raise ValueError(f"unsupported vector index version {version}")
        index = cls()
        offset = _HEADER.size
        vector_size = dimension * 4
        for _ in range(count):
            if offset + _KEY_LENGTH.size > len(data):
                raise ValueError("vector index file is truncated")
            (key_length,) = _KEY_LENGTH.unpack_from(data, offset)
            offset += _KEY_LENGTH.size
            end = offset + key_length + vector_size
            if end > len(data):
                raise ValueError("vector index file is truncated")
            try:
                key = data[offset : offset + key_length].decode("utf-8")
            except UnicodeDecodeError as exc:
                raise ValueError("vector index key is not valid UTF-8") from exc
            offset += key_length
            index.add(key, deserialize_vector(data[offset:end]))
            offset = end
        if offset != len(data):
            raise ValueError("vector index file has trailing data")
        return index
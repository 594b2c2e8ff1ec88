"""Local-first event bus with policy routing, SQLite storage and semantic search."""

__version__ = "0.1.0"
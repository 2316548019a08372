"""Storage backends for the history search index."""

from .base import (
    ChunkDraft,
    ChunkRecord,
    LexicalHit,
    LexicalScope,
    PageRecord,
    PageVectors,
    SearchStore,
    StoreStats,
    VectorHit,
    VectorScope,
)
from .duckdb import DuckDBSearchStore

__all__ = [
    "ChunkDraft",
    "ChunkRecord",
    "LexicalHit",
    "LexicalScope",
    "PageRecord",
    "PageVectors",
    "SearchStore",
    "StoreStats",
    "VectorHit",
    "VectorScope",
    "DuckDBSearchStore",
]

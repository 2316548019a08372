"""Indexing components for history search."""

from .chunker import TextChunk, TokenChunker, chunk
from .pipeline import (
    FirstChunkSummary,
    IndexingOutcome,
    IndexingPipeline,
    IndexingState,
    PageContext,
    SummaryPolicy,
    SuppliedSummary,
    summary_policy_for,
)
from .worker import BackgroundIndexer

__all__ = [
    "TextChunk",
    "TokenChunker",
    "chunk",
    "FirstChunkSummary",
    "IndexingOutcome",
    "IndexingPipeline",
    "IndexingState",
    "PageContext",
    "SummaryPolicy",
    "SuppliedSummary",
    "summary_policy_for",
    "BackgroundIndexer",
]

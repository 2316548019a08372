"""
Storage interfaces and data models for index persistence.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Protocol, Sequence, TypeAlias

from pydantic import JsonValue

VectorScope: TypeAlias = Literal["title", "summary", "chunk"]
LexicalScope: TypeAlias = Literal["page", "chunk"]


@dataclass(frozen=True)
class PageRecord:
    """A visited page, one row per distinct URL."""

    id: int
    url: str
    title: str
    summary: str | None
    full_text: str | None
    domain: str
    first_visited_at: float
    last_visited_at: float
    visit_count: int
    is_saved: bool
    needs_reindex: bool
    embedding_dim: int | None
    workspace_id: str | None = None

    @property
    def is_indexed(self) -> bool:
        return self.embedding_dim is not None and not self.needs_reindex

    @property
    def snippet(self) -> str:
        text = self.summary or self.full_text or self.title or ""
        return text[:200].strip()


@dataclass(frozen=True)
class ChunkDraft:
    """A chunk to be written; ids are assigned by the store."""

    position: int
    text: str
    token_count: int


@dataclass(frozen=True)
class ChunkRecord:
    """A stored chunk of a page's body text."""

    id: int
    page_id: int
    position: int
    text: str
    token_count: int


@dataclass(frozen=True)
class PageVectors:
    """All embeddings for one page, chunk vectors ordered by chunk position."""

    title: list[float]
    summary: list[float]
    chunks: list[list[float]]


@dataclass(frozen=True)
class VectorHit:
    """A vector index match; ``chunk_id`` is set for chunk-scope hits."""

    page_id: int
    similarity: float
    last_visited_at: float
    chunk_id: int | None = None


@dataclass(frozen=True)
class LexicalHit:
    """A keyword match; ``chunk_id`` is set for chunk-scope hits."""

    page_id: int
    relevance: float
    last_visited_at: float
    chunk_id: int | None = None


@dataclass(frozen=True)
class StoreStats:
    """Counters for diagnostics."""

    page_count: int
    chunk_count: int
    indexed_count: int
    pending_count: int
    saved_count: int
    dimension: int


class SearchStore(Protocol):
    """Protocol for the persistence operations used by indexing and search."""

    @property
    def dimension(self) -> int:
        """The vector dimension the store currently accepts."""

    def upsert_page(
        self,
        url: str,
        title: str | None,
        summary: str | None = None,
        *,
        full_text: str | None = None,
        visited_at: float | None = None,
        workspace_id: str | None = None,
    ) -> int:
        """Insert or update page metadata, recording a visit. Return page id."""

    def replace_chunks(self, page_id: int, chunks: Sequence[ChunkDraft]) -> None:
        """Atomically swap the page's chunk set."""

    def set_embeddings(
        self,
        page_id: int,
        title_vec: Sequence[float],
        summary_vec: Sequence[float],
        chunk_vecs: Sequence[Sequence[float]],
    ) -> None:
        """Store all vectors for a page, or nothing on any dimension mismatch."""

    def index_page_content(
        self,
        page_id: int,
        *,
        summary: str | None,
        chunks: Sequence[ChunkDraft],
        vectors: PageVectors | None,
    ) -> None:
        """Write summary, chunk set and vectors as one transaction."""

    def vector_search(
        self, query_vec: Sequence[float], scope: VectorScope, k: int
    ) -> list[VectorHit]:
        """Rank rows of ``scope`` by cosine similarity to ``query_vec``."""

    def lexical_search(self, query_text: str, scope: LexicalScope, k: int) -> list[LexicalHit]:
        """Rank rows of ``scope`` by keyword relevance."""

    def reconfigure_dimension(self, new_dim: int) -> int:
        """Drop vectors of any other dimension. Return the number of pages affected."""

    def toggle_saved(self, url: str) -> bool:
        """Flip the saved flag for ``url`` and return the new value."""

    def is_saved(self, url: str) -> bool:
        """Return whether ``url`` is saved."""

    def get_page(self, page_id: int) -> PageRecord | None:
        """Get a page by id."""

    def get_pages(self, page_ids: Sequence[int]) -> dict[int, PageRecord]:
        """Get several pages keyed by id."""

    def get_page_by_url(self, url: str) -> PageRecord | None:
        """Get a page by URL."""

    def get_chunks(self, page_id: int) -> list[ChunkRecord]:
        """Return a page's chunks ordered by position."""

    def get_chunks_by_id(self, chunk_ids: Sequence[int]) -> dict[int, ChunkRecord]:
        """Get several chunks keyed by id."""

    def mark_needs_reindex(self, page_id: int) -> None:
        """Flag a page whose stored vectors no longer match its text."""

    def pages_needing_reindex(self, limit: int = 50) -> list[PageRecord]:
        """Pages whose vectors are missing or stale and whose text is stored."""

    def list_saved(self) -> list[PageRecord]:
        """Saved pages, most recently visited first."""

    def delete_page(self, url: str) -> bool:
        """Remove a page with its chunks and vectors."""

    def delete_pages_older_than(self, days: float, *, now: float | None = None) -> int:
        """Remove unsaved pages not visited within ``days``."""

    def stats(self) -> StoreStats:
        """Return index counters."""

    def get_meta(self, key: str) -> JsonValue:
        """Read a store metadata value."""

    def set_meta(self, key: str, value: JsonValue) -> None:
        """Write a store metadata value."""

    def clear(self) -> None:
        """Delete every page, chunk and vector."""

    def checkpoint(self) -> None:
        """Flush pending writes to disk."""

    def close(self) -> None:
        """Release the underlying connection."""

"""
Facade that wires the store, embedding provider, pipeline and engine together.

This is the surface the browser talks to: page-load observers call
``index_page`` or ``submit``, the query UI calls ``search``, bookmark UI
calls ``toggle_saved``/``is_saved`` and settings changes go through
``apply_config``.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from .embeddings import EmbeddingProvider, create_embedding_provider
from .index_config import IndexConfig, resolve_db_path
from .indexing import BackgroundIndexer, IndexingOutcome, IndexingPipeline, PageContext
from .search import SearchEngine, SearchResponse, SearchResult
from .storage import DuckDBSearchStore, PageRecord, SearchStore
from .storage.duckdb import META_PROVIDER

logger = structlog.get_logger(__name__)

_UNSET: Any = object()


class SemanticSearchService:
    """Long-lived search subsystem bound to one index file."""

    def __init__(
        self,
        config: IndexConfig | None = None,
        *,
        db_path: str | None = None,
        store: SearchStore | None = None,
        embedding_provider: EmbeddingProvider | None = _UNSET,
        workers: int = 2,
        max_queue: int = 256,
    ) -> None:
        self.config = config or IndexConfig.from_env()
        if store is None:
            store = DuckDBSearchStore(resolve_db_path(db_path), dimension=self.config.dimension)
        self.store = store
        if embedding_provider is _UNSET:
            embedding_provider = create_embedding_provider(self.config)
        self.embedding_provider: EmbeddingProvider | None = embedding_provider

        self.pipeline = IndexingPipeline(self.store, self.embedding_provider, self.config)
        self.engine = SearchEngine(self.store, self.embedding_provider, self.config)
        self.indexer = BackgroundIndexer(self.pipeline, workers=workers, max_queue=max_queue)
        self._config_lock = asyncio.Lock()
        self._record_provider_identity()

    @property
    def provider_identity(self) -> str | None:
        provider = self.embedding_provider
        return provider.identity if provider is not None else None

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    async def index_page(self, context: PageContext) -> IndexingOutcome:
        return await self.pipeline.index_page(context)

    def submit(self, context: PageContext) -> bool:
        """Queue a page for background indexing."""
        return self.indexer.submit(context)

    async def reindex_pending(self, limit: int = 50) -> list[IndexingOutcome]:
        return await self.pipeline.reindex_pending(limit)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(
        self, query: str, k: int = 20, *, workspace_id: str | None = None
    ) -> list[SearchResult]:
        return await self.engine.search(query, k, workspace_id=workspace_id)

    async def search_with_notice(
        self, query: str, k: int = 20, *, workspace_id: str | None = None
    ) -> SearchResponse:
        return await self.engine.search_with_notice(query, k, workspace_id=workspace_id)

    async def quick_search(
        self, query: str, k: int = 20, *, workspace_id: str | None = None
    ) -> list[SearchResult]:
        return await self.engine.quick_search(query, k, workspace_id=workspace_id)

    # ------------------------------------------------------------------
    # Saved pages
    # ------------------------------------------------------------------

    def toggle_saved(self, url: str) -> bool:
        return self.store.toggle_saved(url)

    def is_saved(self, url: str) -> bool:
        return self.store.is_saved(url)

    def list_saved(self) -> list[PageRecord]:
        return self.store.list_saved()

    # ------------------------------------------------------------------
    # Settings and maintenance
    # ------------------------------------------------------------------

    async def apply_config(
        self,
        config: IndexConfig,
        *,
        embedding_provider: EmbeddingProvider | None = _UNSET,
    ) -> int:
        """
        Switch to new settings.

        Running jobs finish against the old provider first. When the vector
        dimension changes, stored vectors of the old dimension are dropped and
        their pages flagged for reindexing. Returns the number of affected pages.
        """
        async with self._config_lock:
            if embedding_provider is _UNSET:
                embedding_provider = create_embedding_provider(config)

            await self.pipeline.wait_idle()
            affected = 0
            if config.dimension != self.store.dimension:
                affected = await asyncio.to_thread(
                    self.store.reconfigure_dimension, config.dimension
                )

            old_provider = self.embedding_provider
            self.config = config
            self.embedding_provider = embedding_provider
            self.pipeline.reconfigure(config, embedding_provider)
            self.engine.reconfigure(config, embedding_provider)
            if old_provider is not None and old_provider is not embedding_provider:
                _close_provider(old_provider)

            self._record_provider_identity()
            logger.info(
                "search configuration applied",
                provider=self.provider_identity,
                dimension=config.dimension,
                pages_affected=affected,
            )
            return affected

    def stats(self) -> dict[str, Any]:
        counts = self.store.stats()
        return {
            "page_count": counts.page_count,
            "chunk_count": counts.chunk_count,
            "indexed_count": counts.indexed_count,
            "pending_count": counts.pending_count,
            "saved_count": counts.saved_count,
            "dimension": counts.dimension,
            "provider": self.provider_identity,
            "in_flight": len(self.pipeline.in_flight),
            "queued": self.indexer.pending,
        }

    def prune(self, days: float) -> int:
        """Delete unsaved pages not visited in ``days`` days."""
        removed = self.store.delete_pages_older_than(days)
        logger.info("old pages pruned", days=days, removed=removed)
        return removed

    async def save(self) -> None:
        """Let running jobs finish and flush the store to disk."""
        await self.pipeline.wait_idle()
        await asyncio.to_thread(self.store.checkpoint)

    flush = save

    async def clear_index(self) -> None:
        """Remove every indexed page. Running jobs finish first."""
        await self.pipeline.wait_idle()
        await asyncio.to_thread(self.store.clear)

    async def close(self, timeout: float = 5.0) -> None:
        dropped = await self.indexer.shutdown(timeout)
        if dropped:
            logger.warning("pages dropped at shutdown", dropped=dropped)
        await self.save()
        if self.embedding_provider is not None:
            _close_provider(self.embedding_provider)
        self.store.close()

    def _record_provider_identity(self) -> None:
        identity = self.provider_identity
        previous = self.store.get_meta(META_PROVIDER)
        if identity is not None and previous is not None and previous != identity:
            # Same dimension from a different model still needs re-embedding.
            logger.warning(
                "embedding provider changed, run reindex to refresh vectors",
                previous=previous,
                current=identity,
            )
        if identity is not None and identity != previous:
            self.store.set_meta(META_PROVIDER, identity)


def _close_provider(provider: EmbeddingProvider) -> None:
    close = getattr(provider, "close", None)
    if callable(close):
        close()

"""
Hybrid search over visited pages.

Embeds the query, runs vector search over summary, title and chunk vectors
and keyword search over pages and chunks, then fuses the lists with
Reciprocal Rank Fusion weighted by recency and visit count. When the query
cannot be embedded the engine answers from keyword matches alone.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable

import structlog

from .ranker import RankedList, collapse_hits, fuse_and_rank
from ..embeddings import EmbeddingProvider
from ..errors import DimensionMismatch, ProviderError
from ..index_config import IndexConfig
from ..storage import ChunkRecord, LexicalScope, PageRecord, SearchStore, VectorScope

logger = structlog.get_logger(__name__)

VECTOR_SCOPES: tuple[VectorScope, ...] = ("summary", "title", "chunk")
LEXICAL_SCOPES: tuple[LexicalScope, ...] = ("page", "chunk")
SNIPPET_CHARS = 200


@dataclass(frozen=True)
class SearchResult:
    """A ranked page, optionally with the chunk that matched it best."""

    page: PageRecord
    score: float
    best_chunk: ChunkRecord | None
    matched_by: tuple[str, ...]
    snippet: str

    @property
    def url(self) -> str:
        return self.page.url

    @property
    def title(self) -> str:
        return self.page.title


@dataclass(frozen=True)
class SearchResponse:
    query: str
    results: list[SearchResult] = field(default_factory=list)
    degraded: bool = False
    notice: str | None = None


class SearchEngine:
    """Answer natural-language queries against a ``SearchStore``."""

    def __init__(
        self,
        store: SearchStore,
        embedding_provider: EmbeddingProvider | None,
        config: IndexConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.embedding_provider = embedding_provider
        self.config = config or IndexConfig()
        self.clock = clock

    def reconfigure(
        self,
        config: IndexConfig,
        embedding_provider: EmbeddingProvider | None,
    ) -> None:
        self.config = config
        self.embedding_provider = embedding_provider

    async def search(
        self, query: str, k: int = 20, *, workspace_id: str | None = None
    ) -> list[SearchResult]:
        response = await self.search_with_notice(query, k, workspace_id=workspace_id)
        return response.results

    async def search_with_notice(
        self, query: str, k: int = 20, *, workspace_id: str | None = None
    ) -> SearchResponse:
        """Run the hybrid search and report whether it fell back to keywords.

        With ``workspace_id`` set, only pages recorded in that workspace are
        returned.
        """
        text = query.strip()
        if not text or k <= 0:
            return SearchResponse(query=query)

        pool = k * self.config.candidate_multiplier
        query_vec, notice = await self._embed_query(text)

        lists: list[RankedList] = []
        if query_vec is not None:
            try:
                lists.extend(await self._vector_lists(query_vec, pool))
            except DimensionMismatch as exc:
                # The index was reconfigured after the query was embedded.
                notice = f"Semantic search unavailable ({exc}); showing keyword matches only."
                lists = []
        lists.extend(await self._lexical_lists(text, pool))

        results = await self._materialize(lists, k, workspace_id)
        if notice is not None:
            logger.info("search degraded to keyword matching", query=text, notice=notice)
        return SearchResponse(
            query=query,
            results=results,
            degraded=notice is not None,
            notice=notice,
        )

    async def quick_search(
        self, query: str, k: int = 20, *, workspace_id: str | None = None
    ) -> list[SearchResult]:
        """Keyword-only search that never calls the embedding provider."""
        text = query.strip()
        if not text or k <= 0:
            return []
        lists = await self._lexical_lists(text, k * self.config.candidate_multiplier)
        return await self._materialize(lists, k, workspace_id)

    async def _embed_query(self, text: str) -> tuple[list[float] | None, str | None]:
        provider = self.embedding_provider
        if provider is None:
            return None, "No embedding provider configured; showing keyword matches only."

        try:
            vector = await asyncio.wait_for(
                asyncio.to_thread(provider.embed_query, text),
                timeout=self.config.request_timeout,
            )
        except ProviderError as exc:
            return None, f"Semantic search unavailable ({exc.kind}); showing keyword matches only."
        except asyncio.TimeoutError:
            return None, "Semantic search timed out; showing keyword matches only."
        except Exception:
            logger.exception("query embedding failed")
            return None, "Semantic search unavailable; showing keyword matches only."

        if len(vector) != self.store.dimension:
            return None, (
                f"Embedding dimension {len(vector)} does not match the index "
                f"({self.store.dimension}); showing keyword matches only."
            )
        return vector, None

    async def _vector_lists(self, query_vec: list[float], pool: int) -> list[RankedList]:
        hits = await asyncio.gather(
            *(
                asyncio.to_thread(self.store.vector_search, query_vec, scope, pool)
                for scope in VECTOR_SCOPES
            )
        )
        return [
            collapse_hits(f"vector:{scope}", scope_hits)
            for scope, scope_hits in zip(VECTOR_SCOPES, hits)
        ]

    async def _lexical_lists(self, text: str, pool: int) -> list[RankedList]:
        hits = await asyncio.gather(
            *(
                asyncio.to_thread(self.store.lexical_search, text, scope, pool)
                for scope in LEXICAL_SCOPES
            )
        )
        return [
            collapse_hits(f"lexical:{scope}", scope_hits)
            for scope, scope_hits in zip(LEXICAL_SCOPES, hits)
        ]

    async def _materialize(
        self, lists: list[RankedList], k: int, workspace_id: str | None = None
    ) -> list[SearchResult]:
        page_ids = sorted({page_id for ranked in lists for page_id in ranked.page_ids})
        if not page_ids:
            return []

        pages = await asyncio.to_thread(self.store.get_pages, page_ids)
        if workspace_id is not None:
            # Pages outside the workspace drop out before the top-k cut.
            pages = {
                page_id: page
                for page_id, page in pages.items()
                if page.workspace_id == workspace_id
            }
        ranked = fuse_and_rank(
            lists,
            pages,
            limit=k,
            now=self.clock(),
            rrf_k=self.config.rrf_k,
            half_life_days=self.config.half_life_days,
        )
        chunk_ids = [item.best_chunk_id for item in ranked if item.best_chunk_id is not None]
        chunks = await asyncio.to_thread(self.store.get_chunks_by_id, chunk_ids)

        results: list[SearchResult] = []
        for item in ranked:
            page = pages[item.page_id]
            best_chunk = None
            if item.best_chunk_id is not None:
                best_chunk = chunks.get(item.best_chunk_id)
            snippet = best_chunk.text[:SNIPPET_CHARS].strip() if best_chunk else page.snippet
            results.append(
                SearchResult(
                    page=page,
                    score=item.score,
                    best_chunk=best_chunk,
                    matched_by=item.matched_by,
                    snippet=snippet,
                )
            )
        return results

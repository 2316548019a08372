"""
history_search - semantic search over a browser's visited pages.

Pages are split into overlapping chunks, embedded through a pluggable
provider and stored in DuckDB. Queries fuse vector and keyword matches with
Reciprocal Rank Fusion, then weight them by recency and visit count.

Example usage:
    >>> from history_search import PageContext, SemanticSearchService
    >>> service = SemanticSearchService(db_path="/tmp/history.duckdb")
    >>> await service.index_page(PageContext(url="https://example.com", title="Example", text="..."))
    >>> results = await service.search("example domain")
"""

from .embeddings import EmbeddingProvider, create_embedding_provider
from .errors import (
    ConfigError,
    DimensionMismatch,
    HistorySearchError,
    PipelineFailure,
    ProviderError,
    StoreError,
)
from .index_config import IndexConfig, resolve_db_path
from .indexing import (
    BackgroundIndexer,
    IndexingOutcome,
    IndexingPipeline,
    IndexingState,
    PageContext,
    TokenChunker,
    chunk,
)
from .search import SearchEngine, SearchResponse, SearchResult
from .service import SemanticSearchService
from .storage import DuckDBSearchStore, SearchStore

__all__ = [
    # Service
    "SemanticSearchService",
    # Components
    "EmbeddingProvider",
    "create_embedding_provider",
    "TokenChunker",
    "chunk",
    "IndexingPipeline",
    "IndexingOutcome",
    "IndexingState",
    "PageContext",
    "BackgroundIndexer",
    "SearchEngine",
    "SearchResponse",
    "SearchResult",
    "SearchStore",
    "DuckDBSearchStore",
    # Configuration
    "IndexConfig",
    "resolve_db_path",
    # Errors
    "HistorySearchError",
    "ConfigError",
    "ProviderError",
    "StoreError",
    "DimensionMismatch",
    "PipelineFailure",
]

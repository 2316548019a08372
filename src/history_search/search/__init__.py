"""Search over indexed pages."""

from .engine import SearchEngine, SearchResponse, SearchResult
from .ranker import (
    FusedCandidate,
    RankedList,
    collapse_hits,
    frequency_boost,
    fuse_and_rank,
    reciprocal_rank_fusion,
    time_decay,
)

__all__ = [
    "SearchEngine",
    "SearchResponse",
    "SearchResult",
    "FusedCandidate",
    "RankedList",
    "collapse_hits",
    "frequency_boost",
    "fuse_and_rank",
    "reciprocal_rank_fusion",
    "time_decay",
]

"""
Ranking helpers for fusing retrieval result lists into one page ordering.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from ..storage import LexicalHit, PageRecord, VectorHit

DEFAULT_RRF_K = 60.0
DEFAULT_HALF_LIFE_DAYS = 30.0
SECONDS_PER_DAY = 86400.0


@dataclass(frozen=True)
class RankedList:
    """One retrieval list collapsed to page level, best rank first."""

    name: str
    page_ids: list[int]
    chunk_ids: dict[int, int] = field(default_factory=dict)

    def rank_of(self, page_id: int) -> int | None:
        try:
            return self.page_ids.index(page_id) + 1
        except ValueError:
            return None


@dataclass(frozen=True)
class FusedCandidate:
    """A page with its fused score and the lists that contributed to it."""

    page_id: int
    rrf_score: float
    score: float
    last_visited_at: float
    matched_by: tuple[str, ...]
    best_chunk_id: int | None


def collapse_hits(name: str, hits: Iterable[VectorHit | LexicalHit]) -> RankedList:
    """
    Reduce row-level hits to page ranks.

    A page keeps the rank of its first (best) hit; for chunk-scope lists the
    chunk behind that hit is remembered as the page's best chunk.
    """
    page_ids: list[int] = []
    chunk_ids: dict[int, int] = {}
    seen: set[int] = set()
    for hit in hits:
        if hit.page_id in seen:
            continue
        seen.add(hit.page_id)
        page_ids.append(hit.page_id)
        if hit.chunk_id is not None:
            chunk_ids[hit.page_id] = hit.chunk_id
    return RankedList(name=name, page_ids=page_ids, chunk_ids=chunk_ids)


def reciprocal_rank_fusion(
    lists: Sequence[RankedList], *, k: float = DEFAULT_RRF_K
) -> dict[int, float]:
    """Sum ``1 / (rank + k)`` for every list a page appears in; ranks are 1-based."""
    scores: dict[int, float] = {}
    for ranked in lists:
        for rank, page_id in enumerate(ranked.page_ids, start=1):
            scores[page_id] = scores.get(page_id, 0.0) + 1.0 / (rank + k)
    return scores


def time_decay(
    age_seconds: float, *, half_life_days: float = DEFAULT_HALF_LIFE_DAYS
) -> float:
    """Exponential half-life decay in ``(0, 1]``; future timestamps count as now."""
    age_days = max(age_seconds, 0.0) / SECONDS_PER_DAY
    return 0.5 ** (age_days / half_life_days)


def frequency_boost(visit_count: int) -> float:
    return 1.0 + math.log1p(max(visit_count, 0))


def fuse_and_rank(
    lists: Sequence[RankedList],
    pages: dict[int, PageRecord],
    *,
    limit: int,
    now: float,
    rrf_k: float = DEFAULT_RRF_K,
    half_life_days: float = DEFAULT_HALF_LIFE_DAYS,
) -> list[FusedCandidate]:
    """Fuse ranked lists, apply recency and visit weighting, and cut to ``limit``."""
    if limit <= 0:
        return []

    rrf = reciprocal_rank_fusion(lists, k=rrf_k)
    candidates: list[FusedCandidate] = []
    for page_id, rrf_score in rrf.items():
        page = pages.get(page_id)
        if page is None:
            # Deleted between retrieval and fusion.
            continue
        score = (
            rrf_score
            * time_decay(now - page.last_visited_at, half_life_days=half_life_days)
            * frequency_boost(page.visit_count)
        )
        candidates.append(
            FusedCandidate(
                page_id=page_id,
                rrf_score=rrf_score,
                score=score,
                last_visited_at=page.last_visited_at,
                matched_by=tuple(
                    ranked.name for ranked in lists if ranked.rank_of(page_id) is not None
                ),
                best_chunk_id=_best_chunk(lists, page_id),
            )
        )

    ordered = sorted(
        candidates,
        key=lambda item: (-item.score, -item.last_visited_at, item.page_id),
    )
    return ordered[:limit]


def _best_chunk(lists: Sequence[RankedList], page_id: int) -> int | None:
    best: tuple[int, int] | None = None
    for ranked in lists:
        chunk_id = ranked.chunk_ids.get(page_id)
        if chunk_id is None:
            continue
        rank = ranked.rank_of(page_id)
        if rank is not None and (best is None or rank < best[0]):
            best = (rank, chunk_id)
    return best[1] if best is not None else None

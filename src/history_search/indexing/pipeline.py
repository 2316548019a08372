"""
Indexing pipeline orchestration.
"""

from __future__ import annotations

import asyncio
import dataclasses
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Protocol, Sequence, TypeVar

import structlog

from .chunker import TextChunk, TokenChunker
from ..embeddings import EmbeddingProvider
from ..errors import ConfigError, PipelineFailure, ProviderError
from ..index_config import IndexConfig, SummaryPolicyName
from ..storage import ChunkDraft, PageVectors, SearchStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class IndexingState(str, Enum):
    """Per-page job states, in the order a successful job passes through them."""

    IDLE = "idle"
    EXTRACTING = "extracting"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class PageContext:
    """Extracted page content handed over by the page-load observer."""

    url: str
    title: str
    text: str
    synopsis: str | None = None
    visited_at: float | None = None
    workspace_id: str | None = None


@dataclass(frozen=True)
class IndexingOutcome:
    """Summary output for one indexing job."""

    url: str
    page_id: int | None
    state: IndexingState
    chunk_count: int = 0
    embedded: bool = False
    error: PipelineFailure | None = None
    coalesced: bool = False

    @property
    def ok(self) -> bool:
        return self.state is IndexingState.DONE


class SummaryPolicy(Protocol):
    """Chooses the text that is stored and embedded as a page's summary."""

    def summarize(self, context: PageContext, chunks: Sequence[TextChunk]) -> str | None: ...


class FirstChunkSummary:
    """Use the first chunk of the body text as the summary."""

    def summarize(self, context: PageContext, chunks: Sequence[TextChunk]) -> str | None:
        if not chunks:
            return None
        return chunks[0].text


class SuppliedSummary:
    """Use the synopsis supplied with the page, else fall back to the first chunk."""

    def __init__(self, fallback: SummaryPolicy | None = None) -> None:
        self.fallback = fallback or FirstChunkSummary()

    def summarize(self, context: PageContext, chunks: Sequence[TextChunk]) -> str | None:
        if context.synopsis and context.synopsis.strip():
            return context.synopsis.strip()
        return self.fallback.summarize(context, chunks)


def summary_policy_for(name: SummaryPolicyName) -> SummaryPolicy:
    if name == "first_chunk":
        return FirstChunkSummary()
    if name == "supplied":
        return SuppliedSummary()
    raise ConfigError(f"Unknown summary policy: {name!r}")


class IndexingPipeline:
    """
    Turn extracted page content into stored chunks and embeddings.

    Jobs are keyed by URL: while one is running for a page, further requests
    for the same URL join it instead of starting a second job. Provider
    failures end the job with a ``failed`` outcome and leave the page's
    previous chunks and vectors untouched. Storage errors propagate.
    """

    def __init__(
        self,
        store: SearchStore,
        embedding_provider: EmbeddingProvider | None,
        config: IndexConfig | None = None,
        *,
        summary_policy: SummaryPolicy | None = None,
        raise_on_failure: bool = False,
    ) -> None:
        self.store = store
        self.embedding_provider = embedding_provider
        self.config = config or IndexConfig()
        self.chunker = TokenChunker(self.config.chunk_size, self.config.chunk_overlap)
        self.summary_policy = summary_policy or summary_policy_for(self.config.summary_policy)
        self.raise_on_failure = raise_on_failure
        self._inflight: dict[str, asyncio.Task[IndexingOutcome]] = {}
        self._states: dict[str, IndexingState] = {}

    def reconfigure(
        self,
        config: IndexConfig,
        embedding_provider: EmbeddingProvider | None,
    ) -> None:
        """Point new jobs at another provider and chunking setup."""
        self.config = config
        self.embedding_provider = embedding_provider
        self.chunker = TokenChunker(config.chunk_size, config.chunk_overlap)
        self.summary_policy = summary_policy_for(config.summary_policy)

    @property
    def in_flight(self) -> list[str]:
        return [url for url, task in self._inflight.items() if not task.done()]

    def state_of(self, url: str) -> IndexingState:
        return self._states.get(url, IndexingState.IDLE)

    async def index_page(
        self,
        context: PageContext,
        *,
        record_visit: bool = True,
    ) -> IndexingOutcome:
        existing = self._inflight.get(context.url)
        if existing is not None and not existing.done():
            logger.debug("indexing job coalesced", url=context.url)
            outcome = await asyncio.shield(existing)
            return self._finish(dataclasses.replace(outcome, coalesced=True))

        task = asyncio.create_task(self._run(context, record_visit=record_visit))
        self._inflight[context.url] = task
        task.add_done_callback(lambda done: self._forget(context.url, done))
        # The job outlives a cancelled caller so writes are never cut short.
        outcome = await asyncio.shield(task)
        return self._finish(outcome)

    async def wait_idle(self) -> None:
        """Wait until every job that is currently running has finished."""
        while self.in_flight:
            pending = [task for task in self._inflight.values() if not task.done()]
            await asyncio.gather(*pending, return_exceptions=True)

    async def reindex_pending(self, limit: int = 50) -> list[IndexingOutcome]:
        """Re-embed pages flagged ``needs_reindex`` from their stored text."""
        if self.embedding_provider is None:
            logger.info("reindex skipped, no embedding provider configured")
            return []

        pages = await asyncio.to_thread(self.store.pages_needing_reindex, limit)
        outcomes: list[IndexingOutcome] = []
        for page in pages:
            context = PageContext(
                url=page.url,
                title=page.title,
                text=page.full_text or "",
                synopsis=page.summary,
                workspace_id=page.workspace_id,
            )
            outcomes.append(await self.index_page(context, record_visit=False))

        logger.info(
            "reindex finished",
            pages=len(outcomes),
            failed=sum(1 for outcome in outcomes if not outcome.ok),
        )
        return outcomes

    def _finish(self, outcome: IndexingOutcome) -> IndexingOutcome:
        if self.raise_on_failure and outcome.error is not None:
            raise outcome.error
        return outcome

    def _forget(self, url: str, task: asyncio.Task[IndexingOutcome]) -> None:
        if self._inflight.get(url) is task:
            del self._inflight[url]

    def _set_state(self, url: str, state: IndexingState) -> IndexingState:
        self._states[url] = state
        return state

    async def _run(self, context: PageContext, *, record_visit: bool) -> IndexingOutcome:
        url = context.url
        text = context.text or ""
        provider = self.embedding_provider
        chunker = self.chunker
        page_id: int | None = None
        state = self._set_state(url, IndexingState.EXTRACTING)

        try:
            if record_visit:
                page_id = await asyncio.to_thread(
                    self.store.upsert_page,
                    url,
                    context.title,
                    full_text=text,
                    visited_at=context.visited_at,
                    workspace_id=context.workspace_id,
                )
            else:
                page = await asyncio.to_thread(self.store.get_page_by_url, url)
                if page is None:
                    page_id = await asyncio.to_thread(
                        self.store.upsert_page,
                        url,
                        context.title,
                        full_text=text,
                        workspace_id=context.workspace_id,
                    )
                else:
                    page_id = page.id

            state = self._set_state(url, IndexingState.CHUNKING)
            chunks = chunker.chunk_text(text)
            summary = self.summary_policy.summarize(context, chunks)

            vectors: PageVectors | None = None
            if provider is not None:
                state = self._set_state(url, IndexingState.EMBEDDING)
                vectors = await self._embed_page(provider, context, summary, chunks)

            state = self._set_state(url, IndexingState.PERSISTING)
            drafts = [
                ChunkDraft(position=item.position, text=item.text, token_count=item.token_count)
                for item in chunks
            ]
            await asyncio.to_thread(
                self.store.index_page_content,
                page_id,
                summary=summary,
                chunks=drafts,
                vectors=vectors,
            )
        except ProviderError as exc:
            self._set_state(url, IndexingState.FAILED)
            failure = PipelineFailure(state.value, exc)
            if page_id is not None:
                # The stored text may be newer than the chunks and vectors.
                await asyncio.to_thread(self.store.mark_needs_reindex, page_id)
            logger.warning(
                "page indexing failed",
                url=url,
                step=state.value,
                error_kind=exc.kind,
                error=str(exc),
            )
            return IndexingOutcome(
                url=url,
                page_id=page_id,
                state=IndexingState.FAILED,
                error=failure,
            )
        except BaseException:
            self._set_state(url, IndexingState.FAILED)
            raise

        self._set_state(url, IndexingState.DONE)
        logger.info(
            "page indexed",
            url=url,
            page_id=page_id,
            chunks=len(chunks),
            embedded=vectors is not None,
        )
        return IndexingOutcome(
            url=url,
            page_id=page_id,
            state=IndexingState.DONE,
            chunk_count=len(chunks),
            embedded=vectors is not None,
        )

    async def _embed_page(
        self,
        provider: EmbeddingProvider,
        context: PageContext,
        summary: str | None,
        chunks: Sequence[TextChunk],
    ) -> PageVectors:
        title_text = context.title.strip() or context.url
        summary_text = summary or title_text
        texts = [title_text, summary_text, *(item.text for item in chunks)]
        vectors = await self._with_timeout(provider.embed_batch, texts, batches=len(texts))

        expected = self.store.dimension
        if any(len(vector) != expected for vector in vectors):
            raise ProviderError(
                "dimension_mismatch",
                f"{provider.identity} does not match the index dimension {expected}",
            )
        return PageVectors(title=vectors[0], summary=vectors[1], chunks=vectors[2:])

    async def _with_timeout(
        self,
        func: Callable[..., T],
        *args: Any,
        batches: int = 1,
    ) -> T:
        per_call = self.config.request_timeout
        budget = per_call * max(1, math.ceil(batches / self.config.batch_size))
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=budget)
        except asyncio.TimeoutError as exc:
            raise ProviderError("timeout", f"embedding timed out after {budget:.0f}s") from exc
        except ProviderError:
            raise
        except Exception as exc:
            logger.exception("embedding provider raised an unexpected error")
            raise ProviderError("unavailable", f"embedding provider failed: {exc}") from exc

"""
FastAPI server exposing the history search service over HTTP.

One ``SemanticSearchService`` is kept per index file, created on first use
and closed when the application shuts down.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .errors import ConfigError, StoreError
from .index_config import IndexConfig, resolve_db_path
from .indexing import IndexingOutcome, PageContext
from .logging import configure_logging
from .search import SearchResult
from .service import SemanticSearchService
from .storage import PageRecord

_services: dict[str, SemanticSearchService] = {}
_service_lock = asyncio.Lock()


def build_service(db_path: str) -> SemanticSearchService:
    """Create the service for an index file using HISTORY_SEARCH_* settings."""
    return SemanticSearchService(IndexConfig.from_env(), db_path=db_path)


async def get_service(db_path: str | None = None) -> SemanticSearchService:
    """Return the shared service for ``db_path``, creating one if needed."""
    resolved = resolve_db_path(db_path)
    async with _service_lock:
        service = _services.get(resolved)
        if service is None:
            service = await asyncio.to_thread(build_service, resolved)
            _services[resolved] = service
        return service


async def close_services() -> None:
    async with _service_lock:
        services = list(_services.values())
        _services.clear()
    for service in services:
        await service.close()


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    await close_services()


app = FastAPI(
    title="History Search",
    description="Semantic search over visited pages",
    lifespan=lifespan,
)


class IndexRequest(BaseModel):
    """Request model for indexing one page."""

    url: str
    title: str = ""
    text: str = ""
    synopsis: str | None = None
    visited_at: float | None = None
    workspace_id: str | None = None
    background: bool = False
    db_path: str | None = None


class SearchRequest(BaseModel):
    """Request model for search queries."""

    query: str
    limit: int = Field(default=20, ge=1, le=200)
    quick: bool = False
    workspace_id: str | None = None
    db_path: str | None = None


class SavedRequest(BaseModel):
    url: str
    db_path: str | None = None


class ReindexRequest(BaseModel):
    limit: int = Field(default=50, ge=1)
    db_path: str | None = None


class PruneRequest(BaseModel):
    days: float = Field(gt=0)
    db_path: str | None = None


def _page_payload(page: PageRecord) -> dict[str, Any]:
    return {
        "id": page.id,
        "url": page.url,
        "title": page.title,
        "domain": page.domain,
        "last_visited_at": page.last_visited_at,
        "visit_count": page.visit_count,
        "is_saved": page.is_saved,
        "indexed": page.is_indexed,
        "workspace_id": page.workspace_id,
    }


def _result_payload(result: SearchResult) -> dict[str, Any]:
    chunk = result.best_chunk
    return {
        **_page_payload(result.page),
        "score": result.score,
        "snippet": result.snippet,
        "matched_by": list(result.matched_by),
        "chunk_position": chunk.position if chunk is not None else None,
    }


def _outcome_payload(outcome: IndexingOutcome) -> dict[str, Any]:
    return {
        "url": outcome.url,
        "page_id": outcome.page_id,
        "state": outcome.state.value,
        "chunk_count": outcome.chunk_count,
        "embedded": outcome.embedded,
        "coalesced": outcome.coalesced,
        "error": str(outcome.error) if outcome.error is not None else None,
    }


@app.post("/api/index")
async def index_page(request: IndexRequest):
    """Index a page now, or queue it when ``background`` is set."""
    try:
        service = await get_service(request.db_path)
        context = PageContext(
            url=request.url,
            title=request.title,
            text=request.text,
            synopsis=request.synopsis,
            visited_at=request.visited_at,
            workspace_id=request.workspace_id,
        )
        if request.background:
            queued = service.submit(context)
            return JSONResponse({"url": request.url, "queued": queued}, status_code=202)

        outcome = await service.index_page(context)
        return _outcome_payload(outcome)
    except ConfigError as exc:
        return JSONResponse({"error": str(exc)}, status_code=400)
    except StoreError as exc:
        return JSONResponse({"error": str(exc)}, status_code=500)


@app.post("/api/search")
async def search_pages(request: SearchRequest):
    """Search indexed pages and return ranked results."""
    try:
        service = await get_service(request.db_path)
        if request.quick:
            results = await service.quick_search(
                request.query, request.limit, workspace_id=request.workspace_id
            )
            notice = None
        else:
            response = await service.search_with_notice(
                request.query, request.limit, workspace_id=request.workspace_id
            )
            results = response.results
            notice = response.notice
        return {
            "query": request.query,
            "results": [_result_payload(result) for result in results],
            "degraded": notice is not None,
            "notice": notice,
        }
    except ConfigError as exc:
        return JSONResponse({"error": str(exc)}, status_code=400)
    except StoreError as exc:
        return JSONResponse({"error": str(exc)}, status_code=500)


@app.post("/api/saved/toggle")
async def toggle_saved(request: SavedRequest):
    try:
        service = await get_service(request.db_path)
        saved = await asyncio.to_thread(service.toggle_saved, request.url)
        return {"url": request.url, "saved": saved}
    except StoreError as exc:
        return JSONResponse({"error": str(exc)}, status_code=500)


@app.get("/api/saved")
async def saved_pages(url: str | None = None, db_path: str | None = None):
    """List saved pages, or report whether ``url`` is saved."""
    try:
        service = await get_service(db_path)
        if url is not None:
            saved = await asyncio.to_thread(service.is_saved, url)
            return {"url": url, "saved": saved}
        pages = await asyncio.to_thread(service.list_saved)
        return {"pages": [_page_payload(page) for page in pages]}
    except StoreError as exc:
        return JSONResponse({"error": str(exc)}, status_code=500)


@app.get("/api/index/status")
async def index_status(db_path: str | None = None):
    """Return index counters and the active embedding provider."""
    try:
        service = await get_service(db_path)
        return await asyncio.to_thread(service.stats)
    except StoreError as exc:
        return JSONResponse({"error": str(exc)}, status_code=500)


@app.post("/api/index/reindex")
async def reindex_pending(request: ReindexRequest):
    """Re-embed pages flagged for reindexing."""
    try:
        service = await get_service(request.db_path)
        outcomes = await service.reindex_pending(request.limit)
        return {
            "processed": len(outcomes),
            "failed": sum(1 for outcome in outcomes if not outcome.ok),
            "outcomes": [_outcome_payload(outcome) for outcome in outcomes],
        }
    except StoreError as exc:
        return JSONResponse({"error": str(exc)}, status_code=500)


@app.post("/api/index/prune")
async def prune_pages(request: PruneRequest):
    try:
        service = await get_service(request.db_path)
        removed = await asyncio.to_thread(service.prune, request.days)
        return {"removed": removed}
    except StoreError as exc:
        return JSONResponse({"error": str(exc)}, status_code=500)


@app.delete("/api/index")
async def clear_index(db_path: str | None = None):
    """Delete every indexed page."""
    try:
        service = await get_service(db_path)
        await service.clear_index()
        return {"cleared": True}
    except StoreError as exc:
        return JSONResponse({"error": str(exc)}, status_code=500)


def run_server(host: str = "127.0.0.1", port: int = 8000):
    """Run the FastAPI server."""
    import uvicorn

    configure_logging()

    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run_server()

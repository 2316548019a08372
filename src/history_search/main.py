import asyncio
import sys
from pathlib import Path
from typing import Annotated, Awaitable, Callable, TypeVar

from typer import Argument, Exit, Option, Typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .errors import HistorySearchError
from .index_config import IndexConfig, resolve_db_path
from .indexing import PageContext
from .logging import configure_logging
from .service import SemanticSearchService

app = Typer(help="Index visited pages and search them by meaning.")
console = Console()

T = TypeVar("T")

DbPathOption = Annotated[
    str | None,
    Option("--db-path", help="Index file (defaults to HISTORY_SEARCH_DB_PATH or ~/.history_search)."),
]
NoEmbeddingsOption = Annotated[
    bool,
    Option("--no-embeddings", help="Skip the embedding provider and use keyword matching only."),
]
WorkspaceOption = Annotated[
    str | None, Option("--workspace", "-w", help="Workspace to index into or search within.")
]


def open_service(db_path: str | None, *, embeddings: bool = True) -> SemanticSearchService:
    config = IndexConfig.from_env()
    resolved = resolve_db_path(db_path)
    if embeddings:
        return SemanticSearchService(config, db_path=resolved)
    return SemanticSearchService(config, db_path=resolved, embedding_provider=None)


def _run(
    db_path: str | None,
    embeddings: bool,
    action: Callable[[SemanticSearchService], Awaitable[T]],
) -> T:
    async def runner() -> T:
        service = open_service(db_path, embeddings=embeddings)
        try:
            return await action(service)
        finally:
            await service.close()

    try:
        return asyncio.run(runner())
    except HistorySearchError as exc:
        console.print(f"[bold red]Error:[/] {exc}")
        raise Exit(code=1) from exc


@app.callback()
def main(
    log_level: Annotated[
        str | None, Option("--log-level", help="Logging level, e.g. DEBUG or WARNING.")
    ] = None,
) -> None:
    configure_logging(level=log_level)


@app.command()
def index(
    url: Annotated[str, Argument(help="URL of the visited page.")],
    file: Annotated[
        Path | None,
        Option("--file", "-f", help="Text file with the extracted page text (stdin if omitted)."),
    ] = None,
    title: Annotated[str, Option("--title", "-t", help="Page title.")] = "",
    synopsis: Annotated[
        str | None, Option("--synopsis", help="Summary supplied by the caller.")
    ] = None,
    workspace: WorkspaceOption = None,
    db_path: DbPathOption = None,
    no_embeddings: NoEmbeddingsOption = False,
) -> None:
    """Index one page's extracted text."""
    text = file.read_text(encoding="utf-8") if file is not None else sys.stdin.read()
    context = PageContext(
        url=url, title=title, text=text, synopsis=synopsis, workspace_id=workspace
    )

    outcome = _run(db_path, not no_embeddings, lambda service: service.index_page(context))
    if not outcome.ok:
        console.print(f"[bold red]Indexing failed:[/] {outcome.error}")
        raise Exit(code=1)

    mode = "embedded" if outcome.embedded else "keyword-only"
    console.print(
        f"[green]Indexed[/] {url} ([bold]{outcome.chunk_count}[/] chunks, {mode})"
    )


@app.command()
def search(
    query: Annotated[str, Argument(help="Natural-language query.")],
    limit: Annotated[int, Option("--limit", "-n", help="Maximum number of results.")] = 10,
    quick: Annotated[bool, Option("--quick", help="Keyword search only.")] = False,
    workspace: WorkspaceOption = None,
    db_path: DbPathOption = None,
    no_embeddings: NoEmbeddingsOption = False,
) -> None:
    """Search indexed pages."""

    async def action(service: SemanticSearchService):
        if quick:
            return await service.quick_search(query, limit, workspace_id=workspace), None
        response = await service.search_with_notice(query, limit, workspace_id=workspace)
        return response.results, response.notice

    results, notice = _run(db_path, not (no_embeddings or quick), action)
    if notice:
        console.print(f"[yellow]{notice}[/]")
    if not results:
        console.print("No matching pages.")
        return

    table = Table(title=f"Results for {query!r}")
    table.add_column("#", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Page")
    table.add_column("Snippet")
    for position, result in enumerate(results, start=1):
        table.add_row(
            str(position),
            f"{result.score:.4f}",
            f"{result.title or result.url}\n[dim]{result.url}[/]",
            result.snippet,
        )
    console.print(table)


@app.command()
def reindex(
    limit: Annotated[int, Option("--limit", "-n", help="Maximum pages to process.")] = 50,
    db_path: DbPathOption = None,
) -> None:
    """Re-embed pages whose vectors are missing or stale."""
    outcomes = _run(db_path, True, lambda service: service.reindex_pending(limit))
    failed = [outcome for outcome in outcomes if not outcome.ok]
    console.print(f"Reindexed {len(outcomes) - len(failed)} pages, {len(failed)} failed.")
    for outcome in failed:
        console.print(f"  [red]{outcome.url}[/]: {outcome.error}")
    if failed:
        raise Exit(code=1)


@app.command()
def stats(db_path: DbPathOption = None) -> None:
    """Show index counters."""

    async def action(service: SemanticSearchService):
        return service.stats()

    data = _run(db_path, False, action)
    body = "\n".join(f"[bold]{key}[/]: {value}" for key, value in data.items())
    console.print(Panel(body, title=resolve_db_path(db_path), border_style="cyan"))


@app.command()
def saved(
    url: Annotated[str | None, Argument(help="Page URL; omit to list saved pages.")] = None,
    toggle: Annotated[bool, Option("--toggle", help="Flip the saved flag.")] = False,
    db_path: DbPathOption = None,
) -> None:
    """Show, list or toggle saved pages."""

    async def action(service: SemanticSearchService):
        if url is None:
            return service.list_saved()
        if toggle:
            return service.toggle_saved(url)
        return service.is_saved(url)

    result = _run(db_path, False, action)
    if url is None:
        if not result:
            console.print("No saved pages.")
        for page in result:
            console.print(f"{page.title or page.url} [dim]{page.url}[/]")
        return
    state = "saved" if result else "not saved"
    console.print(f"{url} is {state}")


@app.command()
def clear(
    yes: Annotated[bool, Option("--yes", "-y", help="Do not ask for confirmation.")] = False,
    db_path: DbPathOption = None,
) -> None:
    """Delete every indexed page."""
    if not yes and console.input("Delete the whole search index? [y/N] ").strip().lower() != "y":
        console.print("Aborted.")
        raise Exit(code=1)
    _run(db_path, False, lambda service: service.clear_index())
    console.print("[green]Search index cleared.[/]")


@app.command()
def prune(
    days: Annotated[float, Option("--days", help="Remove unsaved pages older than this.")] = 90,
    db_path: DbPathOption = None,
) -> None:
    """Delete unsaved pages that were not visited recently."""

    async def action(service: SemanticSearchService):
        return service.prune(days)

    removed = _run(db_path, False, action)
    console.print(f"Removed {removed} pages.")


@app.command()
def serve(
    host: Annotated[str, Option("--host")] = "127.0.0.1",
    port: Annotated[int, Option("--port")] = 8000,
) -> None:
    """Run the HTTP API."""
    from .server import run_server

    run_server(host=host, port=port)

"""
DuckDB storage backend for the page search index.

Pages and chunks hold raw text; lexical search reads those columns directly,
so the keyword projection is always in sync with the rows. Vectors live in
``page_vectors`` / ``chunk_vectors`` tagged with their dimension, which lets
``reconfigure_dimension`` drop stale vectors without touching text.

Writes go through one writer cursor under a lock and run in transactions;
reads open their own cursor and see a consistent snapshot.
"""

from __future__ import annotations

import math
import re
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Sequence
from urllib.parse import urlsplit

import duckdb
import structlog
from pydantic import JsonValue, TypeAdapter, ValidationError

from ..errors import DimensionMismatch, StoreError
from .base import (
    ChunkDraft,
    ChunkRecord,
    LexicalHit,
    LexicalScope,
    PageRecord,
    PageVectors,
    StoreStats,
    VectorHit,
    VectorScope,
)

logger = structlog.get_logger(__name__)

_JSON_VALUE = TypeAdapter(JsonValue)

_PAGE_COLUMNS = """
    id, url, title, summary, full_text, domain, first_visited_at, last_visited_at,
    visit_count, is_saved, needs_reindex, embedding_dim, workspace_id
"""

META_DIMENSION = "dimension"
META_PROVIDER = "provider_identity"

# Runs of anything but letters and digits separate words in keyword matching.
_WORD_SEPARATORS = r"[^\pL\pN]+"


def _query_terms(query: str, max_terms: int = 8) -> list[str]:
    terms = re.findall(r"[^\W_]{2,}", query.lower())
    unique_terms: list[str] = []
    for term in terms:
        if term not in unique_terms:
            unique_terms.append(term)
        if len(unique_terms) >= max_terms:
            break
    return unique_terms


def _domain(url: str) -> str:
    return urlsplit(url).hostname or ""


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except duckdb.Error as exc:
        raise StoreError(f"{action} failed: {exc}") from exc


class DuckDBSearchStore:
    """DuckDB-backed persistence for pages, chunks and their indexes."""

    def __init__(
        self,
        db_path: str,
        *,
        dimension: int,
        read_only: bool = False,
        initialize: bool = True,
    ) -> None:
        if dimension <= 0:
            raise StoreError("dimension must be > 0")
        self.db_path = str(Path(db_path).expanduser().resolve())
        self.read_only = read_only
        self._dimension = dimension
        self._write_lock = threading.RLock()
        self._cursor_lock = threading.Lock()
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with _store_errors(f"opening {self.db_path}"):
            self._conn = duckdb.connect(self.db_path, read_only=read_only)
            self._writer = self._conn.cursor()
        if initialize and not read_only:
            self.initialize()
        elif read_only:
            stored = self.get_meta(META_DIMENSION)
            if isinstance(stored, int):
                self._dimension = stored

    @property
    def dimension(self) -> int:
        return self._dimension

    def close(self) -> None:
        """Close the underlying DuckDB connection."""
        with self._write_lock, _store_errors("close"):
            self._writer.close()
            self._conn.close()

    def initialize(self) -> None:
        with self._write_lock, _store_errors("schema creation"):
            cur = self._writer
            cur.execute("CREATE SEQUENCE IF NOT EXISTS page_id_seq START 1")
            cur.execute("CREATE SEQUENCE IF NOT EXISTS chunk_id_seq START 1")
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS pages (
                    id BIGINT PRIMARY KEY DEFAULT nextval('page_id_seq'),
                    url VARCHAR NOT NULL UNIQUE,
                    title VARCHAR NOT NULL DEFAULT '',
                    summary VARCHAR,
                    full_text VARCHAR,
                    domain VARCHAR NOT NULL DEFAULT '',
                    first_visited_at DOUBLE NOT NULL,
                    last_visited_at DOUBLE NOT NULL,
                    visit_count INTEGER NOT NULL DEFAULT 1,
                    is_saved BOOLEAN NOT NULL DEFAULT FALSE,
                    needs_reindex BOOLEAN NOT NULL DEFAULT TRUE,
                    embedding_dim INTEGER,
                    workspace_id VARCHAR
                );
                """
            )
            # No FK constraints: DuckDB rejects updates to referenced rows.
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS chunks (
                    id BIGINT PRIMARY KEY DEFAULT nextval('chunk_id_seq'),
                    page_id BIGINT NOT NULL,
                    position INTEGER NOT NULL,
                    text VARCHAR NOT NULL,
                    token_count INTEGER NOT NULL
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS page_vectors (
                    page_id BIGINT NOT NULL,
                    scope VARCHAR NOT NULL,
                    dim INTEGER NOT NULL,
                    embedding FLOAT[] NOT NULL
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS chunk_vectors (
                    chunk_id BIGINT NOT NULL,
                    page_id BIGINT NOT NULL,
                    dim INTEGER NOT NULL,
                    embedding FLOAT[] NOT NULL
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS store_meta (
                    key VARCHAR PRIMARY KEY,
                    value_json VARCHAR NOT NULL
                );
                """
            )

        stored = self.get_meta(META_DIMENSION)
        if stored is None:
            self.set_meta(META_DIMENSION, self._dimension)
        elif stored != self._dimension:
            logger.info(
                "stored dimension differs from configuration",
                stored=stored,
                configured=self._dimension,
            )
            self.reconfigure_dimension(self._dimension)

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self, action: str) -> Iterator[duckdb.DuckDBPyConnection]:
        with self._write_lock, _store_errors(action):
            cur = self._writer
            cur.execute("BEGIN TRANSACTION")
            try:
                yield cur
            except BaseException:
                cur.execute("ROLLBACK")
                raise
            cur.execute("COMMIT")

    @contextmanager
    def _reader(self, action: str) -> Iterator[duckdb.DuckDBPyConnection]:
        with self._cursor_lock, _store_errors(action):
            cur = self._conn.cursor()
        try:
            with _store_errors(action):
                yield cur
        finally:
            cur.close()

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

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
        now = time.time() if visited_at is None else float(visited_at)
        with self._transaction("upsert_page") as cur:
            row = cur.execute("SELECT id FROM pages WHERE url = ?", [url]).fetchone()
            if row is None:
                inserted = cur.execute(
                    """
                    INSERT INTO pages (
                        url, title, summary, full_text, domain,
                        first_visited_at, last_visited_at, visit_count, workspace_id
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?)
                    RETURNING id
                    """,
                    [url, title or "", summary, full_text, _domain(url), now, now, workspace_id],
                ).fetchone()
                if inserted is None:
                    raise StoreError(f"Failed to create page for url: {url}")
                return int(inserted[0])

            page_id = int(row[0])
            cur.execute(
                """
                UPDATE pages SET
                    title = COALESCE(NULLIF(?, ''), title),
                    summary = COALESCE(?, summary),
                    full_text = COALESCE(?, full_text),
                    last_visited_at = greatest(last_visited_at, ?),
                    visit_count = visit_count + 1,
                    workspace_id = COALESCE(workspace_id, ?)
                WHERE id = ?
                """,
                [title or "", summary, full_text, now, workspace_id, page_id],
            )
            return page_id

    def get_page(self, page_id: int) -> PageRecord | None:
        with self._reader("get_page") as cur:
            row = cur.execute(
                f"SELECT {_PAGE_COLUMNS} FROM pages WHERE id = ?", [page_id]
            ).fetchone()
        return self._row_to_page(row) if row is not None else None

    def get_pages(self, page_ids: Sequence[int]) -> dict[int, PageRecord]:
        if not page_ids:
            return {}
        placeholders = ", ".join(["?"] * len(page_ids))
        with self._reader("get_pages") as cur:
            rows = cur.execute(
                f"SELECT {_PAGE_COLUMNS} FROM pages WHERE id IN ({placeholders})",
                list(page_ids),
            ).fetchall()
        pages = [self._row_to_page(row) for row in rows]
        return {page.id: page for page in pages}

    def get_page_by_url(self, url: str) -> PageRecord | None:
        with self._reader("get_page_by_url") as cur:
            row = cur.execute(
                f"SELECT {_PAGE_COLUMNS} FROM pages WHERE url = ?", [url]
            ).fetchone()
        return self._row_to_page(row) if row is not None else None

    def pages_needing_reindex(self, limit: int = 50) -> list[PageRecord]:
        with self._reader("pages_needing_reindex") as cur:
            rows = cur.execute(
                f"""
                SELECT {_PAGE_COLUMNS} FROM pages
                WHERE needs_reindex = TRUE AND full_text IS NOT NULL AND full_text <> ''
                ORDER BY last_visited_at DESC
                LIMIT ?
                """,
                [limit],
            ).fetchall()
        return [self._row_to_page(row) for row in rows]

    def mark_needs_reindex(self, page_id: int) -> None:
        with self._transaction("mark_needs_reindex") as cur:
            cur.execute("UPDATE pages SET needs_reindex = TRUE WHERE id = ?", [page_id])

    def delete_page(self, url: str) -> bool:
        with self._transaction("delete_page") as cur:
            row = cur.execute("SELECT id FROM pages WHERE url = ?", [url]).fetchone()
            if row is None:
                return False
            self._delete_page_rows(cur, [int(row[0])])
            return True

    def delete_pages_older_than(self, days: float, *, now: float | None = None) -> int:
        cutoff = (time.time() if now is None else now) - days * 86400
        with self._transaction("delete_pages_older_than") as cur:
            rows = cur.execute(
                "SELECT id FROM pages WHERE last_visited_at < ? AND is_saved = FALSE",
                [cutoff],
            ).fetchall()
            page_ids = [int(row[0]) for row in rows]
            if page_ids:
                self._delete_page_rows(cur, page_ids)
        return len(page_ids)

    @staticmethod
    def _delete_page_rows(cur: duckdb.DuckDBPyConnection, page_ids: list[int]) -> None:
        placeholders = ", ".join(["?"] * len(page_ids))
        for table in ("chunk_vectors", "chunks", "page_vectors"):
            cur.execute(f"DELETE FROM {table} WHERE page_id IN ({placeholders})", page_ids)
        cur.execute(f"DELETE FROM pages WHERE id IN ({placeholders})", page_ids)

    # ------------------------------------------------------------------
    # Saved flag
    # ------------------------------------------------------------------

    def toggle_saved(self, url: str) -> bool:
        with self._transaction("toggle_saved") as cur:
            row = cur.execute("SELECT id, is_saved FROM pages WHERE url = ?", [url]).fetchone()
            if row is None:
                now = time.time()
                cur.execute(
                    """
                    INSERT INTO pages (
                        url, domain, first_visited_at, last_visited_at, is_saved
                    )
                    VALUES (?, ?, ?, ?, TRUE)
                    """,
                    [url, _domain(url), now, now],
                )
                return True
            new_value = not bool(row[1])
            cur.execute("UPDATE pages SET is_saved = ? WHERE id = ?", [new_value, int(row[0])])
            return new_value

    def is_saved(self, url: str) -> bool:
        with self._reader("is_saved") as cur:
            row = cur.execute("SELECT is_saved FROM pages WHERE url = ?", [url]).fetchone()
        return bool(row[0]) if row is not None else False

    def list_saved(self) -> list[PageRecord]:
        with self._reader("list_saved") as cur:
            rows = cur.execute(
                f"""
                SELECT {_PAGE_COLUMNS} FROM pages
                WHERE is_saved = TRUE
                ORDER BY last_visited_at DESC
                """
            ).fetchall()
        return [self._row_to_page(row) for row in rows]

    # ------------------------------------------------------------------
    # Chunks and vectors
    # ------------------------------------------------------------------

    def replace_chunks(self, page_id: int, chunks: Sequence[ChunkDraft]) -> None:
        with self._transaction("replace_chunks") as cur:
            self._require_page(cur, page_id)
            self._write_chunks(cur, page_id, chunks)
            # New chunks have no vectors until set_embeddings runs.
            cur.execute("UPDATE pages SET needs_reindex = TRUE WHERE id = ?", [page_id])

    def set_embeddings(
        self,
        page_id: int,
        title_vec: Sequence[float],
        summary_vec: Sequence[float],
        chunk_vecs: Sequence[Sequence[float]],
    ) -> None:
        vectors = PageVectors(
            title=list(title_vec),
            summary=list(summary_vec),
            chunks=[list(vec) for vec in chunk_vecs],
        )
        self._check_vectors(vectors)
        with self._transaction("set_embeddings") as cur:
            self._require_page(cur, page_id)
            chunk_ids = self._chunk_ids(cur, page_id)
            if len(chunk_ids) != len(vectors.chunks):
                raise StoreError(
                    f"page {page_id} has {len(chunk_ids)} chunks, "
                    f"got {len(vectors.chunks)} chunk vectors"
                )
            self._write_vectors(cur, page_id, chunk_ids, vectors)

    def index_page_content(
        self,
        page_id: int,
        *,
        summary: str | None,
        chunks: Sequence[ChunkDraft],
        vectors: PageVectors | None,
    ) -> None:
        if vectors is not None:
            self._check_vectors(vectors)
            if len(vectors.chunks) != len(chunks):
                raise StoreError(
                    f"got {len(chunks)} chunks but {len(vectors.chunks)} chunk vectors"
                )
        with self._transaction("index_page_content") as cur:
            self._require_page(cur, page_id)
            if summary is not None:
                cur.execute("UPDATE pages SET summary = ? WHERE id = ?", [summary, page_id])
            self._write_chunks(cur, page_id, chunks)
            if vectors is None:
                cur.execute("DELETE FROM page_vectors WHERE page_id = ?", [page_id])
                cur.execute(
                    "UPDATE pages SET needs_reindex = TRUE, embedding_dim = NULL WHERE id = ?",
                    [page_id],
                )
            else:
                self._write_vectors(cur, page_id, self._chunk_ids(cur, page_id), vectors)

    def get_chunks(self, page_id: int) -> list[ChunkRecord]:
        with self._reader("get_chunks") as cur:
            rows = cur.execute(
                """
                SELECT id, page_id, position, text, token_count
                FROM chunks
                WHERE page_id = ?
                ORDER BY position
                """,
                [page_id],
            ).fetchall()
        return [self._row_to_chunk(row) for row in rows]

    def get_chunks_by_id(self, chunk_ids: Sequence[int]) -> dict[int, ChunkRecord]:
        if not chunk_ids:
            return {}
        placeholders = ", ".join(["?"] * len(chunk_ids))
        with self._reader("get_chunks_by_id") as cur:
            rows = cur.execute(
                f"""
                SELECT id, page_id, position, text, token_count
                FROM chunks
                WHERE id IN ({placeholders})
                """,
                list(chunk_ids),
            ).fetchall()
        chunks = [self._row_to_chunk(row) for row in rows]
        return {chunk.id: chunk for chunk in chunks}

    def _check_vectors(self, vectors: PageVectors) -> None:
        if len(vectors.title) != self._dimension:
            raise DimensionMismatch(self._dimension, len(vectors.title), what="title vector")
        if len(vectors.summary) != self._dimension:
            raise DimensionMismatch(self._dimension, len(vectors.summary), what="summary vector")
        for index, vec in enumerate(vectors.chunks):
            if len(vec) != self._dimension:
                raise DimensionMismatch(self._dimension, len(vec), what=f"chunk vector {index}")

    @staticmethod
    def _require_page(cur: duckdb.DuckDBPyConnection, page_id: int) -> None:
        if cur.execute("SELECT 1 FROM pages WHERE id = ?", [page_id]).fetchone() is None:
            raise StoreError(f"No such page: {page_id}")

    @staticmethod
    def _chunk_ids(cur: duckdb.DuckDBPyConnection, page_id: int) -> list[int]:
        rows = cur.execute(
            "SELECT id FROM chunks WHERE page_id = ? ORDER BY position", [page_id]
        ).fetchall()
        return [int(row[0]) for row in rows]

    @staticmethod
    def _write_chunks(
        cur: duckdb.DuckDBPyConnection, page_id: int, chunks: Sequence[ChunkDraft]
    ) -> None:
        cur.execute("DELETE FROM chunk_vectors WHERE page_id = ?", [page_id])
        cur.execute("DELETE FROM chunks WHERE page_id = ?", [page_id])
        if chunks:
            cur.executemany(
                """
                INSERT INTO chunks (page_id, position, text, token_count)
                VALUES (?, ?, ?, ?)
                """,
                [
                    (page_id, chunk.position, chunk.text, chunk.token_count)
                    for chunk in sorted(chunks, key=lambda item: item.position)
                ],
            )

    def _write_vectors(
        self,
        cur: duckdb.DuckDBPyConnection,
        page_id: int,
        chunk_ids: list[int],
        vectors: PageVectors,
    ) -> None:
        dim = self._dimension
        cur.execute("DELETE FROM page_vectors WHERE page_id = ?", [page_id])
        cur.execute("DELETE FROM chunk_vectors WHERE page_id = ?", [page_id])
        cur.executemany(
            "INSERT INTO page_vectors (page_id, scope, dim, embedding) VALUES (?, ?, ?, ?)",
            [
                (page_id, "title", dim, vectors.title),
                (page_id, "summary", dim, vectors.summary),
            ],
        )
        if chunk_ids:
            cur.executemany(
                """
                INSERT INTO chunk_vectors (chunk_id, page_id, dim, embedding)
                VALUES (?, ?, ?, ?)
                """,
                [
                    (chunk_id, page_id, dim, vec)
                    for chunk_id, vec in zip(chunk_ids, vectors.chunks)
                ],
            )
        cur.execute(
            "UPDATE pages SET embedding_dim = ?, needs_reindex = FALSE WHERE id = ?",
            [dim, page_id],
        )

    # ------------------------------------------------------------------
    # Search primitives
    # ------------------------------------------------------------------

    def vector_search(
        self, query_vec: Sequence[float], scope: VectorScope, k: int
    ) -> list[VectorHit]:
        dim = self._dimension
        if len(query_vec) != dim:
            raise DimensionMismatch(dim, len(query_vec), what="query vector")
        if k <= 0 or not any(query_vec):
            return []

        if scope == "chunk":
            sql = """
                SELECT page_id, chunk_id, similarity, last_visited_at FROM (
                    SELECT
                        cv.page_id,
                        cv.chunk_id,
                        list_cosine_similarity(cv.embedding, CAST(? AS FLOAT[])) AS similarity,
                        p.last_visited_at
                    FROM chunk_vectors cv
                    JOIN pages p ON p.id = cv.page_id
                    WHERE cv.dim = ?
                ) ranked
                WHERE similarity IS NOT NULL AND NOT isnan(similarity)
                ORDER BY similarity DESC, last_visited_at DESC
                LIMIT ?
            """
            params: list[Any] = [list(query_vec), dim, k]
        elif scope in ("title", "summary"):
            sql = """
                SELECT page_id, NULL AS chunk_id, similarity, last_visited_at FROM (
                    SELECT
                        pv.page_id,
                        list_cosine_similarity(pv.embedding, CAST(? AS FLOAT[])) AS similarity,
                        p.last_visited_at
                    FROM page_vectors pv
                    JOIN pages p ON p.id = pv.page_id
                    WHERE pv.scope = ? AND pv.dim = ?
                ) ranked
                WHERE similarity IS NOT NULL AND NOT isnan(similarity)
                ORDER BY similarity DESC, last_visited_at DESC
                LIMIT ?
            """
            params = [list(query_vec), scope, dim, k]
        else:
            raise StoreError(f"Unsupported vector scope: {scope!r}")

        with self._reader("vector_search") as cur:
            rows = cur.execute(sql, params).fetchall()
        return [
            VectorHit(
                page_id=int(row[0]),
                chunk_id=int(row[1]) if row[1] is not None else None,
                similarity=float(row[2]),
                last_visited_at=float(row[3]),
            )
            for row in rows
        ]

    def lexical_search(self, query_text: str, scope: LexicalScope, k: int) -> list[LexicalHit]:
        terms = _query_terms(query_text)
        if not terms or k <= 0:
            return []

        if scope == "page":
            haystack = (
                "lower(p.title || ' ' || coalesce(p.summary, '') || ' ' "
                "|| coalesce(p.full_text, ''))"
            )
            source = "FROM pages p"
            id_columns = "p.id AS page_id, NULL AS chunk_id"
        elif scope == "chunk":
            haystack = "lower(c.text)"
            source = "FROM chunks c JOIN pages p ON p.id = c.page_id"
            id_columns = "c.page_id AS page_id, c.id AS chunk_id"
        else:
            raise StoreError(f"Unsupported lexical scope: {scope!r}")

        # Words are padded so every occurrence reads as " term " on its own,
        # which keeps "fox" from matching inside "firefox".
        words = f"(' ' || regexp_replace({haystack}, '{_WORD_SEPARATORS}', '  ', 'g') || ' ')"
        occurrence = "((length(words) - length(replace(words, ?, ''))) // length(?))"
        matched_expr = " + ".join(
            [f"CASE WHEN {occurrence} > 0 THEN 1 ELSE 0 END"] * len(terms)
        )
        frequency_expr = " + ".join([occurrence] * len(terms))
        sql = f"""
            SELECT page_id, chunk_id, matched, frequency, last_visited_at FROM (
                SELECT
                    page_id,
                    chunk_id,
                    ({matched_expr}) AS matched,
                    ({frequency_expr}) AS frequency,
                    last_visited_at
                FROM (
                    SELECT {id_columns}, {words} AS words, p.last_visited_at
                    {source}
                ) tokenized
            ) ranked
            WHERE matched > 0
            ORDER BY matched DESC, frequency DESC, last_visited_at DESC
            LIMIT ?
        """
        params: list[Any] = []
        for _ in range(2):
            for term in terms:
                padded = f" {term} "
                params.extend([padded, padded])
        params.append(k)

        with self._reader("lexical_search") as cur:
            rows = cur.execute(sql, params).fetchall()
        return [
            LexicalHit(
                page_id=int(row[0]),
                chunk_id=int(row[1]) if row[1] is not None else None,
                relevance=float(row[2]) + 0.1 * math.log1p(float(row[3])),
                last_visited_at=float(row[4]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def reconfigure_dimension(self, new_dim: int) -> int:
        if new_dim <= 0:
            raise StoreError("dimension must be > 0")
        with self._transaction("reconfigure_dimension") as cur:
            row = cur.execute(
                """
                SELECT count(*) FROM pages
                WHERE id IN (
                    SELECT page_id FROM page_vectors WHERE dim <> ?
                    UNION
                    SELECT page_id FROM chunk_vectors WHERE dim <> ?
                )
                OR (embedding_dim IS NOT NULL AND embedding_dim <> ?)
                """,
                [new_dim, new_dim, new_dim],
            ).fetchone()
            affected = int(row[0]) if row else 0
            cur.execute(
                """
                UPDATE pages SET needs_reindex = TRUE, embedding_dim = NULL
                WHERE id IN (
                    SELECT page_id FROM page_vectors WHERE dim <> ?
                    UNION
                    SELECT page_id FROM chunk_vectors WHERE dim <> ?
                )
                OR (embedding_dim IS NOT NULL AND embedding_dim <> ?)
                """,
                [new_dim, new_dim, new_dim],
            )
            cur.execute("DELETE FROM page_vectors WHERE dim <> ?", [new_dim])
            cur.execute("DELETE FROM chunk_vectors WHERE dim <> ?", [new_dim])
            self._write_meta(cur, META_DIMENSION, new_dim)
            self._dimension = new_dim
        logger.info("vector index reconfigured", dimension=new_dim, pages_affected=affected)
        return affected

    def stats(self) -> StoreStats:
        with self._reader("stats") as cur:
            row = cur.execute(
                """
                SELECT
                    (SELECT count(*) FROM pages),
                    (SELECT count(*) FROM chunks),
                    (SELECT count(*) FROM pages
                        WHERE embedding_dim IS NOT NULL AND needs_reindex = FALSE),
                    (SELECT count(*) FROM pages
                        WHERE needs_reindex = TRUE AND full_text IS NOT NULL),
                    (SELECT count(*) FROM pages WHERE is_saved = TRUE)
                """
            ).fetchone()
        counts = [int(value) for value in row] if row else [0, 0, 0, 0, 0]
        return StoreStats(
            page_count=counts[0],
            chunk_count=counts[1],
            indexed_count=counts[2],
            pending_count=counts[3],
            saved_count=counts[4],
            dimension=self._dimension,
        )

    def clear(self) -> None:
        with self._transaction("clear") as cur:
            for table in ("chunk_vectors", "page_vectors", "chunks", "pages"):
                cur.execute(f"DELETE FROM {table}")
        logger.info("search index cleared", db_path=self.db_path)

    def checkpoint(self) -> None:
        with self._write_lock, _store_errors("checkpoint"):
            self._writer.execute("CHECKPOINT")

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def get_meta(self, key: str) -> JsonValue:
        with self._reader("get_meta") as cur:
            row = cur.execute("SELECT value_json FROM store_meta WHERE key = ?", [key]).fetchone()
        if row is None:
            return None
        try:
            return _JSON_VALUE.validate_json(str(row[0]))
        except ValidationError as exc:
            raise StoreError(f"Corrupt metadata value for {key!r}") from exc

    def set_meta(self, key: str, value: JsonValue) -> None:
        with self._transaction("set_meta") as cur:
            self._write_meta(cur, key, value)

    @staticmethod
    def _write_meta(cur: duckdb.DuckDBPyConnection, key: str, value: JsonValue) -> None:
        encoded = _JSON_VALUE.dump_json(value).decode("utf-8")
        cur.execute(
            """
            INSERT INTO store_meta (key, value_json) VALUES (?, ?)
            ON CONFLICT (key) DO UPDATE SET value_json = excluded.value_json
            """,
            [key, encoded],
        )

    # ------------------------------------------------------------------
    # Row decoding
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_page(row: tuple[Any, ...]) -> PageRecord:
        return PageRecord(
            id=int(row[0]),
            url=str(row[1]),
            title=str(row[2] or ""),
            summary=str(row[3]) if row[3] is not None else None,
            full_text=str(row[4]) if row[4] is not None else None,
            domain=str(row[5] or ""),
            first_visited_at=float(row[6]),
            last_visited_at=float(row[7]),
            visit_count=int(row[8]),
            is_saved=bool(row[9]),
            needs_reindex=bool(row[10]),
            embedding_dim=int(row[11]) if row[11] is not None else None,
            workspace_id=str(row[12]) if row[12] is not None else None,
        )

    @staticmethod
    def _row_to_chunk(row: tuple[Any, ...]) -> ChunkRecord:
        return ChunkRecord(
            id=int(row[0]),
            page_id=int(row[1]),
            position=int(row[2]),
            text=str(row[3]),
            token_count=int(row[4]),
        )

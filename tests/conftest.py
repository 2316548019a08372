"""Shared fixtures: a deterministic fake embedding provider and temp stores."""

from __future__ import annotations

import math
import re
import threading
import time
import zlib
from pathlib import Path
from typing import Sequence

import pytest

from history_search.index_config import IndexConfig
from history_search.storage import DuckDBSearchStore

DIM = 8


def hash_vector(text: str, dim: int = DIM) -> list[float]:
    """Bag-of-words vector: every word adds weight to one hashed bucket."""
    values = [0.0] * dim
    for word in re.findall(r"\w+", text.lower()):
        values[zlib.crc32(word.encode("utf-8")) % dim] += 1.0
    norm = math.sqrt(sum(value * value for value in values))
    if norm == 0:
        values[0] = 1.0
        return values
    return [value / norm for value in values]


class FakeEmbeddingProvider:
    """Deterministic provider with hooks for latency and failure."""

    def __init__(
        self,
        dim: int = DIM,
        *,
        delay: float = 0.0,
        fail_with: Exception | None = None,
    ) -> None:
        self.dim = dim
        self.delay = delay
        self.fail_with = fail_with
        self.batch_calls = 0
        self.query_calls = 0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    @property
    def dimension(self) -> int:
        return self.dim

    @property
    def identity(self) -> str:
        return f"fake:hash:{self.dim}"

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_query(self, text: str) -> list[float]:
        self.query_calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return hash_vector(text, self.dim)

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        with self._lock:
            self.batch_calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.fail_with is not None:
                raise self.fail_with
            return [hash_vector(text, self.dim) for text in texts]
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture()
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "search_index.duckdb")


@pytest.fixture()
def store(db_path: str):
    search_store = DuckDBSearchStore(db_path, dimension=DIM)
    yield search_store
    search_store.close()


@pytest.fixture()
def provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture()
def small_config() -> IndexConfig:
    return IndexConfig(dimension=DIM, chunk_size=5, chunk_overlap=2)

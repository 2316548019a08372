"""Tests for index configuration and path resolution."""

from pathlib import Path

import pytest

from history_search.errors import ConfigError
from history_search.index_config import IndexConfig, resolve_db_path


def test_defaults() -> None:
    config = IndexConfig()

    assert config.provider_kind == "local"
    assert config.dimension == 384
    assert (config.chunk_size, config.chunk_overlap) == (500, 50)
    assert config.rrf_k == 60.0
    assert config.half_life_days == 30.0
    assert config.summary_policy == "first_chunk"


def test_api_key_is_hidden_from_repr() -> None:
    config = IndexConfig(provider_kind="openai", api_key="sk-secret")

    assert "sk-secret" not in repr(config)


@pytest.mark.parametrize(
    "values",
    [
        {"chunk_size": 10, "chunk_overlap": 10},
        {"chunk_size": 0},
        {"dimension": -1},
        {"provider_kind": "unknown"},
        {"not_a_setting": 1},
    ],
)
def test_invalid_settings_raise_config_error(values: dict) -> None:
    with pytest.raises(ConfigError):
        IndexConfig.build(**values)


def test_from_env_reads_prefixed_variables(monkeypatch) -> None:
    monkeypatch.setenv("HISTORY_SEARCH_PROVIDER_KIND", "openai")
    monkeypatch.setenv("HISTORY_SEARCH_DIMENSION", "256")
    monkeypatch.setenv("HISTORY_SEARCH_REQUEST_TIMEOUT", "2.5")
    monkeypatch.setenv("HISTORY_SEARCH_MODEL", "")

    config = IndexConfig.from_env(chunk_size=100, chunk_overlap=None)

    assert config.provider_kind == "openai"
    assert config.dimension == 256
    assert config.request_timeout == 2.5
    assert config.model is None
    assert config.chunk_size == 100
    assert config.chunk_overlap == 50


def test_with_changes_validates() -> None:
    config = IndexConfig(dimension=8)

    changed = config.with_changes(dimension=16)

    assert changed.dimension == 16
    assert config.dimension == 8
    with pytest.raises(ConfigError):
        config.with_changes(chunk_overlap=config.chunk_size)


def test_resolve_db_path_precedence(tmp_path: Path, monkeypatch) -> None:
    env_path = tmp_path / "env" / "index.duckdb"
    explicit = tmp_path / "explicit" / "index.duckdb"
    monkeypatch.setenv("HISTORY_SEARCH_DB_PATH", str(env_path))

    assert resolve_db_path(str(explicit)) == str(explicit.resolve())
    assert explicit.parent.is_dir()
    assert resolve_db_path() == str(env_path.resolve())

    monkeypatch.delenv("HISTORY_SEARCH_DB_PATH")
    monkeypatch.setenv("HOME", str(tmp_path))
    assert resolve_db_path() == str(
        (tmp_path / ".history_search" / "search_index.duckdb").resolve()
    )

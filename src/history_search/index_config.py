"""
Configuration for the search index: storage location, embedding provider,
chunking and ranking parameters.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import ConfigError


DEFAULT_DB_PATH = "~/.history_search/search_index.duckdb"
ENV_DB_PATH = "HISTORY_SEARCH_DB_PATH"
ENV_PREFIX = "HISTORY_SEARCH_"

ProviderKind: TypeAlias = Literal["openai", "voyage", "gemini", "local", "custom"]
SummaryPolicyName: TypeAlias = Literal["first_chunk", "supplied"]


def resolve_db_path(override_path: str | None = None) -> str:
    """
    Resolve the DuckDB path from an explicit override, env var, or default.

    Precedence:
    1) explicit override_path
    2) HISTORY_SEARCH_DB_PATH
    3) default path
    """
    raw_path = override_path or os.getenv(ENV_DB_PATH) or DEFAULT_DB_PATH
    resolved = Path(raw_path).expanduser().resolve()
    resolved.parent.mkdir(parents=True, exist_ok=True)
    return str(resolved)


class IndexConfig(BaseModel):
    """Immutable settings snapshot injected into the engine and pipeline."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    provider_kind: ProviderKind = "local"
    endpoint: str | None = None
    api_key: str | None = Field(default=None, repr=False)
    model: str | None = None
    dimension: int = Field(default=384, gt=0)
    chunk_size: int = Field(default=500, gt=0)
    chunk_overlap: int = Field(default=50, ge=0)
    batch_size: int = Field(default=32, gt=0)
    request_timeout: float = Field(default=30.0, gt=0)
    candidate_multiplier: int = Field(default=4, ge=1)
    rrf_k: float = Field(default=60.0, gt=0)
    half_life_days: float = Field(default=30.0, gt=0)
    summary_policy: SummaryPolicyName = "first_chunk"

    @model_validator(mode="after")
    def _check_chunking(self) -> "IndexConfig":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        return self

    @classmethod
    def build(cls, **values: Any) -> "IndexConfig":
        """Validate raw settings, raising ConfigError instead of ValidationError."""
        try:
            return cls(**values)
        except ValidationError as exc:
            raise ConfigError(str(exc)) from exc

    @classmethod
    def from_env(cls, **overrides: Any) -> "IndexConfig":
        """Build a config from HISTORY_SEARCH_* environment variables."""
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.build(**values)

    def with_changes(self, **changes: Any) -> "IndexConfig":
        """Return a validated copy with ``changes`` applied."""
        return self.build(**{**self.model_dump(), **changes})

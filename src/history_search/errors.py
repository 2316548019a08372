"""
Exception taxonomy for the search subsystem.
"""

from __future__ import annotations

from typing import Literal, TypeAlias

ProviderErrorKind: TypeAlias = Literal[
    "network",
    "auth",
    "rate_limit",
    "malformed_response",
    "dimension_mismatch",
    "timeout",
    "unavailable",
]


class HistorySearchError(Exception):
    """Base class for all errors raised by history_search."""


class ConfigError(HistorySearchError, ValueError):
    """Raised when chunking or provider configuration is invalid."""


class ProviderError(HistorySearchError):
    """Raised when an embedding backend fails to return usable vectors."""

    def __init__(
        self,
        kind: ProviderErrorKind,
        message: str,
        *,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"{self.kind} ({self.status_code}): {self.message}"
        return f"{self.kind}: {self.message}"


class StoreError(HistorySearchError):
    """Raised on storage I/O failures or schema invariant violations."""


class DimensionMismatch(StoreError):
    """Raised when a vector's length differs from the configured dimension."""

    def __init__(self, expected: int, actual: int, *, what: str = "vector") -> None:
        super().__init__(
            f"{what} has dimension {actual}, store is configured for {expected}"
        )
        self.expected = expected
        self.actual = actual


class PipelineFailure(HistorySearchError):
    """Wraps the failing indexing step and its underlying cause."""

    def __init__(self, step: str, cause: BaseException) -> None:
        super().__init__(f"indexing failed during {step}: {cause}")
        self.step = step
        self.cause = cause

"""
Chunking utilities for indexing page text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterator

from ..errors import ConfigError

DEFAULT_MAX_TOKENS = 500
DEFAULT_OVERLAP_TOKENS = 50

_SENTENCE_END_RE = re.compile(r"[.!?][\"')\]]*$")


@dataclass(frozen=True)
class TextChunk:
    """A window of page text with its token offsets."""

    text: str
    position: int
    start_token: int
    end_token: int

    @property
    def token_count(self) -> int:
        return self.end_token - self.start_token


def tokenize(text: str) -> list[str]:
    """Split text into whitespace-delimited word tokens."""
    return text.split()


class TokenChunker:
    """
    Sentence-aware token window chunker with a fixed overlap.

    Consecutive windows share exactly ``overlap_tokens`` tokens. A window is
    cut early after a sentence terminator when one falls in its back half.
    """

    def __init__(
        self,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
    ) -> None:
        if max_tokens <= 0:
            raise ConfigError("max_tokens must be > 0")
        if overlap_tokens < 0:
            raise ConfigError("overlap_tokens must be >= 0")
        if overlap_tokens >= max_tokens:
            raise ConfigError("overlap_tokens must be smaller than max_tokens")

        self.max_tokens = max_tokens
        self.overlap_tokens = overlap_tokens

    def iter_chunks(self, text: str) -> Iterator[TextChunk]:
        """Lazily yield chunks; every call starts a fresh pass over ``text``."""
        tokens = tokenize(text)
        total = len(tokens)
        start = 0
        position = 0

        while start < total:
            end = min(start + self.max_tokens, total)
            if end < total:
                end = self._sentence_boundary(tokens, start, end)

            yield TextChunk(
                text=" ".join(tokens[start:end]),
                position=position,
                start_token=start,
                end_token=end,
            )
            position += 1

            if end >= total:
                break
            start = end - self.overlap_tokens

    def chunk_text(self, text: str) -> list[TextChunk]:
        return list(self.iter_chunks(text))

    def _sentence_boundary(self, tokens: list[str], start: int, end: int) -> int:
        # Only cut where the next window still advances past the overlap.
        floor = max(start + self.max_tokens // 2, start + self.overlap_tokens + 1)
        for candidate in range(end, floor - 1, -1):
            if _SENTENCE_END_RE.search(tokens[candidate - 1]):
                return candidate
        return end


def chunk(
    text: str,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
) -> Iterator[str]:
    """Return a lazy iterator over chunk texts for ``text``."""
    chunker = TokenChunker(max_tokens, overlap_tokens)
    return (item.text for item in chunker.iter_chunks(text))

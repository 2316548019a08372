"""Tests for the token chunker."""

import pytest

from history_search.errors import ConfigError
from history_search.indexing.chunker import TokenChunker, chunk, tokenize

FOX = "The quick brown fox jumps over the lazy dog"


def test_quick_brown_fox_windows() -> None:
    assert list(chunk(FOX, 5, 2)) == [
        "The quick brown fox jumps",
        "fox jumps over the lazy",
        "the lazy dog",
    ]


def test_degenerate_inputs() -> None:
    assert list(chunk("")) == []
    assert list(chunk("   \n\t ")) == []
    assert list(chunk("just a few words")) == ["just a few words"]


def test_consecutive_chunks_share_overlap() -> None:
    text = " ".join(f"w{i}" for i in range(1234))
    chunker = TokenChunker(max_tokens=100, overlap_tokens=10)

    chunks = chunker.chunk_text(text)

    assert len(chunks) > 1
    for previous, current in zip(chunks, chunks[1:]):
        assert current.start_token == previous.end_token - 10
        assert previous.text.split()[-10:] == current.text.split()[:10]
    assert all(item.token_count <= 100 for item in chunks)


def test_chunks_cover_text_without_gaps() -> None:
    text = "Alpha beta. Gamma delta epsilon! Zeta eta theta? " * 40
    chunker = TokenChunker(max_tokens=30, overlap_tokens=5)
    tokens = tokenize(text)

    rebuilt: list[str] = []
    for item in chunker.iter_chunks(text):
        words = item.text.split()
        skip = len(rebuilt) - item.start_token
        rebuilt.extend(words[skip:])

    assert rebuilt == tokens


def test_prefers_sentence_boundary_in_back_half() -> None:
    words = [f"w{i}" for i in range(20)]
    words[7] = "w7."
    chunker = TokenChunker(max_tokens=10, overlap_tokens=2)

    chunks = chunker.chunk_text(" ".join(words))

    assert chunks[0].text.endswith("w7.")
    assert chunks[0].end_token == 8
    assert chunks[1].start_token == 6


def test_ignores_sentence_boundary_in_front_half() -> None:
    words = [f"w{i}" for i in range(20)]
    words[1] = "w1."
    chunker = TokenChunker(max_tokens=10, overlap_tokens=2)

    chunks = chunker.chunk_text(" ".join(words))

    assert chunks[0].end_token == 10


def test_iteration_is_lazy_and_restartable() -> None:
    chunker = TokenChunker(max_tokens=5, overlap_tokens=2)

    first = chunker.iter_chunks(FOX)
    assert next(first).position == 0

    assert [item.text for item in chunker.iter_chunks(FOX)] == list(chunk(FOX, 5, 2))
    assert list(chunk(FOX, 5, 2)) == list(chunk(FOX, 5, 2))


@pytest.mark.parametrize(
    ("max_tokens", "overlap_tokens"),
    [(0, 0), (-5, 0), (10, -1), (10, 10), (10, 20)],
)
def test_invalid_parameters_raise_config_error(max_tokens: int, overlap_tokens: int) -> None:
    with pytest.raises(ConfigError):
        TokenChunker(max_tokens=max_tokens, overlap_tokens=overlap_tokens)

    with pytest.raises(ValueError):
        chunk(FOX, max_tokens, overlap_tokens)

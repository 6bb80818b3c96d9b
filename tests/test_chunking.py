from __future__ import annotations

import pytest

from chatmem.chunking import chunk_text, trailing_overlap, validate_window
from chatmem.exceptions import ConfigError
from chatmem.tokenizer import HeuristicTokenizer, create_tokenizer


def test_three_line_file_is_one_chunk():
    chunks = chunk_text("A\nB\nC", "notes.md", max_tokens=400, overlap_tokens=80)
    assert len(chunks) == 1
    assert chunks[0].start_line == 1
    assert chunks[0].end_line == 3
    assert chunks[0].chunk_id == "notes.md:1-3"
    assert chunks[0].text == "A\nB\nC"


def test_blank_text_produces_no_chunks():
    assert chunk_text("", "empty.md") == []
    assert chunk_text("  \n\n \t", "empty.md") == []


def test_chunks_cover_every_line_within_budget():
    tok = HeuristicTokenizer()
    lines = [f"line {i} talks about memory retrieval and ranking" for i in range(1, 121)]
    text = "\n".join(lines)
    chunks = chunk_text(text, "long.md", tokenizer=tok, max_tokens=60, overlap_tokens=15)

    assert len(chunks) > 1
    assert chunks[0].start_line == 1
    assert chunks[-1].end_line == len(lines)
    for prev, nxt in zip(chunks, chunks[1:]):
        assert nxt.start_line > prev.start_line
        # no gaps between consecutive chunks
        assert nxt.start_line <= prev.end_line + 1
    for chunk in chunks:
        assert chunk.token_count <= 60
        assert chunk.token_count == sum(tok.count(l) for l in chunk.text.split("\n"))
        assert chunk.text == "\n".join(lines[chunk.start_line - 1:chunk.end_line])

    covered = set()
    for chunk in chunks:
        covered.update(range(chunk.start_line, chunk.end_line + 1))
    assert covered == set(range(1, len(lines) + 1))


def test_overlap_seeds_next_chunk_with_trailing_lines():
    text = "\n".join(f"w{i}" for i in range(1, 11))
    # one heuristic token per line
    chunks = chunk_text(text, "o.md", max_tokens=4, overlap_tokens=2)
    assert [(c.start_line, c.end_line) for c in chunks] == [(1, 4), (3, 6), (5, 8), (7, 10)]


def test_single_oversized_line_becomes_its_own_chunk():
    big = "word " * 200
    text = f"short\n{big}\nafter"
    chunks = chunk_text(text, "big.md", max_tokens=50, overlap_tokens=10)
    oversized = [c for c in chunks if c.token_count > 50]
    assert len(oversized) == 1
    assert oversized[0].start_line == oversized[0].end_line == 2


def test_invalid_window_is_rejected():
    with pytest.raises(ConfigError):
        validate_window(80, 80)
    with pytest.raises(ConfigError):
        validate_window(400, -1)
    with pytest.raises(ConfigError):
        chunk_text("a", "x.md", max_tokens=10, overlap_tokens=20)


def test_trailing_overlap_counts_backward_within_budget():
    assert trailing_overlap([5, 5, 5], 10) == 2
    assert trailing_overlap([5, 5, 11], 10) == 0
    assert trailing_overlap([], 10) == 0


def test_heuristic_tokenizer_counts_word_pieces_and_punctuation():
    tok = HeuristicTokenizer()
    assert tok.count("") == 0
    assert tok.count("hello, world") == 5
    assert tok.count("a b c") == 3


def test_create_tokenizer_factory():
    assert isinstance(create_tokenizer("heuristic"), HeuristicTokenizer)
    assert create_tokenizer("tiktoken").name.startswith("tiktoken:")
    with pytest.raises(ValueError):
        create_tokenizer("nope")

"""Line-oriented chunking with token-bounded windows and trailing overlap."""

from __future__ import annotations

from dataclasses import dataclass

from chatmem.exceptions import ConfigError
from chatmem.tokenizer import HeuristicTokenizer, Tokenizer


@dataclass
class TextChunk:
    chunk_id: str
    text: str
    start_line: int
    end_line: int
    token_count: int


def validate_window(max_tokens: int, overlap_tokens: int) -> None:
    if overlap_tokens < 0:
        raise ConfigError("chunk overlap must be >= 0")
    if max_tokens <= overlap_tokens:
        raise ConfigError(
            f"chunk size ({max_tokens}) must be greater than chunk overlap ({overlap_tokens})"
        )


def trailing_overlap(line_tokens: list[int], budget: int) -> int:
    """How many trailing lines fit within ``budget`` tokens, counted backward."""
    total = 0
    kept = 0
    for count in reversed(line_tokens):
        if total + count > budget:
            break
        total += count
        kept += 1
    return kept


def _close(file_path: str, lines: list[str], counts: list[int], start_line: int) -> TextChunk:
    end_line = start_line + len(lines) - 1
    return TextChunk(
        chunk_id=f"{file_path}:{start_line}-{end_line}",
        text="\n".join(lines),
        start_line=start_line,
        end_line=end_line,
        token_count=sum(counts),
    )


def chunk_text(
    text: str,
    file_path: str,
    tokenizer: Tokenizer | None = None,
    max_tokens: int = 400,
    overlap_tokens: int = 80,
) -> list[TextChunk]:
    """Split ``text`` into line-range chunks of at most ``max_tokens`` tokens.

    Lines accumulate until the next one would overflow the budget. The closed
    chunk's trailing lines that fit in ``overlap_tokens`` seed the next chunk,
    trimmed further if overlap plus the incoming line would still overflow.
    A single line longer than the budget becomes its own oversized chunk.
    Line numbers are 1-based and inclusive.
    """
    validate_window(max_tokens, overlap_tokens)
    if not text.strip():
        return []
    tok = tokenizer or HeuristicTokenizer()

    chunks: list[TextChunk] = []
    current: list[str] = []
    counts: list[int] = []
    running = 0
    start_line = 1

    for idx, line in enumerate(text.split("\n")):
        line_no = idx + 1
        n = tok.count(line)
        if current and running + n > max_tokens:
            chunks.append(_close(file_path, current, counts, start_line))
            keep = trailing_overlap(counts, overlap_tokens)
            while keep and sum(counts[-keep:]) + n > max_tokens:
                keep -= 1
            if keep:
                current = current[-keep:]
                counts = counts[-keep:]
            else:
                current = []
                counts = []
            running = sum(counts)
            start_line = line_no - keep
        current.append(line)
        counts.append(n)
        running += n

    if current:
        chunks.append(_close(file_path, current, counts, start_line))
    return chunks

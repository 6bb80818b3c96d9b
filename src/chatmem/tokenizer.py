"""Token counting for chunk budgets and cache accounting."""

from __future__ import annotations

import re
from typing import Protocol, runtime_checkable


@runtime_checkable
class Tokenizer(Protocol):
    name: str

    def count(self, text: str) -> int: ...


class HeuristicTokenizer:
    """Deterministic BPE approximation with no external vocabulary.

    Words count one token per four characters, every punctuation mark counts
    one token. Close to cl100k on English prose and code.
    """

    name = "heuristic"
    _TOKEN_RE = re.compile(r"\w{1,4}|[^\w\s]")

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._TOKEN_RE.findall(text))


class TiktokenTokenizer:
    """Exact token counts for OpenAI models via tiktoken."""

    def __init__(self, model: str = "text-embedding-3-small") -> None:
        self.model = model
        self.name = f"tiktoken:{model}"
        self._encoding = None

    def _ensure_encoding(self):
        if self._encoding is not None:
            return self._encoding
        try:
            import tiktoken
        except Exception as exc:
            raise RuntimeError(
                "tiktoken is required for tokenizer='tiktoken'. "
                "Install with: pip install 'chatmem[tiktoken]'"
            ) from exc
        try:
            self._encoding = tiktoken.encoding_for_model(self.model)
        except KeyError:
            self._encoding = tiktoken.get_encoding("cl100k_base")
        return self._encoding

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._ensure_encoding().encode(text, disallowed_special=()))


def create_tokenizer(name: str = "heuristic", model: str = "") -> Tokenizer:
    kind = (name or "heuristic").strip().lower()
    if kind in {"heuristic", "default", "estimate"}:
        return HeuristicTokenizer()
    if kind == "tiktoken":
        return TiktokenTokenizer(model=model or "text-embedding-3-small")
    raise ValueError(f"Unsupported tokenizer: {name}")

"""Shared utilities."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Any

import numpy as np
import orjson


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def json_dumps(obj: Any) -> str:
    return orjson.dumps(obj).decode()


def json_loads(data: str | bytes) -> Any:
    return orjson.loads(data)


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def text_hash(text: str) -> str:
    return content_hash(text.encode("utf-8"))


def iso_str(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def parse_iso(s: str) -> datetime:
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_opt(s: str | None) -> datetime | None:
    return parse_iso(s) if s else None


def vector_to_blob(vector: np.ndarray) -> bytes:
    return np.ascontiguousarray(vector, dtype=np.float32).tobytes()


def blob_to_vector(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32).copy()


def format_citation(path: str, start_line: int, end_line: int) -> str:
    """``path#L3`` for a single line, ``path#L3-L9`` for a range."""
    if start_line == end_line:
        return f"{path}#L{start_line}"
    return f"{path}#L{start_line}-L{end_line}"


def create_snippet(text: str, query: str, max_chars: int = 700, step: int = 50) -> str:
    """Pick the window of ``text`` that contains the most query terms.

    Slides a ``max_chars`` window across the text in ``step`` increments,
    always ending with the window flush against the end of the text, and
    keeps the first window with the highest number of distinct query terms.
    Ellipses mark truncation on either side.
    """
    if len(text) <= max_chars:
        return text
    terms = [t for t in query.lower().split() if t]
    window = min(max_chars, len(text))
    best_start = 0
    best_hits = 0
    last = len(text) - window
    starts = list(range(0, last + 1, step))
    if starts[-1] != last:
        starts.append(last)
    for start in starts:
        chunk = text[start:start + window].lower()
        hits = sum(1 for t in terms if t in chunk)
        if hits > best_hits:
            best_hits = hits
            best_start = start
    snippet = text[best_start:best_start + window]
    if best_start > 0:
        snippet = "..." + snippet
    if best_start + window < len(text):
        snippet = snippet + "..."
    return snippet


def parse_json_object(raw: str) -> dict[str, Any]:
    text = (raw or "").strip()
    if not text:
        return {}
    if "```json" in text:
        m = re.search(r"```json\s*(.*?)\s*```", text, flags=re.DOTALL | re.IGNORECASE)
        if m:
            text = m.group(1).strip()
    elif text.startswith("```"):
        m = re.search(r"```\s*(.*?)\s*```", text, flags=re.DOTALL)
        if m:
            text = m.group(1).strip()
    try:
        data = json_loads(text)
        return data if isinstance(data, dict) else {}
    except ValueError:
        pass
    # Salvage an object embedded in surrounding prose.
    m = re.search(r"\{.*\}", text, flags=re.DOTALL)
    if not m:
        return {}
    try:
        data = json_loads(m.group(0))
        return data if isinstance(data, dict) else {}
    except ValueError:
        return {}

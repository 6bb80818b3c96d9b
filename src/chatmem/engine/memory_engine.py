"""Memory engine: chunk, embed, persist and search virtual memory files."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field

import numpy as np

from chatmem.chunking import TextChunk, chunk_text, validate_window
from chatmem.config import ChunkingConfig, SearchConfig
from chatmem.embeddings.cache import Embedding, EmbeddingCache
from chatmem.exceptions import ConfigError, NotFoundError, StorageError, ValidationError
from chatmem.retrieval.hybrid import HybridSearch
from chatmem.storage.sqlite_store import SQLiteStore
from chatmem.tokenizer import HeuristicTokenizer, Tokenizer
from chatmem.types import (
    CacheStats,
    IndexContentResult,
    MemoryFile,
    MemoryFileContent,
    SearchResult,
    SourceTag,
)
from chatmem.utils import create_snippet, format_citation, text_hash

logger = logging.getLogger(__name__)

SEARCH_LOG_BACKLOG = 1000


def _source_tag(source: str | SourceTag) -> SourceTag:
    try:
        return SourceTag(source)
    except ValueError as exc:
        allowed = ", ".join(s.value for s in SourceTag)
        raise ValidationError(f"unknown source tag {source!r} (expected one of: {allowed})") from exc


@dataclass
class PreparedContent:
    """A file chunked and embedded, ready for ``MemoryEngine.write_prepared``."""

    user_id: str
    file_path: str
    source: SourceTag
    content_hash: str
    size: int
    chunks: list[TextChunk] = field(default_factory=list)
    embeddings: list[Embedding] = field(default_factory=list)
    unchanged_id: int | None = None


class MemoryEngine:
    """The leaf service every other component calls.

    Owns chunking, cached embeddings, hybrid search and the virtual file
    CRUD surface. All writes run inside ``SQLiteStore.transaction()``.
    """

    def __init__(
        self,
        store: SQLiteStore,
        cache: EmbeddingCache,
        hybrid: HybridSearch,
        tokenizer: Tokenizer | None = None,
        chunking: ChunkingConfig | None = None,
        search: SearchConfig | None = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.hybrid = hybrid
        self.tokenizer = tokenizer or HeuristicTokenizer()
        self.chunking = chunking or ChunkingConfig()
        self.search_config = search or SearchConfig()
        self._search_logs: deque[dict] = deque(maxlen=SEARCH_LOG_BACKLOG)
        self._validate_config()

    def _validate_config(self) -> None:
        validate_window(self.chunking.tokens, self.chunking.overlap)
        dims = getattr(self.cache.embedder, "dims", 1)
        if int(dims) <= 0:
            raise ConfigError("embedding dims must be > 0")
        if not 0.0 <= self.search_config.min_score <= 1.0:
            raise ConfigError("search min_score must be within [0, 1]")

    # --- Indexing ---

    async def prepare_content(
        self,
        user_id: str,
        file_path: str,
        content: str,
        source: str | SourceTag = SourceTag.MEMORY,
    ) -> PreparedContent:
        """Chunk and embed ``content`` without taking the store's writer.

        Unchanged content comes back with ``unchanged_id`` set and no chunks.
        """
        prepared = PreparedContent(
            user_id=user_id,
            file_path=file_path,
            source=_source_tag(source),
            content_hash=text_hash(content),
            size=len(content.encode("utf-8")),
        )
        existing = self.store.get_memory_file(user_id, file_path)
        if existing is not None and existing.content_hash == prepared.content_hash:
            prepared.unchanged_id = existing.id
            return prepared
        prepared.chunks = chunk_text(
            content,
            file_path,
            tokenizer=self.tokenizer,
            max_tokens=self.chunking.tokens,
            overlap_tokens=self.chunking.overlap,
        )
        prepared.embeddings = await self.cache.embed([chunk.text for chunk in prepared.chunks])
        return prepared

    def write_prepared(self, prepared: PreparedContent) -> IndexContentResult:
        """Replace the file's chunk set. Call inside ``store.transaction()``."""
        user_id, file_path = prepared.user_id, prepared.file_path
        existing = self.store.get_memory_file(user_id, file_path)
        if existing is not None and existing.content_hash == prepared.content_hash:
            logger.debug("%s unchanged for user %s, skipping", file_path, user_id)
            return IndexContentResult(chunks_created=0, file_id=existing.id)
        if prepared.unchanged_id is not None:
            raise StorageError(f"{file_path} changed while it was being indexed")

        file_id = self.store.upsert_memory_file(
            user_id, file_path, prepared.source.value, prepared.content_hash, prepared.size
        )
        self.store.delete_chunks_for_file(user_id, file_id)
        self.cache.persist(prepared.embeddings)
        for chunk, embedding in zip(prepared.chunks, prepared.embeddings):
            self.store.insert_chunk(
                user_id=user_id,
                file_id=file_id,
                chunk_id=chunk.chunk_id,
                source=prepared.source.value,
                start_line=chunk.start_line,
                end_line=chunk.end_line,
                text=chunk.text,
                content_hash=text_hash(chunk.text),
                token_count=chunk.token_count,
                model=self.cache.model,
                vector=embedding.vector,
            )
        self.store.set_file_chunk_count(file_id, len(prepared.chunks))
        return IndexContentResult(chunks_created=len(prepared.chunks), file_id=file_id)

    async def index_content(
        self,
        user_id: str,
        file_path: str,
        content: str,
        source: str | SourceTag = SourceTag.MEMORY,
    ) -> IndexContentResult:
        """Chunk, embed and store ``content`` as ``file_path``.

        Unchanged content is a no-op that reports zero chunks. Embeddings are
        computed first; the file row, its old chunks, the new chunks and any
        new embedding cache rows are then written in one short transaction.
        """
        prepared = await self.prepare_content(user_id, file_path, content, source)
        async with self.store.transaction():
            result = self.write_prepared(prepared)
        if result.chunks_created:
            logger.info("indexed %s for user %s: %d chunks", file_path, user_id, result.chunks_created)
        return result

    async def get_embedding(self, text: str) -> np.ndarray:
        return await self.cache.get_embedding(text)

    # --- Search ---

    def _resolve_weights(
        self, vector_weight: float | None, text_weight: float | None
    ) -> tuple[float, float]:
        if vector_weight is None and text_weight is None:
            return self.search_config.vector_weight, self.search_config.text_weight
        if vector_weight is None:
            vector_weight = 1.0 - float(text_weight)
        if text_weight is None:
            text_weight = 1.0 - float(vector_weight)
        vw, tw = float(vector_weight), float(text_weight)
        if vw < 0 or tw < 0 or vw + tw <= 0:
            raise ValidationError("search weights must be non-negative and not both zero")
        total = vw + tw
        if abs(total - 1.0) > 1e-6:
            logger.warning("search weights %.3f/%.3f do not sum to 1.0, normalizing", vw, tw)
            vw, tw = vw / total, tw / total
        return vw, tw

    async def search_memory(
        self,
        user_id: str,
        query: str,
        max_results: int | None = None,
        min_score: float | None = None,
        sources: list[str] | None = None,
        vector_weight: float | None = None,
        text_weight: float | None = None,
    ) -> list[SearchResult]:
        if not query.strip():
            return []
        started = time.perf_counter()
        limit = self.search_config.max_results if max_results is None else max_results
        floor = self.search_config.min_score if min_score is None else min_score
        tags = [_source_tag(s).value for s in (sources or self.search_config.default_sources)]
        vw, tw = self._resolve_weights(vector_weight, text_weight)

        query_vector = await self.get_embedding(query)
        hits = self.hybrid.search(
            user_id,
            query,
            query_vector,
            max_results=limit,
            min_score=floor,
            vector_weight=vw,
            text_weight=tw,
            sources=tags,
        )
        rows = self.store.get_chunks_by_ids([h.chunk_rowid for h in hits])
        results: list[SearchResult] = []
        for hit in hits:
            chunk = rows.get(hit.chunk_rowid)
            if chunk is None:
                continue
            results.append(
                SearchResult(
                    chunk_id=chunk.chunk_id,
                    file_path=chunk.file_path,
                    source=chunk.source,
                    start_line=chunk.start_line,
                    end_line=chunk.end_line,
                    snippet=create_snippet(chunk.text, query, self.search_config.snippet_chars),
                    citation=format_citation(chunk.file_path, chunk.start_line, chunk.end_line),
                    score=hit.score,
                    vector_score=hit.vector_score,
                    text_score=hit.text_score,
                )
            )

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            "search user=%s results=%d in %.1fms (weights %.2f/%.2f)",
            user_id, len(results), elapsed_ms, vw, tw,
        )
        if self.search_config.log_searches:
            await self._log_search(user_id, query, len(results), elapsed_ms, limit, floor, vw, tw, tags)
        return results

    async def _log_search(
        self,
        user_id: str,
        query: str,
        results_count: int,
        elapsed_ms: float,
        max_results: int,
        min_score: float,
        vector_weight: float,
        text_weight: float,
        sources: list[str],
    ) -> None:
        self._search_logs.append(
            dict(
                user_id=user_id,
                query=query,
                results_count=results_count,
                provider=self.cache.provider,
                model=self.cache.model,
                search_time_ms=elapsed_ms,
                max_results=max_results,
                min_score=min_score,
                vector_weight=vector_weight,
                text_weight=text_weight,
                sources=sources,
            )
        )
        await self.flush_search_logs()

    async def flush_search_logs(self, wait: bool = False) -> int:
        """Write queued search log rows.

        Searches never wait on the writer: while it is held the rows stay
        queued (oldest dropped past ``SEARCH_LOG_BACKLOG``) unless ``wait``.
        """
        if not self._search_logs or (self.store.write_locked and not wait):
            return 0
        rows = list(self._search_logs)
        self._search_logs.clear()
        try:
            async with self.store.transaction():
                for row in rows:
                    self.store.insert_search_log(**row)
        except Exception:
            logger.warning("failed to record %d search log rows", len(rows), exc_info=True)
            return 0
        return len(rows)

    async def flush_pending_writes(self) -> None:
        await self.cache.flush(wait=True)
        await self.flush_search_logs(wait=True)

    # --- Files ---

    def get_memory_file(
        self,
        user_id: str,
        path: str,
        from_line: int | None = None,
        lines: int | None = None,
    ) -> MemoryFileContent:
        """Rebuild a file from its chunks, optionally sliced to a 1-based line window."""
        if from_line is not None and from_line < 1:
            raise ValidationError("from_line must be >= 1")
        if lines is not None and lines < 0:
            raise ValidationError("lines must be >= 0")
        record = self.store.get_memory_file(user_id, path)
        if record is None:
            raise NotFoundError(f"File not found: {path}")

        chunks = self.store.list_chunks_for_file(record.id)
        all_lines: list[str] = []
        last_line = 0
        for chunk in chunks:
            for offset, line in enumerate(chunk.text.split("\n")):
                # overlap lines already emitted by the previous chunk
                if chunk.start_line + offset > last_line:
                    all_lines.append(line)
                    last_line = chunk.start_line + offset

        selected = all_lines
        if from_line is not None or lines is not None:
            start = (from_line or 1) - 1
            end = start + lines if lines is not None else len(all_lines)
            selected = all_lines[start:end]
        return MemoryFileContent(
            path=record.file_path,
            text="\n".join(selected),
            total_lines=len(all_lines),
            chunk_count=len(chunks),
            last_modified=record.last_modified,
        )

    async def delete_memory_file(self, user_id: str, path: str) -> None:
        async with self.store.transaction():
            if not self.store.delete_memory_file(user_id, path):
                raise NotFoundError(f"File not found: {path}")
        self.release_empty_partitions(user_id)
        logger.info("deleted %s for user %s", path, user_id)

    def release_empty_partitions(self, user_id: str) -> None:
        self.hybrid.vector.release_empty(user_id)

    def list_memory_files(self, user_id: str, source: str | None = None) -> list[MemoryFile]:
        tag = _source_tag(source).value if source else None
        return self.store.list_memory_files(user_id, tag)

    # --- Cache maintenance ---

    def get_cache_stats(self) -> CacheStats:
        return self.cache.stats()

    async def cleanup_cache(self, max_entries: int = 50_000, ttl_days: float | None = None) -> int:
        return await self.cache.cleanup(max_entries, ttl_days=ttl_days)

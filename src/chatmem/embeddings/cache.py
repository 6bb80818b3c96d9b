"""Persistent embedding cache keyed by (provider, model, content hash)."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import timedelta

import numpy as np

from chatmem.embeddings.backends import EmbeddingBackend
from chatmem.storage.sqlite_store import SQLiteStore
from chatmem.tokenizer import HeuristicTokenizer, Tokenizer
from chatmem.types import CacheStats
from chatmem.utils import text_hash, utcnow

logger = logging.getLogger(__name__)


@dataclass
class Embedding:
    key: str
    vector: np.ndarray
    token_count: int = 0
    cached: bool = False


class EmbeddingCache:
    """Embeds text at most once per (provider, model, text).

    Provider calls never run while the store's writer is held. ``embed``
    reads the cache and calls the provider without writing anything;
    ``persist`` writes the resulting rows inside the caller's transaction,
    so a rolled back index run also rolls back the cache rows it created.
    Standalone ``get_embedding`` lookups queue their writes and flush them
    whenever the writer is free.

    Hit/miss counters live on the instance, which the stack builds once per
    process.
    """

    max_pending = 1000

    def __init__(
        self,
        store: SQLiteStore,
        embedder: EmbeddingBackend,
        tokenizer: Tokenizer | None = None,
        enabled: bool = True,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.tokenizer = tokenizer or HeuristicTokenizer()
        self.enabled = enabled
        self.hits = 0
        self.misses = 0
        self._pending_rows: dict[str, Embedding] = {}
        self._pending_hits: Counter[str] = Counter()

    @property
    def provider(self) -> str:
        return str(getattr(self.embedder, "provider", type(self.embedder).__name__))

    @property
    def model(self) -> str:
        return str(getattr(self.embedder, "model", ""))

    @property
    def pending_writes(self) -> int:
        return len(self._pending_rows) + len(self._pending_hits)

    def _lookup(self, key: str) -> np.ndarray | None:
        queued = self._pending_rows.get(key)
        if queued is not None:
            return queued.vector
        return self.store.get_cached_embedding(self.provider, self.model, key)

    async def embed(self, texts: list[str]) -> list[Embedding]:
        """Vectors for ``texts``, from the cache where possible. Writes nothing."""
        out: list[Embedding] = []
        fresh: dict[str, Embedding] = {}
        for text in texts:
            key = text_hash(text)
            if self.enabled:
                vector = fresh[key].vector if key in fresh else self._lookup(key)
                if vector is not None:
                    self.hits += 1
                    out.append(Embedding(key=key, vector=vector, cached=True))
                    continue
            self.misses += 1
            vector = np.asarray(await self.embedder.embed_single(text), dtype=np.float32)
            item = Embedding(key=key, vector=vector, token_count=self.tokenizer.count(text))
            fresh[key] = item
            out.append(item)
        return out

    def persist(self, embeddings: list[Embedding]) -> None:
        """Write cache rows and access bumps for ``embeddings``. Call inside ``store.transaction()``."""
        if not self.enabled:
            return
        for item in embeddings:
            if not item.cached:
                self.store.upsert_cached_embedding(
                    self.provider, self.model, item.key, item.vector, item.token_count
                )
            elif item.key in self._pending_rows:
                self._pending_hits[item.key] += 1
            else:
                self.store.touch_cached_embedding(self.provider, self.model, item.key)

    async def get_embedding(self, text: str) -> np.ndarray:
        [item] = await self.embed([text])
        if not self.enabled:
            return item.vector
        if self.store.in_transaction:
            self.persist([item])
            return item.vector
        if item.cached:
            self._pending_hits[item.key] += 1
        else:
            self._pending_rows.setdefault(item.key, item)
        await self.flush(wait=self.pending_writes > self.max_pending)
        return item.vector

    async def flush(self, wait: bool = False) -> int:
        """Write queued rows and hits.

        Returns the number of writes applied. Unless ``wait`` is set, nothing
        is written while another task holds the writer; the queue is kept for
        the next call.
        """
        if not self.pending_writes or (self.store.write_locked and not wait):
            return 0
        rows, hits = self._pending_rows, self._pending_hits
        self._pending_rows, self._pending_hits = {}, Counter()
        try:
            async with self.store.transaction():
                for item in rows.values():
                    self.store.upsert_cached_embedding(
                        self.provider, self.model, item.key, item.vector, item.token_count
                    )
                for key, n in hits.items():
                    self.store.touch_cached_embedding(self.provider, self.model, key, hits=n)
        except Exception:
            logger.warning(
                "dropped %d embedding cache writes", len(rows) + len(hits), exc_info=True
            )
            return 0
        return len(rows) + len(hits)

    def stats(self) -> CacheStats:
        total, oldest, newest = self.store.cache_summary()
        lookups = self.hits + self.misses
        return CacheStats(
            total_entries=total,
            hits=self.hits,
            misses=self.misses,
            hit_rate=(self.hits / lookups) if lookups else 0.0,
            oldest_entry=oldest,
            newest_entry=newest,
        )

    async def cleanup(self, max_entries: int, ttl_days: float | None = None) -> int:
        """Evict idle entries older than ``ttl_days``, then trim to ``max_entries`` by LRU."""
        await self.flush(wait=True)
        cutoff = utcnow() - timedelta(days=ttl_days) if ttl_days else None
        async with self.store.transaction():
            removed = self.store.evict_cache_entries(max_entries, accessed_before=cutoff)
        if removed:
            logger.info("embedding cache cleanup removed %d entries", removed)
        return removed

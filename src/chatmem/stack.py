"""Explicit construction of every chatmem component."""

from __future__ import annotations

import logging
from typing import Any

from chatmem.config import Config
from chatmem.consolidation.consolidator import MemoryConsolidator
from chatmem.embeddings.backends import EmbeddingBackend, create_embedder
from chatmem.embeddings.cache import EmbeddingCache
from chatmem.engine.memory_engine import MemoryEngine
from chatmem.extraction.fact_extractor import FactExtractor
from chatmem.indexer.conversation_indexer import ConversationIndexer
from chatmem.llm import ChatBackend, create_chat_backend
from chatmem.retrieval.hybrid import HybridSearch
from chatmem.retrieval.keyword import KeywordSearch
from chatmem.retrieval.vector import VectorSearch
from chatmem.scheduler.maintenance import MaintenanceScheduler
from chatmem.storage.faiss_store import FAISSStore
from chatmem.storage.sqlite_store import SQLiteStore
from chatmem.tokenizer import create_tokenizer

logger = logging.getLogger(__name__)


class MemoryStack:
    """Builds the store, engine, indexer, extractor, consolidator and scheduler once.

    Pass ``embedder`` or ``chat`` to override the configured providers.
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        embedder: EmbeddingBackend | None = None,
        chat: ChatBackend | None = None,
    ) -> None:
        self.config = config or Config()
        self.config.ensure_dirs()

        self.store = SQLiteStore(self.config.db_path)
        self.embedder = embedder or create_embedder(self.config.embedding)
        self.faiss = FAISSStore(
            dims=int(self.embedder.dims),
            ivf_threshold=self.config.search.faiss_ivf_threshold,
            nprobe=self.config.search.faiss_nprobe,
            max_partitions=self.config.search.faiss_max_partitions,
        )
        self.tokenizer = create_tokenizer(self.config.chunking.tokenizer, self.embedder.model)
        self.cache = EmbeddingCache(
            self.store, self.embedder, tokenizer=self.tokenizer, enabled=self.config.cache.enabled
        )

        self.keyword_search = KeywordSearch(self.store)
        self.vector_search = VectorSearch(self.faiss, self.store)
        self.hybrid_search = HybridSearch(self.keyword_search, self.vector_search)
        self.engine = MemoryEngine(
            self.store,
            self.cache,
            self.hybrid_search,
            tokenizer=self.tokenizer,
            chunking=self.config.chunking,
            search=self.config.search,
        )

        extraction = self.config.extraction
        self.chat = chat or create_chat_backend(
            extraction.provider,
            model=extraction.model,
            temperature=extraction.temperature,
            max_tokens=extraction.max_tokens,
        )
        self.extractor = FactExtractor(self.chat, extraction)
        self.indexer = ConversationIndexer(self.store, self.engine, self.config.indexing)
        self.consolidator = MemoryConsolidator(
            self.store,
            self.engine,
            self.extractor,
            self.vector_search,
            self.config.consolidation,
        )
        self.scheduler = MaintenanceScheduler(
            self.store,
            self.engine,
            self.consolidator,
            self.config.scheduler,
            cache=self.config.cache,
        )

    def status(self) -> dict[str, Any]:
        cache = self.engine.get_cache_stats()
        return {
            "db_path": str(self.config.db_path),
            "embedding": {"provider": self.cache.provider, "model": self.cache.model},
            "files": self.store.count_memory_files(),
            "chunks": self.store.count_chunks(),
            "facts": self.store.count_facts(),
            "vectors_loaded": self.faiss.size,
            "vector_partitions": self.faiss.partition_count,
            "cache": cache.model_dump(mode="json"),
            "scheduler_running": self.scheduler.is_running,
        }

    async def close(self) -> None:
        self.scheduler.stop()
        await self.scheduler.wait_idle()
        await self.engine.flush_pending_writes()
        await self.embedder.close()
        close_chat = getattr(self.chat, "close", None)
        if close_chat is not None:
            await close_chat()
        self.faiss.clear()
        self.store.close()

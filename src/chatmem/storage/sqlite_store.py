"""SQLite storage with FTS5 full-text search and async write transactions."""

from __future__ import annotations

import asyncio
import re
import sqlite3
import time
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Iterable

import numpy as np

from chatmem.exceptions import StorageError
from chatmem.types import (
    ConsolidationJob,
    ConsolidationStatus,
    EmbeddingCacheEntry,
    IndexedSession,
    IndexingStats,
    JobStatus,
    JobType,
    MemoryChunk,
    MemoryFact,
    MemoryFile,
    UserIndexingConfig,
)
from chatmem.utils import (
    blob_to_vector,
    iso_str,
    json_dumps,
    json_loads,
    parse_iso,
    parse_iso_opt,
    utcnow,
    vector_to_blob,
)

SCHEMA_VERSION = 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS memory_files (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    file_path TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT 'memory',
    content_hash TEXT NOT NULL,
    file_size INTEGER NOT NULL DEFAULT 0,
    chunk_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    last_modified TEXT NOT NULL,
    UNIQUE (user_id, file_path)
);
CREATE INDEX IF NOT EXISTS idx_files_user ON memory_files(user_id, last_modified);

CREATE TABLE IF NOT EXISTS memory_chunks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    file_id INTEGER NOT NULL,
    chunk_id TEXT NOT NULL,
    source TEXT NOT NULL,
    start_line INTEGER NOT NULL,
    end_line INTEGER NOT NULL,
    text TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    token_count INTEGER NOT NULL DEFAULT 0,
    model TEXT NOT NULL DEFAULT '',
    embedding BLOB,
    created_at TEXT NOT NULL,
    FOREIGN KEY (file_id) REFERENCES memory_files(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_chunks_file ON memory_chunks(file_id, start_line);
CREATE INDEX IF NOT EXISTS idx_chunks_user ON memory_chunks(user_id, source);

CREATE VIRTUAL TABLE IF NOT EXISTS memory_chunks_fts USING fts5(
    text, content=memory_chunks, content_rowid=id
);

CREATE TABLE IF NOT EXISTS embedding_cache (
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    embedding BLOB NOT NULL,
    dims INTEGER NOT NULL,
    token_count INTEGER NOT NULL DEFAULT 0,
    access_count INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    last_accessed_at TEXT NOT NULL,
    PRIMARY KEY (provider, model, content_hash)
);
CREATE INDEX IF NOT EXISTS idx_cache_lru ON embedding_cache(last_accessed_at, access_count);

CREATE TABLE IF NOT EXISTS memory_facts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    fact_type TEXT NOT NULL,
    content TEXT NOT NULL,
    embedding BLOB,
    confidence_score REAL NOT NULL,
    importance_score REAL NOT NULL,
    access_count INTEGER NOT NULL DEFAULT 0,
    source_file_id INTEGER,
    source_session_id TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    last_accessed_at TEXT,
    expires_at TEXT,
    FOREIGN KEY (source_file_id) REFERENCES memory_files(id) ON DELETE SET NULL
);
CREATE INDEX IF NOT EXISTS idx_facts_user ON memory_facts(user_id, fact_type, importance_score);
CREATE INDEX IF NOT EXISTS idx_facts_expiry ON memory_facts(expires_at);

CREATE TABLE IF NOT EXISTS indexed_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    session_id TEXT NOT NULL,
    message_count INTEGER NOT NULL DEFAULT 0,
    file_id INTEGER,
    consolidation_status TEXT NOT NULL DEFAULT 'pending',
    facts_extracted INTEGER NOT NULL DEFAULT 0,
    indexed_at TEXT NOT NULL,
    consolidated_at TEXT,
    UNIQUE (user_id, session_id),
    FOREIGN KEY (file_id) REFERENCES memory_files(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_sessions_status ON indexed_sessions(user_id, consolidation_status, indexed_at);

CREATE TABLE IF NOT EXISTS user_indexing_config (
    user_id TEXT PRIMARY KEY,
    auto_index_enabled INTEGER NOT NULL DEFAULT 1,
    min_messages_to_index INTEGER NOT NULL DEFAULT 5,
    index_on_session_end INTEGER NOT NULL DEFAULT 1,
    consolidate_on_index INTEGER NOT NULL DEFAULT 1,
    consolidation_interval_hours REAL NOT NULL DEFAULT 6,
    last_consolidation_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS consolidation_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    job_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    facts_extracted INTEGER NOT NULL DEFAULT 0,
    facts_stored INTEGER NOT NULL DEFAULT 0,
    facts_merged INTEGER NOT NULL DEFAULT 0,
    chunks_processed INTEGER NOT NULL DEFAULT 0,
    total_chunks INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    started_at TEXT,
    heartbeat_at TEXT,
    completed_at TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON consolidation_jobs(status, heartbeat_at);

CREATE TABLE IF NOT EXISTS memory_search_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    query TEXT NOT NULL,
    results_count INTEGER NOT NULL,
    provider TEXT NOT NULL DEFAULT '',
    model TEXT NOT NULL DEFAULT '',
    search_time_ms REAL NOT NULL DEFAULT 0,
    max_results INTEGER NOT NULL,
    min_score REAL NOT NULL,
    vector_weight REAL NOT NULL,
    text_weight REAL NOT NULL,
    sources TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL
);
"""

# Keeps the FTS mirror in sync with memory_chunks
_FTS_TRIGGERS = """
CREATE TRIGGER IF NOT EXISTS memory_chunks_ai AFTER INSERT ON memory_chunks BEGIN
    INSERT INTO memory_chunks_fts(rowid, text) VALUES (new.id, new.text);
END;
CREATE TRIGGER IF NOT EXISTS memory_chunks_ad AFTER DELETE ON memory_chunks BEGIN
    INSERT INTO memory_chunks_fts(memory_chunks_fts, rowid, text) VALUES ('delete', old.id, old.text);
END;
CREATE TRIGGER IF NOT EXISTS memory_chunks_au AFTER UPDATE ON memory_chunks BEGIN
    INSERT INTO memory_chunks_fts(memory_chunks_fts, rowid, text) VALUES ('delete', old.id, old.text);
    INSERT INTO memory_chunks_fts(rowid, text) VALUES (new.id, new.text);
END;
"""

_MAX_FTS_TOKENS = 24
_AND_MODE_MAX_TOKENS = 3

CHUNKS = "chunks"
FACTS = "facts"


def _sanitize_fts_query(query: str) -> str:
    """Sanitize a query for FTS5 MATCH syntax.

    Every token is double-quoted so punctuation never reaches the FTS5 parser.
    Short queries require all terms; longer natural-language queries match
    any term and leave ranking to bm25.
    """
    seen: set[str] = set()
    tokens: list[str] = []
    for tok in re.findall(r"\w+", query.lower()):
        if tok in seen:
            continue
        seen.add(tok)
        tokens.append(tok)
        if len(tokens) >= _MAX_FTS_TOKENS:
            break
    if not tokens:
        return ""
    quoted = [f'"{t}"' for t in tokens]
    if len(quoted) <= _AND_MODE_MAX_TOKENS:
        return " ".join(quoted)
    return " OR ".join(quoted)


def _placeholders(n: int) -> str:
    return ",".join("?" for _ in range(n))


class SQLiteStore:
    """Main SQLite storage backend.

    Writes go through ``transaction()``, which owns a dedicated connection
    guarded by an asyncio lock. Reads outside a transaction use a separate
    connection and only ever see committed rows (WAL). Reads inside a
    transaction see its uncommitted writes.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._writer = self._connect()
        self._init_schema()
        self._conn = self._connect()
        self._write_lock = asyncio.Lock()
        self._active: ContextVar[sqlite3.Connection | None] = ContextVar(
            f"chatmem_tx_{id(self)}", default=None
        )
        self._dirty: ContextVar[set[tuple[str, str | None]] | None] = ContextVar(
            f"chatmem_dirty_{id(self)}", default=None
        )
        self._generations: dict[tuple[str, str], int] = {}
        self._epochs: dict[str, int] = {CHUNKS: 0, FACTS: 0}

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.db_path), check_same_thread=False, timeout=30.0, isolation_level=None
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA busy_timeout=30000")
        return conn

    def _init_schema(self) -> None:
        for attempt in range(5):
            try:
                cur = self._writer.cursor()
                cur.executescript(_SCHEMA)
                cur.executescript(_FTS_TRIGGERS)
                cur.execute(
                    "INSERT OR IGNORE INTO meta(key, value) VALUES (?, ?)",
                    ("schema_version", str(SCHEMA_VERSION)),
                )
                return
            except sqlite3.OperationalError as e:
                if "locked" in str(e) and attempt < 4:
                    time.sleep(2 * (attempt + 1))
                    continue
                raise

    def close(self) -> None:
        self._conn.close()
        self._writer.close()

    # --- Transactions ---

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[sqlite3.Connection]:
        """Run the enclosed store calls atomically. Nested blocks join the outer one."""
        active = self._active.get()
        if active is not None:
            yield active
            return
        async with self._write_lock:
            self._writer.execute("BEGIN IMMEDIATE")
            dirty: set[tuple[str, str | None]] = set()
            conn_token = self._active.set(self._writer)
            dirty_token = self._dirty.set(dirty)
            try:
                yield self._writer
            except BaseException:
                self._writer.execute("ROLLBACK")
                raise
            else:
                try:
                    self._writer.execute("COMMIT")
                except sqlite3.Error:
                    self._writer.execute("ROLLBACK")
                    raise
                self._advance(dirty)
            finally:
                self._active.reset(conn_token)
                self._dirty.reset(dirty_token)

    @property
    def in_transaction(self) -> bool:
        return self._active.get() is not None

    @property
    def write_locked(self) -> bool:
        """True while any task holds the writer. Best-effort writers check this to avoid queueing."""
        return self._write_lock.locked()

    def _rx(self) -> sqlite3.Connection:
        return self._active.get() or self._conn

    def _wx(self) -> sqlite3.Connection:
        conn = self._active.get()
        if conn is None:
            raise StorageError("write attempted outside of store.transaction()")
        return conn

    def _touch(self, kind: str, user_id: str | None) -> None:
        dirty = self._dirty.get()
        if dirty is not None:
            dirty.add((kind, user_id))

    def _advance(self, dirty: Iterable[tuple[str, str | None]]) -> None:
        for kind, user_id in dirty:
            if user_id is None:
                self._epochs[kind] += 1
            else:
                key = (kind, user_id)
                self._generations[key] = self._generations.get(key, 0) + 1

    def generation(self, kind: str, user_id: str) -> tuple[int, int]:
        """Committed-change marker for one user's vectors of ``kind``."""
        return self._epochs[kind], self._generations.get((kind, user_id), 0)

    # --- Memory files ---

    def get_memory_file(self, user_id: str, file_path: str) -> MemoryFile | None:
        row = self._rx().execute(
            "SELECT * FROM memory_files WHERE user_id=? AND file_path=?",
            (user_id, file_path),
        ).fetchone()
        return self._row_to_memory_file(row) if row else None

    def get_memory_file_by_id(self, file_id: int) -> MemoryFile | None:
        row = self._rx().execute("SELECT * FROM memory_files WHERE id=?", (file_id,)).fetchone()
        return self._row_to_memory_file(row) if row else None

    def upsert_memory_file(
        self, user_id: str, file_path: str, source: str, content_hash: str, file_size: int
    ) -> int:
        now = iso_str(utcnow())
        conn = self._wx()
        conn.execute(
            """INSERT INTO memory_files(user_id, file_path, source, content_hash, file_size,
                                        chunk_count, created_at, last_modified)
               VALUES (?, ?, ?, ?, ?, 0, ?, ?)
               ON CONFLICT(user_id, file_path) DO UPDATE SET
                   source=excluded.source,
                   content_hash=excluded.content_hash,
                   file_size=excluded.file_size,
                   last_modified=excluded.last_modified""",
            (user_id, file_path, source, content_hash, file_size, now, now),
        )
        row = conn.execute(
            "SELECT id FROM memory_files WHERE user_id=? AND file_path=?", (user_id, file_path)
        ).fetchone()
        return int(row["id"])

    def set_file_chunk_count(self, file_id: int, chunk_count: int) -> None:
        self._wx().execute(
            "UPDATE memory_files SET chunk_count=? WHERE id=?", (chunk_count, file_id)
        )

    def delete_memory_file(self, user_id: str, file_path: str) -> bool:
        cur = self._wx().execute(
            "DELETE FROM memory_files WHERE user_id=? AND file_path=?", (user_id, file_path)
        )
        if cur.rowcount > 0:
            self._touch(CHUNKS, user_id)
        return cur.rowcount > 0

    def list_memory_files(self, user_id: str, source: str | None = None) -> list[MemoryFile]:
        if source:
            rows = self._rx().execute(
                """SELECT * FROM memory_files WHERE user_id=? AND source=?
                   ORDER BY last_modified DESC, id DESC""",
                (user_id, source),
            ).fetchall()
        else:
            rows = self._rx().execute(
                "SELECT * FROM memory_files WHERE user_id=? ORDER BY last_modified DESC, id DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_memory_file(r) for r in rows]

    def count_memory_files(self, user_id: str | None = None) -> int:
        if user_id is None:
            row = self._rx().execute("SELECT COUNT(*) FROM memory_files").fetchone()
        else:
            row = self._rx().execute(
                "SELECT COUNT(*) FROM memory_files WHERE user_id=?", (user_id,)
            ).fetchone()
        return row[0]

    # --- Chunks ---

    def delete_chunks_for_file(self, user_id: str, file_id: int) -> int:
        cur = self._wx().execute("DELETE FROM memory_chunks WHERE file_id=?", (file_id,))
        if cur.rowcount > 0:
            self._touch(CHUNKS, user_id)
        return cur.rowcount

    def insert_chunk(
        self,
        user_id: str,
        file_id: int,
        chunk_id: str,
        source: str,
        start_line: int,
        end_line: int,
        text: str,
        content_hash: str,
        token_count: int,
        model: str,
        vector: np.ndarray | None,
    ) -> int:
        cur = self._wx().execute(
            """INSERT INTO memory_chunks(user_id, file_id, chunk_id, source, start_line, end_line,
                                         text, content_hash, token_count, model, embedding, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                user_id, file_id, chunk_id, source, start_line, end_line, text, content_hash,
                token_count, model, vector_to_blob(vector) if vector is not None else None,
                iso_str(utcnow()),
            ),
        )
        self._touch(CHUNKS, user_id)
        return int(cur.lastrowid)

    def list_chunks_for_file(self, file_id: int) -> list[MemoryChunk]:
        rows = self._rx().execute(
            """SELECT c.*, f.file_path FROM memory_chunks c
               JOIN memory_files f ON f.id = c.file_id
               WHERE c.file_id=? ORDER BY c.start_line, c.id""",
            (file_id,),
        ).fetchall()
        return [self._row_to_chunk(r) for r in rows]

    def get_chunks_by_ids(self, ids: list[int]) -> dict[int, MemoryChunk]:
        if not ids:
            return {}
        rows = self._rx().execute(
            f"""SELECT c.*, f.file_path FROM memory_chunks c
                JOIN memory_files f ON f.id = c.file_id
                WHERE c.id IN ({_placeholders(len(ids))})""",
            list(ids),
        ).fetchall()
        return {int(r["id"]): self._row_to_chunk(r) for r in rows}

    def load_chunk_vectors(self, user_id: str) -> tuple[list[int], list[str], list[np.ndarray]]:
        """Committed chunk vectors for one user, for building an ANN partition."""
        rows = self._conn.execute(
            """SELECT id, source, embedding FROM memory_chunks
               WHERE user_id=? AND embedding IS NOT NULL ORDER BY id""",
            (user_id,),
        ).fetchall()
        return (
            [int(r["id"]) for r in rows],
            [r["source"] for r in rows],
            [blob_to_vector(r["embedding"]) for r in rows],
        )

    def search_chunks_fts(
        self, user_id: str, query: str, sources: list[str] | None = None, limit: int = 1000
    ) -> list[tuple[int, float]]:
        """Return ``(chunk rowid, bm25 relevance)`` pairs, best first. Relevance is >= 0."""
        fts_query = _sanitize_fts_query(query)
        if not fts_query:
            return []
        params: list[Any] = [fts_query, user_id]
        source_clause = ""
        if sources:
            source_clause = f" AND c.source IN ({_placeholders(len(sources))})"
            params.extend(sources)
        params.append(limit)
        rows = self._rx().execute(
            f"""SELECT c.id, bm25(memory_chunks_fts) AS score
                FROM memory_chunks_fts f
                JOIN memory_chunks c ON c.id = f.rowid
                WHERE memory_chunks_fts MATCH ? AND c.user_id=?{source_clause}
                ORDER BY score
                LIMIT ?""",
            params,
        ).fetchall()
        # bm25 returns negative scores, lower = better
        return [(int(r["id"]), max(0.0, -float(r["score"]))) for r in rows]

    def count_chunks(self, user_id: str | None = None) -> int:
        if user_id is None:
            row = self._rx().execute("SELECT COUNT(*) FROM memory_chunks").fetchone()
        else:
            row = self._rx().execute(
                "SELECT COUNT(*) FROM memory_chunks WHERE user_id=?", (user_id,)
            ).fetchone()
        return row[0]

    # --- Embedding cache ---

    def get_cached_embedding(self, provider: str, model: str, content_hash: str) -> np.ndarray | None:
        row = self._rx().execute(
            """SELECT embedding FROM embedding_cache
               WHERE provider=? AND model=? AND content_hash=?""",
            (provider, model, content_hash),
        ).fetchone()
        return blob_to_vector(row["embedding"]) if row else None

    def get_cache_entry(self, provider: str, model: str, content_hash: str) -> EmbeddingCacheEntry | None:
        row = self._rx().execute(
            """SELECT provider, model, content_hash, dims, token_count, access_count,
                      created_at, last_accessed_at
               FROM embedding_cache WHERE provider=? AND model=? AND content_hash=?""",
            (provider, model, content_hash),
        ).fetchone()
        return self._row_to_cache_entry(row) if row else None

    def touch_cached_embedding(
        self, provider: str, model: str, content_hash: str, hits: int = 1
    ) -> None:
        self._wx().execute(
            """UPDATE embedding_cache SET access_count = access_count + ?, last_accessed_at=?
               WHERE provider=? AND model=? AND content_hash=?""",
            (hits, iso_str(utcnow()), provider, model, content_hash),
        )

    def upsert_cached_embedding(
        self, provider: str, model: str, content_hash: str, vector: np.ndarray, token_count: int
    ) -> np.ndarray:
        """Insert a cache entry, or bump the existing one. Returns the stored vector."""
        now = iso_str(utcnow())
        conn = self._wx()
        conn.execute(
            """INSERT INTO embedding_cache(provider, model, content_hash, embedding, dims,
                                           token_count, access_count, created_at, last_accessed_at)
               VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
               ON CONFLICT(provider, model, content_hash) DO UPDATE SET
                   access_count = access_count + 1,
                   last_accessed_at = excluded.last_accessed_at""",
            (
                provider, model, content_hash, vector_to_blob(vector), int(vector.shape[-1]),
                token_count, now, now,
            ),
        )
        row = conn.execute(
            """SELECT embedding FROM embedding_cache
               WHERE provider=? AND model=? AND content_hash=?""",
            (provider, model, content_hash),
        ).fetchone()
        return blob_to_vector(row["embedding"])

    def cache_summary(self) -> tuple[int, datetime | None, datetime | None]:
        row = self._rx().execute(
            "SELECT COUNT(*) AS n, MIN(created_at) AS oldest, MAX(created_at) AS newest FROM embedding_cache"
        ).fetchone()
        return int(row["n"]), parse_iso_opt(row["oldest"]), parse_iso_opt(row["newest"])

    def evict_cache_entries(self, max_entries: int, accessed_before: datetime | None = None) -> int:
        """Drop entries idle since ``accessed_before``, then trim to ``max_entries`` by LRU."""
        conn = self._wx()
        removed = 0
        if accessed_before is not None:
            cur = conn.execute(
                "DELETE FROM embedding_cache WHERE last_accessed_at < ?",
                (iso_str(accessed_before),),
            )
            removed += cur.rowcount
        total = conn.execute("SELECT COUNT(*) FROM embedding_cache").fetchone()[0]
        excess = total - max(0, max_entries)
        if excess > 0:
            cur = conn.execute(
                """DELETE FROM embedding_cache WHERE rowid IN (
                       SELECT rowid FROM embedding_cache
                       ORDER BY last_accessed_at ASC, access_count ASC
                       LIMIT ?)""",
                (excess,),
            )
            removed += cur.rowcount
        return removed

    # --- Facts ---

    def insert_fact(
        self,
        user_id: str,
        fact_type: str,
        content: str,
        confidence: float,
        importance: float,
        vector: np.ndarray | None,
        source_file_id: int | None = None,
        source_session_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        expires_at: datetime | None = None,
    ) -> int:
        now = iso_str(utcnow())
        cur = self._wx().execute(
            """INSERT INTO memory_facts(user_id, fact_type, content, embedding, confidence_score,
                                        importance_score, access_count, source_file_id,
                                        source_session_id, metadata, created_at, updated_at,
                                        last_accessed_at, expires_at)
               VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, NULL, ?)""",
            (
                user_id, fact_type, content,
                vector_to_blob(vector) if vector is not None else None,
                confidence, importance, source_file_id, source_session_id,
                json_dumps(metadata or {}), now, now,
                iso_str(expires_at) if expires_at else None,
            ),
        )
        self._touch(FACTS, user_id)
        return int(cur.lastrowid)

    def get_fact(self, user_id: str, fact_id: int) -> MemoryFact | None:
        row = self._rx().execute(
            "SELECT * FROM memory_facts WHERE id=? AND user_id=?", (fact_id, user_id)
        ).fetchone()
        return self._row_to_fact(row) if row else None

    def get_facts_by_ids(self, ids: list[int]) -> dict[int, MemoryFact]:
        if not ids:
            return {}
        rows = self._rx().execute(
            f"SELECT * FROM memory_facts WHERE id IN ({_placeholders(len(ids))})", list(ids)
        ).fetchall()
        return {int(r["id"]): self._row_to_fact(r) for r in rows}

    def update_fact_confidence(self, fact_id: int, confidence: float) -> None:
        now = iso_str(utcnow())
        self._wx().execute(
            """UPDATE memory_facts SET confidence_score=?, updated_at=?, last_accessed_at=?
               WHERE id=?""",
            (confidence, now, now, fact_id),
        )

    def record_fact_access(self, fact_ids: list[int]) -> None:
        if not fact_ids:
            return
        self._wx().execute(
            f"""UPDATE memory_facts SET access_count = access_count + 1, last_accessed_at=?
                WHERE id IN ({_placeholders(len(fact_ids))})""",
            [iso_str(utcnow()), *fact_ids],
        )

    def update_fact_importance(self, updates: list[tuple[int, float]]) -> int:
        if not updates:
            return 0
        self._wx().executemany(
            "UPDATE memory_facts SET importance_score=? WHERE id=?",
            [(importance, fact_id) for fact_id, importance in updates],
        )
        return len(updates)

    def list_facts(
        self,
        user_id: str,
        fact_type: str | None = None,
        limit: int | None = 100,
        min_importance: float = 0.0,
    ) -> list[MemoryFact]:
        sql = "SELECT * FROM memory_facts WHERE user_id=? AND importance_score >= ?"
        params: list[Any] = [user_id, min_importance]
        if fact_type:
            sql += " AND fact_type=?"
            params.append(fact_type)
        sql += " ORDER BY importance_score DESC, created_at DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = self._rx().execute(sql, params).fetchall()
        return [self._row_to_fact(r) for r in rows]

    def load_fact_vectors(self, user_id: str) -> tuple[list[int], list[str], list[np.ndarray]]:
        """Committed fact vectors for one user, for building an ANN partition."""
        rows = self._conn.execute(
            """SELECT id, fact_type, embedding FROM memory_facts
               WHERE user_id=? AND embedding IS NOT NULL ORDER BY id""",
            (user_id,),
        ).fetchall()
        return (
            [int(r["id"]) for r in rows],
            [r["fact_type"] for r in rows],
            [blob_to_vector(r["embedding"]) for r in rows],
        )

    def delete_fact(self, user_id: str, fact_id: int) -> bool:
        cur = self._wx().execute(
            "DELETE FROM memory_facts WHERE id=? AND user_id=?", (fact_id, user_id)
        )
        if cur.rowcount > 0:
            self._touch(FACTS, user_id)
        return cur.rowcount > 0

    def expire_old_facts(self, now: datetime | None = None) -> int:
        cur = self._wx().execute(
            "DELETE FROM memory_facts WHERE expires_at IS NOT NULL AND expires_at < ?",
            (iso_str(now or utcnow()),),
        )
        if cur.rowcount > 0:
            self._touch(FACTS, None)
        return cur.rowcount

    def list_users_with_facts(self) -> list[str]:
        rows = self._rx().execute(
            "SELECT DISTINCT user_id FROM memory_facts ORDER BY user_id"
        ).fetchall()
        return [r["user_id"] for r in rows]

    def count_facts(self, user_id: str | None = None) -> int:
        if user_id is None:
            row = self._rx().execute("SELECT COUNT(*) FROM memory_facts").fetchone()
        else:
            row = self._rx().execute(
                "SELECT COUNT(*) FROM memory_facts WHERE user_id=?", (user_id,)
            ).fetchone()
        return row[0]

    # --- Indexed sessions ---

    def get_indexed_session(self, user_id: str, session_id: str) -> IndexedSession | None:
        row = self._rx().execute(
            "SELECT * FROM indexed_sessions WHERE user_id=? AND session_id=?",
            (user_id, session_id),
        ).fetchone()
        return self._row_to_session(row) if row else None

    def upsert_indexed_session(
        self,
        user_id: str,
        session_id: str,
        message_count: int,
        file_id: int,
        reset_status: bool = False,
    ) -> None:
        now = iso_str(utcnow())
        status_update = ", consolidation_status='pending'" if reset_status else ""
        self._wx().execute(
            f"""INSERT INTO indexed_sessions(user_id, session_id, message_count, file_id,
                                             consolidation_status, facts_extracted, indexed_at)
                VALUES (?, ?, ?, ?, 'pending', 0, ?)
                ON CONFLICT(user_id, session_id) DO UPDATE SET
                    message_count=excluded.message_count,
                    file_id=excluded.file_id,
                    indexed_at=excluded.indexed_at{status_update}""",
            (user_id, session_id, message_count, file_id, now),
        )

    def list_indexed_sessions(self, user_id: str, limit: int = 50) -> list[IndexedSession]:
        rows = self._rx().execute(
            """SELECT * FROM indexed_sessions WHERE user_id=?
               ORDER BY indexed_at DESC, id DESC LIMIT ?""",
            (user_id, limit),
        ).fetchall()
        return [self._row_to_session(r) for r in rows]

    def list_sessions_for_consolidation(
        self, user_id: str, session_ids: list[str] | None = None
    ) -> list[IndexedSession]:
        if session_ids:
            rows = self._rx().execute(
                f"""SELECT * FROM indexed_sessions
                    WHERE user_id=? AND session_id IN ({_placeholders(len(session_ids))})
                    ORDER BY indexed_at ASC, id ASC""",
                [user_id, *session_ids],
            ).fetchall()
        else:
            rows = self._rx().execute(
                """SELECT * FROM indexed_sessions
                   WHERE user_id=? AND consolidation_status='pending'
                   ORDER BY indexed_at ASC, id ASC""",
                (user_id,),
            ).fetchall()
        return [self._row_to_session(r) for r in rows]

    def mark_session_consolidated(self, user_id: str, session_id: str, facts_extracted: int) -> None:
        self._wx().execute(
            """UPDATE indexed_sessions
               SET consolidation_status='completed', facts_extracted=?, consolidated_at=?
               WHERE user_id=? AND session_id=?""",
            (facts_extracted, iso_str(utcnow()), user_id, session_id),
        )

    def delete_indexed_session(self, user_id: str, session_id: str) -> bool:
        cur = self._wx().execute(
            "DELETE FROM indexed_sessions WHERE user_id=? AND session_id=?",
            (user_id, session_id),
        )
        return cur.rowcount > 0

    def indexing_stats(self, user_id: str) -> IndexingStats:
        row = self._rx().execute(
            """SELECT COUNT(*) AS sessions, COALESCE(SUM(message_count), 0) AS messages,
                      MAX(indexed_at) AS last_indexed
               FROM indexed_sessions WHERE user_id=?""",
            (user_id,),
        ).fetchone()
        return IndexingStats(
            total_sessions=int(row["sessions"]),
            total_messages=int(row["messages"]),
            total_facts=self.count_facts(user_id),
            last_indexed_at=parse_iso_opt(row["last_indexed"]),
        )

    # --- User indexing config ---

    def get_user_config(self, user_id: str) -> UserIndexingConfig | None:
        row = self._rx().execute(
            "SELECT * FROM user_indexing_config WHERE user_id=?", (user_id,)
        ).fetchone()
        return self._row_to_user_config(row) if row else None

    def upsert_user_config(self, cfg: UserIndexingConfig) -> None:
        now = iso_str(utcnow())
        self._wx().execute(
            """INSERT INTO user_indexing_config(user_id, auto_index_enabled, min_messages_to_index,
                                                index_on_session_end, consolidate_on_index,
                                                consolidation_interval_hours, last_consolidation_at,
                                                created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(user_id) DO UPDATE SET
                   auto_index_enabled=excluded.auto_index_enabled,
                   min_messages_to_index=excluded.min_messages_to_index,
                   index_on_session_end=excluded.index_on_session_end,
                   consolidate_on_index=excluded.consolidate_on_index,
                   consolidation_interval_hours=excluded.consolidation_interval_hours,
                   last_consolidation_at=excluded.last_consolidation_at,
                   updated_at=excluded.updated_at""",
            (
                cfg.user_id, int(cfg.auto_index_enabled), cfg.min_messages_to_index,
                int(cfg.index_on_session_end), int(cfg.consolidate_on_index),
                cfg.consolidation_interval_hours,
                iso_str(cfg.last_consolidation_at) if cfg.last_consolidation_at else None,
                now, now,
            ),
        )

    def set_last_consolidation(self, user_id: str, when: datetime) -> None:
        self._wx().execute(
            """UPDATE user_indexing_config SET last_consolidation_at=?, updated_at=?
               WHERE user_id=?""",
            (iso_str(when), iso_str(utcnow()), user_id),
        )

    def list_consolidation_candidates(self) -> list[UserIndexingConfig]:
        """Users that consolidate on index and have at least one pending session."""
        rows = self._rx().execute(
            """SELECT c.* FROM user_indexing_config c
               WHERE c.consolidate_on_index=1
                 AND EXISTS (SELECT 1 FROM indexed_sessions s
                             WHERE s.user_id=c.user_id AND s.consolidation_status='pending')
               ORDER BY c.user_id"""
        ).fetchall()
        return [self._row_to_user_config(r) for r in rows]

    # --- Consolidation jobs ---

    def create_job(self, user_id: str, job_type: JobType) -> int:
        cur = self._wx().execute(
            """INSERT INTO consolidation_jobs(user_id, job_type, status, created_at)
               VALUES (?, ?, 'pending', ?)""",
            (user_id, job_type.value, iso_str(utcnow())),
        )
        return int(cur.lastrowid)

    def _transition_job(self, job_id: int, expected: JobStatus, sql: str, params: tuple) -> None:
        cur = self._wx().execute(sql + " WHERE id=? AND status=?", (*params, job_id, expected.value))
        if cur.rowcount == 0:
            raise StorageError(f"consolidation job {job_id} is not {expected.value}")

    def start_job(self, job_id: int) -> None:
        now = iso_str(utcnow())
        self._transition_job(
            job_id, JobStatus.PENDING,
            "UPDATE consolidation_jobs SET status='running', started_at=?, heartbeat_at=?",
            (now, now),
        )

    def heartbeat_job(self, job_id: int) -> None:
        self._wx().execute(
            "UPDATE consolidation_jobs SET heartbeat_at=? WHERE id=? AND status='running'",
            (iso_str(utcnow()), job_id),
        )

    def complete_job(
        self,
        job_id: int,
        facts_extracted: int,
        facts_stored: int,
        facts_merged: int,
        chunks_processed: int,
        total_chunks: int,
    ) -> None:
        self._transition_job(
            job_id, JobStatus.RUNNING,
            """UPDATE consolidation_jobs SET status='completed', facts_extracted=?, facts_stored=?,
                   facts_merged=?, chunks_processed=?, total_chunks=?, completed_at=?""",
            (facts_extracted, facts_stored, facts_merged, chunks_processed, total_chunks,
             iso_str(utcnow())),
        )

    def fail_job(self, job_id: int, error_message: str) -> None:
        self._transition_job(
            job_id, JobStatus.RUNNING,
            "UPDATE consolidation_jobs SET status='failed', error_message=?, completed_at=?",
            (error_message, iso_str(utcnow())),
        )

    def get_job(self, job_id: int) -> ConsolidationJob | None:
        row = self._rx().execute("SELECT * FROM consolidation_jobs WHERE id=?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def list_jobs(
        self, user_id: str | None = None, status: JobStatus | None = None, limit: int = 50
    ) -> list[ConsolidationJob]:
        sql = "SELECT * FROM consolidation_jobs WHERE 1=1"
        params: list[Any] = []
        if user_id is not None:
            sql += " AND user_id=?"
            params.append(user_id)
        if status is not None:
            sql += " AND status=?"
            params.append(status.value)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        rows = self._rx().execute(sql, params).fetchall()
        return [self._row_to_job(r) for r in rows]

    def list_stale_jobs(self, heartbeat_before: datetime) -> list[ConsolidationJob]:
        rows = self._rx().execute(
            """SELECT * FROM consolidation_jobs
               WHERE status='running' AND COALESCE(heartbeat_at, started_at, created_at) < ?
               ORDER BY id""",
            (iso_str(heartbeat_before),),
        ).fetchall()
        return [self._row_to_job(r) for r in rows]

    # --- Search log ---

    def insert_search_log(
        self,
        user_id: str,
        query: str,
        results_count: int,
        provider: str,
        model: str,
        search_time_ms: float,
        max_results: int,
        min_score: float,
        vector_weight: float,
        text_weight: float,
        sources: list[str],
    ) -> int:
        cur = self._wx().execute(
            """INSERT INTO memory_search_log(user_id, query, results_count, provider, model,
                                             search_time_ms, max_results, min_score,
                                             vector_weight, text_weight, sources, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                user_id, query, results_count, provider, model, search_time_ms, max_results,
                min_score, vector_weight, text_weight, json_dumps(sources), iso_str(utcnow()),
            ),
        )
        return int(cur.lastrowid)

    def list_search_logs(self, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        rows = self._rx().execute(
            "SELECT * FROM memory_search_log WHERE user_id=? ORDER BY id DESC LIMIT ?",
            (user_id, limit),
        ).fetchall()
        out = []
        for r in rows:
            item = dict(r)
            item["sources"] = json_loads(item["sources"])
            out.append(item)
        return out

    # --- Row Converters ---

    @staticmethod
    def _row_to_memory_file(row: sqlite3.Row) -> MemoryFile:
        return MemoryFile(
            id=row["id"],
            user_id=row["user_id"],
            file_path=row["file_path"],
            source=row["source"],
            content_hash=row["content_hash"],
            file_size=row["file_size"],
            chunk_count=row["chunk_count"],
            created_at=parse_iso(row["created_at"]),
            last_modified=parse_iso(row["last_modified"]),
        )

    @staticmethod
    def _row_to_chunk(row: sqlite3.Row) -> MemoryChunk:
        return MemoryChunk(
            id=row["id"],
            user_id=row["user_id"],
            file_id=row["file_id"],
            file_path=row["file_path"],
            chunk_id=row["chunk_id"],
            source=row["source"],
            start_line=row["start_line"],
            end_line=row["end_line"],
            text=row["text"],
            content_hash=row["content_hash"],
            token_count=row["token_count"],
            model=row["model"],
            created_at=parse_iso(row["created_at"]),
        )

    @staticmethod
    def _row_to_cache_entry(row: sqlite3.Row) -> EmbeddingCacheEntry:
        return EmbeddingCacheEntry(
            provider=row["provider"],
            model=row["model"],
            content_hash=row["content_hash"],
            dims=row["dims"],
            token_count=row["token_count"],
            access_count=row["access_count"],
            created_at=parse_iso(row["created_at"]),
            last_accessed_at=parse_iso(row["last_accessed_at"]),
        )

    @staticmethod
    def _row_to_fact(row: sqlite3.Row) -> MemoryFact:
        return MemoryFact(
            id=row["id"],
            user_id=row["user_id"],
            fact_type=row["fact_type"],
            content=row["content"],
            confidence_score=row["confidence_score"],
            importance_score=row["importance_score"],
            access_count=row["access_count"],
            source_file_id=row["source_file_id"],
            source_session_id=row["source_session_id"],
            metadata=json_loads(row["metadata"]),
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
            last_accessed_at=parse_iso_opt(row["last_accessed_at"]),
            expires_at=parse_iso_opt(row["expires_at"]),
        )

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> IndexedSession:
        return IndexedSession(
            id=row["id"],
            user_id=row["user_id"],
            session_id=row["session_id"],
            message_count=row["message_count"],
            file_id=row["file_id"],
            consolidation_status=ConsolidationStatus(row["consolidation_status"]),
            facts_extracted=row["facts_extracted"],
            indexed_at=parse_iso(row["indexed_at"]),
            consolidated_at=parse_iso_opt(row["consolidated_at"]),
        )

    @staticmethod
    def _row_to_user_config(row: sqlite3.Row) -> UserIndexingConfig:
        return UserIndexingConfig(
            user_id=row["user_id"],
            auto_index_enabled=bool(row["auto_index_enabled"]),
            min_messages_to_index=row["min_messages_to_index"],
            index_on_session_end=bool(row["index_on_session_end"]),
            consolidate_on_index=bool(row["consolidate_on_index"]),
            consolidation_interval_hours=row["consolidation_interval_hours"],
            last_consolidation_at=parse_iso_opt(row["last_consolidation_at"]),
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> ConsolidationJob:
        return ConsolidationJob(
            id=row["id"],
            user_id=row["user_id"],
            job_type=JobType(row["job_type"]),
            status=JobStatus(row["status"]),
            facts_extracted=row["facts_extracted"],
            facts_stored=row["facts_stored"],
            facts_merged=row["facts_merged"],
            chunks_processed=row["chunks_processed"],
            total_chunks=row["total_chunks"],
            error_message=row["error_message"],
            started_at=parse_iso_opt(row["started_at"]),
            heartbeat_at=parse_iso_opt(row["heartbeat_at"]),
            completed_at=parse_iso_opt(row["completed_at"]),
            created_at=parse_iso(row["created_at"]),
        )

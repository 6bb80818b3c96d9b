"""Turns finished chat sessions into conversation memory files."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from chatmem.config import IndexingConfig
from chatmem.engine.memory_engine import MemoryEngine
from chatmem.exceptions import NotFoundError
from chatmem.storage.sqlite_store import SQLiteStore
from chatmem.types import (
    BatchIndexingResult,
    ConversationSession,
    IndexedSession,
    IndexingResult,
    IndexingStats,
    SourceTag,
    UserIndexingConfig,
)
from chatmem.utils import iso_str, json_dumps, utcnow

logger = logging.getLogger(__name__)

SKIP_AUTO_INDEX_DISABLED = "auto_index_disabled"
SKIP_BELOW_MIN_MESSAGES = "below_min_messages"
SKIP_ALREADY_INDEXED = "already_indexed"


def format_conversation(session: ConversationSession) -> str:
    """Render a session as the Markdown document that gets indexed."""
    lines = [f"# Conversation - {session.session_id}", ""]
    if session.started_at:
        lines.append(f"**Started**: {iso_str(session.started_at)}")
    if session.ended_at:
        lines.append(f"**Ended**: {iso_str(session.ended_at)}")
    if session.metadata:
        lines.append(f"**Metadata**: {json_dumps(session.metadata)}")
    lines.extend(["", "---", ""])

    for n, msg in enumerate(session.messages, 1):
        role = msg.role[:1].upper() + msg.role[1:]
        stamp = f" ({iso_str(msg.timestamp)})" if msg.timestamp else ""
        lines.extend([f"## Message {n} - {role}{stamp}", "", msg.content, ""])
        if msg.metadata:
            lines.extend([f"*Metadata: {json_dumps(msg.metadata)}*", ""])

    lines.extend(["---", "", f"**Total Messages**: {len(session.messages)}"])
    return "\n".join(lines)


def conversation_path(session: ConversationSession, when: datetime | None = None) -> str:
    day = (session.ended_at or when or utcnow()).strftime("%Y-%m-%d")
    return f"conversations/{day}/{session.session_id}.md"


class ConversationIndexer:
    """Applies per-user indexing policy and hands sessions to the memory engine."""

    def __init__(
        self,
        store: SQLiteStore,
        engine: MemoryEngine,
        config: IndexingConfig | None = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.config = config or IndexingConfig()
        self.counters = {"indexed": 0, "skipped": 0, "failed": 0}

    def _default_user_config(self, user_id: str) -> UserIndexingConfig:
        return UserIndexingConfig(
            user_id=user_id,
            auto_index_enabled=self.config.auto_index,
            min_messages_to_index=self.config.min_messages,
            index_on_session_end=self.config.index_on_session_end,
            consolidate_on_index=self.config.consolidate_on_index,
            consolidation_interval_hours=self.config.consolidation_interval_hours,
        )

    async def get_user_config(self, user_id: str) -> UserIndexingConfig:
        cfg = self.store.get_user_config(user_id)
        if cfg is not None:
            return cfg
        async with self.store.transaction():
            if self.store.get_user_config(user_id) is None:
                self.store.upsert_user_config(self._default_user_config(user_id))
        return self.store.get_user_config(user_id)

    async def initialize_user_config(self, user_id: str, **overrides) -> UserIndexingConfig:
        """Create or update a user's policy. Unknown override names raise TypeError."""
        async with self.store.transaction():
            current = self.store.get_user_config(user_id) or self._default_user_config(user_id)
            unknown = set(overrides) - set(UserIndexingConfig.model_fields) - {"user_id"}
            if unknown:
                raise TypeError(f"unknown indexing config fields: {sorted(unknown)}")
            self.store.upsert_user_config(current.model_copy(update=overrides))
        return self.store.get_user_config(user_id)

    def is_session_indexed(self, user_id: str, session_id: str) -> bool:
        return self.store.get_indexed_session(user_id, session_id) is not None

    @staticmethod
    def _consolidation_due(cfg: UserIndexingConfig, requested: bool) -> bool:
        if not (cfg.consolidate_on_index or requested):
            return False
        if cfg.last_consolidation_at is None:
            return True
        elapsed_hours = (utcnow() - cfg.last_consolidation_at).total_seconds() / 3600.0
        return elapsed_hours >= cfg.consolidation_interval_hours

    def _skip(self, session: ConversationSession, reason: str, **fields) -> IndexingResult:
        self.counters["skipped"] += 1
        logger.info("skipping session %s for user %s: %s", session.session_id, session.user_id, reason)
        return IndexingResult(session_id=session.session_id, skipped_reason=reason, **fields)

    async def index_conversation(
        self,
        session: ConversationSession,
        source: str | SourceTag = SourceTag.CONVERSATION,
        consolidate: bool = False,
        force_reindex: bool = False,
    ) -> IndexingResult:
        cfg = await self.get_user_config(session.user_id)
        if not cfg.auto_index_enabled and not force_reindex:
            return self._skip(session, SKIP_AUTO_INDEX_DISABLED)
        if len(session.messages) < cfg.min_messages_to_index and not force_reindex:
            return self._skip(session, SKIP_BELOW_MIN_MESSAGES)

        existing = self.store.get_indexed_session(session.user_id, session.session_id)
        if existing is not None and not force_reindex:
            return self._skip(
                session,
                SKIP_ALREADY_INDEXED,
                already_indexed=True,
                file_id=existing.file_id if existing.file_id is not None else -1,
            )

        path = conversation_path(session)
        if existing is not None and existing.file_id is not None:
            # keep a re-indexed session in its original date partition
            previous = self.store.get_memory_file_by_id(existing.file_id)
            if previous is not None:
                path = previous.file_path

        content = format_conversation(session)
        try:
            prepared = await self.engine.prepare_content(session.user_id, path, content, source)
            async with self.store.transaction():
                indexed = self.engine.write_prepared(prepared)
                self.store.upsert_indexed_session(
                    session.user_id,
                    session.session_id,
                    len(session.messages),
                    indexed.file_id,
                    reset_status=indexed.chunks_created > 0,
                )
        except Exception:
            self.counters["failed"] += 1
            raise

        self.counters["indexed"] += 1
        triggered = self._consolidation_due(cfg, consolidate)
        logger.info(
            "indexed session %s for user %s (%d messages, %d chunks, consolidation due: %s)",
            session.session_id, session.user_id, len(session.messages),
            indexed.chunks_created, triggered,
        )
        return IndexingResult(
            session_id=session.session_id,
            file_id=indexed.file_id,
            file_path=path,
            chunks_created=indexed.chunks_created,
            already_indexed=existing is not None,
            consolidation_triggered=triggered,
        )

    async def batch_index_conversations(
        self,
        sessions: list[ConversationSession],
        source: str | SourceTag = SourceTag.CONVERSATION,
        consolidate: bool = False,
        force_reindex: bool = False,
    ) -> BatchIndexingResult:
        """Index sessions one by one. A failing session is logged and skipped."""
        batch = BatchIndexingResult()
        for i, session in enumerate(sessions):
            if i and self.config.batch_delay_seconds > 0:
                await asyncio.sleep(self.config.batch_delay_seconds)
            try:
                result = await self.index_conversation(
                    session, source=source, consolidate=consolidate, force_reindex=force_reindex
                )
            except Exception:
                logger.exception(
                    "failed to index session %s for user %s", session.session_id, session.user_id
                )
                batch.failed_session_ids.append(session.session_id)
                continue
            batch.results.append(result)
        return batch

    def get_indexing_stats(self, user_id: str) -> IndexingStats:
        return self.store.indexing_stats(user_id)

    def get_indexed_sessions(self, user_id: str, limit: int = 50) -> list[IndexedSession]:
        return self.store.list_indexed_sessions(user_id, limit=limit)

    async def delete_indexed_session(self, user_id: str, session_id: str) -> None:
        """Remove the session record and the memory file backing it."""
        async with self.store.transaction():
            existing = self.store.get_indexed_session(user_id, session_id)
            if existing is None:
                raise NotFoundError(f"Indexed session not found: {session_id}")
            if existing.file_id is not None:
                backing = self.store.get_memory_file_by_id(existing.file_id)
                if backing is not None:
                    self.store.delete_memory_file(user_id, backing.file_path)
            self.store.delete_indexed_session(user_id, session_id)
        self.engine.release_empty_partitions(user_id)
        logger.info("deleted indexed session %s for user %s", session_id, user_id)

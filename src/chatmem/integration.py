"""Helpers for wiring memory into a chat request/response cycle.

Both helpers are best-effort: a memory failure is logged and never breaks
the chat turn that called them.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from chatmem.engine.memory_engine import MemoryEngine
from chatmem.indexer.conversation_indexer import ConversationIndexer
from chatmem.types import ConversationMessage, ConversationSession, IndexingResult
from chatmem.utils import iso_str, utcnow

logger = logging.getLogger(__name__)

CONTEXT_HEADER = "**Relevant Context from Memory:**"
MIN_CHAT_MESSAGES = 3


async def get_memory_context(
    engine: MemoryEngine,
    user_id: str,
    query: str,
    max_results: int = 3,
    min_score: float = 0.4,
    snippet_chars: int = 200,
) -> str | None:
    """Render the top memory hits as a block to prepend to the model prompt."""
    try:
        results = await engine.search_memory(
            user_id, query, max_results=max_results, min_score=min_score
        )
    except Exception:
        logger.exception("memory context lookup failed for user %s", user_id)
        return None
    if not results:
        return None

    parts = [CONTEXT_HEADER, ""]
    for n, result in enumerate(results, 1):
        snippet = result.snippet[:snippet_chars].replace("\n", " ")
        parts.append(f"{n}. {snippet}...")
        parts.append(f"   Source: {result.citation}")
        parts.append("")
    return "\n".join(parts).rstrip()


async def index_chat_session(
    indexer: ConversationIndexer,
    user_id: str,
    session_id: str,
    messages: list[ConversationMessage | dict[str, Any]],
    started_at: datetime | None = None,
) -> IndexingResult | None:
    """Index a finished chat once it has at least three messages."""
    if len(messages) < MIN_CHAT_MESSAGES:
        logger.debug("chat %s too short to index (%d messages)", session_id, len(messages))
        return None
    now = utcnow()
    parsed = [
        m if isinstance(m, ConversationMessage) else ConversationMessage.model_validate(m)
        for m in messages
    ]
    session = ConversationSession(
        session_id=session_id,
        user_id=user_id,
        messages=[m if m.timestamp else m.model_copy(update={"timestamp": now}) for m in parsed],
        started_at=started_at,
        ended_at=now,
        metadata={"indexed_at": iso_str(now), "message_count": len(parsed)},
    )
    try:
        return await indexer.index_conversation(session)
    except Exception:
        logger.exception("failed to index chat %s for user %s", session_id, user_id)
        return None

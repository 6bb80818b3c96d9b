"""Conversation-to-memory indexing."""

from chatmem.indexer.conversation_indexer import (
    ConversationIndexer,
    conversation_path,
    format_conversation,
)

__all__ = ["ConversationIndexer", "conversation_path", "format_conversation"]

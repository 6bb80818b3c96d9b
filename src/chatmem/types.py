"""Domain records shared across components."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SourceTag(str, Enum):
    MEMORY = "memory"
    SESSION = "session"
    CONVERSATION = "conversation"


class FactType(str, Enum):
    PREFERENCE = "preference"
    FACT = "fact"
    DECISION = "decision"
    CONTEXT = "context"
    GOAL = "goal"
    SKILL = "skill"


class ConsolidationStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


# --- Memory engine ---

class MemoryFile(BaseModel):
    id: int
    user_id: str
    file_path: str
    source: SourceTag
    content_hash: str
    file_size: int = 0
    chunk_count: int = 0
    created_at: datetime
    last_modified: datetime


class MemoryChunk(BaseModel):
    id: int
    user_id: str
    file_id: int
    file_path: str = ""
    chunk_id: str
    source: SourceTag
    start_line: int
    end_line: int
    text: str
    content_hash: str
    token_count: int = 0
    model: str = ""
    created_at: datetime


class EmbeddingCacheEntry(BaseModel):
    provider: str
    model: str
    content_hash: str
    dims: int
    token_count: int = 0
    access_count: int = 0
    created_at: datetime
    last_accessed_at: datetime


class IndexContentResult(BaseModel):
    chunks_created: int
    file_id: int


class SearchResult(BaseModel):
    """One ranked chunk with both component scores."""

    chunk_id: str
    file_path: str
    source: SourceTag
    start_line: int
    end_line: int
    snippet: str
    citation: str
    score: float
    vector_score: float
    text_score: float


class MemoryFileContent(BaseModel):
    path: str
    text: str
    total_lines: int
    chunk_count: int
    last_modified: datetime


class CacheStats(BaseModel):
    total_entries: int
    hits: int
    misses: int
    hit_rate: float
    oldest_entry: datetime | None = None
    newest_entry: datetime | None = None


# --- Conversations ---

class ConversationMessage(BaseModel):
    role: str
    content: str
    timestamp: datetime | None = None
    metadata: dict[str, Any] | None = None


class ConversationSession(BaseModel):
    session_id: str
    user_id: str
    messages: list[ConversationMessage] = Field(default_factory=list)
    started_at: datetime | None = None
    ended_at: datetime | None = None
    metadata: dict[str, Any] | None = None


class UserIndexingConfig(BaseModel):
    user_id: str
    auto_index_enabled: bool = True
    min_messages_to_index: int = 5
    index_on_session_end: bool = True
    consolidate_on_index: bool = True
    consolidation_interval_hours: float = 6.0
    last_consolidation_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class IndexedSession(BaseModel):
    id: int
    user_id: str
    session_id: str
    message_count: int
    file_id: int | None = None
    consolidation_status: ConsolidationStatus = ConsolidationStatus.PENDING
    facts_extracted: int = 0
    indexed_at: datetime
    consolidated_at: datetime | None = None


class IndexingResult(BaseModel):
    session_id: str
    file_id: int = -1
    file_path: str = ""
    chunks_created: int = 0
    already_indexed: bool = False
    skipped_reason: str | None = None
    consolidation_triggered: bool = False

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None


class IndexingStats(BaseModel):
    total_sessions: int = 0
    total_messages: int = 0
    total_facts: int = 0
    last_indexed_at: datetime | None = None


# --- Facts ---

class ExtractedFact(BaseModel):
    type: FactType
    content: str
    confidence: float
    reasoning: str = ""


class ExtractionResult(BaseModel):
    facts: list[ExtractedFact] = Field(default_factory=list)
    summary: str = ""
    token_count: int = 0


class MemoryFact(BaseModel):
    id: int
    user_id: str
    fact_type: FactType
    content: str
    confidence_score: float
    importance_score: float
    access_count: int = 0
    source_file_id: int | None = None
    source_session_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    last_accessed_at: datetime | None = None
    expires_at: datetime | None = None
    score: float | None = None


class ConsolidationJob(BaseModel):
    id: int
    user_id: str
    job_type: JobType
    status: JobStatus
    facts_extracted: int = 0
    facts_stored: int = 0
    facts_merged: int = 0
    chunks_processed: int = 0
    total_chunks: int = 0
    error_message: str | None = None
    started_at: datetime | None = None
    heartbeat_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime


class ConsolidationResult(BaseModel):
    job_id: int
    facts_extracted: int = 0
    facts_stored: int = 0
    facts_merged: int = 0
    chunks_processed: int = 0
    total_chunks: int = 0
    duration_ms: float = 0.0
    memory_file_updated: bool = False


class BatchIndexingResult(BaseModel):
    results: list[IndexingResult] = Field(default_factory=list)
    failed_session_ids: list[str] = Field(default_factory=list)

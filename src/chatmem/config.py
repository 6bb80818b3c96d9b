"""chatmem configuration."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)


def _default_data_dir() -> Path:
    return Path(os.environ.get("CHATMEM_DATA_DIR", Path.cwd() / "data"))


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    return float(raw) if raw else default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


class ChunkingConfig(BaseModel):
    tokens: int = Field(default_factory=lambda: _env_int("CHATMEM_CHUNK_SIZE", 400))
    overlap: int = Field(default_factory=lambda: _env_int("CHATMEM_CHUNK_OVERLAP", 80))
    tokenizer: str = Field(default_factory=lambda: os.environ.get("CHATMEM_TOKENIZER", "heuristic"))

    @model_validator(mode="after")
    def _check_window(self) -> ChunkingConfig:
        if self.overlap < 0:
            raise ValueError("chunk overlap must be >= 0")
        if self.tokens <= self.overlap:
            raise ValueError("chunk size must be greater than chunk overlap")
        return self


class EmbeddingConfig(BaseModel):
    provider: str = Field(default_factory=lambda: os.environ.get("CHATMEM_EMBEDDING_PROVIDER", "openai"))
    model: str = Field(
        default_factory=lambda: os.environ.get("CHATMEM_EMBEDDING_MODEL", "text-embedding-3-small")
    )
    dims: int = Field(default_factory=lambda: _env_int("CHATMEM_EMBEDDING_DIMS", 1536))
    base_url: str = Field(default_factory=lambda: os.environ.get("CHATMEM_EMBEDDING_BASE_URL", ""))
    timeout: float = 30.0

    @field_validator("dims")
    @classmethod
    def _check_dims(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("embedding dims must be > 0")
        return v


class SearchConfig(BaseModel):
    max_results: int = Field(default_factory=lambda: _env_int("CHATMEM_SEARCH_MAX_RESULTS", 6))
    min_score: float = Field(default_factory=lambda: _env_float("CHATMEM_SEARCH_MIN_SCORE", 0.35))
    vector_weight: float = Field(default_factory=lambda: _env_float("CHATMEM_SEARCH_VECTOR_WEIGHT", 0.7))
    text_weight: float = Field(default_factory=lambda: _env_float("CHATMEM_SEARCH_TEXT_WEIGHT", 0.3))
    default_sources: list[str] = Field(default_factory=lambda: ["memory", "session", "conversation"])
    snippet_chars: int = 700
    log_searches: bool = True
    faiss_ivf_threshold: int = 50_000
    faiss_nprobe: int = 16
    faiss_max_partitions: int = Field(
        default_factory=lambda: _env_int("CHATMEM_FAISS_MAX_PARTITIONS", 256)
    )

    @model_validator(mode="after")
    def _normalize_weights(self) -> SearchConfig:
        if not 0.0 <= self.min_score <= 1.0:
            raise ValueError("search min_score must be within [0, 1]")
        if self.vector_weight < 0 or self.text_weight < 0:
            raise ValueError("search weights must be >= 0")
        total = self.vector_weight + self.text_weight
        if total <= 0:
            raise ValueError("search weights must not both be zero")
        if abs(total - 1.0) > 1e-6:
            logger.warning(
                "search weights %.3f/%.3f do not sum to 1.0, normalizing",
                self.vector_weight, self.text_weight,
            )
            self.vector_weight = self.vector_weight / total
            self.text_weight = self.text_weight / total
        return self


class CacheConfig(BaseModel):
    enabled: bool = Field(default_factory=lambda: _env_bool("CHATMEM_CACHE_ENABLED", True))
    max_entries: int = Field(default_factory=lambda: _env_int("CHATMEM_CACHE_MAX_ENTRIES", 50_000))
    ttl_days: float = Field(default_factory=lambda: _env_float("CHATMEM_CACHE_TTL_DAYS", 90.0))
    cleanup_interval_hours: float = Field(
        default_factory=lambda: _env_float("CHATMEM_CACHE_CLEANUP_INTERVAL_HOURS", 24.0)
    )

    @field_validator("max_entries")
    @classmethod
    def _check_max_entries(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("cache max_entries must be > 0")
        return v


class IndexingConfig(BaseModel):
    auto_index: bool = Field(default_factory=lambda: _env_bool("CHATMEM_AUTO_INDEX", True))
    index_on_session_end: bool = Field(
        default_factory=lambda: _env_bool("CHATMEM_INDEX_ON_SESSION_END", True)
    )
    min_messages: int = Field(default_factory=lambda: _env_int("CHATMEM_MIN_MESSAGES_FOR_INDEX", 5))
    consolidate_on_index: bool = True
    consolidation_interval_hours: float = 6.0
    batch_delay_seconds: float = 0.1


class ExtractionConfig(BaseModel):
    provider: str = Field(default_factory=lambda: os.environ.get("CHATMEM_CHAT_PROVIDER", "openai"))
    model: str = Field(default_factory=lambda: os.environ.get("CHATMEM_EXTRACTION_MODEL", "gpt-4o-mini"))
    temperature: float = 0.3
    max_tokens: int = 2048
    max_facts: int = 20
    min_confidence: float = 0.6
    chunk_delay_seconds: float = 0.2
    type_synonyms_path: Path | None = Field(
        default_factory=lambda: (
            Path(os.environ["CHATMEM_FACT_TYPE_SYNONYMS"])
            if os.environ.get("CHATMEM_FACT_TYPE_SYNONYMS")
            else None
        )
    )


class ConsolidationConfig(BaseModel):
    similarity_threshold: float = 0.9
    similar_fact_limit: int = 3
    memory_file_min_importance: float = 0.5
    memory_file_max_facts: int = 100
    session_delay_seconds: float = 0.2
    fact_ttl_days: float | None = None
    stale_job_minutes: float = 60.0


class SchedulerConfig(BaseModel):
    enabled: bool = Field(default_factory=lambda: _env_bool("CHATMEM_SCHEDULER_ENABLED", True))
    consolidation_interval_hours: float = 6.0
    cache_cleanup_interval_hours: float = 24.0
    importance_interval_hours: float = 24.0
    expired_facts_interval_hours: float = 24.0
    user_delay_seconds: float = 1.0
    status_log_interval_seconds: float = 300.0


class APIConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8430
    bearer_token: str = Field(default_factory=lambda: os.environ.get("CHATMEM_API_TOKEN", ""))


class LoggingConfig(BaseModel):
    level: str = Field(default_factory=lambda: os.environ.get("CHATMEM_LOG_LEVEL", "INFO"))
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Config(BaseModel):
    data_dir: Path = Field(default_factory=_default_data_dir)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    indexing: IndexingConfig = Field(default_factory=IndexingConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    consolidation: ConsolidationConfig = Field(default_factory=ConsolidationConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def db_path(self) -> Path:
        return self.data_dir / "db" / "chatmem.db"

    def ensure_dirs(self) -> None:
        for d in [self.data_dir, self.db_path.parent]:
            d.mkdir(parents=True, exist_ok=True)

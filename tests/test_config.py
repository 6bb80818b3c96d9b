from __future__ import annotations

import pydantic
import pytest

from chatmem.config import CacheConfig, ChunkingConfig, Config, EmbeddingConfig, SearchConfig


def test_chunk_window_is_validated():
    with pytest.raises(pydantic.ValidationError):
        ChunkingConfig(tokens=80, overlap=80)
    with pytest.raises(pydantic.ValidationError):
        ChunkingConfig(tokens=100, overlap=-1)
    cfg = ChunkingConfig(tokens=100, overlap=0)
    assert cfg.overlap == 0


def test_search_weights_are_normalized():
    cfg = SearchConfig(vector_weight=3.0, text_weight=1.0)
    assert cfg.vector_weight == pytest.approx(0.75)
    assert cfg.text_weight == pytest.approx(0.25)
    with pytest.raises(pydantic.ValidationError):
        SearchConfig(vector_weight=0.0, text_weight=0.0)
    with pytest.raises(pydantic.ValidationError):
        SearchConfig(min_score=1.5)


def test_embedding_dims_and_cache_size_must_be_positive():
    with pytest.raises(pydantic.ValidationError):
        EmbeddingConfig(dims=0)
    with pytest.raises(pydantic.ValidationError):
        CacheConfig(max_entries=0)


def test_defaults():
    cfg = Config()
    assert cfg.chunking.tokens == 400
    assert cfg.chunking.overlap == 80
    assert cfg.search.max_results == 6
    assert cfg.search.min_score == pytest.approx(0.35)
    assert cfg.search.default_sources == ["memory", "session", "conversation"]
    assert cfg.indexing.min_messages == 5
    assert cfg.consolidation.similarity_threshold == pytest.approx(0.9)


def test_environment_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("CHATMEM_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("CHATMEM_CHUNK_SIZE", "200")
    monkeypatch.setenv("CHATMEM_CHUNK_OVERLAP", "20")
    monkeypatch.setenv("CHATMEM_CACHE_ENABLED", "false")
    monkeypatch.setenv("CHATMEM_MIN_MESSAGES_FOR_INDEX", "3")
    monkeypatch.setenv("CHATMEM_EMBEDDING_PROVIDER", "hash")
    cfg = Config()
    assert cfg.data_dir == tmp_path
    assert cfg.db_path == tmp_path / "db" / "chatmem.db"
    assert (cfg.chunking.tokens, cfg.chunking.overlap) == (200, 20)
    assert cfg.cache.enabled is False
    assert cfg.indexing.min_messages == 3
    assert cfg.embedding.provider == "hash"

    cfg.ensure_dirs()
    assert cfg.db_path.parent.is_dir()

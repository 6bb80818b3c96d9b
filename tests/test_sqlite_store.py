from __future__ import annotations

import asyncio

import numpy as np
import pytest

from chatmem.exceptions import StorageError
from chatmem.storage.sqlite_store import CHUNKS, FACTS, SQLiteStore, _sanitize_fts_query
from chatmem.types import JobStatus, JobType


def test_sanitize_fts_short_query_keeps_precision():
    q = _sanitize_fts_query("user_id abc-123?")
    # Short queries should remain AND-style for precision.
    assert " OR " not in q
    assert '"user_id"' in q
    assert '"abc"' in q
    assert '"123"' in q


def test_sanitize_fts_long_query_uses_or_recall_mode():
    q = _sanitize_fts_query("which language does the user prefer for backend services")
    assert " OR " in q
    assert '"language"' in q
    assert '"services"' in q


def test_sanitize_fts_dedupes_and_caps_tokens():
    query = " ".join(["alpha"] * 30 + ["beta", "gamma", "2026"])
    q = _sanitize_fts_query(query)
    assert q.count('"alpha"') == 1
    assert '"beta"' in q
    assert '"gamma"' in q
    assert '"2026"' in q
    many = " ".join(f"tok{i}" for i in range(40))
    assert _sanitize_fts_query(many).count('"') == 24 * 2


def test_sanitize_fts_drops_pure_punctuation():
    assert _sanitize_fts_query("?!* ()") == ""


def test_writes_require_a_transaction(tmp_path):
    store = SQLiteStore(tmp_path / "m.db")
    try:
        with pytest.raises(StorageError):
            store.upsert_memory_file("u1", "a.md", "memory", "h", 1)
    finally:
        store.close()


def test_rollback_discards_writes_and_keeps_generation(tmp_path):
    async def _run() -> None:
        store = SQLiteStore(tmp_path / "m.db")
        try:
            before = store.generation(CHUNKS, "u1")
            with pytest.raises(RuntimeError):
                async with store.transaction():
                    fid = store.upsert_memory_file("u1", "a.md", "memory", "h", 1)
                    store.insert_chunk(
                        "u1", fid, "a.md:1-1", "memory", 1, 1, "hello", "c", 1, "m",
                        np.ones(4, dtype=np.float32),
                    )
                    raise RuntimeError("boom")
            assert store.get_memory_file("u1", "a.md") is None
            assert store.count_chunks("u1") == 0
            assert store.generation(CHUNKS, "u1") == before

            async with store.transaction():
                fid = store.upsert_memory_file("u1", "a.md", "memory", "h", 1)
                store.insert_chunk(
                    "u1", fid, "a.md:1-1", "memory", 1, 1, "hello", "c", 1, "m",
                    np.ones(4, dtype=np.float32),
                )
            assert store.generation(CHUNKS, "u1") != before
            # other users' partitions are untouched
            assert store.generation(CHUNKS, "u2") == (0, 0)
        finally:
            store.close()

    asyncio.run(_run())


def test_nested_transactions_join_the_outer_one(tmp_path):
    async def _run() -> None:
        store = SQLiteStore(tmp_path / "m.db")
        try:
            with pytest.raises(RuntimeError):
                async with store.transaction() as outer:
                    async with store.transaction() as inner:
                        assert inner is outer
                        store.upsert_memory_file("u1", "a.md", "memory", "h", 1)
                    assert store.get_memory_file("u1", "a.md") is not None
                    raise RuntimeError("abort outer")
            assert store.get_memory_file("u1", "a.md") is None
        finally:
            store.close()

    asyncio.run(_run())


def test_reader_sees_only_committed_rows(tmp_path):
    async def _run() -> None:
        store = SQLiteStore(tmp_path / "m.db")
        try:
            async with store.transaction():
                store.insert_fact("u1", "fact", "User lives in Lisbon", 0.9, 0.9, np.ones(4, dtype=np.float32))
                # ANN loaders read through the committed-only connection
                ids, _, _ = store.load_fact_vectors("u1")
                assert ids == []
            ids, tags, vectors = store.load_fact_vectors("u1")
            assert len(ids) == 1
            assert tags == ["fact"]
            assert vectors[0].dtype == np.float32
            assert store.generation(FACTS, "u1")[1] == 1
        finally:
            store.close()

    asyncio.run(_run())


def test_fts_search_is_scoped_by_user_and_source(tmp_path):
    async def _run() -> None:
        store = SQLiteStore(tmp_path / "m.db")
        try:
            async with store.transaction():
                for user, source in (("u1", "memory"), ("u1", "conversation"), ("u2", "memory")):
                    fid = store.upsert_memory_file(user, f"{source}.md", source, "h", 1)
                    store.insert_chunk(
                        user, fid, f"{source}.md:1-1", source, 1, 1,
                        "The user prefers TypeScript for frontend work", "c", 8, "m", None,
                    )
            hits = store.search_chunks_fts("u1", "TypeScript frontend")
            assert len(hits) == 2
            assert all(score >= 0 for _, score in hits)
            only_memory = store.search_chunks_fts("u1", "TypeScript", sources=["memory"])
            assert len(only_memory) == 1
            assert store.search_chunks_fts("u3", "TypeScript") == []
        finally:
            store.close()

    asyncio.run(_run())


def test_job_transitions_are_guarded(tmp_path):
    async def _run() -> None:
        store = SQLiteStore(tmp_path / "m.db")
        try:
            async with store.transaction():
                job_id = store.create_job("u1", JobType.MANUAL)
            with pytest.raises(StorageError):
                async with store.transaction():
                    store.complete_job(job_id, 0, 0, 0, 0, 0)
            async with store.transaction():
                store.start_job(job_id)
                store.complete_job(job_id, 3, 2, 1, 4, 4)
            job = store.get_job(job_id)
            assert job.status == JobStatus.COMPLETED
            assert (job.facts_extracted, job.facts_stored, job.facts_merged) == (3, 2, 1)
            with pytest.raises(StorageError):
                async with store.transaction():
                    store.fail_job(job_id, "too late")
        finally:
            store.close()

    asyncio.run(_run())

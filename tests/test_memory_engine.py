from __future__ import annotations

import asyncio

import pytest

from chatmem.config import Config
from chatmem.embeddings.backends import HashEmbedder
from chatmem.exceptions import ConfigError, NotFoundError, ValidationError
from chatmem.stack import MemoryStack
from chatmem.types import SourceTag


class _NoChat:
    async def chat(self, *args, **kwargs):  # noqa: ANN002, ANN003
        raise AssertionError("chat should not be called")

    async def close(self) -> None:
        return None


class _FlakyEmbedder(HashEmbedder):
    def __init__(self, fail_on: str) -> None:
        super().__init__(dims=64)
        self.fail_on = fail_on
        self.calls = 0

    async def embed_single(self, text: str):
        self.calls += 1
        if self.fail_on and self.fail_on in text:
            raise RuntimeError("embedding provider unavailable")
        return await super().embed_single(text)


class _GatedEmbedder(HashEmbedder):
    """Blocks inside the provider call for any text containing ``gate_on``."""

    def __init__(self, gate_on: str) -> None:
        super().__init__(dims=64)
        self.gate_on = gate_on
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def embed_single(self, text: str):
        if self.gate_on in text:
            self.entered.set()
            await self.release.wait()
        return await super().embed_single(text)


def _stack(tmp_path, embedder=None, **chunking) -> MemoryStack:
    cfg = Config()
    cfg.data_dir = tmp_path
    for key, value in chunking.items():
        setattr(cfg.chunking, key, value)
    return MemoryStack(cfg, embedder=embedder or HashEmbedder(dims=64), chat=_NoChat())


NOTES = "The user prefers TypeScript over JavaScript.\nThey deploy services on Kubernetes.\nCoffee every morning."
QUERY = "prefers TypeScript over JavaScript"


def test_index_content_is_idempotent(tmp_path):
    async def _run() -> None:
        embedder = _FlakyEmbedder(fail_on="")
        stack = _stack(tmp_path, embedder=embedder)
        try:
            first = await stack.engine.index_content("u1", "notes.md", NOTES)
            assert first.chunks_created == 1
            record = stack.store.get_memory_file("u1", "notes.md")
            chunk_ids = [c.id for c in stack.store.list_chunks_for_file(record.id)]
            calls = embedder.calls

            second = await stack.engine.index_content("u1", "notes.md", NOTES)
            assert second.chunks_created == 0
            assert second.file_id == first.file_id
            assert [c.id for c in stack.store.list_chunks_for_file(record.id)] == chunk_ids
            assert embedder.calls == calls
        finally:
            await stack.close()

    asyncio.run(_run())


def test_changed_content_replaces_the_chunk_set(tmp_path):
    async def _run() -> None:
        stack = _stack(tmp_path)
        try:
            first = await stack.engine.index_content("u1", "notes.md", NOTES)
            updated = await stack.engine.index_content("u1", "notes.md", NOTES + "\nTea at night.")
            assert updated.file_id == first.file_id
            assert updated.chunks_created == 1
            chunks = stack.store.list_chunks_for_file(first.file_id)
            assert len(chunks) == 1
            assert chunks[0].end_line == 4
            assert chunks[0].chunk_id == "notes.md:1-4"
        finally:
            await stack.close()

    asyncio.run(_run())


def test_failed_index_rolls_back_file_chunks_and_cache(tmp_path):
    async def _run() -> None:
        embedder = _FlakyEmbedder(fail_on="EXPLODE")
        stack = _stack(tmp_path, embedder=embedder, tokens=20, overlap=5)
        try:
            lines = [f"line {i} covers the deployment plan" for i in range(1, 20)] + ["EXPLODE here"]
            with pytest.raises(RuntimeError):
                await stack.engine.index_content("u1", "plan.md", "\n".join(lines))
            assert embedder.calls > 1
            assert stack.store.get_memory_file("u1", "plan.md") is None
            assert stack.store.count_chunks("u1") == 0
            assert stack.store.cache_summary()[0] == 0

            # an existing version survives a failed update
            await stack.engine.index_content("u1", "notes.md", NOTES)
            with pytest.raises(RuntimeError):
                await stack.engine.index_content("u1", "notes.md", NOTES + "\nEXPLODE")
            assert stack.engine.get_memory_file("u1", "notes.md").text == NOTES
        finally:
            await stack.close()

    asyncio.run(_run())


def test_get_memory_file_reconstructs_text_across_overlap(tmp_path):
    async def _run() -> None:
        stack = _stack(tmp_path, tokens=20, overlap=8)
        try:
            text = "\n".join(f"line {i} of the notes" for i in range(1, 31))
            result = await stack.engine.index_content("u1", "long.md", text)
            assert result.chunks_created > 1

            content = stack.engine.get_memory_file("u1", "long.md")
            assert content.text == text
            assert content.total_lines == 30
            assert content.chunk_count == result.chunks_created

            window = stack.engine.get_memory_file("u1", "long.md", from_line=2, lines=2)
            assert window.text == "line 2 of the notes\nline 3 of the notes"
            assert window.total_lines == 30

            with pytest.raises(ValidationError):
                stack.engine.get_memory_file("u1", "long.md", from_line=0)
        finally:
            await stack.close()

    asyncio.run(_run())


def test_missing_files_raise_not_found(tmp_path):
    async def _run() -> None:
        stack = _stack(tmp_path)
        try:
            with pytest.raises(NotFoundError, match="File not found: nope.md"):
                stack.engine.get_memory_file("u1", "nope.md")
            with pytest.raises(NotFoundError):
                await stack.engine.delete_memory_file("u1", "nope.md")

            await stack.engine.index_content("u1", "notes.md", NOTES)
            # files are scoped per user
            with pytest.raises(NotFoundError):
                stack.engine.get_memory_file("u2", "notes.md")
            await stack.engine.delete_memory_file("u1", "notes.md")
            assert stack.store.count_chunks("u1") == 0
            assert stack.engine.list_memory_files("u1") == []
        finally:
            await stack.close()

    asyncio.run(_run())


def test_search_memory_returns_cited_hybrid_results(tmp_path):
    async def _run() -> None:
        stack = _stack(tmp_path)
        try:
            await stack.engine.index_content("u1", "notes.md", NOTES)
            await stack.engine.index_content("u2", "other.md", "TypeScript TypeScript TypeScript")

            results = await stack.engine.search_memory("u1", "TypeScript JavaScript", min_score=0.0)
            assert len(results) == 1
            hit = results[0]
            assert hit.file_path == "notes.md"
            assert hit.citation == "notes.md#L1-L3"
            assert hit.source == SourceTag.MEMORY
            assert hit.text_score > 0
            assert hit.score == pytest.approx(0.7 * hit.vector_score + 0.3 * hit.text_score)
            assert "TypeScript" in hit.snippet

            logs = stack.store.list_search_logs("u1")
            assert len(logs) == 1
            assert logs[0]["results_count"] == 1

            assert await stack.engine.search_memory("u1", "   ") == []
            none = await stack.engine.search_memory("u1", "TypeScript", sources=["conversation"], min_score=0.0)
            assert none == []
        finally:
            await stack.close()

    asyncio.run(_run())


def test_search_weights_are_normalized(tmp_path):
    async def _run() -> None:
        stack = _stack(tmp_path)
        try:
            await stack.engine.index_content("u1", "notes.md", NOTES)
            results = await stack.engine.search_memory(
                "u1", "Kubernetes", min_score=0.0, vector_weight=2.0, text_weight=2.0
            )
            assert results
            hit = results[0]
            assert hit.score == pytest.approx(0.5 * hit.vector_score + 0.5 * hit.text_score)
            with pytest.raises(ValidationError):
                await stack.engine.search_memory("u1", "Kubernetes", vector_weight=-1.0)
        finally:
            await stack.close()

    asyncio.run(_run())


def test_unknown_source_tag_is_rejected(tmp_path):
    async def _run() -> None:
        stack = _stack(tmp_path)
        try:
            with pytest.raises(ValidationError):
                await stack.engine.index_content("u1", "x.md", "hello", source="bogus")
            await stack.engine.index_content("u1", "c.md", "hello there", source="conversation")
            files = stack.engine.list_memory_files("u1", source="conversation")
            assert [f.file_path for f in files] == ["c.md"]
            assert stack.engine.list_memory_files("u1", source="memory") == []
        finally:
            await stack.close()

    asyncio.run(_run())


def test_engine_rejects_invalid_chunking(tmp_path):
    stack = _stack(tmp_path)
    try:
        stack.config.chunking.overlap = stack.config.chunking.tokens
        from chatmem.engine.memory_engine import MemoryEngine

        with pytest.raises(ConfigError):
            MemoryEngine(stack.store, stack.cache, stack.hybrid_search, chunking=stack.config.chunking)
    finally:
        asyncio.run(stack.close())


def test_failed_write_rolls_back_new_cache_rows(tmp_path, monkeypatch):
    async def _run() -> None:
        stack = _stack(tmp_path)
        try:
            def broken_insert(**kwargs):  # noqa: ANN003
                raise RuntimeError("disk full")

            monkeypatch.setattr(stack.store, "insert_chunk", broken_insert)
            with pytest.raises(RuntimeError, match="disk full"):
                await stack.engine.index_content("u1", "notes.md", NOTES)
            assert stack.store.get_memory_file("u1", "notes.md") is None
            assert stack.store.cache_summary()[0] == 0
        finally:
            await stack.close()

    asyncio.run(_run())


def test_slow_embedding_does_not_block_other_users(tmp_path):
    async def _run() -> None:
        embedder = _GatedEmbedder(gate_on="SLOW")
        stack = _stack(tmp_path, embedder=embedder)
        slow = None
        try:
            await stack.engine.index_content("u2", "notes.md", NOTES)
            await stack.engine.search_memory("u2", QUERY, min_score=0.0)

            slow = asyncio.create_task(stack.engine.index_content("u1", "slow.md", "SLOW provider call"))
            await asyncio.wait_for(embedder.entered.wait(), timeout=2)

            results = await asyncio.wait_for(
                stack.engine.search_memory("u2", QUERY, min_score=0.0), timeout=2
            )
            assert [r.file_path for r in results] == ["notes.md"]
            other = await asyncio.wait_for(
                stack.engine.index_content("u3", "todo.md", "Ship the release notes."), timeout=2
            )
            assert other.chunks_created == 1
            assert len(stack.store.list_search_logs("u2")) == 2
            assert not slow.done()

            embedder.release.set()
            assert (await slow).chunks_created == 1
            assert stack.engine.get_memory_file("u1", "slow.md").text == "SLOW provider call"
        finally:
            embedder.release.set()
            if slow is not None:
                await asyncio.gather(slow, return_exceptions=True)
            await stack.close()

    asyncio.run(_run())


def test_search_does_not_wait_for_a_held_writer(tmp_path):
    async def _run() -> None:
        stack = _stack(tmp_path)
        held = asyncio.Event()
        release = asyncio.Event()

        async def long_writer() -> None:
            async with stack.store.transaction():
                held.set()
                await release.wait()

        writer = None
        try:
            await stack.engine.index_content("u1", "notes.md", NOTES)
            await stack.engine.search_memory("u1", QUERY, min_score=0.0)
            writer = asyncio.create_task(long_writer())
            await held.wait()

            results = await asyncio.wait_for(
                stack.engine.search_memory("u1", QUERY, min_score=0.0), timeout=2
            )
            assert len(results) == 1
            assert len(stack.store.list_search_logs("u1")) == 1
            assert stack.cache.pending_writes == 1

            release.set()
            await writer
            await stack.engine.flush_pending_writes()
            assert len(stack.store.list_search_logs("u1")) == 2
            assert stack.cache.pending_writes == 0
        finally:
            release.set()
            if writer is not None:
                await asyncio.gather(writer, return_exceptions=True)
            await stack.close()

    asyncio.run(_run())


def test_deleting_a_users_last_file_releases_its_vectors(tmp_path):
    async def _run() -> None:
        stack = _stack(tmp_path)
        try:
            for n in range(5):
                user = f"u{n}"
                await stack.engine.index_content(user, "notes.md", NOTES)
                await stack.engine.search_memory(user, QUERY, min_score=0.0)
            assert stack.faiss.partition_count == 5

            await stack.engine.index_content("u0", "more.md", "Tea at night.")
            await stack.engine.delete_memory_file("u0", "notes.md")
            assert stack.faiss.partition_count == 5

            for n in range(5):
                await stack.engine.delete_memory_file(f"u{n}", "notes.md" if n else "more.md")
            assert stack.faiss.partition_count == 0
        finally:
            await stack.close()

    asyncio.run(_run())

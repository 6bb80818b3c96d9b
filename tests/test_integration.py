from __future__ import annotations

import asyncio

from chatmem.config import Config
from chatmem.embeddings.backends import HashEmbedder
from chatmem.integration import CONTEXT_HEADER, get_memory_context, index_chat_session
from chatmem.stack import MemoryStack


class _NoChat:
    async def chat(self, *args, **kwargs):  # noqa: ANN002, ANN003
        raise AssertionError("chat should not be called")


class _BrokenEngine:
    async def search_memory(self, *args, **kwargs):  # noqa: ANN002, ANN003
        raise RuntimeError("index offline")


class _BrokenIndexer:
    async def index_conversation(self, session):  # noqa: ANN001
        raise RuntimeError("disk full")


def _stack(tmp_path) -> MemoryStack:
    cfg = Config()
    cfg.data_dir = tmp_path
    return MemoryStack(cfg, embedder=HashEmbedder(dims=64), chat=_NoChat())


def test_memory_context_block(tmp_path):
    async def _run() -> None:
        stack = _stack(tmp_path)
        try:
            assert await get_memory_context(stack.engine, "u1", "anything", min_score=0.0) is None

            await stack.engine.index_content("u1", "notes.md", "The staging cluster runs on Kubernetes.")
            block = await get_memory_context(stack.engine, "u1", "staging Kubernetes", min_score=0.0)
            lines = block.split("\n")
            assert lines[0] == CONTEXT_HEADER
            assert lines[1] == ""
            assert lines[2] == "1. The staging cluster runs on Kubernetes...."
            assert lines[3] == "   Source: notes.md#L1"
        finally:
            await stack.close()

    asyncio.run(_run())


def test_memory_context_swallows_errors():
    async def _run() -> None:
        assert await get_memory_context(_BrokenEngine(), "u1", "q") is None

    asyncio.run(_run())


def test_index_chat_session(tmp_path):
    async def _run() -> None:
        stack = _stack(tmp_path)
        try:
            short = [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]
            assert await index_chat_session(stack.indexer, "u1", "c1", short) is None

            messages = [{"role": "user", "content": f"question {i}"} for i in range(5)]
            result = await index_chat_session(stack.indexer, "u1", "c2", messages)
            assert result is not None
            assert not result.skipped
            assert stack.indexer.is_session_indexed("u1", "c2")
            text = stack.engine.get_memory_file("u1", result.file_path).text
            assert '"message_count":5' in text
            assert "## Message 1 - User (" in text

            assert await index_chat_session(_BrokenIndexer(), "u1", "c3", messages) is None
        finally:
            await stack.close()

    asyncio.run(_run())

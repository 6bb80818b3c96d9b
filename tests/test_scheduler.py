from __future__ import annotations

import asyncio
import logging

import pytest

from chatmem.config import Config
from chatmem.embeddings.backends import HashEmbedder
from chatmem.exceptions import NotFoundError, TaskAlreadyRunningError, TaskNotFoundError, ValidationError
from chatmem.llm.backends import ChatResponse
from chatmem.scheduler.maintenance import CACHE_CLEANUP, CONSOLIDATION, IMPORTANCE_UPDATE
from chatmem.stack import MemoryStack
from chatmem.types import ConversationMessage, ConversationSession, JobType
from chatmem.utils import json_dumps


class _FakeChat:
    async def chat(self, messages, temperature=None, max_tokens=None, json_mode=False, model=None):  # noqa: ANN001
        body = {"facts": [{"type": "goal", "content": "User wants faster builds", "confidence": 0.9}]}
        return ChatResponse(content=json_dumps(body))


def _stack(tmp_path, enabled: bool = True) -> MemoryStack:
    cfg = Config()
    cfg.data_dir = tmp_path
    cfg.scheduler.enabled = enabled
    cfg.scheduler.user_delay_seconds = 0
    cfg.consolidation.session_delay_seconds = 0
    return MemoryStack(cfg, embedder=HashEmbedder(dims=64), chat=_FakeChat())


def _session(session_id: str, user_id: str = "u1") -> ConversationSession:
    return ConversationSession(
        session_id=session_id,
        user_id=user_id,
        messages=[ConversationMessage(role="user", content=f"note {i}") for i in range(5)],
    )


def test_trigger_while_running_is_rejected(tmp_path):
    async def _run() -> None:
        stack = _stack(tmp_path)
        release = asyncio.Event()
        entered = asyncio.Event()

        async def slow() -> None:
            entered.set()
            await release.wait()

        try:
            task = stack.scheduler.tasks[CACHE_CLEANUP]
            task.handler = slow
            first = asyncio.create_task(stack.scheduler.trigger_task(CACHE_CLEANUP))
            await entered.wait()
            assert task.running
            with pytest.raises(TaskAlreadyRunningError, match="Task already running: cache_cleanup"):
                await stack.scheduler.trigger_task(CACHE_CLEANUP)
            release.set()
            await first
            assert task.run_count == 1
            assert task.error_count == 0
            assert not task.running
            assert task.last_run is not None
            assert task.next_run is not None
        finally:
            await stack.close()

    asyncio.run(_run())


def test_unknown_task_is_not_found(tmp_path):
    async def _run() -> None:
        stack = _stack(tmp_path)
        try:
            with pytest.raises(TaskNotFoundError, match="Task not found: nope"):
                await stack.scheduler.trigger_task("nope")
            with pytest.raises(NotFoundError):
                stack.scheduler.update_task_interval("nope", 10)
        finally:
            await stack.close()

    asyncio.run(_run())


def test_failed_run_is_counted_and_reraised(tmp_path):
    async def _run() -> None:
        stack = _stack(tmp_path)

        async def broken() -> None:
            raise RuntimeError("disk full")

        try:
            task = stack.scheduler.tasks[IMPORTANCE_UPDATE]
            task.handler = broken
            with pytest.raises(RuntimeError, match="disk full"):
                await stack.scheduler.trigger_task(IMPORTANCE_UPDATE)
            assert task.error_count == 1
            assert task.run_count == 0
            assert not task.running

            # timer-driven runs swallow the error after counting it
            assert await stack.scheduler._run_task(IMPORTANCE_UPDATE) is False
            assert task.error_count == 2
        finally:
            await stack.close()

    asyncio.run(_run())


def test_update_interval_keeps_counters(tmp_path):
    async def _run() -> None:
        stack = _stack(tmp_path)
        try:
            await stack.scheduler.trigger_task(CACHE_CLEANUP)
            task = stack.scheduler.update_task_interval(CACHE_CLEANUP, 120)
            assert task.interval_seconds == 120.0
            assert task.run_count == 1
            with pytest.raises(ValidationError):
                stack.scheduler.update_task_interval(CACHE_CLEANUP, 0)
            assert task.interval_seconds == 120.0
        finally:
            await stack.close()

    asyncio.run(_run())


def test_disabled_scheduler_does_not_start(tmp_path):
    async def _run() -> None:
        stack = _stack(tmp_path, enabled=False)
        try:
            assert stack.scheduler.start() is False
            assert not stack.scheduler.is_running
        finally:
            await stack.close()

    asyncio.run(_run())


def test_timers_fire_until_stopped(tmp_path):
    async def _run() -> None:
        stack = _stack(tmp_path)
        calls = []

        async def tick() -> None:
            calls.append(1)

        try:
            stack.scheduler.tasks[CACHE_CLEANUP].handler = tick
            stack.scheduler.update_task_interval(CACHE_CLEANUP, 0.01)
            assert stack.scheduler.start() is True
            assert stack.scheduler.start() is False
            assert stack.scheduler.is_running
            await asyncio.sleep(0.2)
            stack.scheduler.stop()
            await stack.scheduler.wait_idle()
            await asyncio.sleep(0)
            assert not stack.scheduler.is_running
            assert calls
            assert stack.scheduler.tasks[CACHE_CLEANUP].run_count == len(calls)
        finally:
            await stack.close()

    asyncio.run(_run())


def test_consolidation_sweep_respects_user_interval(tmp_path):
    async def _run() -> None:
        stack = _stack(tmp_path)
        try:
            await stack.indexer.index_conversation(_session("s1"))
            assert await stack.scheduler.run_consolidation_sweep() == 1
            (job,) = stack.store.list_jobs("u1")
            assert job.job_type == JobType.SCHEDULED
            assert stack.store.count_facts("u1") == 1

            await stack.indexer.index_conversation(_session("s2"))
            assert await stack.scheduler.run_consolidation_sweep() == 0
        finally:
            await stack.close()

    asyncio.run(_run())


def test_stats_aggregate_counters(tmp_path):
    async def _run() -> None:
        stack = _stack(tmp_path)

        async def broken() -> None:
            raise RuntimeError("nope")

        try:
            await stack.scheduler.trigger_task(CACHE_CLEANUP)
            await stack.scheduler.trigger_task(CONSOLIDATION)
            stack.scheduler.tasks[IMPORTANCE_UPDATE].handler = broken
            with pytest.raises(RuntimeError):
                await stack.scheduler.trigger_task(IMPORTANCE_UPDATE)

            stats = stack.scheduler.get_stats()
            assert stats["total_runs"] == 2
            assert stats["total_errors"] == 1
            assert stats["running"] is False
            assert stats["uptime_seconds"] >= 0
            names = [t["name"] for t in stats["tasks"]]
            assert names == ["consolidation", "cache_cleanup", "importance_update", "expired_facts_cleanup"]
        finally:
            await stack.close()

    asyncio.run(_run())


def test_timer_ticks_during_a_run_are_skipped_not_queued(tmp_path, caplog):
    async def _run() -> None:
        stack = _stack(tmp_path)
        release = asyncio.Event()
        entered = asyncio.Event()
        calls = 0

        async def slow() -> None:
            nonlocal calls
            calls += 1
            entered.set()
            await release.wait()

        try:
            for name, task in stack.scheduler.tasks.items():
                task.interval_seconds = 0.02 if name == CACHE_CLEANUP else 3600
            task = stack.scheduler.tasks[CACHE_CLEANUP]
            task.handler = slow
            with caplog.at_level(logging.DEBUG, logger="chatmem.scheduler.maintenance"):
                assert stack.scheduler.start()
                await asyncio.wait_for(entered.wait(), timeout=2)
                await asyncio.sleep(0.2)
                assert task.running
                stack.scheduler.stop()
            skipped = [r for r in caplog.records if "still running, skipping tick" in r.getMessage()]
            assert len(skipped) >= 3
            assert calls == 1

            release.set()
            await stack.scheduler.wait_idle()
            assert calls == 1
            assert task.run_count == 1
            assert not task.running
        finally:
            release.set()
            await stack.close()

    asyncio.run(_run())

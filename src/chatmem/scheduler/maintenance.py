"""Periodic maintenance: consolidation sweeps, cache cleanup, rescoring, fact expiry."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from chatmem.config import CacheConfig, SchedulerConfig
from chatmem.consolidation.consolidator import MemoryConsolidator
from chatmem.engine.memory_engine import MemoryEngine
from chatmem.exceptions import TaskAlreadyRunningError, TaskNotFoundError, ValidationError
from chatmem.storage.sqlite_store import SQLiteStore
from chatmem.types import JobType, UserIndexingConfig
from chatmem.utils import iso_str, utcnow

logger = logging.getLogger(__name__)

CONSOLIDATION = "consolidation"
CACHE_CLEANUP = "cache_cleanup"
IMPORTANCE_UPDATE = "importance_update"
EXPIRED_FACTS_CLEANUP = "expired_facts_cleanup"


@dataclass
class ScheduledTask:
    name: str
    interval_seconds: float
    handler: Callable[[], Awaitable[Any]] = field(repr=False)
    last_run: datetime | None = None
    next_run: datetime | None = None
    running: bool = False
    run_count: int = 0
    error_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "last_run": iso_str(self.last_run) if self.last_run else None,
            "next_run": iso_str(self.next_run) if self.next_run else None,
            "running": self.running,
            "run_count": self.run_count,
            "error_count": self.error_count,
        }


def _consolidation_due(cfg: UserIndexingConfig, now: datetime) -> bool:
    if cfg.last_consolidation_at is None:
        return True
    return now - cfg.last_consolidation_at >= timedelta(hours=cfg.consolidation_interval_hours)


class MaintenanceScheduler:
    """Runs each maintenance job on its own asyncio timer.

    A tick that finds its task still running is skipped, not queued.
    Counters live in memory and survive ``stop()``/``start()`` cycles
    within one process.
    """

    def __init__(
        self,
        store: SQLiteStore,
        engine: MemoryEngine,
        consolidator: MemoryConsolidator,
        config: SchedulerConfig | None = None,
        cache: CacheConfig | None = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.consolidator = consolidator
        self.config = config or SchedulerConfig()
        self.cache_config = cache or CacheConfig()
        self._started_monotonic = time.monotonic()
        self._timers: dict[str, asyncio.Task] = {}
        self._inflight: set[asyncio.Task] = set()
        hours = 3600.0
        self.tasks: dict[str, ScheduledTask] = {
            CONSOLIDATION: ScheduledTask(
                CONSOLIDATION, self.config.consolidation_interval_hours * hours,
                self.run_consolidation_sweep,
            ),
            CACHE_CLEANUP: ScheduledTask(
                CACHE_CLEANUP, self.config.cache_cleanup_interval_hours * hours,
                self.run_cache_cleanup,
            ),
            IMPORTANCE_UPDATE: ScheduledTask(
                IMPORTANCE_UPDATE, self.config.importance_interval_hours * hours,
                self.run_importance_updates,
            ),
            EXPIRED_FACTS_CLEANUP: ScheduledTask(
                EXPIRED_FACTS_CLEANUP, self.config.expired_facts_interval_hours * hours,
                self.run_expired_facts_cleanup,
            ),
        }

    @property
    def is_running(self) -> bool:
        return any(not t.done() for t in self._timers.values())

    # --- Lifecycle ---

    def start(self) -> bool:
        """Start one timer per task. Must be called with an event loop running.

        Returns False when disabled or already started.
        """
        if not self.config.enabled:
            logger.info("maintenance scheduler is disabled")
            return False
        if self.is_running:
            logger.info("maintenance scheduler already running")
            return False
        for task in self.tasks.values():
            self._schedule(task)
        logger.info("maintenance scheduler started with %d tasks", len(self.tasks))
        return True

    def stop(self) -> None:
        for name, timer in self._timers.items():
            timer.cancel()
            logger.info("stopped task %s", name)
        self._timers.clear()
        logger.info("maintenance scheduler stopped")

    async def wait_idle(self) -> None:
        """Wait for runs spawned by timers to finish."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def _schedule(self, task: ScheduledTask) -> None:
        task.next_run = utcnow() + timedelta(seconds=task.interval_seconds)
        self._timers[task.name] = asyncio.get_running_loop().create_task(
            self._timer(task), name=f"chatmem-{task.name}"
        )
        logger.info("scheduled task %s every %.0fs", task.name, task.interval_seconds)

    async def _timer(self, task: ScheduledTask) -> None:
        while True:
            await asyncio.sleep(task.interval_seconds)
            if task.running:
                logger.debug("task %s still running, skipping tick", task.name)
                continue
            run = asyncio.get_running_loop().create_task(self._run_task(task.name))
            self._inflight.add(run)
            run.add_done_callback(self._inflight.discard)

    async def _run_task(self, name: str, raise_errors: bool = False) -> bool:
        task = self.tasks[name]
        if task.running:
            logger.debug("task %s already running, skipping", name)
            return False
        task.running = True
        task.last_run = utcnow()
        try:
            await task.handler()
            task.run_count += 1
            return True
        except Exception:
            task.error_count += 1
            logger.exception("task %s failed", name)
            if raise_errors:
                raise
            return False
        finally:
            task.running = False
            task.next_run = utcnow() + timedelta(seconds=task.interval_seconds)

    # --- Manual control ---

    def _get(self, name: str) -> ScheduledTask:
        task = self.tasks.get(name)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {name}")
        return task

    async def trigger_task(self, name: str) -> None:
        """Run a task now. Errors from the job propagate after being counted."""
        task = self._get(name)
        if task.running:
            raise TaskAlreadyRunningError(f"Task already running: {name}")
        logger.info("manually triggering task %s", name)
        await self._run_task(name, raise_errors=True)

    def update_task_interval(self, name: str, seconds: float) -> ScheduledTask:
        task = self._get(name)
        if seconds <= 0:
            raise ValidationError("task interval must be > 0")
        task.interval_seconds = float(seconds)
        task.next_run = utcnow() + timedelta(seconds=task.interval_seconds)
        timer = self._timers.pop(name, None)
        if timer is not None and not timer.done():
            timer.cancel()
            self._schedule(task)
        logger.info("updated interval for %s: %.0fs", name, task.interval_seconds)
        return task

    def get_stats(self) -> dict[str, Any]:
        tasks = list(self.tasks.values())
        return {
            "uptime_seconds": time.monotonic() - self._started_monotonic,
            "running": self.is_running,
            "tasks": [t.to_dict() for t in tasks],
            "total_runs": sum(t.run_count for t in tasks),
            "total_errors": sum(t.error_count for t in tasks),
        }

    # --- Jobs ---

    async def run_consolidation_sweep(self) -> int:
        now = utcnow()
        due = [c.user_id for c in self.store.list_consolidation_candidates() if _consolidation_due(c, now)]
        logger.info("found %d users for consolidation", len(due))
        done = 0
        for i, user_id in enumerate(due):
            if i and self.config.user_delay_seconds > 0:
                await asyncio.sleep(self.config.user_delay_seconds)
            try:
                result = await self.consolidator.consolidate(user_id, job_type=JobType.SCHEDULED)
            except Exception:
                logger.exception("consolidation failed for user %s", user_id)
                continue
            done += 1
            logger.info("consolidated user %s: %d facts stored", user_id, result.facts_stored)
        return done

    async def run_cache_cleanup(self) -> int:
        removed = await self.engine.cleanup_cache(
            self.cache_config.max_entries, ttl_days=self.cache_config.ttl_days
        )
        logger.info("cache cleanup removed %d entries", removed)
        return removed

    async def run_importance_updates(self) -> int:
        total = 0
        for user_id in self.store.list_users_with_facts():
            try:
                total += await self.consolidator.update_importance_scores(user_id)
            except Exception:
                logger.exception("importance update failed for user %s", user_id)
        logger.info("importance updates complete: %d facts rescored", total)
        return total

    async def run_expired_facts_cleanup(self) -> int:
        return await self.consolidator.purge_expired_facts()

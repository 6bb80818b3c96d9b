"""Consolidation: distill indexed conversations into durable, deduplicated facts."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import numpy as np

from chatmem.config import ConsolidationConfig
from chatmem.consolidation.scoring import calculate_fact_importance, initial_importance
from chatmem.engine.memory_engine import MemoryEngine
from chatmem.exceptions import NotFoundError, ValidationError
from chatmem.extraction.fact_extractor import FactExtractor, validate_fact
from chatmem.retrieval.vector import VectorSearch
from chatmem.storage.sqlite_store import SQLiteStore
from chatmem.types import (
    ConsolidationJob,
    ConsolidationResult,
    ExtractedFact,
    FactType,
    IndexedSession,
    JobType,
    MemoryFact,
    SourceTag,
)
from chatmem.utils import iso_str, utcnow

logger = logging.getLogger(__name__)

MEMORY_FILE_PATH = "MEMORY.md"

SECTION_TITLES = {
    FactType.PREFERENCE: "Preferences",
    FactType.FACT: "Facts",
    FactType.DECISION: "Decisions",
    FactType.CONTEXT: "Context",
    FactType.GOAL: "Goals",
    FactType.SKILL: "Skills",
}


def _pct(value: float) -> str:
    return f"{round(value * 100)}%"


def render_memory_document(facts: list[MemoryFact], now: datetime | None = None) -> str:
    """Render the full memory summary. Always a complete rewrite."""
    lines = [
        "# User Memory",
        "",
        "*Auto-generated from conversation consolidation*",
        "",
        f"**Last Updated**: {iso_str(now or utcnow())}",
        f"**Total Facts**: {len(facts)}",
        "",
        "---",
        "",
    ]
    for fact_type, title in SECTION_TITLES.items():
        group = [f for f in facts if f.fact_type == fact_type]
        if not group:
            continue
        group.sort(key=lambda f: (-f.importance_score, f.id))
        lines.extend([f"## {title}", ""])
        for n, fact in enumerate(group, 1):
            lines.append(f"{n}. {fact.content}")
            lines.append(
                f"   *Confidence: {_pct(fact.confidence_score)}, "
                f"Importance: {_pct(fact.importance_score)}*"
            )
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"


@dataclass
class _Candidate:
    fact: ExtractedFact
    session: IndexedSession
    vector: np.ndarray
    merged_into: int | None = None


@dataclass
class _SessionOutcome:
    session: IndexedSession
    facts: list[ExtractedFact] = field(default_factory=list)
    chunks: int = 0


def _cosine(a: np.ndarray, b: np.ndarray) -> float:
    denom = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denom == 0.0:
        return 0.0
    return float(np.dot(a, b) / denom)


class MemoryConsolidator:
    """Runs consolidation jobs and serves the stored fact set."""

    def __init__(
        self,
        store: SQLiteStore,
        engine: MemoryEngine,
        extractor: FactExtractor,
        vector: VectorSearch,
        config: ConsolidationConfig | None = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.extractor = extractor
        self.vector = vector
        self.config = config or ConsolidationConfig()

    # --- Consolidation ---

    async def consolidate(
        self,
        user_id: str,
        session_ids: list[str] | None = None,
        update_memory_file: bool = True,
        min_confidence: float | None = None,
        deduplicate_facts: bool = True,
        job_type: JobType = JobType.MANUAL,
    ) -> ConsolidationResult:
        """Run one consolidation job for ``user_id``.

        Targets ``session_ids`` when given, otherwise every session still
        pending consolidation. A failing session is logged and left pending.
        Any other failure marks the job failed and re-raises.
        """
        started = time.perf_counter()
        async with self.store.transaction():
            job_id = self.store.create_job(user_id, job_type)
        async with self.store.transaction():
            self.store.start_job(job_id)
        logger.info("consolidation job %d started for user %s", job_id, user_id)

        try:
            result = await self._run(
                job_id, user_id, session_ids, update_memory_file, min_confidence, deduplicate_facts
            )
        except Exception as exc:
            logger.exception("consolidation job %d failed for user %s", job_id, user_id)
            try:
                async with self.store.transaction():
                    self.store.fail_job(job_id, str(exc) or type(exc).__name__)
            except Exception:
                logger.exception("could not record failure of consolidation job %d", job_id)
            raise

        result.duration_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            "consolidation job %d done for user %s: %d extracted, %d stored, %d merged in %.0fms",
            job_id, user_id, result.facts_extracted, result.facts_stored,
            result.facts_merged, result.duration_ms,
        )
        return result

    async def _run(
        self,
        job_id: int,
        user_id: str,
        session_ids: list[str] | None,
        update_memory_file: bool,
        min_confidence: float | None,
        deduplicate_facts: bool,
    ) -> ConsolidationResult:
        sessions = self.store.list_sessions_for_consolidation(user_id, session_ids)
        outcomes: list[_SessionOutcome] = []
        total_chunks = 0
        for i, session in enumerate(sessions):
            if i and self.config.session_delay_seconds > 0:
                await asyncio.sleep(self.config.session_delay_seconds)
            async with self.store.transaction():
                self.store.heartbeat_job(job_id)
            try:
                outcome = await self._extract_session(user_id, session, min_confidence)
            except Exception:
                logger.exception(
                    "fact extraction failed for session %s of user %s", session.session_id, user_id
                )
                continue
            total_chunks += outcome.chunks
            outcomes.append(outcome)

        candidates: list[_Candidate] = []
        for outcome in outcomes:
            for fact in outcome.facts:
                vector = await self.engine.get_embedding(fact.content)
                candidates.append(_Candidate(fact=fact, session=outcome.session, vector=vector))

        accepted, confidence_updates, merged = self._deduplicate(
            user_id, candidates, deduplicate_facts
        )

        now = utcnow()
        expires_at = (
            now + timedelta(days=self.config.fact_ttl_days) if self.config.fact_ttl_days else None
        )
        async with self.store.transaction():
            for fact_id, confidence in confidence_updates.items():
                self.store.update_fact_confidence(fact_id, confidence)
            for cand in accepted:
                self.store.insert_fact(
                    user_id=user_id,
                    fact_type=cand.fact.type.value,
                    content=cand.fact.content,
                    confidence=cand.fact.confidence,
                    importance=initial_importance(cand.fact.confidence),
                    vector=cand.vector,
                    source_file_id=cand.session.file_id,
                    source_session_id=cand.session.session_id,
                    metadata={"reasoning": cand.fact.reasoning} if cand.fact.reasoning else None,
                    expires_at=expires_at,
                )
            for outcome in outcomes:
                self.store.mark_session_consolidated(
                    user_id, outcome.session.session_id, len(outcome.facts)
                )
            self.store.heartbeat_job(job_id)

        memory_file_updated = False
        if accepted and update_memory_file:
            memory_file_updated = await self.regenerate_memory_file(user_id)

        facts_extracted = sum(len(o.facts) for o in outcomes)
        async with self.store.transaction():
            self.store.set_last_consolidation(user_id, now)
            self.store.complete_job(
                job_id,
                facts_extracted=facts_extracted,
                facts_stored=len(accepted),
                facts_merged=merged,
                chunks_processed=total_chunks,
                total_chunks=total_chunks,
            )
        return ConsolidationResult(
            job_id=job_id,
            facts_extracted=facts_extracted,
            facts_stored=len(accepted),
            facts_merged=merged,
            chunks_processed=total_chunks,
            total_chunks=total_chunks,
            memory_file_updated=memory_file_updated,
        )

    async def _extract_session(
        self, user_id: str, session: IndexedSession, min_confidence: float | None
    ) -> _SessionOutcome:
        outcome = _SessionOutcome(session=session)
        if session.file_id is None:
            return outcome
        backing = self.store.get_memory_file_by_id(session.file_id)
        if backing is None:
            logger.warning("session %s has no backing memory file", session.session_id)
            return outcome
        content = self.engine.get_memory_file(user_id, backing.file_path)
        outcome.chunks = content.chunk_count
        if not content.text.strip():
            return outcome
        extraction = await self.extractor.extract_facts(content.text, min_confidence=min_confidence)
        outcome.facts = [f for f in extraction.facts if validate_fact(f)]
        return outcome

    def _deduplicate(
        self, user_id: str, candidates: list[_Candidate], enabled: bool
    ) -> tuple[list[_Candidate], dict[int, float], int]:
        """Split candidates into new facts and merges into stored facts.

        Returns the accepted candidates, the confidence raises to apply to
        stored facts, and the merge count.
        """
        if not enabled:
            return candidates, {}, 0

        threshold = self.config.similarity_threshold
        accepted: list[_Candidate] = []
        updates: dict[int, float] = {}
        merged = 0
        stored_cache: dict[int, float] = {}
        for cand in candidates:
            match = self.vector.similar_facts(
                user_id, cand.vector, threshold=threshold, limit=self.config.similar_fact_limit
            )
            if match:
                fact_id = match[0][0]
                if fact_id not in stored_cache:
                    existing = self.store.get_fact(user_id, fact_id)
                    stored_cache[fact_id] = existing.confidence_score if existing else 0.0
                current = updates.get(fact_id, stored_cache[fact_id])
                if cand.fact.confidence > current:
                    updates[fact_id] = cand.fact.confidence
                merged += 1
                continue

            twin = next(
                (a for a in accepted if _cosine(a.vector, cand.vector) >= threshold), None
            )
            if twin is not None:
                if cand.fact.confidence > twin.fact.confidence:
                    twin.fact = twin.fact.model_copy(update={"confidence": cand.fact.confidence})
                merged += 1
                continue
            accepted.append(cand)
        return accepted, updates, merged

    async def regenerate_memory_file(self, user_id: str) -> bool:
        facts = self.store.list_facts(
            user_id,
            limit=self.config.memory_file_max_facts,
            min_importance=self.config.memory_file_min_importance,
        )
        document = render_memory_document(facts)
        indexed = await self.engine.index_content(
            user_id, MEMORY_FILE_PATH, document, SourceTag.MEMORY
        )
        return indexed.chunks_created > 0

    # --- Fact access ---

    def get_facts(
        self,
        user_id: str,
        fact_type: str | FactType | None = None,
        limit: int = 100,
        min_importance: float = 0.0,
    ) -> list[MemoryFact]:
        type_value = None
        if fact_type:
            try:
                type_value = FactType(fact_type).value
            except ValueError as exc:
                raise ValidationError(f"unknown fact type {fact_type!r}") from exc
        return self.store.list_facts(
            user_id, fact_type=type_value, limit=limit, min_importance=min_importance
        )

    async def search_facts(
        self, user_id: str, query: str, limit: int = 10, min_score: float = 0.5
    ) -> list[MemoryFact]:
        """Stored facts most similar to ``query``. Records an access on each hit."""
        if not query.strip():
            return []
        vector = await self.engine.get_embedding(query)
        hits = self.vector.similar_facts(user_id, vector, threshold=min_score, limit=limit)
        rows = self.store.get_facts_by_ids([fid for fid, _ in hits])
        facts = [
            rows[fid].model_copy(update={"score": score})
            for fid, score in hits
            if fid in rows
        ]
        if facts:
            async with self.store.transaction():
                self.store.record_fact_access([f.id for f in facts])
        return facts

    async def delete_fact(self, user_id: str, fact_id: int) -> None:
        async with self.store.transaction():
            if not self.store.delete_fact(user_id, fact_id):
                raise NotFoundError(f"Fact not found: {fact_id}")
        self.vector.release_empty(user_id)
        logger.info("deleted fact %d for user %s", fact_id, user_id)

    async def update_importance_scores(self, user_id: str, now: datetime | None = None) -> int:
        now = now or utcnow()
        facts = self.store.list_facts(user_id, limit=None)
        updates = [
            (
                f.id,
                calculate_fact_importance(f.confidence_score, f.created_at, f.access_count, now),
            )
            for f in facts
        ]
        async with self.store.transaction():
            count = self.store.update_fact_importance(updates)
        logger.info("rescored %d facts for user %s", count, user_id)
        return count

    async def purge_expired_facts(self, now: datetime | None = None) -> int:
        users = self.store.list_users_with_facts()
        async with self.store.transaction():
            removed = self.store.expire_old_facts(now)
        if removed:
            for user_id in users:
                self.vector.release_empty(user_id)
            logger.info("purged %d expired facts", removed)
        return removed

    # --- Job recovery ---

    def find_stale_jobs(self, now: datetime | None = None) -> list[ConsolidationJob]:
        """Running jobs whose heartbeat is older than ``stale_job_minutes``."""
        cutoff = (now or utcnow()) - timedelta(minutes=self.config.stale_job_minutes)
        return self.store.list_stale_jobs(cutoff)

    async def mark_stale_jobs_failed(self, now: datetime | None = None) -> list[int]:
        stale = self.find_stale_jobs(now)
        async with self.store.transaction():
            for job in stale:
                last_seen = job.heartbeat_at or job.started_at or job.created_at
                self.store.fail_job(job.id, f"abandoned: no heartbeat since {iso_str(last_seen)}")
        for job in stale:
            logger.warning("marked abandoned consolidation job %d (user %s) failed", job.id, job.user_id)
        return [job.id for job in stale]

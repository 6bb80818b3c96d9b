"""LLM-backed extraction of typed, scored facts from conversation text."""

from __future__ import annotations

import asyncio
import logging
import math
from importlib import resources
from pathlib import Path
from typing import Any

from chatmem.config import ExtractionConfig
from chatmem.llm.backends import ChatBackend, Message
from chatmem.types import ExtractedFact, ExtractionResult, FactType
from chatmem.utils import json_loads, parse_json_object

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You extract durable knowledge about a user from their conversations with an assistant.

Classify every fact as exactly one of these types:
- preference: likes, dislikes and preferred ways of working (e.g. "User prefers TypeScript over JavaScript", "User likes concise answers")
- fact: objective information about the user or their world (e.g. "User works at a fintech startup", "User's team has five engineers")
- decision: choices the user has made (e.g. "User decided to migrate the API to PostgreSQL")
- context: background or circumstances that shape requests (e.g. "User is preparing for a product launch next month")
- goal: objectives the user is working toward (e.g. "User wants to cut cloud costs by 30%")
- skill: expertise or proficiency the user has shown (e.g. "User is experienced with Kubernetes")

Guidelines:
- Write each fact as one self-contained sentence about the user, starting with "User".
- Keep only information likely to matter in future conversations. Skip small talk and one-off details.
- Do not invent anything that the conversation does not support.
- Confidence is a number between 0 and 1 reflecting how clearly the conversation states the fact.
- Give a short reasoning for each fact.

Respond with a JSON object of this shape:
{"facts": [{"type": "preference", "content": "...", "confidence": 0.9, "reasoning": "..."}], "summary": "one or two sentence summary of the conversation"}"""

USER_PROMPT = """Extract important facts from this conversation. Extract up to {max_facts} facts.

Conversation:
{text}

Respond with valid JSON only."""

_DEFAULT_SYNONYMS = "fact_types.json"


def load_type_synonyms(extra_path: Path | str | None = None) -> dict[str, str]:
    """Label → canonical type table: the packaged one, overlaid with ``extra_path``."""
    raw = resources.files("chatmem.extraction").joinpath(_DEFAULT_SYNONYMS).read_bytes()
    table = {str(k).lower(): str(v).lower() for k, v in json_loads(raw).items()}
    if extra_path:
        extra = json_loads(Path(extra_path).read_bytes())
        table.update({str(k).lower(): str(v).lower() for k, v in extra.items()})
    valid = {t.value for t in FactType}
    return {k: v for k, v in table.items() if v in valid}


def normalize_fact_type(label: Any, synonyms: dict[str, str] | None = None) -> FactType:
    """Decode a free-form type label. Anything unrecognised becomes ``fact``."""
    table = synonyms if synonyms is not None else load_type_synonyms()
    key = str(label or "").strip().lower()
    mapped = table.get(key)
    if mapped is None:
        try:
            return FactType(key)
        except ValueError:
            return FactType.FACT
    return FactType(mapped)


def validate_fact(fact: ExtractedFact | dict[str, Any]) -> bool:
    data = fact.model_dump() if isinstance(fact, ExtractedFact) else fact
    if not isinstance(data, dict):
        return False
    content = data.get("content")
    if not isinstance(content, str) or len(content.split()) < 3:
        return False
    try:
        FactType(data.get("type"))
    except ValueError:
        return False
    confidence = data.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        return False
    return 0.0 <= float(confidence) <= 1.0


def _word_set(text: str) -> set[str]:
    return set(text.lower().split())


def are_similar_facts(a: ExtractedFact, b: ExtractedFact) -> bool:
    if a.type != b.type:
        return False
    left = a.content.strip().lower()
    right = b.content.strip().lower()
    if left == right:
        return True
    wa, wb = _word_set(left), _word_set(right)
    union = wa | wb
    if not union:
        return False
    return len(wa & wb) / len(union) > 0.7


def dedupe_facts(facts: list[ExtractedFact]) -> list[ExtractedFact]:
    """Collapse similar facts, keeping the more confident one in the first one's slot."""
    kept: list[ExtractedFact] = []
    for fact in facts:
        for i, existing in enumerate(kept):
            if are_similar_facts(existing, fact):
                if fact.confidence > existing.confidence:
                    kept[i] = fact
                break
        else:
            kept.append(fact)
    return kept


class FactExtractor:
    """Wraps one JSON-mode chat call per text with strict post-processing."""

    def __init__(
        self,
        chat: ChatBackend,
        config: ExtractionConfig | None = None,
        synonyms: dict[str, str] | None = None,
    ) -> None:
        self.chat = chat
        self.config = config or ExtractionConfig()
        self.synonyms = (
            synonyms if synonyms is not None else load_type_synonyms(self.config.type_synonyms_path)
        )

    def _coerce(self, item: Any) -> ExtractedFact | None:
        if not isinstance(item, dict):
            return None
        content = str(item.get("content") or "").strip()
        if not content:
            return None
        try:
            confidence = float(item.get("confidence", 0.5))
        except (TypeError, ValueError):
            return None
        if math.isnan(confidence):
            return None
        return ExtractedFact(
            type=normalize_fact_type(item.get("type"), self.synonyms),
            content=content,
            confidence=min(1.0, max(0.0, confidence)),
            reasoning=str(item.get("reasoning") or ""),
        )

    async def extract_facts(
        self,
        text: str,
        max_facts: int | None = None,
        min_confidence: float | None = None,
        model: str | None = None,
        temperature: float | None = None,
    ) -> ExtractionResult:
        """Extract facts from ``text``.

        A malformed or empty model reply yields no facts. Provider errors
        propagate to the caller.
        """
        if not text.strip():
            return ExtractionResult()
        limit = max_facts or self.config.max_facts
        floor = self.config.min_confidence if min_confidence is None else min_confidence
        resp = await self.chat.chat(
            [
                Message(role="system", content=SYSTEM_PROMPT),
                Message(role="user", content=USER_PROMPT.format(max_facts=limit, text=text)),
            ],
            temperature=self.config.temperature if temperature is None else temperature,
            max_tokens=self.config.max_tokens,
            json_mode=True,
            model=model or self.config.model,
        )
        payload = parse_json_object(resp.content)
        raw_facts = payload.get("facts")
        if not isinstance(raw_facts, list):
            logger.warning("fact extraction returned no usable facts list")
            raw_facts = []

        facts = []
        for item in raw_facts:
            fact = self._coerce(item)
            if fact is None or not validate_fact(fact):
                logger.debug("dropping malformed fact: %r", item)
                continue
            if fact.confidence >= floor:
                facts.append(fact)
        summary = payload.get("summary")
        return ExtractionResult(
            facts=facts[:limit],
            summary=summary if isinstance(summary, str) else "",
            token_count=resp.total_tokens,
        )

    async def extract_facts_from_chunks(
        self,
        chunks: list[str],
        max_facts: int | None = None,
        min_confidence: float | None = None,
        model: str | None = None,
    ) -> ExtractionResult:
        """Extract per chunk with a throttle delay, then dedupe the union."""
        facts: list[ExtractedFact] = []
        summaries: list[str] = []
        tokens = 0
        for i, chunk in enumerate(chunks):
            if i and self.config.chunk_delay_seconds > 0:
                await asyncio.sleep(self.config.chunk_delay_seconds)
            try:
                result = await self.extract_facts(
                    chunk, max_facts=max_facts, min_confidence=min_confidence, model=model
                )
            except Exception:
                logger.exception("fact extraction failed for chunk %d of %d", i + 1, len(chunks))
                continue
            facts.extend(result.facts)
            tokens += result.token_count
            if result.summary:
                summaries.append(result.summary)
        return ExtractionResult(
            facts=dedupe_facts(facts),
            summary=" ".join(summaries),
            token_count=tokens,
        )

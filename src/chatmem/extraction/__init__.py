"""Fact extraction."""

from chatmem.extraction.fact_extractor import (
    FactExtractor,
    are_similar_facts,
    dedupe_facts,
    load_type_synonyms,
    normalize_fact_type,
    validate_fact,
)

__all__ = [
    "FactExtractor",
    "are_similar_facts",
    "dedupe_facts",
    "load_type_synonyms",
    "normalize_fact_type",
    "validate_fact",
]

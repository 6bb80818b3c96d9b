"""Fact consolidation and importance scoring."""

from chatmem.consolidation.consolidator import (
    MEMORY_FILE_PATH,
    MemoryConsolidator,
    render_memory_document,
)
from chatmem.consolidation.scoring import calculate_fact_importance, initial_importance

__all__ = [
    "MEMORY_FILE_PATH",
    "MemoryConsolidator",
    "calculate_fact_importance",
    "initial_importance",
    "render_memory_document",
]

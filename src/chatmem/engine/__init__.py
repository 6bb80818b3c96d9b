"""Memory engine."""

from chatmem.engine.memory_engine import MemoryEngine

__all__ = ["MemoryEngine"]

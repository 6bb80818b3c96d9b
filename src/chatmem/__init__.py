"""chatmem: conversational memory with hybrid search and fact consolidation."""

__version__ = "0.1.0"

from chatmem.config import Config
from chatmem.stack import MemoryStack

__all__ = [
    "__version__",
    "Config",
    "MemoryStack",
]

"""Embedding providers and the persistent embedding cache."""

from chatmem.embeddings.backends import (
    EmbeddingBackend,
    HashEmbedder,
    OllamaEmbedder,
    OpenAIEmbedder,
    SentenceTransformerEmbedder,
    create_embedder,
)
from chatmem.embeddings.cache import EmbeddingCache

__all__ = [
    "EmbeddingBackend",
    "EmbeddingCache",
    "OpenAIEmbedder",
    "OllamaEmbedder",
    "HashEmbedder",
    "SentenceTransformerEmbedder",
    "create_embedder",
]

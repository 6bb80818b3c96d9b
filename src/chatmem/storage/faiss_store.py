"""FAISS vector index partitions, one per (kind, user)."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Hashable

import faiss
import numpy as np

from chatmem.exceptions import StorageError

VectorLoader = Callable[[], tuple[list[int], list[str], list[np.ndarray]]]


@dataclass
class _Partition:
    generation: Hashable
    index: faiss.Index
    ids: list[int] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)

    @property
    def size(self) -> int:
        return self.index.ntotal


class FAISSStore:
    """Cosine-similarity indexes rebuilt lazily from the SQLite source of truth.

    Each partition remembers the store generation it was built from; a search
    against a newer generation rebuilds it first. Vectors whose width differs
    from ``dims`` (e.g. written under another embedding model) are skipped.
    At most ``max_partitions`` are kept, least recently searched evicted
    first, and a partition that rebuilds empty is not kept at all.
    """

    def __init__(
        self,
        dims: int = 1536,
        ivf_threshold: int = 50_000,
        nprobe: int = 16,
        max_partitions: int = 256,
    ) -> None:
        if max_partitions < 1:
            raise StorageError("max_partitions must be >= 1")
        self.dims = dims
        self.ivf_threshold = ivf_threshold
        self.nprobe = nprobe
        self.max_partitions = max_partitions
        self._partitions: OrderedDict[Hashable, _Partition] = OrderedDict()

    @property
    def size(self) -> int:
        return sum(p.size for p in self._partitions.values())

    @property
    def partition_count(self) -> int:
        return len(self._partitions)

    def holds(self, key: Hashable) -> bool:
        return key in self._partitions

    def drop(self, key: Hashable) -> None:
        self._partitions.pop(key, None)

    def clear(self) -> None:
        self._partitions.clear()

    def _build(self, generation: Hashable, loader: VectorLoader) -> _Partition:
        ids, tags, vectors = loader()
        keep = [i for i, v in enumerate(vectors) if v.shape[-1] == self.dims]
        if len(keep) != len(ids):
            ids = [ids[i] for i in keep]
            tags = [tags[i] for i in keep]
            vectors = [vectors[i] for i in keep]
        if not vectors:
            return _Partition(generation=generation, index=faiss.IndexFlatIP(self.dims))
        mat = np.ascontiguousarray(np.vstack(vectors).astype(np.float32))
        if mat.shape[0] != len(ids):
            raise StorageError("vectors and ids length mismatch")
        faiss.normalize_L2(mat)
        n = mat.shape[0]
        if n >= self.ivf_threshold:
            nlist = max(int(np.sqrt(n)), 16)
            quantizer = faiss.IndexFlatIP(self.dims)
            index = faiss.IndexIVFFlat(quantizer, self.dims, nlist, faiss.METRIC_INNER_PRODUCT)
            index.train(mat)
            index.add(mat)
            index.nprobe = self.nprobe
        else:
            index = faiss.IndexFlatIP(self.dims)
            index.add(mat)
        return _Partition(generation=generation, index=index, ids=list(ids), tags=list(tags))

    def partition(self, key: Hashable, generation: Hashable, loader: VectorLoader) -> _Partition:
        part = self._partitions.get(key)
        if part is not None and part.generation == generation:
            self._partitions.move_to_end(key)
            return part
        part = self._build(generation, loader)
        if part.size == 0:
            self._partitions.pop(key, None)
            return part
        self._partitions[key] = part
        self._partitions.move_to_end(key)
        while len(self._partitions) > self.max_partitions:
            self._partitions.popitem(last=False)
        return part

    def search(
        self,
        key: Hashable,
        generation: Hashable,
        loader: VectorLoader,
        query_vector: np.ndarray,
        top_k: int | None = None,
    ) -> list[tuple[int, str, float]]:
        """Nearest neighbors as ``(id, tag, cosine)``. ``top_k=None`` scores every vector."""
        part = self.partition(key, generation, loader)
        if part.size == 0 or query_vector.shape[-1] != self.dims:
            return []
        vec = np.ascontiguousarray(query_vector.reshape(1, -1).astype(np.float32))
        faiss.normalize_L2(vec)
        k = part.size if top_k is None else min(top_k, part.size)
        scores, indices = part.index.search(vec, k)
        results = []
        for score, idx in zip(scores[0], indices[0]):
            if idx < 0 or idx >= len(part.ids):
                continue
            results.append((part.ids[idx], part.tags[idx], float(score)))
        return results

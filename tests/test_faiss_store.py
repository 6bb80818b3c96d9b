from __future__ import annotations

import numpy as np
import pytest

from chatmem.exceptions import StorageError
from chatmem.storage.faiss_store import FAISSStore


def _loader(*rows: tuple[int, list[float]]):
    def load():
        ids = [rowid for rowid, _ in rows]
        tags = ["memory"] * len(rows)
        vectors = [np.asarray(vec, dtype=np.float32) for _, vec in rows]
        return ids, tags, vectors

    return load


QUERY = np.asarray([1.0, 0.0, 0.0, 0.0], dtype=np.float32)


def test_least_recently_searched_partition_is_evicted():
    store = FAISSStore(dims=4, max_partitions=2)
    load = _loader((1, [1.0, 0.0, 0.0, 0.0]))
    store.search("a", 1, load, QUERY)
    store.search("b", 1, load, QUERY)
    store.search("a", 1, load, QUERY)
    store.search("c", 1, load, QUERY)

    assert store.partition_count == 2
    assert store.holds("a")
    assert store.holds("c")
    assert not store.holds("b")


def test_partition_that_rebuilds_empty_is_not_kept():
    store = FAISSStore(dims=4)
    hits = store.search("a", 1, _loader((7, [0.0, 1.0, 0.0, 0.0])), QUERY)
    assert [rowid for rowid, _, _ in hits] == [7]
    assert store.holds("a")

    assert store.search("a", 2, _loader(), QUERY) == []
    assert not store.holds("a")
    assert store.partition_count == 0


def test_same_generation_reuses_the_partition():
    store = FAISSStore(dims=4)
    calls = []

    def load():
        calls.append(1)
        return [3], ["memory"], [np.asarray([1.0, 0.0, 0.0, 0.0], dtype=np.float32)]

    store.search("a", 1, load, QUERY)
    store.search("a", 1, load, QUERY)
    assert len(calls) == 1
    store.search("a", 2, load, QUERY)
    assert len(calls) == 2


def test_max_partitions_must_be_positive():
    with pytest.raises(StorageError):
        FAISSStore(dims=4, max_partitions=0)

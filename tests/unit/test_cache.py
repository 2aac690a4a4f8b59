"""Tests for the source cache."""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor

from stategrid.grid.cache import SourceCache


class CountingSource:
    """Stand-in data source that counts how often it is opened."""

    opened = 0
    lock = threading.Lock()

    def open(self) -> CountingSource:
        """Slow open, so racing threads overlap."""
        time.sleep(0.01)
        with CountingSource.lock:
            CountingSource.opened += 1
        return self

    def close(self) -> None:
        """Nothing to release."""


def test_get_or_build_once() -> None:
    """Racing threads build each slot at most once and share the result."""
    CountingSource.opened = 0
    cache = SourceCache(2)
    barrier = threading.Barrier(8)

    def get(slot: int) -> CountingSource:
        barrier.wait()
        return cache.get_or_build(slot, CountingSource)

    with ThreadPoolExecutor(8) as executor:
        results = list(executor.map(get, [0, 1] * 4))

    assert CountingSource.opened == 2
    assert cache.built == 2
    assert len({id(source) for source in results}) == 2
    assert all(cache[slot] is results[slot] for slot in (0, 1))


def test_clear() -> None:
    """Cleared slots are rebuilt on next use."""
    cache = SourceCache(1)
    assert not cache.is_built(0)
    cache.get_or_build(0, CountingSource)
    assert cache.is_built(0)
    cache.clear()
    assert cache[0] is None
    cache.get_or_build(0, CountingSource)
    assert cache.built == 2


def test_fits() -> None:
    """A cache only fits catalogs with the same number of sources."""
    cache = SourceCache(3)
    assert len(cache) == 3
    assert cache.fits(3)
    assert not cache.fits(4)


def test_rebuild_on_new_key() -> None:
    """A slot built for another catalog entry is closed and rebuilt."""
    cache = SourceCache(1)
    first = cache.get_or_build(0, CountingSource, key="first.npy")
    assert cache.get_or_build(0, CountingSource, key="first.npy") is first
    assert cache.built == 1

    second = cache.get_or_build(0, CountingSource, key="second.npy")
    assert second is not first
    assert cache[0] is second
    assert cache.built == 2

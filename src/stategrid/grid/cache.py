"""Reusable cache of built data source handles."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable
    from collections.abc import Hashable

    from stategrid.grid.source import DataSource


class SourceCache:
    """Index-addressed slots holding built data sources.

    A slot is either empty or holds a built (opened) source together with the key of
    the catalog entry it was built for. Building is done at most once per slot and key,
    even when several threads ask for the same slot at the same time. Reads of a
    populated slot never take a lock.

    Args:
        n_sources: Number of sources in the catalog the cache belongs to.

    Example:
        >>> cache = SourceCache(3)
        >>> cache.is_built(0)
        False
    """

    def __init__(self, n_sources: int):
        self._slots: list[tuple[Hashable, DataSource] | None] = [None] * n_sources
        self._locks = [threading.Lock() for _ in range(n_sources)]
        self._count_lock = threading.Lock()
        self.built = 0

    def __len__(self) -> int:
        """Number of slots."""
        return len(self._slots)

    def __getitem__(self, slot: int) -> DataSource | None:
        """The source in a slot, or None if it was never built."""
        entry = self._slots[slot]
        return None if entry is None else entry[1]

    def is_built(self, slot: int) -> bool:
        """Whether a slot already holds a source."""
        return self._slots[slot] is not None

    def get_or_build(
        self,
        slot: int,
        factory: Callable[[], DataSource],
        key: Hashable = None,
    ) -> DataSource:
        """Return the source in a slot, building and opening it on first use.

        Args:
            slot: Catalog position of the source.
            factory: Creates the unopened source.
            key: Identity of the catalog entry in the slot. A slot built for a
                different key is closed and rebuilt.
        """
        entry = self._slots[slot]
        if entry is not None and entry[0] == key:
            return entry[1]

        with self._locks[slot]:
            # Double-checked locking pattern
            entry = self._slots[slot]
            if entry is not None and entry[0] == key:
                return entry[1]
            if entry is not None:
                entry[1].close()

            source = factory().open()
            self._slots[slot] = (key, source)
            with self._count_lock:
                self.built += 1
        return source

    def fits(self, n_sources: int) -> bool:
        """Whether the cache was made for a catalog with this many sources."""
        return len(self._slots) == n_sources

    def clear(self) -> None:
        """Close and drop every built source."""
        for slot, entry in enumerate(self._slots):
            if entry is not None:
                entry[1].close()
                self._slots[slot] = None

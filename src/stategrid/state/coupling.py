"""Coupling between state vector variables as a partition into disjoint sets."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from stategrid.exceptions import DesignValidationError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from numpy.typing import NDArray


class CouplingSets:
    """Equivalence relation "is coupled to" over variable names.

    Every variable belongs to exactly one set, and a variable alone in its set is only
    coupled to itself. Coupling merges whole sets. Uncoupling dissolves every set that
    holds two or more of the listed variables, including its unlisted members, so the
    relation stays transitive. The relation is exactly equivalent to a symmetric boolean
    matrix with a true diagonal, available through :meth:`matrix`.

    Example:
        >>> sets = CouplingSets(["A", "B", "C"])
        >>> sets.couple(["A", "B"])
        >>> sets.couple(["B", "C"])
        >>> sorted(sets.set_of("A"))
        ['A', 'B', 'C']
    """

    def __init__(self, names: Iterable[str] = ()):
        self._sets: list[set[str]] = []
        for name in names:
            self.add(name)

    def __contains__(self, name: str) -> bool:
        """Whether a variable is tracked."""
        return any(name in group for group in self._sets)

    def __len__(self) -> int:
        """Number of coupled sets."""
        return len(self._sets)

    def _index(self, name: str) -> int:
        for k, group in enumerate(self._sets):
            if name in group:
                return k
        msg = f"'{name}' is not a variable in the coupling sets"
        raise DesignValidationError(msg)

    def add(self, name: str) -> None:
        """Track a new variable, coupled only to itself."""
        if name in self:
            msg = f"'{name}' is already a variable in the coupling sets"
            raise DesignValidationError(msg)
        self._sets.append({name})

    def remove(self, name: str) -> None:
        """Stop tracking a variable. Its set keeps its other members."""
        k = self._index(name)
        self._sets[k].discard(name)
        if not self._sets[k]:
            del self._sets[k]

    def rename(self, old: str, new: str) -> None:
        """Rename a variable, keeping its coupling."""
        k = self._index(old)
        if new != old and new in self:
            msg = f"'{new}' is already a variable in the coupling sets"
            raise DesignValidationError(msg)
        self._sets[k].discard(old)
        self._sets[k].add(new)

    def set_of(self, name: str) -> frozenset[str]:
        """All variables coupled to a variable, itself included."""
        return frozenset(self._sets[self._index(name)])

    def is_coupled(self, first: str, second: str) -> bool:
        """Whether two variables are coupled."""
        return second in self._sets[self._index(first)]

    def sets(self, order: Iterable[str] | None = None) -> list[list[str]]:
        """Coupled sets as lists, following `order` when given."""
        if order is None:
            return [sorted(group) for group in self._sets]

        order = list(order)
        groups = sorted(self._sets, key=lambda group: min(order.index(name) for name in group))
        return [[name for name in order if name in group] for group in groups]

    def couple(self, names: Iterable[str]) -> None:
        """Merge the sets of all listed variables into one."""
        indices = sorted({self._index(name) for name in names})
        if len(indices) < 2:  # noqa: PLR2004
            return

        merged = set().union(*(self._sets[k] for k in indices))
        for k in reversed(indices):
            del self._sets[k]
        self._sets.append(merged)

    def uncouple(self, names: Iterable[str]) -> list[frozenset[str]]:
        """Dissolve every set that holds two or more of the listed variables.

        Returns:
            The sets that were dissolved.
        """
        names = set(names)
        for name in names:
            self._index(name)

        dissolved = []
        kept = []
        for group in self._sets:
            if len(group & names) > 1:
                dissolved.append(frozenset(group))
                kept.extend({name} for name in sorted(group))
            else:
                kept.append(group)
        self._sets = kept
        return dissolved

    def uncouple_all(self) -> None:
        """Every variable coupled only to itself."""
        self._sets = [{name} for group in self._sets for name in sorted(group)]

    def matrix(self, order: Iterable[str]) -> NDArray[np.bool_]:
        """Symmetric boolean coupling matrix for variables in `order`."""
        order = list(order)
        coupled = np.zeros((len(order), len(order)), dtype=bool)
        for i, first in enumerate(order):
            group = self._sets[self._index(first)]
            for j, second in enumerate(order):
                coupled[i, j] = second in group
        return coupled

    @classmethod
    def from_sets(cls, groups: Iterable[Iterable[str]]) -> CouplingSets:
        """Rebuild the partition from a list of sets."""
        partition = cls()
        for group in groups:
            names = list(group)
            for name in names:
                partition.add(name)
            partition.couple(names)
        return partition

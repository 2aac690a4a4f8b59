"""Dimension (grid axis) abstraction and validation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from stategrid.exceptions import DesignValidationError
from stategrid.exceptions import ShapeError

if TYPE_CHECKING:
    from numpy.typing import ArrayLike
    from numpy.typing import NDArray


@dataclass(eq=False, order=False, slots=True)
class Dimension:
    """Dimension class.

    A Dimension has a name and the metadata associated with each of its indices. The
    metadata is either a vector (one value per index) or a matrix (one row per index).
    Rows must be unique and fully defined, so that a metadata row always identifies a
    single index along the dimension.

    Args:
        coords: Vector or matrix of coordinates, one row per index.
        name: Name of the dimension.

    Attributes:
        coords: Vector or matrix of coordinates.
        name: Name of the dimension.
    """

    coords: ArrayLike
    name: str

    def __post_init__(self) -> None:
        """Post process and validation."""
        self.coords = np.asarray(self.coords)
        if self.coords.ndim not in (1, 2):
            msg = f"Dimension '{self.name}' metadata must be a vector or a matrix"
            raise ShapeError(msg, ("# Dim", "Expected"), (self.coords.ndim, "1 or 2"))
        assert_defined_rows(self.coords, self.name)
        assert_unique_rows(self.coords, self.name)

    @property
    def size(self) -> int:
        """Size of the dimension."""
        return len(self.coords)

    @property
    def rows(self) -> NDArray:
        """Coordinates as a matrix with one row per index."""
        return as_rows(self.coords)

    def __len__(self) -> int:
        """Length magic."""
        return self.size

    def __getitem__(self, item: int | slice | list[int] | NDArray) -> NDArray:
        """Gets metadata rows by index."""
        return self.coords[item]

    def __hash__(self) -> int:
        """Hashing magic."""
        return hash((self.name, *map(tuple, self.rows.tolist())))

    def __eq__(self, other: Dimension) -> bool:
        """Compares if the dimension has same properties."""
        if not isinstance(other, Dimension):
            other_type = type(other).__name__
            msg = f"Can't compare Dimension with {other_type}"
            raise TypeError(msg)

        return hash(self) == hash(other)

    def index_of(self, values: ArrayLike) -> NDArray[np.intp]:
        """Positions of metadata rows along this dimension, -1 where absent."""
        return match_rows(values, self.coords)

    def extend(self, values: ArrayLike) -> Dimension:
        """New dimension with extra metadata rows appended."""
        values = np.asarray(values)
        if values.ndim != self.coords.ndim or values.shape[1:] != self.coords.shape[1:]:
            msg = f"New metadata for dimension '{self.name}' must match the existing row shape"
            raise ShapeError(msg, ("Existing", "New"), (self.coords.shape[1:], values.shape[1:]))
        return Dimension(coords=np.concatenate([self.coords, values]), name=self.name)


def as_rows(values: ArrayLike) -> NDArray:
    """View metadata as a matrix with one row per element."""
    values = np.asarray(values)
    if values.ndim == 0:
        return values.reshape(1, 1)
    if values.ndim == 1:
        return values.reshape(-1, 1)
    return values.reshape(values.shape[0], -1)


def _undefined_mask(values: NDArray) -> NDArray[np.bool_]:
    """Element-wise mask of NaN, NaT or None entries."""
    if values.dtype.kind in "fc":
        return np.isnan(values)
    if values.dtype.kind in "mM":
        return np.isnat(values)
    if values.dtype.kind == "O":
        return np.array([v is None or (isinstance(v, float) and np.isnan(v)) for v in values.ravel()]).reshape(
            values.shape
        )
    return np.zeros(values.shape, dtype=bool)


def assert_defined_rows(values: ArrayLike, name: str) -> None:
    """Raise if any metadata row holds an undefined (NaN/NaT/None) entry."""
    rows = as_rows(values)
    undefined = np.flatnonzero(_undefined_mask(rows).any(axis=1))
    if undefined.size > 0:
        msg = f"Metadata for '{name}' has undefined values in row {undefined[0]}"
        raise DesignValidationError(msg)


def assert_unique_rows(values: ArrayLike, name: str) -> None:
    """Raise if two metadata rows are identical."""
    rows = as_rows(values)
    seen: dict[tuple, int] = {}
    for k, row in enumerate(map(tuple, rows.tolist())):
        if row in seen:
            msg = f"Metadata for '{name}' has duplicate rows ({seen[row]} and {k})"
            raise DesignValidationError(msg)
        seen[row] = k


def match_rows(values: ArrayLike, coords: ArrayLike) -> NDArray[np.intp]:
    """Locate each row of `values` among the rows of `coords`.

    Args:
        values: Metadata rows to look up.
        coords: Metadata axis to search.

    Returns:
        Index of every requested row in `coords`, or -1 where a row is not found.
    """
    coords = np.asarray(coords)
    values = np.asarray(values)
    if coords.dtype.kind in "mM":
        values = values.astype(coords.dtype)

    width = 1 if coords.ndim == 1 else coords.shape[1]
    lookup = {row: k for k, row in enumerate(map(tuple, as_rows(coords).tolist()))}
    rows = values.reshape(-1, width)
    return np.array([lookup.get(row, -1) for row in map(tuple, rows.tolist())], dtype=np.intp)

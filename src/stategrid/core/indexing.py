"""Index normalization logic."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from stategrid.exceptions import DesignValidationError

if TYPE_CHECKING:
    from numpy.typing import ArrayLike
    from numpy.typing import NDArray


def normalize_indices(indices: ArrayLike | None, length: int, name: str = "indices") -> NDArray[np.intp]:
    """Convert logical or linear indices to a vector of linear indices.

    Linear indices keep the order given by the caller. A logical mask must have one
    element per index along the dimension. ``None`` selects every index.

    Args:
        indices: Logical mask, linear indices or None.
        length: Length of the dimension the indices point into.
        name: Name used in error messages.

    Returns:
        Linear, 0-based indices as an integer vector.

    Raises:
        DesignValidationError: If the input is neither a valid mask nor valid linear indices.

    Examples:
        >>> normalize_indices([True, False, True], 3)
        array([0, 2])
        >>> normalize_indices([4, 1], 5)
        array([4, 1])
    """
    if indices is None:
        return np.arange(length, dtype=np.intp)

    indices = np.asarray(indices)
    if indices.ndim == 0:
        indices = indices.reshape(1)
    if indices.ndim != 1:
        msg = f"{name} must be a vector, but it has {indices.ndim} dimensions"
        raise DesignValidationError(msg)

    if indices.dtype == bool:
        if indices.size != length:
            msg = (
                f"{name} is a logical vector, so it must have one element per index "
                f"({length}), but it has {indices.size} elements instead"
            )
            raise DesignValidationError(msg)
        return np.flatnonzero(indices).astype(np.intp)

    if indices.size == 0:
        return np.empty(0, dtype=np.intp)

    if indices.dtype.kind == "f":
        if not np.all(np.isfinite(indices)) or np.any(np.mod(indices, 1) != 0):
            msg = f"{name} must consist of integer linear indices"
            raise DesignValidationError(msg)
        indices = indices.astype(np.intp)
    elif indices.dtype.kind not in "iu":
        msg = f"{name} must either be a vector of logical indices or a vector of linear indices"
        raise DesignValidationError(msg)

    bad = np.flatnonzero((indices < 0) | (indices >= length))
    if bad.size > 0:
        msg = f"Element {bad[0]} of {name} ({indices[bad[0]]}) is outside the dimension length ({length})"
        raise DesignValidationError(msg)

    return indices.astype(np.intp)


def normalize_offsets(offsets: ArrayLike | None, name: str = "offsets") -> NDArray[np.intp]:
    """Validate sequence or mean offsets relative to a reference index."""
    if offsets is None:
        return np.zeros(1, dtype=np.intp)

    offsets = np.atleast_1d(np.asarray(offsets))
    if offsets.ndim != 1 or offsets.size == 0:
        msg = f"{name} must be a non-empty vector of integers"
        raise DesignValidationError(msg)
    if offsets.dtype.kind == "f":
        if not np.all(np.isfinite(offsets)) or np.any(np.mod(offsets, 1) != 0):
            msg = f"{name} must be integers"
            raise DesignValidationError(msg)
    elif offsets.dtype.kind not in "iu":
        msg = f"{name} must be integers"
        raise DesignValidationError(msg)

    offsets = offsets.astype(np.intp)
    if np.unique(offsets).size != offsets.size:
        msg = f"{name} cannot contain repeated values"
        raise DesignValidationError(msg)
    return offsets


def dimension_positions(names: list[str] | tuple[str, ...], dims: tuple[str, ...], owner: str) -> list[int]:
    """Positions of dimension names in `dims`, refusing unknown names and repeats."""
    if isinstance(names, str):
        names = [names]
    positions = []
    for name in names:
        if name not in dims:
            msg = f"'{name}' is not a dimension of {owner}. Available dimensions: {dims}"
            raise DesignValidationError(msg)
        positions.append(dims.index(name))

    if len(set(positions)) != len(positions):
        msg = f"Dimension names cannot repeat: {list(names)}"
        raise DesignValidationError(msg)
    return positions

"""Built state vector ensembles."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from stategrid.core.indexing import normalize_indices
from stategrid.exceptions import ShapeError

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from numpy.typing import ArrayLike
    from numpy.typing import NDArray

    from stategrid.schemas.design import StateVectorDesign
    from stategrid.state.metadata import EnsembleMetadata


@dataclass
class Ensemble:
    """A state vector ensemble.

    Args:
        data: Values with one row per state vector element and one column per member.
        has_nan: Whether any raw value loaded into each row was missing, in any member.
        metadata: Row and member metadata.
        design: Frozen design of the state vector that built the ensemble.
    """

    data: NDArray
    has_nan: NDArray[np.bool_]
    metadata: EnsembleMetadata
    design: StateVectorDesign

    def __post_init__(self) -> None:
        """Check the pieces fit together."""
        self.data = np.asarray(self.data)
        self.has_nan = np.asarray(self.has_nan, dtype=bool)
        if self.data.ndim != 2:  # noqa: PLR2004
            msg = "Ensemble data must be a matrix"
            raise ShapeError(msg, ("# Dim", "Expected"), (self.data.ndim, 2))
        if self.data.shape[0] != self.metadata.length:
            msg = "Ensemble rows don't match the state vector length"
            raise ShapeError(msg, ("Rows", "Metadata"), (self.data.shape[0], self.metadata.length))
        if self.has_nan.shape != (self.data.shape[0],):
            msg = "Missing-data flags need one element per row"
            raise ShapeError(msg, ("Flags", "Rows"), (self.has_nan.shape, self.data.shape[0]))

    def __repr__(self) -> str:
        """Short description."""
        return f"Ensemble({self.n_rows} rows x {self.n_members} members, variables={self.metadata.variables})"

    @property
    def n_rows(self) -> int:
        """State vector length."""
        return self.data.shape[0]

    @property
    def n_members(self) -> int:
        """Number of ensemble members."""
        return self.data.shape[1]

    def variable(self, name: str) -> NDArray:
        """The rows of a single variable."""
        return self.data[self.metadata.rows(name)]

    def regrid(self, name: str, **kwargs) -> tuple[NDArray, dict[str, NDArray]]:
        """Reshape a variable's rows into its row dimensions, members last."""
        return self.metadata.regrid(name, self.variable(name), **kwargs)

    def select(
        self,
        members: ArrayLike | None = None,
        variables: Sequence[str] | None = None,
    ) -> Ensemble:
        """Sub-ensemble with some members and/or variables.

        Rows keep their missing-data flags from the full ensemble.
        """
        members = normalize_indices(members, self.n_members, "members")
        names = self.metadata.variables if variables is None else tuple(variables)

        rows = np.concatenate([np.arange(self.n_rows)[self.metadata.rows(name)] for name in names])
        data = self.data[np.ix_(rows, members)]
        metadata = self.metadata.select(names, members)
        return Ensemble(data, self.has_nan[rows], metadata, self.design)

    def members(self, indices: ArrayLike) -> Ensemble:
        """Sub-ensemble with some members."""
        return self.select(members=indices)

    def variables(self, names: str | Sequence[str]) -> Ensemble:
        """Sub-ensemble with some variables."""
        return self.select(variables=[names] if isinstance(names, str) else names)

    def append(self, other: Ensemble) -> Ensemble:
        """Ensemble with the members of `other` after these members."""
        data = np.concatenate([self.data, other.data], axis=1)
        metadata = self.metadata.append(other.metadata)
        return Ensemble(data, self.has_nan | other.has_nan, metadata, other.design)

    def save(self, path: str | Path, overwrite: bool = False) -> None:
        """Write the ensemble to a Zarr store."""
        from stategrid.api.io import to_ensemble

        to_ensemble(self, path, overwrite=overwrite)

"""Metadata for the rows and members of a built ensemble."""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from typing import TYPE_CHECKING

import numpy as np

from stategrid.core.indexing import normalize_indices
from stategrid.exceptions import DesignValidationError
from stategrid.exceptions import ShapeError
from stategrid.schemas.core import array_to_list
from stategrid.schemas.core import list_to_array
from stategrid.schemas.ensemble import EnsembleMetadataRecord
from stategrid.schemas.ensemble import MetadataArray
from stategrid.schemas.ensemble import VariableMetadataRecord

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import ArrayLike
    from numpy.typing import NDArray

    from stategrid.state.variable import StateVectorVariable


@dataclass
class VariableMetadata:
    """Row and member metadata of one variable in an ensemble."""

    name: str
    row_dims: tuple[str, ...]
    row_sizes: tuple[int, ...]
    rows: dict[str, NDArray] = field(default_factory=dict)
    members: dict[str, NDArray] = field(default_factory=dict)

    @property
    def length(self) -> int:
        """Number of state vector rows."""
        return int(np.prod(self.row_sizes, dtype=np.int64))


class EnsembleMetadata:
    """Describes the state vector rows and the ensemble members of an ensemble.

    Rows are grouped by variable, in state vector order. Within a variable, rows run
    over the variable's row dimensions (state dimensions and sequences) in C order.

    Args:
        variables: Metadata of each variable, in state vector order.
    """

    def __init__(self, variables: Sequence[VariableMetadata]):
        self._variables = {var.name: var for var in variables}

    def __repr__(self) -> str:
        """Short description."""
        return f"EnsembleMetadata({self.length} rows, {self.n_members} members, variables={self.variables})"

    @classmethod
    def from_variables(
        cls,
        variables: Sequence[StateVectorVariable],
        references: dict[str, NDArray[np.intp]],
    ) -> EnsembleMetadata:
        """Collect metadata from designed variables and their drawn references."""
        records = []
        for variable in variables:
            sizes = variable.state_sizes()
            records.append(
                VariableMetadata(
                    name=variable.name,
                    row_dims=tuple(dim for dim, _ in sizes),
                    row_sizes=tuple(size for _, size in sizes),
                    rows=variable.row_metadata(),
                    members=variable.member_metadata(references[variable.name]),
                )
            )
        return cls(records)

    @property
    def variables(self) -> tuple[str, ...]:
        """Variable names, in state vector order."""
        return tuple(self._variables)

    @property
    def lengths(self) -> dict[str, int]:
        """Number of rows of each variable."""
        return {name: var.length for name, var in self._variables.items()}

    @property
    def length(self) -> int:
        """Total number of state vector rows."""
        return sum(self.lengths.values())

    @property
    def n_members(self) -> int:
        """Number of ensemble members described."""
        for var in self._variables.values():
            for values in var.members.values():
                return len(values)
        return 0

    def variable(self, name: str) -> VariableMetadata:
        """Metadata of a single variable."""
        if name not in self._variables:
            msg = f"'{name}' is not a variable in the ensemble. Variables: {self.variables}"
            raise DesignValidationError(msg)
        return self._variables[name]

    def rows(self, name: str) -> slice:
        """The state vector rows holding a variable."""
        length = self.variable(name).length
        names = self.variables
        start = sum(self._variables[other].length for other in names[: names.index(name)])
        return slice(start, start + length)

    def select(
        self,
        variables: Sequence[str] | None = None,
        members: ArrayLike | None = None,
    ) -> EnsembleMetadata:
        """Metadata restricted to some variables and members."""
        names = self.variables if variables is None else tuple(variables)
        members = normalize_indices(members, self.n_members, "members")

        records = []
        for name in names:
            var = self.variable(name)
            records.append(
                VariableMetadata(
                    name=var.name,
                    row_dims=var.row_dims,
                    row_sizes=var.row_sizes,
                    rows=dict(var.rows),
                    members={dim: values[members] for dim, values in var.members.items()},
                )
            )
        return EnsembleMetadata(records)

    def append(self, other: EnsembleMetadata) -> EnsembleMetadata:
        """Metadata with the members of `other` appended after these members."""
        if other.variables != self.variables:
            msg = "Can only append members of an ensemble with the same variables"
            raise DesignValidationError(msg)

        records = []
        for name in self.variables:
            var = self.variable(name)
            extra = other.variable(name)
            members = {dim: np.concatenate([values, extra.members[dim]]) for dim, values in var.members.items()}
            records.append(VariableMetadata(var.name, var.row_dims, var.row_sizes, dict(var.rows), members))
        return EnsembleMetadata(records)

    def regrid(
        self,
        name: str,
        values: NDArray,
        order: Sequence[str] | None = None,
        keep_singletons: bool = False,
        axis: int = 0,
    ) -> tuple[NDArray, dict[str, NDArray]]:
        """Reshape a variable's state vector rows into its row dimensions.

        Args:
            name: Variable to regrid.
            values: Array whose `axis` has either the variable's length or the full
                state vector length.
            order: Row dimensions to put first, in this order. Listed dimensions are
                never dropped.
            keep_singletons: Whether to keep row dimensions of length 1.
            axis: Axis of `values` that runs along the state vector.

        Returns:
            The regridded array and the metadata of each regridded dimension.
        """
        var = self.variable(name)
        values = np.moveaxis(np.asarray(values), axis, 0)
        if values.shape[0] == self.length and self.length != var.length:
            values = values[self.rows(name)]
        if values.shape[0] != var.length:
            msg = f"Cannot regrid variable '{name}'"
            raise ShapeError(msg, ("Rows", "Expected"), (values.shape[0], var.length))

        order = () if order is None else tuple(order)
        unknown = [dim for dim in order if dim not in var.row_dims]
        if unknown:
            msg = f"{unknown} are not row dimensions of '{name}'. Row dimensions: {var.row_dims}"
            raise DesignValidationError(msg)

        trailing = values.shape[1:]
        values = values.reshape(var.row_sizes + trailing)

        dims = list(order) + [dim for dim in var.row_dims if dim not in order]
        permutation = [var.row_dims.index(dim) for dim in dims]
        permutation += list(range(len(var.row_dims), values.ndim))
        values = np.transpose(values, permutation)

        keep = [
            k for k, dim in enumerate(dims) if keep_singletons or dim in order or var.row_sizes[var.row_dims.index(dim)] != 1
        ]
        shape = [values.shape[k] for k in keep] + list(trailing)
        values = values.reshape(shape)
        metadata = {dims[k]: var.rows[dims[k]] for k in keep}
        return values, metadata

    def to_record(self) -> EnsembleMetadataRecord:
        """Serializable form."""
        variables = []
        for var in self._variables.values():
            variables.append(
                VariableMetadataRecord(
                    name=var.name,
                    row_dims=list(var.row_dims),
                    row_sizes=list(var.row_sizes),
                    rows={dim: _to_array_model(values) for dim, values in var.rows.items()},
                    members={dim: _to_array_model(values) for dim, values in var.members.items()},
                )
            )
        return EnsembleMetadataRecord(variables=variables)

    @classmethod
    def from_record(cls, record: EnsembleMetadataRecord) -> EnsembleMetadata:
        """Inverse of :meth:`to_record`."""
        variables = []
        for var in record.variables:
            variables.append(
                VariableMetadata(
                    name=var.name,
                    row_dims=tuple(var.row_dims),
                    row_sizes=tuple(var.row_sizes),
                    rows={dim: list_to_array(values.values, values.dtype) for dim, values in var.rows.items()},
                    members={dim: list_to_array(values.values, values.dtype) for dim, values in var.members.items()},
                )
            )
        return cls(variables)


def _to_array_model(values: NDArray) -> MetadataArray:
    values = np.asarray(values)
    return MetadataArray(dtype=values.dtype.str, values=array_to_list(values))

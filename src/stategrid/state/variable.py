"""State vector variables: per-dimension roles, indices, sequences and means.

Every dimension of a variable is either a state dimension or an ensemble dimension,
represented by :class:`StateDimension` and :class:`EnsembleDimension`. Sequences only
exist on ensemble dimensions, so a sequence on a state dimension can't be expressed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import replace
from typing import TYPE_CHECKING

import numpy as np

from stategrid.constants import DimensionRole
from stategrid.core.dimension import assert_defined_rows
from stategrid.core.dimension import assert_unique_rows
from stategrid.core.indexing import dimension_positions
from stategrid.core.indexing import normalize_indices
from stategrid.core.indexing import normalize_offsets
from stategrid.exceptions import DesignValidationError
from stategrid.schemas.core import array_to_list
from stategrid.schemas.core import list_to_array
from stategrid.schemas.design import DimensionDesign
from stategrid.schemas.design import MeanDesign
from stategrid.schemas.design import SequenceDesign
from stategrid.schemas.design import VariableDesign

if TYPE_CHECKING:
    from numpy.typing import ArrayLike
    from numpy.typing import NDArray

    from stategrid.grid.cache import SourceCache
    from stategrid.grid.gridfile import GridFile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MeanSpec:
    """Average taken over a dimension.

    For ensemble dimensions, `offsets` are relative to the reference index (and to each
    sequence element). For state dimensions the mean runs over the state indices and
    `offsets` is None.
    """

    offsets: NDArray[np.intp] | None = None
    weights: NDArray[np.float64] | None = None
    include_nan: bool = True


@dataclass(frozen=True)
class SequenceSpec:
    """Offsets from the reference index that each become a block of state vector rows."""

    offsets: NDArray[np.intp]
    metadata: NDArray


@dataclass(frozen=True)
class StateDimension:
    """A dimension whose metadata is fixed along each state vector row."""

    indices: NDArray[np.intp]
    mean: MeanSpec | None = None

    role = DimensionRole.STATE


@dataclass(frozen=True)
class EnsembleDimension:
    """A dimension whose metadata changes with each ensemble member."""

    reference: NDArray[np.intp]
    sequence: SequenceSpec | None = None
    mean: MeanSpec | None = None

    role = DimensionRole.ENSEMBLE

    @property
    def sequence_offsets(self) -> NDArray[np.intp]:
        """Sequence offsets, a single zero offset when there is no sequence."""
        return np.zeros(1, dtype=np.intp) if self.sequence is None else self.sequence.offsets

    @property
    def mean_offsets(self) -> NDArray[np.intp]:
        """Mean offsets, a single zero offset when there is no mean."""
        return np.zeros(1, dtype=np.intp) if self.mean is None else self.mean.offsets

    @property
    def offsets(self) -> NDArray[np.intp]:
        """Every offset loaded per member, sequence-major (n_sequence x n_mean)."""
        return (self.sequence_offsets[:, None] + self.mean_offsets[None, :]).reshape(-1)


DimensionSpec = StateDimension | EnsembleDimension


def weighted_mean(
    values: NDArray,
    axis: int,
    weights: NDArray | None = None,
    include_nan: bool = True,
) -> NDArray:
    """Weighted mean along an axis that keeps the axis as a singleton.

    The mean is ``sum(weight * value) / sum(weight)`` over the elements that are not
    excluded. With ``include_nan=False`` NaN elements (and their weights) are excluded.
    """
    if weights is None:
        weights = np.ones(values.shape[axis])
    shape = [1] * values.ndim
    shape[axis] = -1
    weights = np.asarray(weights, dtype=np.float64).reshape(shape)

    if include_nan:
        total = np.sum(values * weights, axis=axis, keepdims=True)
        norm = np.sum(np.broadcast_to(weights, values.shape), axis=axis, keepdims=True)
    else:
        keep = ~np.isnan(values)
        total = np.sum(np.where(keep, values * weights, 0), axis=axis, keepdims=True)
        norm = np.sum(np.where(keep, weights, 0), axis=axis, keepdims=True)

    with np.errstate(invalid="ignore", divide="ignore"):
        mean = total / norm
    return np.where(norm == 0, np.nan, mean)


class StateVectorVariable:
    """Design of one variable of a state vector.

    All dimensions start as state dimensions that use every index of the grid.

    Args:
        name: Name of the variable in the state vector.
        grid: Grid the variable's data is loaded from.

    Attributes:
        name: Name of the variable in the state vector.
        grid: Grid the variable's data is loaded from.
        dims: Dimension names, as declared by the grid.
        overlap: Whether ensemble members may load overlapping data.
    """

    def __init__(self, name: str, grid: GridFile):
        self.name = name
        self.grid = grid
        self.dims = grid.dims
        self.overlap = False
        self._specs: dict[str, DimensionSpec] = {
            dim: StateDimension(indices=np.arange(size, dtype=np.intp))
            for dim, size in zip(self.dims, grid.size, strict=True)
        }

    def __repr__(self) -> str:
        """Summary of the variable's design."""
        sizes = " x ".join(f"{dim} ({size})" for dim, size in self.state_sizes())
        return f"StateVectorVariable('{self.name}', {self.n_rows} rows: {sizes or 'scalar'})"

    def copy(self, name: str) -> StateVectorVariable:
        """Duplicate the design under a new name."""
        other = StateVectorVariable(name, self.grid)
        other.overlap = self.overlap
        other._specs = dict(self._specs)
        return other

    def spec(self, dim: str) -> DimensionSpec:
        """The design of a dimension."""
        self._position(dim)
        return self._specs[dim]

    def replace_spec(self, dim: str, spec: DimensionSpec) -> None:
        """Swap in a complete dimension design."""
        self._position(dim)
        self._specs[dim] = spec

    def role(self, dim: str) -> DimensionRole:
        """Role of a dimension."""
        return self.spec(dim).role

    @property
    def is_state(self) -> NDArray[np.bool_]:
        """Whether each dimension is a state dimension."""
        return np.array([self._specs[dim].role == DimensionRole.STATE for dim in self.dims])

    def dimensions(self, role: DimensionRole | str | None = None) -> tuple[str, ...]:
        """Dimension names, optionally only those with a given role."""
        if role is None:
            return self.dims
        role = DimensionRole(role)
        return tuple(dim for dim in self.dims if self._specs[dim].role == role)

    def _position(self, dim: str) -> int:
        return dimension_positions([dim], self.dims, f"variable '{self.name}'")[0]

    def _size(self, dim: str) -> int:
        return self.grid.size[self._position(dim)]

    def set_role(self, dim: str, role: DimensionRole | str) -> bool:
        """Make a dimension a state or ensemble dimension.

        A dimension that changes role uses every index of the grid again, and any
        sequence or mean defined on it is discarded.

        Returns:
            Whether the role changed.
        """
        role = DimensionRole(role)
        current = self.spec(dim)
        if current.role == role:
            return False

        if getattr(current, "sequence", None) is not None or current.mean is not None:
            logger.info("Variable '%s' discards the sequence and mean of '%s' on role change", self.name, dim)

        indices = np.arange(self._size(dim), dtype=np.intp)
        if role == DimensionRole.STATE:
            self._specs[dim] = StateDimension(indices=indices)
        else:
            self._specs[dim] = EnsembleDimension(reference=indices)
        return True

    def set_indices(self, dim: str, indices: ArrayLike | None) -> None:
        """Set state indices (state dimension) or reference indices (ensemble dimension)."""
        current = self.spec(dim)
        indices = normalize_indices(indices, self._size(dim), f"indices for '{self.name}.{dim}'")

        if isinstance(current, StateDimension):
            if indices.size == 0:
                msg = f"State indices for '{self.name}.{dim}' cannot be empty"
                raise DesignValidationError(msg)
            mean = current.mean
            if mean is not None and mean.weights is not None and mean.weights.size != indices.size:
                logger.warning("Mean weights for '%s.%s' were reset by the new state indices", self.name, dim)
                mean = replace(mean, weights=None)
            self._specs[dim] = replace(current, indices=indices, mean=mean)
        else:
            self._specs[dim] = replace(current, reference=indices)

    def set_sequence(self, dim: str, offsets: ArrayLike, metadata: ArrayLike) -> None:
        """Define a sequence along an ensemble dimension.

        Args:
            dim: Name of an ensemble dimension.
            offsets: Offsets from the reference index, one per sequence element.
            metadata: One unique, defined metadata row per sequence element.
        """
        current = self.spec(dim)
        if not isinstance(current, EnsembleDimension):
            msg = f"'{self.name}.{dim}' is a state dimension and cannot have a sequence"
            raise DesignValidationError(msg)

        offsets = normalize_offsets(offsets, f"sequence offsets for '{self.name}.{dim}'")
        metadata = np.asarray(metadata)
        if metadata.ndim == 0 or metadata.shape[0] != offsets.size:
            rows = 0 if metadata.ndim == 0 else metadata.shape[0]
            msg = f"Sequence metadata for '{self.name}.{dim}' has {rows} rows but there are {offsets.size} offsets"
            raise DesignValidationError(msg)
        assert_defined_rows(metadata, f"sequence of '{self.name}.{dim}'")
        assert_unique_rows(metadata, f"sequence of '{self.name}.{dim}'")

        self._specs[dim] = replace(current, sequence=SequenceSpec(offsets=offsets, metadata=metadata))

    def clear_sequence(self, dim: str) -> None:
        """Remove the sequence of an ensemble dimension."""
        current = self.spec(dim)
        if isinstance(current, EnsembleDimension):
            self._specs[dim] = replace(current, sequence=None)

    def set_mean(
        self,
        dim: str,
        offsets: ArrayLike | None = None,
        weights: ArrayLike | None = None,
        include_nan: bool = True,
    ) -> None:
        """Take a (weighted) mean over a dimension.

        Args:
            dim: Dimension name.
            offsets: Mean offsets from the reference index. Required for ensemble
                dimensions, not allowed for state dimensions.
            weights: Optional weights, one per mean element.
            include_nan: Whether NaN values propagate into the mean (True) or are omitted.
        """
        current = self.spec(dim)
        if isinstance(current, StateDimension):
            if offsets is not None:
                msg = f"'{self.name}.{dim}' is a state dimension, so its mean uses the state indices, not offsets"
                raise DesignValidationError(msg)
            n_elements = current.indices.size
        else:
            if offsets is None:
                msg = f"'{self.name}.{dim}' is an ensemble dimension, so its mean needs offsets"
                raise DesignValidationError(msg)
            offsets = normalize_offsets(offsets, f"mean offsets for '{self.name}.{dim}'")
            n_elements = offsets.size

        if weights is not None:
            weights = np.asarray(weights, dtype=np.float64).reshape(-1)
            if weights.size != n_elements:
                msg = f"Mean weights for '{self.name}.{dim}' need {n_elements} elements but have {weights.size}"
                raise DesignValidationError(msg)
            if not np.all(np.isfinite(weights)):
                msg = f"Mean weights for '{self.name}.{dim}' must be finite"
                raise DesignValidationError(msg)

        mean = MeanSpec(offsets=offsets, weights=weights, include_nan=bool(include_nan))
        self._specs[dim] = replace(current, mean=mean)

    def clear_mean(self, dim: str) -> None:
        """Remove the mean of a dimension."""
        self._specs[dim] = replace(self.spec(dim), mean=None)

    def state_sizes(self) -> list[tuple[str, int]]:
        """Number of state vector rows contributed along each row dimension.

        Row dimensions are the state dimensions (1 row when averaged) and the ensemble
        dimensions that have a sequence. The variable's row count is their product.
        """
        sizes = []
        for dim in self.dims:
            spec = self._specs[dim]
            if isinstance(spec, StateDimension):
                sizes.append((dim, 1 if spec.mean is not None else spec.indices.size))
            elif spec.sequence is not None:
                sizes.append((dim, spec.sequence.offsets.size))
        return sizes

    @property
    def n_rows(self) -> int:
        """Number of state vector rows for the variable."""
        return int(np.prod([size for _, size in self.state_sizes()], dtype=np.int64))

    def valid_references(self, dim: str) -> NDArray[np.intp]:
        """Reference indices whose sequence and mean offsets all stay within the dimension."""
        spec = self.spec(dim)
        if not isinstance(spec, EnsembleDimension):
            msg = f"'{self.name}.{dim}' is not an ensemble dimension"
            raise DesignValidationError(msg)

        offsets = spec.offsets
        loaded = spec.reference[:, None] + offsets[None, :]
        valid = np.all((loaded >= 0) & (loaded < self._size(dim)), axis=1)
        return spec.reference[valid]

    def footprint(self, references: NDArray[np.intp]) -> set[tuple[int, ...]]:
        """Every ensemble-dimension index tuple a member with these references loads."""
        axes = [
            references[k] + self._specs[dim].offsets for k, dim in enumerate(self.dimensions(DimensionRole.ENSEMBLE))
        ]
        grids = np.meshgrid(*axes, indexing="ij")
        return set(zip(*(grid.reshape(-1).tolist() for grid in grids), strict=True))

    def row_metadata(self) -> dict[str, NDArray]:
        """Metadata along each row dimension.

        Averaged state dimensions keep one metadata row per averaged element.
        """
        metadata = {}
        for dim, _ in self.state_sizes():
            spec = self._specs[dim]
            if isinstance(spec, StateDimension):
                metadata[dim] = self.grid.metadata[dim][spec.indices] if dim in self.grid.metadata else spec.indices
            else:
                metadata[dim] = spec.sequence.metadata
        return metadata

    def member_metadata(self, references: NDArray[np.intp]) -> dict[str, NDArray]:
        """Metadata of the reference indices of each member, per ensemble dimension."""
        metadata = {}
        for k, dim in enumerate(self.dimensions(DimensionRole.ENSEMBLE)):
            refs = references[:, k]
            metadata[dim] = self.grid.metadata[dim][refs] if dim in self.grid.metadata else refs
        return metadata

    def load(
        self,
        references: NDArray[np.intp],
        cache: SourceCache | None = None,
        batch_elements: int = 10_000_000,
    ) -> tuple[NDArray, NDArray[np.bool_], SourceCache]:
        """Load the state vector rows of several ensemble members.

        Members are loaded in batches: each batch loads the union of the members'
        ensemble-dimension indices with a single grid load, as long as that load stays
        under `batch_elements` elements.

        Args:
            references: Reference index of each member (rows) along each ensemble
                dimension (columns, in dimension order).
            cache: Built data sources reused across loads.
            batch_elements: Largest number of elements loaded at once.

        Returns:
            Array of shape (n_rows, n_members), whether any raw value that went into
            each row was missing, and the updated cache.
        """
        ens_dims = self.dimensions(DimensionRole.ENSEMBLE)
        references = np.asarray(references, dtype=np.intp).reshape(len(references), len(ens_dims))
        n_members = references.shape[0]
        output = np.empty((self.n_rows, n_members), dtype=np.float64)
        has_nan = np.zeros(self.n_rows, dtype=bool)
        if n_members == 0:
            return output, has_nan, cache

        state_elements = int(
            np.prod([spec.indices.size for spec in self._specs.values() if isinstance(spec, StateDimension)])
        )
        member_indices = [
            [references[m, k] + self._specs[dim].offsets for k, dim in enumerate(ens_dims)] for m in range(n_members)
        ]

        start = 0
        while start < n_members:
            stop = start + 1
            unions = [set(idx.tolist()) for idx in member_indices[start]]
            while stop < n_members:
                merged = [u | set(idx.tolist()) for u, idx in zip(unions, member_indices[stop], strict=True)]
                if state_elements * np.prod([len(u) for u in merged]) > batch_elements:
                    break
                unions = merged
                stop += 1

            block, missing, cache = self._load_batch(member_indices[start:stop], unions, cache)
            output[:, start:stop] = block
            has_nan |= missing.any(axis=1)
            start = stop
        return output, has_nan, cache

    def _load_batch(
        self,
        member_indices: list[list[NDArray[np.intp]]],
        unions: list[set[int]],
        cache: SourceCache | None,
    ) -> tuple[NDArray, NDArray[np.bool_], SourceCache]:
        """Load one batch of members and reduce it to state vector rows."""
        ens_dims = self.dimensions(DimensionRole.ENSEMBLE)
        union_arrays = {dim: np.array(sorted(union), dtype=np.intp) for dim, union in zip(ens_dims, unions, strict=True)}

        indices = []
        for dim in self.dims:
            spec = self._specs[dim]
            indices.append(spec.indices if isinstance(spec, StateDimension) else union_arrays[dim])
        data, _, cache = self.grid.repeated_load(self.dims, indices, cache)
        data = data.reshape([idx.size for idx in indices])

        members = []
        for per_dim in member_indices:
            selection = []
            for dim in self.dims:
                spec = self._specs[dim]
                if isinstance(spec, StateDimension):
                    selection.append(np.arange(spec.indices.size))
                else:
                    k = ens_dims.index(dim)
                    selection.append(np.searchsorted(union_arrays[dim], per_dim[k]))
            members.append(data[np.ix_(*selection)])

        stacked = np.stack(members, axis=-1)
        values, missing = self._reduce(stacked)
        return values, missing, cache

    def _reduce(self, values: NDArray) -> tuple[NDArray, NDArray[np.bool_]]:
        """Apply means and sequences to loaded values, giving (n_rows, n_members).

        Returns:
            The reduced values, and whether any raw value behind each element was
            missing, before means drop or propagate it.
        """
        missing = np.isnan(values)
        axis = 0
        for dim in self.dims:
            spec = self._specs[dim]
            if isinstance(spec, StateDimension):
                n_sequence = 1 if spec.mean is not None else spec.indices.size
            else:
                n_sequence = spec.sequence_offsets.size
            n_mean = values.shape[axis] // n_sequence

            shape = values.shape
            values = values.reshape(shape[:axis] + (n_sequence, n_mean) + shape[axis + 1 :])
            missing = missing.reshape(values.shape)
            if spec.mean is not None:
                values = weighted_mean(values, axis + 1, spec.mean.weights, spec.mean.include_nan)
                missing = missing.any(axis=axis + 1, keepdims=True)
            values = values.reshape(shape[:axis] + (n_sequence,) + shape[axis + 1 :])

            if isinstance(spec, EnsembleDimension) and spec.sequence is None:
                values = values.reshape(shape[:axis] + shape[axis + 1 :])
            else:
                axis += 1
            missing = missing.reshape(values.shape)

        n_members = values.shape[-1]
        return values.reshape(-1, n_members), missing.reshape(-1, n_members)

    def to_design(self) -> VariableDesign:
        """The variable's design as a serializable model."""
        dimensions = []
        for dim in self.dims:
            spec = self._specs[dim]
            mean = None
            if spec.mean is not None:
                mean = MeanDesign(
                    offsets=None if spec.mean.offsets is None else spec.mean.offsets.tolist(),
                    weights=None if spec.mean.weights is None else spec.mean.weights.tolist(),
                    include_nan=spec.mean.include_nan,
                )

            if isinstance(spec, StateDimension):
                dimensions.append(DimensionDesign(name=dim, role=spec.role, indices=spec.indices.tolist(), mean=mean))
                continue

            sequence = None
            if spec.sequence is not None:
                sequence = SequenceDesign(
                    offsets=spec.sequence.offsets.tolist(),
                    dtype=spec.sequence.metadata.dtype.str,
                    metadata=array_to_list(spec.sequence.metadata),
                )
            dimensions.append(
                DimensionDesign(
                    name=dim,
                    role=spec.role,
                    indices=spec.reference.tolist(),
                    sequence=sequence,
                    mean=mean,
                )
            )

        return VariableDesign(name=self.name, grid=str(self.grid.path), overlap=self.overlap, dimensions=dimensions)

    @classmethod
    def from_design(cls, design: VariableDesign, grid: GridFile) -> StateVectorVariable:
        """Rebuild a variable from its saved design."""
        variable = cls(design.name, grid)
        variable.overlap = design.overlap
        for dim_design in design.dimensions:
            indices = np.asarray(dim_design.indices, dtype=np.intp)
            mean = None
            if dim_design.mean is not None:
                mean = MeanSpec(
                    offsets=None if dim_design.mean.offsets is None else np.asarray(dim_design.mean.offsets, np.intp),
                    weights=None if dim_design.mean.weights is None else np.asarray(dim_design.mean.weights),
                    include_nan=dim_design.mean.include_nan,
                )

            if dim_design.role == DimensionRole.STATE:
                spec = StateDimension(indices=indices, mean=mean)
            else:
                sequence = None
                if dim_design.sequence is not None:
                    sequence = SequenceSpec(
                        offsets=np.asarray(dim_design.sequence.offsets, dtype=np.intp),
                        metadata=list_to_array(dim_design.sequence.metadata, dim_design.sequence.dtype),
                    )
                spec = EnsembleDimension(reference=indices, sequence=sequence, mean=mean)
            variable.replace_spec(dim_design.name, spec)
        return variable

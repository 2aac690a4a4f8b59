"""Virtual N-dimensional array backed by a catalog of data sources."""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING
from typing import Any

import numpy as np
from pydantic import ValidationError

from stategrid.constants import LOAD_DTYPE
from stategrid.constants import MISSING_VALUE
from stategrid.core.config import get_settings
from stategrid.core.dimension import Dimension
from stategrid.core.indexing import dimension_positions
from stategrid.core.indexing import normalize_indices
from stategrid.exceptions import DesignValidationError
from stategrid.exceptions import GridAlreadyExistsError
from stategrid.exceptions import GridNotFoundError
from stategrid.exceptions import InvalidGridError
from stategrid.exceptions import ShapeError
from stategrid.grid.cache import SourceCache
from stategrid.grid.source import infer_kind
from stategrid.grid.source import open_source
from stategrid.schemas.catalog import DimensionRecord
from stategrid.schemas.catalog import GridCatalog
from stategrid.schemas.catalog import SourceRecord
from stategrid.schemas.core import array_to_list
from stategrid.schemas.core import list_to_array

if TYPE_CHECKING:
    from collections.abc import Mapping
    from collections.abc import Sequence

    from numpy.typing import ArrayLike
    from numpy.typing import NDArray

    from stategrid.constants import SourceKind
    from stategrid.grid.source import DataSource

logger = logging.getLogger(__name__)


@dataclass
class _SourceRequest:
    """Where one source's block comes from and where it goes in the output."""

    slot: int
    source_indices: list[NDArray[np.intp]]
    output_indices: list[NDArray[np.intp]]
    grid_shape: tuple[int, ...]
    transpose: tuple[int, ...]


class GridFile:
    """A virtual N-dimensional array assembled from many data sources.

    The grid has an ordered list of dimensions, each with one metadata row per index.
    Every cataloged data source covers a contiguous block of grid indices along each
    dimension, recorded in ``dim_limit`` with shape (sources x dimensions x 2). Sources
    may overlap; when they do, the source cataloged last provides the value.

    Use :meth:`new` to create a grid catalog and :meth:`open` to read an existing one.

    Args:
        path: Location of the grid catalog.
        catalog: Validated catalog contents.

    Attributes:
        path: Location of the grid catalog.
        dims: Ordered dimension names.
        size: Length of each dimension.
        is_defined: Whether each dimension has metadata. Undefined dimensions are singleton.
        metadata: Dimension metadata for the defined dimensions.
        dim_limit: Inclusive index range covered by each source along each dimension.
        attributes: Free-form attributes of the grid.
    """

    def __init__(self, path: str | Path, catalog: GridCatalog):
        self.path = Path(path)
        self.attributes = dict(catalog.attributes)
        self._records = list(catalog.sources)

        self.metadata: dict[str, Dimension] = {}
        for record in catalog.dimensions:
            if record.defined:
                coords = list_to_array(record.values, record.dtype)
                self.metadata[record.name] = Dimension(coords=coords, name=record.name)

        self.dims = tuple(record.name for record in catalog.dimensions)
        self.is_defined = np.array([record.defined for record in catalog.dimensions], dtype=bool)
        self.size = tuple(self.metadata[name].size if name in self.metadata else 1 for name in self.dims)

        self.dim_limit = np.asarray(catalog.dim_limit, dtype=np.intp).reshape(len(self._records), len(self.dims), 2)

    def __repr__(self) -> str:
        """Short description of the grid."""
        shape = " x ".join(f"{name} ({size})" for name, size in zip(self.dims, self.size, strict=True))
        return f"GridFile('{self.path}', {shape}, {self.n_sources} sources)"

    @classmethod
    def new(
        cls,
        path: str | Path,
        metadata: Mapping[str, ArrayLike | None],
        attributes: dict[str, Any] | None = None,
        overwrite: bool = False,
    ) -> GridFile:
        """Create a new, empty grid catalog.

        Args:
            path: Location for the grid catalog.
            metadata: Metadata for each dimension, in dimension order. ``None`` declares an
                undefined singleton dimension.
            attributes: Free-form attributes saved with the grid.
            overwrite: Whether to replace an existing catalog.

        Returns:
            The new grid.

        Raises:
            GridAlreadyExistsError: If the catalog exists and `overwrite` is False.
            DesignValidationError: If any dimension metadata is invalid.
        """
        path = Path(path)
        if path.exists() and not overwrite:
            msg = f"Grid catalog '{path}' already exists. Use overwrite=True to replace it."
            raise GridAlreadyExistsError(msg)
        if len(metadata) == 0:
            msg = "A grid needs at least one dimension"
            raise DesignValidationError(msg)

        records = []
        for name, values in metadata.items():
            if values is None:
                records.append(DimensionRecord(name=name, defined=False))
                continue
            dimension = Dimension(coords=values, name=name)
            records.append(
                DimensionRecord(
                    name=name,
                    dtype=dimension.coords.dtype.str,
                    values=array_to_list(dimension.coords),
                )
            )

        catalog = GridCatalog(dimensions=records, attributes=attributes or {})
        grid = cls(path, catalog)
        grid.save()
        logger.info("Created grid %s", grid)
        return grid

    @classmethod
    def open(cls, path: str | Path) -> GridFile:
        """Open an existing grid catalog."""
        path = Path(path)
        if not path.exists():
            msg = f"Grid catalog '{path}' does not exist"
            raise GridNotFoundError(msg)

        try:
            catalog = GridCatalog.model_validate_json(path.read_text())
        except ValidationError as e:
            msg = f"'{path}' is not a valid grid catalog"
            raise InvalidGridError(msg) from e
        return cls(path, catalog)

    def to_catalog(self) -> GridCatalog:
        """Current contents as a catalog model."""
        dimensions = []
        for name in self.dims:
            if name not in self.metadata:
                dimensions.append(DimensionRecord(name=name, defined=False))
                continue
            coords = self.metadata[name].coords
            dimensions.append(DimensionRecord(name=name, dtype=coords.dtype.str, values=array_to_list(coords)))

        return GridCatalog(
            dimensions=dimensions,
            sources=self._records,
            dim_limit=self.dim_limit.tolist(),
            attributes=self.attributes,
        )

    def save(self) -> None:
        """Write the catalog to disk."""
        self.path.write_text(self.to_catalog().model_dump_json(indent=2))

    @property
    def n_sources(self) -> int:
        """Number of cataloged data sources."""
        return len(self._records)

    @property
    def sources(self) -> list[SourceRecord]:
        """Catalog entries of the data sources."""
        return list(self._records)

    def source_path(self, slot: int) -> Path:
        """Resolved location of a data source file."""
        path = Path(self._records[slot].path)
        if not path.is_absolute():
            path = self.path.parent / path
        return path

    def build_source(self, slot: int) -> DataSource:
        """Create the (unopened) data source handle for a catalog entry."""
        record = self._records[slot]
        return open_source(
            self.source_path(slot),
            record.dims,
            kind=record.kind,
            variable=record.variable,
            fill_value=record.fill_value,
            scale=record.scale,
            offset=record.offset,
        )

    def source_key(self, slot: int) -> tuple[str, str]:
        """Identity of a catalog entry, used to tell cached source handles apart."""
        return str(self.source_path(slot)), self._records[slot].model_dump_json()

    def new_cache(self) -> SourceCache:
        """An empty source cache sized for this catalog."""
        return SourceCache(self.n_sources)

    def dimension(self, name: str) -> Dimension:
        """Metadata of a defined dimension."""
        if name not in self.dims:
            msg = f"Invalid dimension name '{name}'. Available dimensions: {self.dims}."
            raise DesignValidationError(msg)
        if name not in self.metadata:
            msg = f"Dimension '{name}' is undefined and has no metadata"
            raise DesignValidationError(msg)
        return self.metadata[name]

    def dim_size(self, name: str) -> int:
        """Length of a dimension."""
        return self.size[dimension_positions([name], self.dims, f"the grid '{self.path}'")[0]]

    def add_source(  # noqa: PLR0913
        self,
        path: str | Path,
        dims: Sequence[str],
        coverage: Mapping[str, ArrayLike],
        kind: SourceKind | str | None = None,
        variable: str | None = None,
        fill_value: float | None = None,
        scale: float | None = None,
        offset: float | None = None,
        relative: bool = True,
    ) -> None:
        """Catalog a data source.

        Args:
            path: Location of the data file.
            dims: Grid dimensions in the order they are stored in the file.
            coverage: For each defined dimension in `dims`, the metadata rows the source
                covers. They must form a contiguous, ascending run of the grid metadata.
            kind: Data source format. Inferred from the file suffix when omitted.
            variable: Name of the array inside the file.
            fill_value: Stored value marking missing data.
            scale: Multiplier applied after reading.
            offset: Addend applied after scaling.
            relative: Whether to record the path relative to the grid catalog.

        Raises:
            DesignValidationError: If the dimensions or coverage don't match the grid.
            SourceUnreadableError: If the file can't be opened.
        """
        dims = tuple(dims)
        dimension_positions(dims, self.dims, f"the grid '{self.path}'")
        unknown = set(coverage) - set(dims)
        if unknown:
            msg = f"Coverage was given for dimensions the source does not declare: {sorted(unknown)}"
            raise DesignValidationError(msg)

        limit = np.empty((len(self.dims), 2), dtype=np.intp)
        for d, name in enumerate(self.dims):
            if name not in dims:
                limit[d] = (0, self.size[d] - 1)
            elif name in coverage:
                limit[d] = self._coverage_limit(name, coverage[name])
            elif not self.is_defined[d]:
                limit[d] = (0, 0)
            else:
                msg = f"Missing coverage metadata for dimension '{name}'"
                raise DesignValidationError(msg)

        kind = infer_kind(path) if kind is None else kind
        source = open_source(path, dims, kind=kind, variable=variable)
        source.open()
        try:
            rows = limit[[self.dims.index(name) for name in dims]]
            expected = tuple(int(last - first + 1) for first, last in rows)
            if source.shape != expected:
                msg = f"Data source '{source.identity}' does not match its coverage"
                raise ShapeError(msg, ("Source", "Coverage"), (source.shape, expected))
        finally:
            source.close()

        stored = Path(path).resolve()
        if relative:
            stored = Path(os.path.relpath(stored, self.path.resolve().parent))

        record = SourceRecord(
            path=stored.as_posix(),
            kind=source.kind,
            variable=variable,
            dims=list(dims),
            shape=list(expected),
            fill_value=fill_value,
            scale=scale,
            offset=offset,
        )
        self._records.append(record)
        self.dim_limit = np.concatenate([self.dim_limit, limit[None]], axis=0)
        self.save()
        logger.info("Cataloged %s covering %s", source.identity, limit.tolist())

    def _coverage_limit(self, name: str, values: ArrayLike) -> tuple[int, int]:
        """Grid index range matching a source's metadata rows."""
        positions = self.metadata[name].index_of(values)
        if positions.size == 0:
            msg = f"Coverage for dimension '{name}' is empty"
            raise DesignValidationError(msg)
        missing = np.flatnonzero(positions < 0)
        if missing.size > 0:
            msg = f"Coverage row {missing[0]} for dimension '{name}' is not in the grid metadata"
            raise DesignValidationError(msg)
        if np.any(np.diff(positions) != 1):
            msg = f"Coverage for dimension '{name}' must be a contiguous, ascending run of the grid metadata"
            raise DesignValidationError(msg)
        return int(positions[0]), int(positions[-1])

    def remove_sources(self, paths: Sequence[str | Path]) -> int:
        """Remove data sources by file location. Returns how many were removed."""
        targets = {Path(path).resolve() for path in paths}
        keep = [slot for slot in range(self.n_sources) if self.source_path(slot).resolve() not in targets]
        removed = self.n_sources - len(keep)

        self._records = [self._records[slot] for slot in keep]
        self.dim_limit = self.dim_limit[keep].reshape(len(keep), len(self.dims), 2)
        self.save()
        logger.info("Removed %d data sources from %s", removed, self.path)
        return removed

    def expand(self, name: str, values: ArrayLike) -> None:
        """Append new metadata rows to the end of a dimension."""
        dimension = self.dimension(name)
        self.metadata[name] = dimension.extend(values)
        d = self.dims.index(name)
        self.size = self.size[:d] + (self.metadata[name].size,) + self.size[d + 1 :]

        # Sources that don't declare the dimension span all of it
        for slot, record in enumerate(self._records):
            if name not in record.dims:
                self.dim_limit[slot, d] = (0, self.size[d] - 1)
        self.save()

    def coverage_gaps(self) -> dict[str, NDArray[np.intp]]:
        """Grid indices, per dimension, that no data source covers."""
        gaps = {}
        for d, name in enumerate(self.dims):
            covered = np.zeros(self.size[d], dtype=bool)
            for first, last in self.dim_limit[:, d]:
                covered[first : last + 1] = True
            gaps[name] = np.flatnonzero(~covered)
        return gaps

    def load(
        self,
        order: Sequence[str] | None = None,
        indices: Sequence[ArrayLike | None] | None = None,
    ) -> tuple[NDArray, dict[str, NDArray]]:
        """Load data from the grid after validating the request.

        Args:
            order: Dimension names in the order wanted for the output. Unlisted dimensions
                follow in grid order.
            indices: Logical or linear indices for each dimension in `order`. ``None``
                entries (or omitting `indices`) select every index.

        Returns:
            The loaded array and the metadata of each output dimension.
        """
        order = tuple(self.dims if order is None else order)
        dimension_positions(order, self.dims, f"the grid '{self.path}'")
        if indices is None:
            indices = [None] * len(order)
        if len(indices) != len(order):
            msg = f"Received indices for {len(indices)} dimensions but the order lists {len(order)}"
            raise DesignValidationError(msg)

        linear = [
            normalize_indices(idx, self.dim_size(name), f"indices for '{name}'")
            for name, idx in zip(order, indices, strict=True)
        ]
        data, meta, _ = self.repeated_load(order, linear)
        return data, meta

    def repeated_load(
        self,
        order: Sequence[str],
        indices: Sequence[NDArray[np.intp] | None],
        cache: SourceCache | None = None,
        workers: int | None = None,
    ) -> tuple[NDArray, dict[str, NDArray], SourceCache]:
        """Load values through a reusable cache of built data sources.

        This is the low level load used when building ensembles. It does little error
        checking; see :meth:`load` for a validated version.

        Args:
            order: Dimension names in the order wanted for the output.
            indices: Linear indices for each dimension in `order`. ``None`` selects every
                index. Dimensions not in `order` are loaded in full.
            cache: Built sources from previous loads. A new cache is made if omitted.
            workers: Threads used to read independent sources. Defaults to the
                ``STATEGRID__LOAD__WORKERS`` setting.

        Returns:
            The loaded array, the metadata of each output dimension, and the cache.
        """
        if cache is None or not cache.fits(self.n_sources):
            cache = self.new_cache()

        n_dims = len(self.dims)
        positions = [self.dims.index(name) for name in order]
        grid_indices: list[NDArray[np.intp] | None] = [None] * n_dims
        for d, idx in zip(positions, indices, strict=True):
            grid_indices[d] = idx
        for d in range(n_dims):
            if grid_indices[d] is None:
                grid_indices[d] = np.arange(self.size[d], dtype=np.intp)
            else:
                grid_indices[d] = np.asarray(grid_indices[d], dtype=np.intp).reshape(-1)

        output_size = tuple(idx.size for idx in grid_indices)
        data = np.full(output_size, MISSING_VALUE, dtype=LOAD_DTYPE)

        if data.size > 0 and self.n_sources > 0:
            load_limit = np.array([(idx.min(), idx.max()) for idx in grid_indices])
            too_low = np.any(load_limit[:, 1] < self.dim_limit[:, :, 0], axis=1)
            too_high = np.any(load_limit[:, 0] > self.dim_limit[:, :, 1], axis=1)
            use = np.flatnonzero(~too_low & ~too_high)

            requests = [self._resolve(slot, grid_indices) for slot in use]
            requests = [request for request in requests if request is not None]
            blocks = self._read_blocks(requests, cache, workers)

            # Sources are written in catalog order so overlaps resolve deterministically
            for request, block in zip(requests, blocks, strict=True):
                data[np.ix_(*request.output_indices)] = block

        out_order = positions + [d for d in range(n_dims) if d not in positions]
        data = np.transpose(data, out_order)
        keep = [k for k, d in enumerate(out_order) if self.is_defined[d] or output_size[d] != 1]
        data = data.reshape([data.shape[k] for k in keep])

        meta = {}
        for k in keep:
            name = self.dims[out_order[k]]
            if name in self.metadata:
                meta[name] = self.metadata[name][grid_indices[out_order[k]]]
        return data, meta, cache

    def _resolve(self, slot: int, grid_indices: list[NDArray[np.intp]]) -> _SourceRequest | None:
        """Translate requested grid indices into a source's local indices."""
        source_dims = self._records[slot].dims
        source_indices: list[NDArray[np.intp]] = [np.empty(0, dtype=np.intp)] * len(source_dims)
        output_indices = []
        grid_shape = []

        for d, name in enumerate(self.dims):
            requested = grid_indices[d]
            if name not in source_dims:
                output_indices.append(np.arange(requested.size, dtype=np.intp))
                grid_shape.append(1)
                continue

            first, last = self.dim_limit[slot, d]
            inside = (requested >= first) & (requested <= last)
            source_indices[source_dims.index(name)] = requested[inside] - first
            output_indices.append(np.flatnonzero(inside))
            grid_shape.append(int(inside.sum()))

        if any(idx.size == 0 for idx in source_indices):
            logger.debug("Source %d overlaps the load limits but holds none of the requested indices", slot)
            return None

        present = [name for name in self.dims if name in source_dims]
        transpose = tuple(source_dims.index(name) for name in present)
        return _SourceRequest(slot, source_indices, output_indices, tuple(grid_shape), transpose)

    def _read_blocks(
        self,
        requests: list[_SourceRequest],
        cache: SourceCache,
        workers: int | None,
    ) -> list[NDArray]:
        """Read every requested block, in parallel across independent sources."""

        def read(request: _SourceRequest) -> NDArray:
            source = cache.get_or_build(
                request.slot,
                lambda: self.build_source(request.slot),
                key=self.source_key(request.slot),
            )
            block = source.read(request.source_indices)
            logger.debug("Read %s from %s", block.shape, source)
            return np.transpose(block, request.transpose).reshape(request.grid_shape)

        if workers is None:
            workers = get_settings().load_workers
        workers = min(workers, len(requests))
        if workers <= 1:
            return [read(request) for request in requests]

        with ThreadPoolExecutor(workers) as executor:
            return list(executor.map(read, requests))

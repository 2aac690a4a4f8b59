"""Data sources: lazy handles to the physical files backing a grid.

A data source reads rectangular (orthogonal) sub-blocks of one array stored in a file.
Indices passed to :meth:`DataSource.read` are local to the source and follow the
source's native dimension order. Opening a file is treated as expensive and happens at
most once per handle.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC
from abc import abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING
from typing import Any
from typing import ClassVar

import numpy as np

from stategrid.constants import LOAD_DTYPE
from stategrid.constants import MISSING_VALUE
from stategrid.constants import SUFFIX_TO_KIND
from stategrid.constants import SourceKind
from stategrid.exceptions import DesignValidationError
from stategrid.exceptions import SourceUnreadableError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


class DataSource(ABC):
    """Base class for a lazily opened array in a single file.

    Args:
        path: Location of the file.
        dims: Grid dimension names in the order they are stored in the file.
        variable: Name of the array inside the file, for formats holding several.
        fill_value: Stored value that marks missing data. Read back as NaN.
        scale: Multiplier applied to values after reading.
        offset: Addend applied to values after scaling.
    """

    kind: ClassVar[SourceKind]

    def __init__(  # noqa: PLR0913
        self,
        path: str | Path,
        dims: Sequence[str],
        variable: str | None = None,
        fill_value: float | None = None,
        scale: float | None = None,
        offset: float | None = None,
    ):
        self.path = Path(path)
        self.dims = tuple(dims)
        self.variable = variable
        self.fill_value = fill_value
        self.scale = scale
        self.offset = offset

        self._handle: Any = None
        self._shape: tuple[int, ...] | None = None
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        """Identify the source in logs and error messages."""
        return f"{type(self).__name__}({self.identity!r}, dims={self.dims})"

    @property
    def identity(self) -> str:
        """File path plus internal array name."""
        if self.variable is None:
            return str(self.path)
        return f"{self.path}::{self.variable}"

    @property
    def is_open(self) -> bool:
        """Whether the underlying file has been opened."""
        return self._handle is not None

    @property
    def shape(self) -> tuple[int, ...]:
        """Size of each declared dimension."""
        self.open()
        return self._shape

    def open(self) -> DataSource:
        """Open the underlying file if it is not open yet."""
        if self._handle is not None:
            return self

        with self._lock:
            if self._handle is None:
                try:
                    handle = self._open()
                except SourceUnreadableError:
                    raise
                except (OSError, ValueError, KeyError, TypeError) as e:
                    raise SourceUnreadableError(self.identity, str(e)) from e

                self._shape = self._declared_shape(tuple(handle.shape))
                self._handle = handle
                logger.debug("Opened %s with shape %s", self, self._shape)
        return self

    def close(self) -> None:
        """Release the underlying file handle."""
        self._handle = None

    def read(self, indices: Sequence[NDArray[np.intp]]) -> NDArray:
        """Read an orthogonal sub-block of the source.

        Args:
            indices: One vector of local, 0-based indices per native dimension. Order and
                repeats are honored.

        Returns:
            Array in the source's native dimension order, with missing values as NaN.

        Raises:
            SourceUnreadableError: If the file can't be read or an index is outside the
                source's extent.
        """
        self.open()
        if len(indices) != len(self.dims):
            msg = f"expected indices for {len(self.dims)} dimensions but received {len(indices)}"
            raise SourceUnreadableError(self.identity, msg, tuple(indices))

        unique = []
        inverse = []
        for idx, length in zip(indices, self._shape, strict=True):
            idx = np.asarray(idx, dtype=np.intp).reshape(-1)
            if idx.size > 0 and (idx.min() < 0 or idx.max() >= length):
                msg = f"indices exceed the source extent {self._shape}"
                raise SourceUnreadableError(self.identity, msg, tuple(indices))
            values, positions = np.unique(idx, return_inverse=True)
            unique.append(values)
            inverse.append(positions.reshape(-1))

        if any(values.size == 0 for values in unique):
            return np.empty([values.size for values in unique], dtype=LOAD_DTYPE)

        stored = self._stored_indices(unique)
        try:
            data = self._read(stored)
        except SourceUnreadableError:
            raise
        except (OSError, ValueError, KeyError, IndexError) as e:
            raise SourceUnreadableError(self.identity, str(e), tuple(indices)) from e

        data = np.asarray(data).reshape([values.size for values in unique])
        data = self._convert(data)
        return data[np.ix_(*inverse)]

    def _declared_shape(self, stored_shape: tuple[int, ...]) -> tuple[int, ...]:
        """Match the stored shape to the declared dimensions.

        Trailing singleton axes may be missing from, or added to, the stored array.
        """
        n_dims = len(self.dims)
        if len(stored_shape) < n_dims:
            return stored_shape + (1,) * (n_dims - len(stored_shape))

        extra = stored_shape[n_dims:]
        if any(size != 1 for size in extra):
            msg = f"stored shape {stored_shape} has more non-singleton axes than the declared dimensions {self.dims}"
            raise SourceUnreadableError(self.identity, msg)
        return stored_shape[:n_dims]

    def _stored_indices(self, indices: list[NDArray[np.intp]]) -> tuple[NDArray[np.intp], ...]:
        """Map declared-dimension indices to the axes actually stored in the file."""
        n_stored = len(self._handle.shape)
        stored = list(indices[:n_stored])
        stored.extend(np.zeros(1, dtype=np.intp) for _ in range(n_stored - len(stored)))
        return tuple(stored)

    def _convert(self, data: NDArray) -> NDArray:
        """Apply the fill value and the linear transform."""
        data = data.astype(LOAD_DTYPE, copy=True)
        if self.fill_value is not None:
            data[data == self.fill_value] = MISSING_VALUE
        if self.scale is not None:
            data *= self.scale
        if self.offset is not None:
            data += self.offset
        return data

    @abstractmethod
    def _open(self) -> Any:
        """Open the file and return an object exposing ``shape``."""

    @abstractmethod
    def _read(self, indices: tuple[NDArray[np.intp], ...]) -> NDArray:
        """Read sorted, unique indices along each stored axis."""


class NumpySource(DataSource):
    """Array stored in a ``.npy`` file, read through a memory map."""

    kind = SourceKind.NUMPY

    def _open(self) -> np.memmap:
        if self.variable is not None:
            msg = "numpy sources hold a single array and do not take a variable name"
            raise SourceUnreadableError(self.identity, msg)
        return np.load(self.path, mmap_mode="r", allow_pickle=False)

    def _read(self, indices: tuple[NDArray[np.intp], ...]) -> NDArray:
        return np.asarray(self._handle[np.ix_(*indices)])


class ZarrSource(DataSource):
    """Array in a Zarr store, either the store root or a named array in a group."""

    kind = SourceKind.ZARR

    def _open(self) -> Any:
        import zarr

        node = zarr.open(str(self.path), mode="r")
        if self.variable is not None:
            node = node[self.variable]
        if not isinstance(node, zarr.Array):
            msg = "the store holds a group, so a variable name is required"
            raise SourceUnreadableError(self.identity, msg)
        return node

    def _read(self, indices: tuple[NDArray[np.intp], ...]) -> NDArray:
        return self._handle.get_orthogonal_selection(indices)


class XarraySource(DataSource):
    """Variable in any file that ``xarray.open_dataset`` can open (netCDF, Zarr, ...)."""

    kind = SourceKind.XARRAY

    def _open(self) -> Any:
        import xarray as xr

        if self.variable is None:
            msg = "xarray sources need the name of the variable to read"
            raise SourceUnreadableError(self.identity, msg)

        engine = "zarr" if self.path.suffix == ".zarr" else None
        dataset = xr.open_dataset(self.path, engine=engine, mask_and_scale=False)
        return dataset[self.variable]

    def _read(self, indices: tuple[NDArray[np.intp], ...]) -> NDArray:
        selection = dict(zip(self._handle.dims, indices, strict=True))
        return self._handle.isel(selection).values

    def close(self) -> None:
        """Release the underlying dataset."""
        if self._handle is not None:
            self._handle.close()
        super().close()


SOURCE_TYPES: dict[SourceKind, type[DataSource]] = {
    SourceKind.NUMPY: NumpySource,
    SourceKind.ZARR: ZarrSource,
    SourceKind.XARRAY: XarraySource,
}


def infer_kind(path: str | Path) -> SourceKind:
    """Guess the source kind from the file suffix."""
    suffix = Path(path).suffix.lower()
    if suffix not in SUFFIX_TO_KIND:
        msg = f"Cannot infer the data source type of '{path}'. Specify one of {[k.value for k in SourceKind]}"
        raise DesignValidationError(msg)
    return SUFFIX_TO_KIND[suffix]


def open_source(  # noqa: PLR0913
    path: str | Path,
    dims: Sequence[str],
    kind: SourceKind | str | None = None,
    variable: str | None = None,
    fill_value: float | None = None,
    scale: float | None = None,
    offset: float | None = None,
) -> DataSource:
    """Create the data source handle for a file.

    The handle is lazy: nothing is read from disk until it is opened or read.
    """
    kind = infer_kind(path) if kind is None else SourceKind(kind)
    source_type = SOURCE_TYPES[kind]
    return source_type(
        path,
        dims,
        variable=variable,
        fill_value=fill_value,
        scale=scale,
        offset=offset,
    )

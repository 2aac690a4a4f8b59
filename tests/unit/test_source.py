"""Tests for data sources."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest
import xarray as xr
import zarr

from stategrid.constants import SourceKind
from stategrid.exceptions import DesignValidationError
from stategrid.exceptions import SourceUnreadableError
from stategrid.grid.source import NumpySource
from stategrid.grid.source import XarraySource
from stategrid.grid.source import ZarrSource
from stategrid.grid.source import infer_kind
from stategrid.grid.source import open_source

if TYPE_CHECKING:
    from pathlib import Path

    from numpy.typing import NDArray


@pytest.fixture
def values() -> NDArray:
    """A small 3D array."""
    return np.arange(24, dtype=np.float32).reshape(2, 3, 4)


@pytest.fixture
def npy_path(tmp_path: Path, values: NDArray) -> Path:
    """The array saved as a numpy file."""
    path = tmp_path / "values.npy"
    np.save(path, values)
    return path


class TestNumpySource:
    """Reading orthogonal blocks from numpy files."""

    def test_lazy_open(self, npy_path: Path) -> None:
        """Nothing is opened until the shape or data is needed."""
        source = NumpySource(npy_path, ("a", "b", "c"))
        assert not source.is_open
        assert source.shape == (2, 3, 4)
        assert source.is_open

    def test_read_order_and_repeats(self, npy_path: Path, values: NDArray) -> None:
        """Requested order and repeated indices are honored."""
        source = NumpySource(npy_path, ("a", "b", "c"))
        indices = [np.array([1, 0]), np.array([2, 2, 0]), np.array([3])]
        block = source.read(indices)
        assert block.dtype == np.float64
        np.testing.assert_array_equal(block, values[np.ix_(*indices)])

    def test_fill_scale_offset(self, tmp_path: Path) -> None:
        """Fill values become NaN, then scale and offset apply."""
        path = tmp_path / "filled.npy"
        np.save(path, np.array([[1.0, -999.0, 3.0]]))
        source = NumpySource(path, ("a", "b"), fill_value=-999.0, scale=2.0, offset=1.0)
        block = source.read([np.array([0]), np.array([0, 1, 2])])
        np.testing.assert_array_equal(block, [[3.0, np.nan, 7.0]])

    def test_trailing_singletons(self, tmp_path: Path) -> None:
        """Stored arrays may lack or carry extra trailing singleton axes."""
        short = tmp_path / "short.npy"
        np.save(short, np.arange(3.0))
        source = NumpySource(short, ("a", "b"))
        assert source.shape == (3, 1)
        np.testing.assert_array_equal(source.read([np.array([2]), np.array([0])]), [[2.0]])

        long = tmp_path / "long.npy"
        np.save(long, np.arange(3.0).reshape(3, 1, 1))
        source = NumpySource(long, ("a",))
        assert source.shape == (3,)
        np.testing.assert_array_equal(source.read([np.array([1, 0])]), [1.0, 0.0])

    def test_extra_axes(self, npy_path: Path) -> None:
        """Non-singleton axes beyond the declared dimensions can't be read."""
        source = NumpySource(npy_path, ("a", "b"))
        with pytest.raises(SourceUnreadableError, match="more non-singleton axes"):
            source.open()

    def test_out_of_extent(self, npy_path: Path) -> None:
        """Indices outside the source raise with the source identity and range."""
        source = NumpySource(npy_path, ("a", "b", "c"))
        with pytest.raises(SourceUnreadableError) as exc_info:
            source.read([np.array([0]), np.array([0]), np.array([4])])
        assert exc_info.value.source == str(npy_path)
        assert exc_info.value.indices is not None

    def test_missing_file(self, tmp_path: Path) -> None:
        """Missing files are unreadable sources."""
        source = NumpySource(tmp_path / "missing.npy", ("a",))
        with pytest.raises(SourceUnreadableError, match="missing.npy"):
            source.read([np.array([0])])


class TestZarrSource:
    """Reading from Zarr arrays."""

    def test_read(self, tmp_path: Path, values: NDArray) -> None:
        """Orthogonal selection from a Zarr array."""
        path = tmp_path / "values.zarr"
        zarr.create_array(store=str(path), data=values)
        source = ZarrSource(path, ("a", "b", "c"))
        indices = [np.array([1]), np.array([0, 2]), np.array([3, 1])]
        np.testing.assert_array_equal(source.read(indices), values[np.ix_(*indices)])

    def test_group_needs_variable(self, tmp_path: Path, values: NDArray) -> None:
        """A group can only be read through a named array."""
        path = tmp_path / "group.zarr"
        group = zarr.open_group(str(path), mode="w")
        group.create_array("temperature", data=values)

        with pytest.raises(SourceUnreadableError, match="variable name is required"):
            ZarrSource(path, ("a", "b", "c")).open()
        source = ZarrSource(path, ("a", "b", "c"), variable="temperature")
        assert source.shape == values.shape


class TestXarraySource:
    """Reading variables through xarray."""

    def test_read(self, tmp_path: Path, values: NDArray) -> None:
        """Variables are read by name with positional selection."""
        path = tmp_path / "dataset.zarr"
        dataset = xr.Dataset({"temperature": (("a", "b", "c"), values)})
        dataset.to_zarr(path, mode="w")

        source = XarraySource(path, ("a", "b", "c"), variable="temperature")
        indices = [np.array([0, 1]), np.array([1]), np.array([0, 3])]
        np.testing.assert_array_equal(source.read(indices), values[np.ix_(*indices)])
        source.close()
        assert not source.is_open

    def test_needs_variable(self, tmp_path: Path) -> None:
        """xarray sources must name their variable."""
        with pytest.raises(SourceUnreadableError, match="need the name"):
            XarraySource(tmp_path / "dataset.zarr", ("a",)).open()


def test_infer_kind() -> None:
    """Kinds are inferred from suffixes."""
    assert infer_kind("a.npy") == SourceKind.NUMPY
    assert infer_kind("a.zarr") == SourceKind.ZARR
    assert infer_kind("a.nc") == SourceKind.XARRAY
    with pytest.raises(DesignValidationError, match="Cannot infer"):
        infer_kind("a.csv")


def test_open_source_dispatch(npy_path: Path) -> None:
    """An explicit kind overrides the suffix."""
    assert isinstance(open_source(npy_path, ("a", "b", "c")), NumpySource)
    assert isinstance(open_source(npy_path, ("a",), kind="xarray", variable="v"), XarraySource)

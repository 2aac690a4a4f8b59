"""Extra configurations for unit tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest

from stategrid.grid.gridfile import GridFile

if TYPE_CHECKING:
    from pathlib import Path

    from numpy.typing import NDArray

LAT = np.linspace(-45.0, 45.0, 10)
LON = np.arange(0.0, 360.0, 18.0)
TIME = np.arange("2000-01", "2010-01", dtype="datetime64[M]")
DIMS = ("lat", "lon", "time")


def encode(lat: NDArray, lon: NDArray, time: NDArray) -> NDArray:
    """Value that identifies its grid indices: lat * 100000 + lon * 1000 + time."""
    return lat * 100_000.0 + lon * 1_000.0 + time


def make_grid(path: Path, data: NDArray, time: NDArray, name: str = "data") -> GridFile:
    """Grid over (lat, lon, time) backed by a single numpy file."""
    grid = GridFile.new(path / f"{name}.grid", {"lat": LAT, "lon": LON, "time": time})
    source = path / f"{name}.npy"
    np.save(source, data)
    grid.add_source(source, DIMS, {"lat": LAT, "lon": LON, "time": time})
    return grid


@pytest.fixture
def climate_data() -> NDArray:
    """Values of a (lat, lon, time) = (10, 20, 120) grid."""
    return np.fromfunction(encode, (LAT.size, LON.size, TIME.size))


@pytest.fixture
def climate_grid(tmp_path: Path, climate_data: NDArray) -> GridFile:
    """Monthly grid over ten years, split into two sources at month 60.

    The second source is stored in (time, lat, lon) order.
    """
    grid = GridFile.new(tmp_path / "climate.grid", {"lat": LAT, "lon": LON, "time": TIME})

    first = tmp_path / "first.npy"
    np.save(first, climate_data[:, :, :60])
    grid.add_source(first, DIMS, {"lat": LAT, "lon": LON, "time": TIME[:60]})

    second = tmp_path / "second.npy"
    np.save(second, np.transpose(climate_data[:, :, 60:], (2, 0, 1)))
    grid.add_source(second, ("time", "lat", "lon"), {"time": TIME[60:], "lat": LAT, "lon": LON})
    return grid


@pytest.fixture
def half_grid(tmp_path: Path, climate_data: NDArray) -> GridFile:
    """Same grid as `climate_grid` with only the first source cataloged."""
    grid = GridFile.new(tmp_path / "half.grid", {"lat": LAT, "lon": LON, "time": TIME})
    first = tmp_path / "half.npy"
    np.save(first, climate_data[:, :, :60])
    grid.add_source(first, DIMS, {"lat": LAT, "lon": LON, "time": TIME[:60]})
    return grid


@pytest.fixture
def precip_grid(tmp_path: Path, climate_data: NDArray) -> GridFile:
    """Grid starting one year later than `climate_grid`, with values negated."""
    return make_grid(tmp_path, -climate_data[:, :, 12:], TIME[12:], name="precip")

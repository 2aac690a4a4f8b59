"""Constant values used across stategrid."""

from enum import IntEnum
from enum import StrEnum

import numpy as np

# Marker written wherever no data source supplies a value.
MISSING_VALUE = np.nan

# All loads assemble into this dtype so the missing marker is representable.
LOAD_DTYPE = np.float64

GRID_SUFFIX = ".grid"
ENSEMBLE_SUFFIX = ".ens"


class SourceKind(StrEnum):
    """Supported data source formats."""

    NUMPY = "numpy"
    ZARR = "zarr"
    XARRAY = "xarray"


class DimensionRole(StrEnum):
    """Role a variable dimension plays in a state vector."""

    STATE = "state"
    ENSEMBLE = "ensemble"


SUFFIX_TO_KIND = {
    ".npy": SourceKind.NUMPY,
    ".zarr": SourceKind.ZARR,
    ".nc": SourceKind.XARRAY,
    ".nc4": SourceKind.XARRAY,
    ".netcdf": SourceKind.XARRAY,
    ".h5": SourceKind.XARRAY,
}


class ZarrFormat(IntEnum):
    """Zarr version enum."""

    V2 = 2
    V3 = 3

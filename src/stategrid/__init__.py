"""stategrid library."""

from __future__ import annotations

from importlib import metadata

from stategrid.api.io import open_ensemble
from stategrid.api.io import open_grid
from stategrid.api.io import to_ensemble
from stategrid.grid.gridfile import GridFile
from stategrid.state.ensemble import Ensemble
from stategrid.state.vector import StateVector

try:
    __version__ = metadata.version("stategrid")
except metadata.PackageNotFoundError:
    __version__ = "unknown"


__all__ = [
    "__version__",
    "Ensemble",
    "GridFile",
    "StateVector",
    "open_ensemble",
    "open_grid",
    "to_ensemble",
]

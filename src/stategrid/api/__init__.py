"""Public input/output API."""

from stategrid.api.io import open_ensemble
from stategrid.api.io import open_grid
from stategrid.api.io import to_ensemble

__all__ = ["open_ensemble", "open_grid", "to_ensemble"]

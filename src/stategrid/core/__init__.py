"""stategrid core functionalities."""

from stategrid.core.dimension import Dimension
from stategrid.core.indexing import normalize_indices

__all__ = ["Dimension", "normalize_indices"]

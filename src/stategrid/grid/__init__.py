"""Virtual arrays over many data source files."""

from stategrid.grid.cache import SourceCache
from stategrid.grid.gridfile import GridFile
from stategrid.grid.source import DataSource
from stategrid.grid.source import NumpySource
from stategrid.grid.source import XarraySource
from stategrid.grid.source import ZarrSource
from stategrid.grid.source import open_source

__all__ = [
    "DataSource",
    "GridFile",
    "NumpySource",
    "SourceCache",
    "XarraySource",
    "ZarrSource",
    "open_source",
]

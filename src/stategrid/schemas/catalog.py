"""Grid catalog schema.

The catalog is the persisted "grid" artifact: the merged metadata of every grid
dimension, the data sources backing the grid and the index range each source covers.
"""

from __future__ import annotations

from typing import Any

from pydantic import Field
from pydantic import model_validator

from stategrid.constants import SourceKind
from stategrid.schemas.core import CamelCaseStrictModel


class DimensionRecord(CamelCaseStrictModel):
    """Metadata of one grid dimension."""

    name: str = Field(..., description="Unique identifier for the dimension.")
    defined: bool = Field(default=True, description="False for undefined singleton dimensions.")
    dtype: str | None = Field(default=None, description="Numpy dtype string of the metadata.")
    values: list[Any] | None = Field(default=None, description="Metadata, one row per index.")

    @model_validator(mode="after")
    def check_defined(self) -> DimensionRecord:
        """Defined dimensions carry metadata, undefined ones don't."""
        if self.defined and (self.values is None or self.dtype is None):
            msg = f"Defined dimension '{self.name}' must have metadata values and a dtype"
            raise ValueError(msg)
        if not self.defined and self.values is not None:
            msg = f"Undefined dimension '{self.name}' cannot have metadata"
            raise ValueError(msg)
        return self


class SourceRecord(CamelCaseStrictModel):
    """A cataloged data source."""

    path: str = Field(..., description="File location, relative to the grid file when not absolute.")
    kind: SourceKind = Field(..., description="Data source format.")
    variable: str | None = Field(default=None, description="Array name inside the file.")
    dims: list[str] = Field(..., description="Grid dimensions in the file's native order.")
    shape: list[int] = Field(..., description="Size of each native dimension.")
    fill_value: float | None = Field(default=None)
    scale: float | None = Field(default=None)
    offset: float | None = Field(default=None)


class GridCatalog(CamelCaseStrictModel):
    """The persisted grid catalog."""

    version: str = Field(default="1.0")
    dimensions: list[DimensionRecord] = Field(..., min_length=1)
    sources: list[SourceRecord] = Field(default_factory=list)
    dim_limit: list[list[list[int]]] = Field(
        default_factory=list,
        description="Inclusive [first, last] grid index covered by each source along each dimension.",
    )
    attributes: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_dim_limit(self) -> GridCatalog:
        """One (dims x 2) limit block per source."""
        if len(self.dim_limit) != len(self.sources):
            msg = f"dimLimit has {len(self.dim_limit)} entries but there are {len(self.sources)} sources"
            raise ValueError(msg)
        n_dims = len(self.dimensions)
        for limit in self.dim_limit:
            if len(limit) != n_dims or any(len(pair) != 2 for pair in limit):  # noqa: PLR2004
                msg = f"Each dimLimit entry must have shape ({n_dims}, 2)"
                raise ValueError(msg)
        return self

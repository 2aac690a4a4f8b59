"""State vector design schema.

The frozen design is saved with every built ensemble so the ensemble can be traced back
to the exact grids, indices and coupling that produced it.
"""

from __future__ import annotations

from typing import Any

from pydantic import Field

from stategrid.constants import DimensionRole
from stategrid.schemas.core import CamelCaseStrictModel


class MeanDesign(CamelCaseStrictModel):
    """Mean over a dimension."""

    offsets: list[int] | None = Field(default=None, description="Offsets from the reference index.")
    weights: list[float] | None = Field(default=None)
    include_nan: bool = Field(default=True)


class SequenceDesign(CamelCaseStrictModel):
    """Sequence along an ensemble dimension."""

    offsets: list[int] = Field(..., min_length=1)
    dtype: str = Field(..., description="Numpy dtype string of the sequence metadata.")
    metadata: list[Any] = Field(..., description="One metadata row per offset.")


class DimensionDesign(CamelCaseStrictModel):
    """Design of one variable dimension."""

    name: str
    role: DimensionRole
    indices: list[int] = Field(..., description="State indices or reference indices.")
    sequence: SequenceDesign | None = Field(default=None)
    mean: MeanDesign | None = Field(default=None)


class VariableDesign(CamelCaseStrictModel):
    """Design of one state vector variable."""

    name: str
    grid: str = Field(..., description="Location of the variable's grid catalog.")
    overlap: bool = Field(default=False)
    dimensions: list[DimensionDesign]


class StateVectorDesign(CamelCaseStrictModel):
    """Complete state vector design."""

    name: str = Field(default="")
    variables: list[VariableDesign] = Field(default_factory=list)
    coupled: list[list[str]] = Field(default_factory=list, description="Sets of coupled variables.")
    finalized: bool = Field(default=False)
    sequential: bool = Field(default=False, description="Whether members are drawn in index order.")
    auto_couple: list[str] = Field(default_factory=list, description="Variables coupled automatically on add.")
    members: dict[str, list[list[int]]] = Field(
        default_factory=dict,
        description="Drawn reference indices per variable, one row per member.",
    )

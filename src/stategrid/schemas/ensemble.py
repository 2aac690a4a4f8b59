"""Ensemble metadata schema, saved as an attribute of the ensemble store."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from stategrid.schemas.core import CamelCaseStrictModel


class MetadataArray(CamelCaseStrictModel):
    """A metadata array with its numpy dtype."""

    dtype: str
    values: list[Any]


class VariableMetadataRecord(CamelCaseStrictModel):
    """Row and member metadata of a variable."""

    name: str
    row_dims: list[str] = Field(default_factory=list)
    row_sizes: list[int] = Field(default_factory=list)
    rows: dict[str, MetadataArray] = Field(default_factory=dict)
    members: dict[str, MetadataArray] = Field(default_factory=dict)


class EnsembleMetadataRecord(CamelCaseStrictModel):
    """Metadata of every variable in an ensemble."""

    variables: list[VariableMetadataRecord] = Field(default_factory=list)

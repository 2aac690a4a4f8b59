"""Pydantic models for the persisted stategrid artifacts."""

from stategrid.schemas.catalog import DimensionRecord
from stategrid.schemas.catalog import GridCatalog
from stategrid.schemas.catalog import SourceRecord
from stategrid.schemas.design import StateVectorDesign
from stategrid.schemas.design import VariableDesign
from stategrid.schemas.ensemble import EnsembleMetadataRecord

__all__ = [
    "DimensionRecord",
    "EnsembleMetadataRecord",
    "GridCatalog",
    "SourceRecord",
    "StateVectorDesign",
    "VariableDesign",
]

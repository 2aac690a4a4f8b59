"""State vector design and ensemble construction."""

from stategrid.state.coupling import CouplingSets
from stategrid.state.ensemble import Ensemble
from stategrid.state.metadata import EnsembleMetadata
from stategrid.state.metadata import VariableMetadata
from stategrid.state.variable import EnsembleDimension
from stategrid.state.variable import MeanSpec
from stategrid.state.variable import SequenceSpec
from stategrid.state.variable import StateDimension
from stategrid.state.variable import StateVectorVariable
from stategrid.state.vector import StateVector

__all__ = [
    "CouplingSets",
    "Ensemble",
    "EnsembleDimension",
    "EnsembleMetadata",
    "MeanSpec",
    "SequenceSpec",
    "StateDimension",
    "StateVector",
    "StateVectorVariable",
    "VariableMetadata",
]

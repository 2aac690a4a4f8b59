"""This module implements the core components of the stategrid schemas."""

from __future__ import annotations

from typing import Any

import numpy as np
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic.alias_generators import to_camel


class CamelCaseStrictModel(BaseModel):
    """A model with forbidden extras and camel case aliases."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        validate_by_name=True,
        serialize_by_alias=True,
        validate_assignment=True,
        extra="forbid",
    )


def array_to_list(values: np.ndarray) -> list[Any]:
    """JSON friendly form of a metadata array. Datetimes are kept as ISO strings."""
    values = np.asarray(values)
    if values.dtype.kind in "mM":
        return values.astype(str).tolist()
    return values.tolist()


def list_to_array(values: list[Any], dtype: str) -> np.ndarray:
    """Inverse of :func:`array_to_list`."""
    return np.asarray(values, dtype=np.dtype(dtype))

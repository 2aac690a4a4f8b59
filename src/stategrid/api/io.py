"""Read and write grid catalogs and ensemble stores."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
import xarray as xr
import zarr
from pydantic import ValidationError

from stategrid.constants import ZarrFormat
from stategrid.core.zarr_io import zarr_warnings_suppress_unstable_dtypes_v3
from stategrid.exceptions import EnsembleAlreadyExistsError
from stategrid.exceptions import EnsembleNotFoundError
from stategrid.exceptions import InvalidEnsembleError
from stategrid.grid.gridfile import GridFile
from stategrid.schemas.design import StateVectorDesign
from stategrid.schemas.ensemble import EnsembleMetadataRecord
from stategrid.state.ensemble import Ensemble
from stategrid.state.metadata import EnsembleMetadata

if TYPE_CHECKING:
    from numpy.typing import ArrayLike

logger = logging.getLogger(__name__)

STATE_DIM = "state"
MEMBER_DIM = "member"


def open_grid(path: str | Path) -> GridFile:
    """Open a grid catalog."""
    return GridFile.open(path)


def to_ensemble(ensemble: Ensemble, output_path: str | Path, overwrite: bool = False) -> None:
    """Write an ensemble to a Zarr store.

    The store holds the ensemble values and the per-row missing-data flags as arrays,
    and the frozen state vector design and the ensemble metadata as JSON attributes.

    Args:
        ensemble: Ensemble to write.
        output_path: Location of the store.
        overwrite: Whether to replace an existing store.
    """
    output_path = Path(output_path)
    if output_path.exists() and not overwrite:
        msg = f"Ensemble store '{output_path}' already exists. Use overwrite=True to replace it."
        raise EnsembleAlreadyExistsError(msg)

    dataset = xr.Dataset(
        data_vars={
            "data": ((STATE_DIM, MEMBER_DIM), ensemble.data),
            "has_nan": ((STATE_DIM,), ensemble.has_nan),
        },
        attrs={
            "design": ensemble.design.model_dump_json(),
            "metadata": ensemble.metadata.to_record().model_dump_json(),
        },
    )

    zarr_format = zarr.config.get("default_zarr_format")
    with zarr_warnings_suppress_unstable_dtypes_v3():
        dataset.to_zarr(output_path.as_posix(), mode="w", consolidated=zarr_format == ZarrFormat.V2)
    logger.info("Wrote %s to %s", ensemble, output_path)


def open_ensemble(
    input_path: str | Path,
    members: ArrayLike | None = None,
    variables: list[str] | None = None,
) -> Ensemble:
    """Open an ensemble store.

    Args:
        input_path: Location of the store.
        members: Members to load. Every member is loaded when omitted.
        variables: Variables to load. Every variable is loaded when omitted.

    Returns:
        The ensemble, restricted to the requested members and variables.
    """
    input_path = Path(input_path)
    if not input_path.exists():
        msg = f"Ensemble store '{input_path}' does not exist"
        raise EnsembleNotFoundError(msg)

    zarr_format = zarr.config.get("default_zarr_format")
    with xr.open_zarr(input_path.as_posix(), chunks=None, consolidated=zarr_format == ZarrFormat.V2) as dataset:
        try:
            design = StateVectorDesign.model_validate_json(dataset.attrs["design"])
            record = EnsembleMetadataRecord.model_validate_json(dataset.attrs["metadata"])
            data = np.asarray(dataset["data"].values)
            has_nan = np.asarray(dataset["has_nan"].values)
        except (KeyError, ValidationError) as e:
            msg = f"'{input_path}' is not a valid ensemble store"
            raise InvalidEnsembleError(msg) from e

    ensemble = Ensemble(data=data, has_nan=has_nan, metadata=EnsembleMetadata.from_record(record), design=design)
    if members is None and variables is None:
        return ensemble
    return ensemble.select(members=members, variables=variables)

"""Tests for built ensembles, their metadata and their stores."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest
import zarr

from stategrid.api.io import open_ensemble
from stategrid.exceptions import DesignValidationError
from stategrid.exceptions import EnsembleAlreadyExistsError
from stategrid.exceptions import EnsembleNotFoundError
from stategrid.exceptions import InvalidEnsembleError
from stategrid.exceptions import ShapeError
from stategrid.state.ensemble import Ensemble
from stategrid.state.vector import StateVector
from tests.unit.conftest import LAT
from tests.unit.conftest import LON
from tests.unit.conftest import TIME

if TYPE_CHECKING:
    from pathlib import Path

    from numpy.typing import NDArray

    from stategrid.grid.gridfile import GridFile


@pytest.fixture
def vector(climate_grid: GridFile, precip_grid: GridFile) -> StateVector:
    """Two coupled variables: a (lat, lon) field and a point with a seasonal sequence."""
    sv = StateVector("climate")
    sv.add("T", climate_grid)
    sv.add("P", precip_grid)
    sv.design("T", ["lat", "lon", "time"], ["state", "state", "ensemble"], [[0, 1, 2], [4, 5], np.arange(12, 60)])
    sv.design("P", ["lat", "lon"], "state", [[0], [0]])
    sv.sequence("P", "time", [0, 1, 2], ["first", "second", "third"])
    return sv


@pytest.fixture
def ensemble(vector: StateVector) -> Ensemble:
    """Built ensemble with 8 members."""
    return vector.build(8, seed=11)


class TestEnsemble:
    """Accessing and subsetting ensembles."""

    def test_shape(self, ensemble: Ensemble) -> None:
        """Rows stack the variables in order."""
        assert ensemble.data.shape == (3 * 2 + 3, 8)
        assert ensemble.metadata.lengths == {"T": 6, "P": 3}
        assert ensemble.metadata.rows("P") == slice(6, 9)
        assert ensemble.design.finalized
        assert ensemble.design.coupled == [["T", "P"]]

    def test_row_metadata(self, ensemble: Ensemble) -> None:
        """Row metadata follows the state dimensions and sequences."""
        temperature = ensemble.metadata.variable("T")
        assert temperature.row_dims == ("lat", "lon")
        np.testing.assert_array_equal(temperature.rows["lat"], LAT[:3])
        np.testing.assert_array_equal(temperature.rows["lon"], LON[[4, 5]])
        precip = ensemble.metadata.variable("P")
        assert precip.row_dims == ("lat", "lon", "time")
        np.testing.assert_array_equal(precip.rows["time"], ["first", "second", "third"])

    def test_regrid(self, ensemble: Ensemble, climate_data: NDArray) -> None:
        """Rows reshape back into their dimensions."""
        values, meta = ensemble.regrid("T")
        assert values.shape == (3, 2, 8)
        assert list(meta) == ["lat", "lon"]
        months = ensemble.metadata.variable("T").members["time"]
        month_index = np.searchsorted(TIME, months)
        np.testing.assert_array_equal(values[:, :, 0], climate_data[:3][:, [4, 5], month_index[0]])

        values, meta = ensemble.regrid("T", order=["lon"])
        assert values.shape == (2, 3, 8)

    def test_regrid_singletons(self, ensemble: Ensemble) -> None:
        """Singleton row dimensions drop unless kept."""
        values, meta = ensemble.regrid("P")
        assert values.shape == (3, 8)
        assert list(meta) == ["time"]
        values, meta = ensemble.regrid("P", keep_singletons=True)
        assert values.shape == (1, 1, 3, 8)

    def test_regrid_errors(self, ensemble: Ensemble) -> None:
        """Unknown variables, dimensions and lengths are refused."""
        with pytest.raises(DesignValidationError):
            ensemble.regrid("Q")
        with pytest.raises(DesignValidationError):
            ensemble.regrid("T", order=["time"])
        with pytest.raises(ShapeError):
            ensemble.metadata.regrid("T", np.zeros(5))

    def test_select(self, ensemble: Ensemble) -> None:
        """Members and variables can be selected."""
        subset = ensemble.members([0, 3])
        assert subset.data.shape == (9, 2)
        np.testing.assert_array_equal(subset.data, ensemble.data[:, [0, 3]])
        assert subset.metadata.n_members == 2

        precip = ensemble.variables("P")
        assert precip.metadata.variables == ("P",)
        np.testing.assert_array_equal(precip.data, ensemble.variable("P"))

    def test_shape_checks(self, ensemble: Ensemble) -> None:
        """Data must match the metadata."""
        with pytest.raises(ShapeError):
            Ensemble(ensemble.data[:4], ensemble.has_nan[:4], ensemble.metadata, ensemble.design)


class TestEnsembleStore:
    """Writing and reading ensemble stores."""

    def test_round_trip(self, vector: StateVector, tmp_path: Path) -> None:
        """Stores keep data, flags, metadata and design."""
        path = tmp_path / "climate.ens"
        ensemble = vector.build(8, seed=2, path=path)
        reopened = open_ensemble(path)

        np.testing.assert_array_equal(reopened.data, ensemble.data)
        np.testing.assert_array_equal(reopened.has_nan, ensemble.has_nan)
        assert reopened.design == ensemble.design
        assert reopened.metadata.variables == ("T", "P")
        np.testing.assert_array_equal(
            reopened.metadata.variable("T").members["time"],
            ensemble.metadata.variable("T").members["time"],
        )
        np.testing.assert_array_equal(reopened.metadata.variable("P").rows["time"], ["first", "second", "third"])

    def test_partial_open(self, ensemble: Ensemble, tmp_path: Path) -> None:
        """Stores can be opened for some members or variables."""
        path = tmp_path / "partial.ens"
        ensemble.save(path)
        reopened = open_ensemble(path, members=[1, 2], variables=["T"])
        np.testing.assert_array_equal(reopened.data, ensemble.variable("T")[:, [1, 2]])

    def test_overwrite(self, ensemble: Ensemble, tmp_path: Path) -> None:
        """Stores are only replaced on request."""
        path = tmp_path / "twice.ens"
        ensemble.save(path)
        with pytest.raises(EnsembleAlreadyExistsError):
            ensemble.save(path)
        ensemble.members([0]).save(path, overwrite=True)
        assert open_ensemble(path).n_members == 1

    def test_missing(self, tmp_path: Path) -> None:
        """Missing stores raise."""
        with pytest.raises(EnsembleNotFoundError):
            open_ensemble(tmp_path / "missing.ens")

    def test_invalid(self, ensemble: Ensemble, tmp_path: Path) -> None:
        """Stores without a readable design raise."""
        path = tmp_path / "broken.ens"
        ensemble.save(path)
        group = zarr.open_group(path, mode="r+")
        group.attrs["design"] = "not json"
        with pytest.raises(InvalidEnsembleError):
            open_ensemble(path)

    def test_resume_from_design(self, vector: StateVector, tmp_path: Path) -> None:
        """A saved design continues drawing without repeating members."""
        path = tmp_path / "resume.ens"
        vector.allow_overlap("P")
        vector.build(40, path=path, seed=5)
        design = open_ensemble(path).design

        resumed = StateVector.from_design(design, seed=9)
        assert resumed.is_finalized
        assert resumed.n_members == 40
        extra = resumed.add_members(8)
        old = set(open_ensemble(path).metadata.variable("T").members["time"].tolist())
        new = set(extra.metadata.variable("T").members["time"].tolist())
        assert not old & new
        assert len(new) == 8

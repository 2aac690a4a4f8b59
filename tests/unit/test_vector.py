"""Tests for state vector design, coupling and ensemble builds."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np
import pytest

from stategrid.constants import DimensionRole
from stategrid.exceptions import DesignValidationError
from stategrid.exceptions import InsufficientMembersError
from stategrid.exceptions import StructuralConflictError
from stategrid.grid.gridfile import GridFile
from stategrid.state.vector import StateVector
from tests.unit.conftest import LAT
from tests.unit.conftest import LON
from tests.unit.conftest import TIME

if TYPE_CHECKING:
    from pathlib import Path

    from numpy.typing import NDArray


def single_point(sv: StateVector, name: str, references: NDArray | None = None) -> None:
    """Design a variable as one grid point with time as the ensemble dimension."""
    sv.design(name, ["lat", "lon"], "state", [[0], [0]])
    sv.design(name, "time", "ensemble", references)


@pytest.fixture
def sv(climate_grid: GridFile) -> StateVector:
    """State vector with one temperature variable over ten reference months."""
    vector = StateVector("test")
    vector.add("T", climate_grid)
    single_point(vector, "T", np.arange(10))
    return vector


class TestDesign:
    """Adding, renaming and designing variables."""

    def test_add_by_path(self, climate_grid: GridFile) -> None:
        """Grids can be given by catalog location."""
        vector = StateVector()
        vector.add("T", climate_grid.path)
        assert vector.variable_names == ("T",)
        assert vector.length == 10 * 20 * 120

    def test_add_invalid(self, sv: StateVector, climate_grid: GridFile) -> None:
        """Variable names must be new identifiers."""
        with pytest.raises(DesignValidationError, match="already a variable"):
            sv.add("T", climate_grid)
        with pytest.raises(DesignValidationError, match="identifiers"):
            sv.add("not valid", climate_grid)

    def test_rename_copy_remove(self, sv: StateVector) -> None:
        """Renamed and copied variables keep their design."""
        sv.copy("T", "T2")
        sv.rename(["T", "T2"], ["T2", "T"])
        assert sv.variable_names == ("T2", "T")
        assert sv.variable("T").dimensions(DimensionRole.ENSEMBLE) == ("time",)
        sv.remove("T2")
        assert sv.variable_names == ("T",)
        assert sv.length == 1

    def test_design_is_atomic(self, sv: StateVector, climate_grid: GridFile) -> None:
        """A failing design call leaves every variable unchanged."""
        sv.add("U", climate_grid, auto_couple=False)
        before = sv.length
        with pytest.raises(DesignValidationError):
            sv.design(["U", "T"], "lat", "state", [0, 99])
        assert sv.length == before
        np.testing.assert_array_equal(sv.variable("T").spec("lat").indices, [0])

    def test_info(self, sv: StateVector) -> None:
        """Info lists every variable."""
        text = sv.info()
        assert "State vector 'test': 1 variables, 1 rows" in text
        assert "ensemble: time" in text

    def test_variable_is_a_copy(self, sv: StateVector) -> None:
        """Returned variables can't change the state vector."""
        variable = sv.variable("T")
        variable.set_role("time", "state")
        assert sv.variable("T").role("time") == DimensionRole.ENSEMBLE


class TestCoupling:
    """Coupled variables share their ensemble design."""

    def test_auto_couple(
        self,
        climate_grid: GridFile,
        precip_grid: GridFile,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """New auto-coupled variables follow the first auto-coupled variable."""
        vector = StateVector()
        vector.add("T", climate_grid)
        vector.design("T", "time", "ensemble")
        with caplog.at_level(logging.WARNING):
            vector.add("P", precip_grid)
        assert vector.coupled == [["T", "P"]]
        assert "reset 'time' to an ensemble dimension" in caplog.text
        np.testing.assert_array_equal(vector.variable("P").spec("time").reference, np.arange(108))

    def test_auto_couple_without_matches(self, sv: StateVector, precip_grid: GridFile) -> None:
        """Adding fails, leaving the state vector as it was, when no references match."""
        with pytest.raises(DesignValidationError, match="match"):
            sv.add("P", precip_grid)
        assert sv.variable_names == ("T",)
        assert sv.coupled == [["T"]]

    def test_metadata_matching(self, climate_grid: GridFile, precip_grid: GridFile) -> None:
        """Reference indices are matched by metadata, not by position."""
        vector = StateVector()
        vector.add("T", climate_grid)
        vector.add("P", precip_grid)
        vector.design("T", "time", "ensemble", np.arange(12, 24))
        np.testing.assert_array_equal(vector.variable("P").spec("time").reference, np.arange(12))

    def test_no_matching_metadata(self, climate_grid: GridFile, precip_grid: GridFile) -> None:
        """Coupling fails when no reference metadata match."""
        vector = StateVector()
        vector.add("T", climate_grid)
        vector.add("P", precip_grid, auto_couple=False)
        vector.design("T", "time", "ensemble", np.arange(12))
        with pytest.raises(DesignValidationError, match="match"):
            vector.couple(["T", "P"])
        assert vector.coupled == [["T"], ["P"]]

    def test_missing_dimension(self, sv: StateVector, tmp_path: Path) -> None:
        """Coupling a variable without the ensemble dimension is a conflict."""
        grid = GridFile.new(tmp_path / "static.grid", {"lat": LAT, "lon": LON})
        path = tmp_path / "static.npy"
        np.save(path, np.zeros((10, 20)))
        grid.add_source(path, ("lat", "lon"), {"lat": LAT, "lon": LON})

        with pytest.raises(StructuralConflictError):
            sv.add("H", grid)
        assert sv.variable_names == ("T",)
        sv.add("H", grid, auto_couple=False)
        assert sv.coupled == [["T"], ["H"]]

    def test_uncouple_dissolves(self, climate_grid: GridFile) -> None:
        """Uncoupling two members of a set dissolves the whole set."""
        vector = StateVector()
        for name in "ABC":
            vector.add(name, climate_grid, auto_couple=False)
        vector.couple(["A", "B"])
        vector.couple(["B", "C"])
        assert vector.coupled == [["A", "B", "C"]]
        vector.uncouple(["A", "C"])
        assert vector.coupled == [["A"], ["B"], ["C"]]
        assert not vector.coupling_matrix()[0, 1]

    def test_design_propagates_role(self, climate_grid: GridFile, precip_grid: GridFile) -> None:
        """Role changes reach every coupled variable."""
        vector = StateVector()
        vector.add("T", climate_grid)
        vector.add("P", precip_grid)
        vector.design("T", "time", "ensemble", np.arange(12, 30))
        vector.design("P", "time", "state")
        assert vector.variable("T").role("time") == DimensionRole.STATE


class TestBuild:
    """Drawing and loading ensemble members."""

    def test_no_overlap_uses_whole_domain(self, sv: StateVector, climate_data: NDArray) -> None:
        """N members from a domain of N use every element once."""
        ensemble = sv.build(10, seed=1)
        assert ensemble.data.shape == (1, 10)
        months = np.sort(ensemble.metadata.variable("T").members["time"])
        np.testing.assert_array_equal(months, TIME[:10])
        np.testing.assert_array_equal(np.sort(ensemble.data[0]), climate_data[0, 0, :10])

    def test_insufficient_members(self, sv: StateVector) -> None:
        """N + 1 members from a domain of N fail and leave the design open."""
        with pytest.raises(InsufficientMembersError) as exc_info:
            sv.build(11)
        assert exc_info.value.requested == 11
        assert exc_info.value.found == 10
        assert not sv.is_finalized

    def test_sequence_overlap(self, sv: StateVector) -> None:
        """Members of no-overlap variables never share loaded data."""
        sv.sequence("T", "time", [0, 1], ["this", "next"])
        ensemble = sv.build(5, sequential=True)
        np.testing.assert_array_equal(ensemble.metadata.variable("T").members["time"], TIME[[0, 2, 4, 6, 8]])
        assert ensemble.n_rows == 2

    def test_allow_overlap(self, sv: StateVector) -> None:
        """Overlapping members are fine when allowed, but never repeat."""
        sv.sequence("T", "time", [0, 1], ["this", "next"])
        sv.allow_overlap("T")
        ensemble = sv.build(9, sequential=True)
        np.testing.assert_array_equal(ensemble.metadata.variable("T").members["time"], TIME[:9])

    def test_coupled_draws(self, climate_grid: GridFile, precip_grid: GridFile, climate_data: NDArray) -> None:
        """Coupled variables share each member's metadata."""
        vector = StateVector()
        vector.add("T", climate_grid)
        vector.add("P", precip_grid)
        single_point(vector, "T", np.arange(120))
        vector.design("P", ["lat", "lon"], "state", [[0], [0]])

        ensemble = vector.build(30, seed=7)
        t_months = ensemble.metadata.variable("T").members["time"]
        np.testing.assert_array_equal(t_months, ensemble.metadata.variable("P").members["time"])
        assert (t_months >= TIME[12]).all()
        np.testing.assert_array_equal(ensemble.variable("P"), -ensemble.variable("T"))

    def test_uncoupled_draws_differ(self, climate_grid: GridFile) -> None:
        """Uncoupled variables draw independently."""
        vector = StateVector()
        vector.add("A", climate_grid, auto_couple=False)
        vector.add("B", climate_grid, auto_couple=False)
        single_point(vector, "A", np.arange(120))
        single_point(vector, "B", np.arange(120))
        ensemble = vector.build(50, seed=3)
        a = ensemble.metadata.variable("A").members["time"]
        b = ensemble.metadata.variable("B").members["time"]
        assert not np.array_equal(a, b)

    def test_mean_and_nan_flag(self, tmp_path: Path, climate_data: NDArray) -> None:
        """Means are weighted and rows with missing data are flagged."""
        data = climate_data.copy()
        data[0, 0, 5] = np.nan
        grid = GridFile.new(tmp_path / "nan.grid", {"lat": LAT, "lon": LON, "time": TIME})
        np.save(tmp_path / "nan.npy", data)
        grid.add_source(tmp_path / "nan.npy", ("lat", "lon", "time"), {"lat": LAT, "lon": LON, "time": TIME})

        vector = StateVector()
        vector.add("T", grid)
        vector.design("T", ["lat", "lon"], "state", [[0, 1], [0]])
        vector.design("T", "time", "ensemble", [4, 20])
        vector.mean("T", "time", [0, 1], weights=[1, 3], include_nan=False)
        ensemble = vector.build(2, sequential=True)

        np.testing.assert_array_equal(ensemble.has_nan, [True, False])
        np.testing.assert_allclose(ensemble.data[0, 0], data[0, 0, 4])
        assert not np.isnan(ensemble.data).any()
        expected = (data[1, 0, 20] + 3 * data[1, 0, 21]) / 4
        np.testing.assert_allclose(ensemble.data[1, 1], expected)

        vector = StateVector()
        vector.add("T", grid)
        vector.design("T", ["lat", "lon"], "state", [[0, 1], [0]])
        vector.design("T", "time", "ensemble", [5, 20])
        ensemble = vector.build(2, sequential=True)
        np.testing.assert_array_equal(ensemble.has_nan, [True, False])

    def test_nan_flag_from_fill_value(self, tmp_path: Path, climate_data: NDArray) -> None:
        """Fill values averaged away by a mean still flag their row."""
        data = climate_data.copy()
        data[0, 0, 5] = -999
        grid = GridFile.new(tmp_path / "fill.grid", {"lat": LAT, "lon": LON, "time": TIME})
        np.save(tmp_path / "fill.npy", data)
        coverage = {"lat": LAT, "lon": LON, "time": TIME}
        grid.add_source(tmp_path / "fill.npy", ("lat", "lon", "time"), coverage, fill_value=-999)

        vector = StateVector()
        vector.add("T", grid)
        vector.design("T", ["lat", "lon"], "state", [[0, 1], [0]])
        vector.design("T", "time", "ensemble", np.arange(0, 108, 12))
        vector.mean("T", "time", np.arange(12), include_nan=False)
        ensemble = vector.build(9, sequential=True)

        np.testing.assert_array_equal(ensemble.has_nan, [True, False])
        assert not np.isnan(ensemble.data).any()
        np.testing.assert_allclose(ensemble.data[0, 0], np.delete(data[0, 0, :12], 5).mean())
        np.testing.assert_array_equal(ensemble.variables("T").has_nan, [True, False])

    def test_frozen_after_build(self, sv: StateVector, climate_grid: GridFile) -> None:
        """Built state vectors refuse design changes."""
        sv.build(3)
        with pytest.raises(StructuralConflictError):
            sv.design("T", "lat", "state", [1])
        with pytest.raises(StructuralConflictError):
            sv.add("U", climate_grid)
        with pytest.raises(StructuralConflictError):
            sv.couple(["T"])
        with pytest.raises(StructuralConflictError):
            sv.build(3)
        np.testing.assert_array_equal(sv.variable("T").spec("lat").indices, [0])

    def test_add_members(self, sv: StateVector) -> None:
        """More members continue the draw without repeats."""
        with pytest.raises(StructuralConflictError):
            sv.add_members(1)

        first = sv.build(3, sequential=True)
        second = sv.add_members(4)
        np.testing.assert_array_equal(second.metadata.variable("T").members["time"], TIME[3:7])

        with pytest.raises(InsufficientMembersError):
            sv.add_members(4)
        assert sv.n_members == 7

        third = sv.add_members(3)
        combined = first.append(second).append(third)
        assert combined.n_members == 10
        np.testing.assert_array_equal(np.sort(combined.metadata.variable("T").members["time"]), TIME[:10])

    def test_invalid_member_count(self, sv: StateVector) -> None:
        """Member counts are positive integers."""
        for count in (0, -1, 2.5):
            with pytest.raises(DesignValidationError):
                sv.build(count)

"""State vectors: variable design, coupling and ensemble construction.

A :class:`StateVector` is designed first (variables added, dimension roles, indices,
sequences and means set, variables coupled) and then built. Building draws the
ensemble members, loads them from the variables' grids and freezes the design. A built
state vector only accepts :meth:`StateVector.add_members`.
"""

from __future__ import annotations

import logging
from copy import copy
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
from tqdm.auto import tqdm

from stategrid.constants import DimensionRole
from stategrid.core.config import get_settings
from stategrid.core.dimension import match_rows
from stategrid.exceptions import DesignValidationError
from stategrid.exceptions import InsufficientMembersError
from stategrid.exceptions import StructuralConflictError
from stategrid.grid.gridfile import GridFile
from stategrid.schemas.design import StateVectorDesign
from stategrid.state.coupling import CouplingSets
from stategrid.state.ensemble import Ensemble
from stategrid.state.metadata import EnsembleMetadata
from stategrid.state.variable import StateVectorVariable

if TYPE_CHECKING:
    from collections.abc import Iterable
    from collections.abc import Sequence

    from numpy.typing import ArrayLike
    from numpy.typing import NDArray

    from stategrid.core.config import StateGridSettings
    from stategrid.grid.cache import SourceCache

logger = logging.getLogger(__name__)


def _as_list(values: str | Iterable[str]) -> list[str]:
    if isinstance(values, str):
        return [values]
    return list(values)


def _dimension_rows(variable: StateVectorVariable, dim: str) -> NDArray:
    """Metadata rows of a grid dimension. Undefined dimensions use their indices."""
    if dim in variable.grid.metadata:
        return variable.grid.metadata[dim].coords
    return np.arange(variable.grid.dim_size(dim))


class _MemberDraw:
    """Draws ensemble members for one set of coupled variables.

    Candidates are the combinations of the template variable's reference indices
    that are valid for every coupled variable. They are visited in a fixed order,
    random or lexicographic, and a cursor records how far the draw got so later draws
    continue where earlier ones stopped.
    """

    def __init__(
        self,
        variables: Sequence[StateVectorVariable],
        sequential: bool,
        rng: np.random.Generator,
    ):
        template = variables[0]
        self.names = [variable.name for variable in variables]
        self.dims = template.dimensions(DimensionRole.ENSEMBLE)
        self._variables = {variable.name: variable for variable in variables}

        axes = []
        for dim in self.dims:
            references = template.valid_references(dim)
            rows = _dimension_rows(template, dim)[references]
            valid = np.ones(references.size, dtype=bool)
            for variable in variables[1:]:
                matched = match_rows(rows, _dimension_rows(variable, dim))
                valid &= np.isin(matched, variable.valid_references(dim))
            axes.append(references[valid])

        # Candidate axes translated into each variable's own indices and dimension order
        self._axes: dict[str, list[NDArray[np.intp]]] = {}
        self._order: dict[str, list[int]] = {}
        for variable in variables:
            translated = []
            for dim, references in zip(self.dims, axes, strict=True):
                if variable is template:
                    translated.append(references)
                else:
                    rows = _dimension_rows(template, dim)[references]
                    translated.append(match_rows(rows, _dimension_rows(variable, dim)))
            self._axes[variable.name] = translated
            self._order[variable.name] = [self.dims.index(dim) for dim in variable.dimensions(DimensionRole.ENSEMBLE)]

        self.shape = tuple(references.size for references in axes)
        self.n_candidates = int(np.prod(self.shape, dtype=np.int64))
        self.sequence = np.arange(self.n_candidates) if sequential else rng.permutation(self.n_candidates)
        self.cursor = 0
        self._drawn: set[tuple[int, ...]] = set()
        self._footprints: dict[str, set[tuple[int, ...]]] = {name: set() for name in self.names}

    def clone(self) -> _MemberDraw:
        """An independent copy of the draw state."""
        other = copy(self)
        other._drawn = set(self._drawn)
        other._footprints = {name: set(prints) for name, prints in self._footprints.items()}
        return other

    def _references(self, position: tuple[int, ...]) -> dict[str, NDArray[np.intp]]:
        references = {}
        for name in self.names:
            axes = self._axes[name]
            references[name] = np.array([axes[k][position[k]] for k in self._order[name]], dtype=np.intp)
        return references

    def _accept(self, references: dict[str, NDArray[np.intp]]) -> bool:
        """Record a member unless it overlaps an earlier member of a no-overlap variable."""
        template_key = tuple(references[self.names[0]].tolist())
        if template_key in self._drawn:
            return False

        prints = {}
        for name, refs in references.items():
            variable = self._variables[name]
            if variable.overlap:
                continue
            footprint = variable.footprint(refs)
            if footprint & self._footprints[name]:
                return False
            prints[name] = footprint

        self._drawn.add(template_key)
        for name, footprint in prints.items():
            self._footprints[name] |= footprint
        return True

    def draw(self, n_members: int) -> dict[str, NDArray[np.intp]]:
        """Draw new members, continuing from the cursor.

        Returns:
            Reference indices of each variable, shaped (members x ensemble dimensions).

        Raises:
            InsufficientMembersError: If fewer than `n_members` candidates remain.
        """
        accepted: dict[str, list[NDArray[np.intp]]] = {name: [] for name in self.names}
        found = 0
        while found < n_members and self.cursor < self.n_candidates:
            position = np.unravel_index(self.sequence[self.cursor], self.shape)
            self.cursor += 1
            references = self._references(tuple(int(k) for k in position))
            if not self._accept(references):
                continue
            for name, refs in references.items():
                accepted[name].append(refs)
            found += 1

        if found < n_members:
            raise InsufficientMembersError(n_members, found, self.names)

        return {
            name: np.array(rows, dtype=np.intp).reshape(n_members, len(self._order[name]))
            for name, rows in accepted.items()
        }

    def exclude(self, members: dict[str, NDArray[np.intp]]) -> None:
        """Mark previously drawn members as used."""
        n_members = len(members[self.names[0]])
        for m in range(n_members):
            self._accept({name: members[name][m] for name in self.names})


class StateVector:
    """Design of a state vector and builder of its ensembles.

    Variables are stacked in the order they are added. Each dimension of a variable is
    either a state dimension, whose indices give state vector rows, or an ensemble
    dimension, whose reference indices are drawn to give ensemble members. Coupled
    variables share their ensemble dimensions and are always drawn together.

    Every design call validates its input on copies of the affected variables, so a
    failing call leaves the state vector unchanged.

    Args:
        name: Optional name of the state vector.

    Example:
        >>> sv = StateVector("demo")  # doctest: +SKIP
        >>> sv.add("T", "temperature.grid")  # doctest: +SKIP
        >>> sv.design("T", "time", "ensemble")  # doctest: +SKIP
        >>> ens = sv.build(20)  # doctest: +SKIP
    """

    def __init__(self, name: str = ""):
        self.name = name
        self._variables: dict[str, StateVectorVariable] = {}
        self._auto_couple: dict[str, bool] = {}
        self._coupling = CouplingSets()
        self._finalized = False
        self._sequential = False
        self._draws: list[_MemberDraw] = []
        self._members: dict[str, NDArray[np.intp]] = {}

    def __repr__(self) -> str:
        """Short description."""
        status = f"{self.n_members} members" if self._finalized else "unbuilt"
        return f"StateVector('{self.name}', {len(self._variables)} variables, {self.length} rows, {status})"

    def __len__(self) -> int:
        """Number of variables."""
        return len(self._variables)

    @property
    def variable_names(self) -> tuple[str, ...]:
        """Variable names, in state vector order."""
        return tuple(self._variables)

    @property
    def length(self) -> int:
        """Number of state vector rows."""
        return sum(variable.n_rows for variable in self._variables.values())

    @property
    def is_finalized(self) -> bool:
        """Whether the state vector has been built."""
        return self._finalized

    @property
    def n_members(self) -> int:
        """Number of ensemble members drawn so far."""
        for references in self._members.values():
            return len(references)
        return 0

    @property
    def coupled(self) -> list[list[str]]:
        """Sets of coupled variables, in state vector order."""
        return self._coupling.sets(self._variables)

    def coupling_matrix(self) -> NDArray[np.bool_]:
        """Symmetric boolean matrix of coupled variables, in state vector order."""
        return self._coupling.matrix(self._variables)

    def variable(self, name: str) -> StateVectorVariable:
        """A copy of one variable's design."""
        (name,) = self._names(name)
        return self._variables[name].copy(name)

    def _names(self, variables: str | Iterable[str]) -> list[str]:
        names = _as_list(variables)
        unknown = [name for name in names if name not in self._variables]
        if unknown:
            msg = f"{unknown} are not variables in the state vector. Variables: {self.variable_names}"
            raise DesignValidationError(msg)
        if len(set(names)) != len(names):
            msg = f"Variable names cannot repeat: {names}"
            raise DesignValidationError(msg)
        return names

    def _assert_editable(self, action: str) -> None:
        if self._finalized:
            msg = f"Cannot {action}: state vector '{self.name}' was already built. Use add_members for more members."
            raise StructuralConflictError(msg)

    def _working(self) -> dict[str, StateVectorVariable]:
        """Copies of every variable for an all-or-nothing design change."""
        return {name: variable.copy(name) for name, variable in self._variables.items()}

    def _copy_coupling(self) -> CouplingSets:
        return CouplingSets.from_sets(self._coupling.sets(self._variables))

    def _sync(
        self,
        working: dict[str, StateVectorVariable],
        template_name: str,
        targets: Iterable[str],
        dims: Iterable[str],
    ) -> None:
        """Give coupled variables the template's roles and reference indices.

        References are matched by metadata rows, so coupled variables on different
        grids still draw members with the same ensemble metadata.
        """
        template = working[template_name]
        dims = list(dims)
        for target_name in targets:
            target = working[target_name]
            for dim in dims:
                if template.role(dim) == DimensionRole.STATE:
                    if dim in target.dims and target.set_role(dim, DimensionRole.STATE):
                        logger.warning("Coupled variable '%s' reset '%s' to a state dimension", target_name, dim)
                    continue

                if dim not in target.dims:
                    msg = (
                        f"Variable '{target_name}' is coupled to '{template_name}' but has no dimension '{dim}' "
                        "to use as an ensemble dimension"
                    )
                    raise StructuralConflictError(msg)

                if target.set_role(dim, DimensionRole.ENSEMBLE):
                    logger.warning("Coupled variable '%s' reset '%s' to an ensemble dimension", target_name, dim)

                references = template.spec(dim).reference
                matched = match_rows(_dimension_rows(template, dim)[references], _dimension_rows(target, dim))
                matched = np.unique(matched[matched >= 0])
                if matched.size == 0:
                    msg = (
                        f"None of the '{dim}' reference indices of '{template_name}' match the '{dim}' metadata "
                        f"of coupled variable '{target_name}'"
                    )
                    raise DesignValidationError(msg)
                target.set_indices(dim, matched)

    @staticmethod
    def _check_coupled(working: dict[str, StateVectorVariable], coupling: CouplingSets) -> None:
        """Every variable in a coupled set must have the same ensemble dimensions."""
        for group in coupling.sets(working):
            expected = set(working[group[0]].dimensions(DimensionRole.ENSEMBLE))
            for name in group[1:]:
                found = set(working[name].dimensions(DimensionRole.ENSEMBLE))
                if found != expected:
                    msg = (
                        f"Coupled variables '{group[0]}' and '{name}' have different ensemble dimensions: "
                        f"{sorted(expected)} and {sorted(found)}"
                    )
                    raise StructuralConflictError(msg)

    def _couple_into(
        self,
        working: dict[str, StateVectorVariable],
        coupling: CouplingSets,
        names: list[str],
    ) -> None:
        """Merge coupled sets and synchronize them with the first listed variable."""
        coupling.couple(names)
        template = names[0]
        group = [name for name in working if name in coupling.set_of(template) and name != template]
        self._sync(working, template, group, working[template].dims)
        self._check_coupled(working, coupling)

    def _commit(
        self,
        working: dict[str, StateVectorVariable],
        coupling: CouplingSets | None = None,
    ) -> None:
        self._variables = working
        if coupling is not None:
            self._coupling = coupling

    def add(self, name: str, grid: GridFile | str | Path, auto_couple: bool = True) -> None:
        """Add a variable to the end of the state vector.

        Args:
            name: Name of the new variable.
            grid: Grid holding the variable's data, or the location of its catalog.
            auto_couple: Whether to couple the variable to the other auto-coupled
                variables. The first of those is the template for the new variable.
        """
        self._assert_editable("add variables")
        if not isinstance(name, str) or not name.isidentifier():
            msg = f"Variable names must be valid identifiers, got {name!r}"
            raise DesignValidationError(msg)
        if name in self._variables:
            msg = f"'{name}' is already a variable in the state vector"
            raise DesignValidationError(msg)
        if not isinstance(grid, GridFile):
            grid = GridFile.open(grid)

        working = self._working()
        working[name] = StateVectorVariable(name, grid)
        coupling = self._copy_coupling()
        coupling.add(name)

        partners = [other for other, auto in self._auto_couple.items() if auto]
        if auto_couple and partners:
            self._couple_into(working, coupling, [*partners, name])

        self._commit(working, coupling)
        self._auto_couple[name] = bool(auto_couple)
        logger.info("Added variable '%s' from %s", name, grid)

    def remove(self, variables: str | Iterable[str]) -> None:
        """Remove variables from the state vector."""
        self._assert_editable("remove variables")
        names = self._names(variables)

        working = {name: variable for name, variable in self._variables.items() if name not in names}
        coupling = self._copy_coupling()
        for name in names:
            coupling.remove(name)
            del self._auto_couple[name]
        self._commit(working, coupling)

    def rename(self, variables: str | Iterable[str], new_names: str | Iterable[str]) -> None:
        """Rename variables, keeping their position, design and coupling."""
        self._assert_editable("rename variables")
        names = self._names(variables)
        new_names = self._new_names(new_names, len(names), keep=names)

        mapping = dict(zip(names, new_names, strict=True))
        working = {}
        for name, variable in self._variables.items():
            new = mapping.get(name, name)
            working[new] = variable.copy(new)
        groups = [[mapping.get(name, name) for name in group] for group in self._coupling.sets(self._variables)]
        self._commit(working, CouplingSets.from_sets(groups))
        self._auto_couple = {mapping.get(name, name): auto for name, auto in self._auto_couple.items()}

    def copy(self, variables: str | Iterable[str], new_names: str | Iterable[str]) -> None:
        """Append copies of variables under new names.

        Copies have the design of their originals but are not coupled to anything and
        are not auto-coupled.
        """
        self._assert_editable("copy variables")
        names = self._names(variables)
        new_names = self._new_names(new_names, len(names))

        working = self._working()
        coupling = self._copy_coupling()
        for name, new in zip(names, new_names, strict=True):
            working[new] = self._variables[name].copy(new)
            coupling.add(new)
        self._commit(working, coupling)
        self._auto_couple.update(dict.fromkeys(new_names, False))

    def _new_names(self, new_names: str | Iterable[str], count: int, keep: Sequence[str] = ()) -> list[str]:
        new_names = _as_list(new_names)
        if len(new_names) != count:
            msg = f"Received {len(new_names)} new names for {count} variables"
            raise DesignValidationError(msg)
        if len(set(new_names)) != len(new_names):
            msg = f"New variable names cannot repeat: {new_names}"
            raise DesignValidationError(msg)
        taken = [name for name in new_names if name in self._variables and name not in keep]
        invalid = [name for name in new_names if not name.isidentifier()]
        if taken or invalid:
            msg = f"Variable names already in use: {taken}. Invalid variable names: {invalid}"
            raise DesignValidationError(msg)
        return new_names

    def design(
        self,
        variables: str | Iterable[str],
        dims: str | Iterable[str],
        role: DimensionRole | str | Iterable[DimensionRole | str],
        indices: ArrayLike | Sequence[ArrayLike | None] | None = None,
    ) -> None:
        """Set the role and indices of variable dimensions.

        Coupled variables follow: they take the same roles, and their reference
        indices along ensemble dimensions are matched to the designed ones by metadata.

        Args:
            variables: Variables to design.
            dims: Dimensions to design.
            role: "state" or "ensemble", for all dimensions or one per dimension.
            indices: State or reference indices. With a single dimension this is the
                index array itself; otherwise one entry (or None) per dimension.
                Omitted indices keep the current ones, or every index after a role change.
        """
        self._assert_editable("design variables")
        names = self._names(variables)
        dims = _as_list(dims)
        roles = [role] * len(dims) if isinstance(role, str) else list(role)
        if len(roles) != len(dims):
            msg = f"Received {len(roles)} roles for {len(dims)} dimensions"
            raise DesignValidationError(msg)

        if indices is None:
            indices = [None] * len(dims)
        elif len(dims) == 1:
            indices = [indices]
        elif len(indices) != len(dims):
            msg = f"Received indices for {len(indices)} dimensions but designed {len(dims)} dimensions"
            raise DesignValidationError(msg)

        working = self._working()
        for name in names:
            for dim, dim_role, dim_indices in zip(dims, roles, indices, strict=True):
                working[name].set_role(dim, dim_role)
                if dim_indices is not None:
                    working[name].set_indices(dim, dim_indices)

        synced = set()
        for name in names:
            if name in synced:
                continue
            group = self._coupling.set_of(name)
            targets = [other for other in self._variables if other in group and other != name]
            self._sync(working, name, targets, dims)
            synced |= group
        self._check_coupled(working, self._coupling)
        self._commit(working)

    def sequence(
        self,
        variables: str | Iterable[str],
        dim: str,
        offsets: ArrayLike | None,
        metadata: ArrayLike | None = None,
    ) -> None:
        """Use a sequence along an ensemble dimension, or remove it when `offsets` is None."""
        self._assert_editable("design sequences")
        names = self._names(variables)
        working = self._working()
        for name in names:
            if offsets is None:
                working[name].clear_sequence(dim)
            else:
                working[name].set_sequence(dim, offsets, metadata)
        self._commit(working)

    def mean(
        self,
        variables: str | Iterable[str],
        dim: str,
        offsets: ArrayLike | None = None,
        weights: ArrayLike | None = None,
        include_nan: bool = True,
    ) -> None:
        """Take a mean over a dimension. See :meth:`StateVectorVariable.set_mean`."""
        self._assert_editable("design means")
        names = self._names(variables)
        working = self._working()
        for name in names:
            working[name].set_mean(dim, offsets, weights, include_nan)
        self._commit(working)

    def clear_mean(self, variables: str | Iterable[str], dim: str) -> None:
        """Stop taking a mean over a dimension."""
        self._assert_editable("design means")
        names = self._names(variables)
        working = self._working()
        for name in names:
            working[name].clear_mean(dim)
        self._commit(working)

    def couple(self, variables: Iterable[str]) -> None:
        """Couple variables, merging their coupled sets.

        Every variable in the merged set takes the ensemble design of the first listed
        variable.
        """
        self._assert_editable("couple variables")
        names = self._names(variables)
        if len(names) < 2:  # noqa: PLR2004
            return

        working = self._working()
        coupling = self._copy_coupling()
        self._couple_into(working, coupling, names)
        self._commit(working, coupling)
        logger.info("Coupled variables %s", sorted(coupling.set_of(names[0])))

    def uncouple(self, variables: Iterable[str] | None = None) -> None:
        """Dissolve every coupled set holding two or more of the variables.

        Without `variables`, every variable is uncoupled.
        """
        self._assert_editable("uncouple variables")
        if variables is None:
            self._coupling.uncouple_all()
            return

        names = self._names(variables)
        for group in self._coupling.uncouple(names):
            logger.info("Dissolved coupled set %s", sorted(group))

    def uncouple_all(self) -> None:
        """Every variable coupled only to itself."""
        self.uncouple()

    def allow_overlap(self, variables: str | Iterable[str], overlap: bool = True) -> None:
        """Set whether members of variables may load overlapping data."""
        self._assert_editable("change overlap")
        names = self._names(variables)
        for name in names:
            self._variables[name].overlap = bool(overlap)

    def info(self) -> str:
        """Text summary of the state vector and its variables."""
        title = f"State vector '{self.name}'" if self.name else "State vector"
        lines = [f"{title}: {len(self._variables)} variables, {self.length} rows"]
        if self._finalized:
            lines.append(f"    Built with {self.n_members} members")
        if not self._variables:
            return "\n".join(lines)

        width = max(len(name) for name in self._variables)
        for k, group in enumerate(self.coupled, start=1):
            for name in group:
                variable = self._variables[name]
                state = " x ".join(f"{dim} ({size})" for dim, size in variable.state_sizes()) or "scalar"
                ensemble = ", ".join(variable.dimensions(DimensionRole.ENSEMBLE)) or "none"
                lines.append(
                    f"    {name:<{width}}  {variable.n_rows:>10} rows  set {k}  "
                    f"state: {state}  ensemble: {ensemble}  overlap: {variable.overlap}"
                )
        return "\n".join(lines)

    def to_design(
        self,
        members: dict[str, NDArray[np.intp]] | None = None,
        sequential: bool | None = None,
    ) -> StateVectorDesign:
        """The design as a serializable model."""
        members = self._members if members is None else members
        sequential = self._sequential if sequential is None else sequential
        return StateVectorDesign(
            name=self.name,
            variables=[variable.to_design() for variable in self._variables.values()],
            coupled=self.coupled,
            finalized=self._finalized or bool(members),
            sequential=sequential,
            auto_couple=[name for name, auto in self._auto_couple.items() if auto],
            members={name: references.tolist() for name, references in members.items()},
        )

    @classmethod
    def from_design(cls, design: StateVectorDesign, seed: int | None = None) -> StateVector:
        """Rebuild a state vector from a saved design.

        A finalized design gives a built state vector whose :meth:`add_members` never
        repeats the saved members.
        """
        vector = cls(design.name)
        grids: dict[str, GridFile] = {}
        for variable_design in design.variables:
            if variable_design.grid not in grids:
                grids[variable_design.grid] = GridFile.open(variable_design.grid)
            variable = StateVectorVariable.from_design(variable_design, grids[variable_design.grid])
            vector._variables[variable.name] = variable
            vector._auto_couple[variable.name] = variable.name in design.auto_couple

        vector._coupling = CouplingSets.from_sets(design.coupled)
        vector._sequential = design.sequential
        if not design.finalized:
            return vector

        rng = np.random.default_rng(seed)
        for group in vector.coupled:
            variables = [vector._variables[name] for name in group]
            draw = _MemberDraw(variables, design.sequential, rng)
            members = {}
            for name in group:
                rows = design.members.get(name, [])
                n_dims = len(vector._variables[name].dimensions(DimensionRole.ENSEMBLE))
                members[name] = np.asarray(rows, dtype=np.intp).reshape(len(rows), n_dims)
            draw.exclude(members)
            vector._draws.append(draw)
            vector._members.update(members)
        vector._finalized = True
        return vector

    def build(  # noqa: PLR0913
        self,
        n_members: int,
        sequential: bool = False,
        seed: int | None = None,
        path: str | Path | None = None,
        overwrite: bool = False,
        show_progress: bool | None = None,
    ) -> Ensemble:
        """Draw ensemble members, load them, and freeze the design.

        Args:
            n_members: Number of ensemble members.
            sequential: Draw members in index order instead of at random.
            seed: Seed for the random draw.
            path: Where to save the ensemble. Nothing is saved when omitted.
            overwrite: Whether to replace an existing ensemble store at `path`.
            show_progress: Whether to show a progress bar. Defaults to the
                ``STATEGRID__BUILD__SHOW_PROGRESS`` setting.

        Returns:
            The built ensemble.

        Raises:
            InsufficientMembersError: If a coupled set has too few valid members.
        """
        self._assert_editable("build")
        if not self._variables:
            msg = "Cannot build a state vector with no variables"
            raise DesignValidationError(msg)
        n_members = self._member_count(n_members)
        self._check_coupled(self._variables, self._coupling)

        rng = np.random.default_rng(seed)
        draws = [
            _MemberDraw([self._variables[name] for name in group], sequential, rng) for group in self.coupled
        ]
        members: dict[str, NDArray[np.intp]] = {}
        for draw in draws:
            members.update(draw.draw(n_members))
        logger.info("Drew %d members for %s", n_members, self)

        design = self.to_design(members, sequential=bool(sequential))
        ensemble = self._load(members, design, show_progress)
        if path is not None:
            ensemble.save(path, overwrite=overwrite)

        self._draws = draws
        self._members = members
        self._finalized = True
        self._sequential = bool(sequential)
        return ensemble

    def add_members(
        self,
        n_members: int,
        path: str | Path | None = None,
        overwrite: bool = False,
        show_progress: bool | None = None,
    ) -> Ensemble:
        """Draw and load more members for a built state vector.

        New members never repeat a previously drawn member, and members of
        no-overlap variables never overlap any earlier member.

        Returns:
            An ensemble with only the new members.
        """
        if not self._finalized:
            msg = f"State vector '{self.name}' must be built before adding members"
            raise StructuralConflictError(msg)
        n_members = self._member_count(n_members)

        draws = [draw.clone() for draw in self._draws]
        new: dict[str, NDArray[np.intp]] = {}
        for draw in draws:
            new.update(draw.draw(n_members))

        members = {name: np.concatenate([self._members[name], new[name]]) for name in self._members}
        design = self.to_design(members)
        ensemble = self._load(new, design, show_progress)
        if path is not None:
            ensemble.save(path, overwrite=overwrite)

        self._draws = draws
        self._members = members
        logger.info("Added %d members to %s", n_members, self)
        return ensemble

    @staticmethod
    def _member_count(n_members: int) -> int:
        if isinstance(n_members, bool) or int(n_members) != n_members or n_members < 1:
            msg = f"The number of members must be a positive integer, got {n_members!r}"
            raise DesignValidationError(msg)
        return int(n_members)

    def _load(
        self,
        members: dict[str, NDArray[np.intp]],
        design: StateVectorDesign,
        show_progress: bool | None,
    ) -> Ensemble:
        """Load every variable's members and stack them into an ensemble."""
        settings: StateGridSettings = get_settings()
        if show_progress is None:
            show_progress = settings.show_progress

        caches: dict[Path, SourceCache | None] = {}
        blocks = []
        flags = []
        iterable = tqdm(
            self._variables.values(),
            total=len(self._variables),
            unit="variable",
            desc="Loading ensemble",
            disable=not show_progress,
        )
        for variable in iterable:
            key = variable.grid.path.resolve()
            block, has_nan, caches[key] = variable.load(
                members[variable.name], caches.get(key), settings.load_batch_elements
            )
            blocks.append(block)
            flags.append(has_nan)

        data = np.concatenate(blocks, axis=0)
        metadata = EnsembleMetadata.from_variables(list(self._variables.values()), members)
        return Ensemble(data=data, has_nan=np.concatenate(flags), metadata=metadata, design=design)

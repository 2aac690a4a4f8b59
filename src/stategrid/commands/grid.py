"""Grid CLI subcommands for inspecting grid catalogs.

This sub-app is available under the main CLI as: stategrid grid <command>.
Run: stategrid grid --help or stategrid grid info --help for usage and examples.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from typing import Annotated

import click
import typer
from rich import print  # noqa: A004
from rich.table import Table

from stategrid.exceptions import StateGridError
from stategrid.grid.gridfile import GridFile

if TYPE_CHECKING:
    from click.core import Context
    from click.core import Parameter

app = typer.Typer(help="Inspect grid catalogs.")


class GridParamType(click.ParamType):
    """Click parser that opens a grid catalog."""

    name = "Grid"

    def convert(self, value: str | GridFile, param: Parameter | None, ctx: Context | None) -> GridFile:
        """Open the grid catalog at a path."""
        if isinstance(value, GridFile):
            return value
        try:
            return GridFile.open(value)
        except StateGridError as exc:
            self.fail(str(exc), param, ctx)


GridType = Annotated[GridFile, typer.Argument(help="Path to the grid catalog.", click_type=GridParamType())]


@app.command(name="info")
def grid_info(grid: GridType) -> None:
    """Show the dimensions and data sources of a grid.

    \b
    Example:
    - stategrid grid info temperature.grid
    """
    print(repr(grid))

    dims = Table(title="Dimensions")
    dims.add_column("Name")
    dims.add_column("Size", justify="right")
    dims.add_column("First")
    dims.add_column("Last")
    for name, size in zip(grid.dims, grid.size, strict=True):
        if name in grid.metadata:
            rows = grid.metadata[name].rows
            dims.add_row(name, str(size), str(rows[0].tolist()), str(rows[-1].tolist()))
        else:
            dims.add_row(name, str(size), "undefined", "undefined")
    print(dims)

    sources = Table(title="Sources")
    sources.add_column("#", justify="right")
    sources.add_column("Path")
    sources.add_column("Kind")
    for name in grid.dims:
        sources.add_column(name)
    for slot, record in enumerate(grid.sources):
        limits = [f"{first}-{last}" for first, last in grid.dim_limit[slot].tolist()]
        sources.add_row(str(slot), record.path, record.kind, *limits)
    print(sources)


@app.command(name="coverage")
def grid_coverage(grid: GridType) -> None:
    """Report grid indices that no data source covers.

    The command exits with status 1 when there are gaps.
    """
    gaps = grid.coverage_gaps()
    missing = {name: indices for name, indices in gaps.items() if indices.size > 0}
    if not missing:
        print(f"Every index of {grid.path} is covered by a data source.")
        return

    for name, indices in missing.items():
        typer.secho(f"{name}: {indices.size} uncovered indices {indices.tolist()}", fg="red", err=True)
    raise typer.Exit(code=1)


if __name__ == "__main__":
    app()

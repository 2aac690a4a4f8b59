"""Entrypoint to the stategrid command line interface (CLI)."""

import typer

from stategrid.commands import ens
from stategrid.commands import grid
from stategrid.commands import version

app = typer.Typer(no_args_is_help=True)
app.add_typer(grid.app, name="grid")
app.add_typer(ens.app, name="ens")
app.add_typer(version.app)

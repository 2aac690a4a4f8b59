"""Ensemble CLI subcommands.

This sub-app is available under the main CLI as: stategrid ens <command>.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich import print  # noqa: A004
from rich.table import Table

from stategrid.api.io import open_ensemble
from stategrid.exceptions import StateGridError

app = typer.Typer(help="Inspect built ensembles.")

EnsembleInType = Annotated[Path, typer.Argument(help="Path to the ensemble store.")]


@app.command(name="info")
def ens_info(input_path: EnsembleInType) -> None:
    """Show the variables and members of an ensemble store."""
    try:
        ensemble = open_ensemble(input_path)
    except StateGridError as exc:
        typer.secho(str(exc), fg="red", err=True)
        raise typer.Abort from None

    print(repr(ensemble))
    table = Table(title="Variables")
    table.add_column("Name")
    table.add_column("Rows", justify="right")
    table.add_column("Row dimensions")
    table.add_column("Rows with NaN", justify="right")
    for name in ensemble.metadata.variables:
        meta = ensemble.metadata.variable(name)
        dims = " x ".join(f"{dim} ({size})" for dim, size in zip(meta.row_dims, meta.row_sizes, strict=True))
        n_nan = int(ensemble.has_nan[ensemble.metadata.rows(name)].sum())
        table.add_row(name, str(meta.length), dims or "scalar", str(n_nan))
    print(table)
    print(f"Coupled sets: {ensemble.design.coupled}")

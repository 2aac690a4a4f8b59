"""Version command."""

import typer

from stategrid import __version__

app = typer.Typer()


@app.command()
def version() -> None:
    """Print the version of the CLI."""
    print(f"stategrid CLI Version {__version__}")

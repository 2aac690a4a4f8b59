"""Command-line interface."""

from stategrid.cli import app

if __name__ == "__main__":
    app(prog_name="stategrid")

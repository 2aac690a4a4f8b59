"""Nox sessions."""

import os
import sys
from pathlib import Path
from textwrap import dedent

try:
    import nox
    from nox import Session
    from nox import session
except ImportError:
    message = f"""\
    Nox failed to import.

    Please install it using the following command:

    {sys.executable} -m pip install nox"""
    raise SystemExit(dedent(message)) from None

package = "stategrid"
python_versions = ["3.13", "3.12", "3.11"]
nox.needs_version = ">=2025.2.9"
nox.options.sessions = ("lint", "mypy", "tests", "typeguard", "xdoctest")


def session_install(session: Session, *extras: str) -> None:
    """Install the project, with optional extras, into the session's virtual environment."""
    target = f".[{','.join(extras)}]" if extras else "."
    session.install("-e", target)


@session(python=python_versions[0])
def lint(session: Session) -> None:
    """Lint and check formatting with ruff."""
    args = session.posargs or ["src", "tests", "noxfile.py"]
    session.install("ruff")
    session.run("ruff", "check", *args)
    session.run("ruff", "format", "--check", *args)


@session(python=python_versions)
def mypy(session: Session) -> None:
    """Type-check using mypy."""
    args = session.posargs or ["src", "tests"]
    session_install(session, "test")
    session.install("mypy")
    session.run("mypy", *args)
    if not session.posargs:
        session.run("mypy", f"--python-executable={sys.executable}", "noxfile.py")


@session(python=python_versions)
def tests(session: Session) -> None:
    """Run the test suite."""
    session_install(session, "test")

    try:
        session.run("coverage", "run", "--parallel", "-m", "pytest", *session.posargs)
    finally:
        if session.interactive:
            session.notify("coverage", posargs=[])


@session(python=python_versions[0])
def coverage(session: Session) -> None:
    """Produce the coverage report."""
    args = session.posargs or ["report"]

    session.install("coverage[toml]")

    if not session.posargs and any(Path().glob(".coverage.*")):
        session.run("coverage", "combine")

    session.run("coverage", *args)


@session(python=python_versions[0])
def typeguard(session: Session) -> None:
    """Runtime type checking using Typeguard."""
    session_install(session, "test")
    session.install("typeguard")
    session.run("pytest", f"--typeguard-packages={package}", *session.posargs)


@session(python=python_versions)
def xdoctest(session: Session) -> None:
    """Run examples with xdoctest."""
    if session.posargs:
        args = [package, *session.posargs]
    else:
        args = [f"--modname={package}", "--command=all"]
        if "FORCE_COLOR" in os.environ:
            args.append("--colored=1")

    session_install(session)
    session.install("xdoctest[colors]")
    session.run("python", "-m", "xdoctest", *args)

"""Custom exceptions related to stategrid functionality."""

from __future__ import annotations

from typing import Any


class StateGridError(Exception):
    """Base exceptions class."""


class ShapeError(StateGridError):
    """Raised when shapes of two or more things don't match.

    Args:
        message: Message to show with the exception.
        names: Names of the variables for the `message`.
        shapes: Shapes of the variables for the `message`.
    """

    def __init__(
        self,
        message: str,
        names: tuple[str, str] | None = None,
        shapes: tuple[Any, Any] | None = None,
    ):
        if names is not None and shapes is not None:
            shape_dict = zip(names, shapes, strict=True)
            extras = [f"{name}: {shape}" for name, shape in shape_dict]
            extras = " <> ".join(extras)

            message = f"{message} - {extras}"

        super().__init__(message)


class DesignValidationError(StateGridError):
    """Raised synchronously when a design or catalog input is malformed.

    Covers unknown dimension names, indices outside a dimension, duplicate or
    undefined metadata rows, and sequence metadata with the wrong row count.
    """


class StructuralConflictError(StateGridError):
    """Raised when a request contradicts the existing structure of a state vector.

    The object that raised it is left exactly as it was before the call.
    """


class SourceUnreadableError(StateGridError):
    """Raised when a data source cannot be opened or read.

    Args:
        source: Identity of the data source (path and variable).
        message: Description of the failure.
        indices: Requested local indices, if the failure happened in a read.
    """

    def __init__(self, source: str, message: str, indices: tuple | None = None):
        self.source = source
        self.indices = indices

        text = f"Cannot read data source '{source}': {message}"
        if indices is not None:
            ranges = [_describe_range(idx) for idx in indices]
            text = f"{text} - requested {', '.join(ranges)}"

        super().__init__(text)


class InsufficientMembersError(StateGridError):
    """Raised when an ensemble draw cannot find enough members.

    Args:
        requested: Number of members that were requested.
        found: Number of valid members that could be drawn.
        variables: Names of the coupled variables that limited the draw.
    """

    def __init__(self, requested: int, found: int, variables: list[str] | None = None):
        self.requested = requested
        self.found = found
        self.variables = variables

        message = f"Requested {requested} ensemble members but only {found} could be drawn"
        if variables:
            message = f"{message} for coupled variables {variables}"
        super().__init__(message)


class EnvironmentFormatError(StateGridError):
    """Raised when environment variable is of the wrong format."""

    def __init__(self, name: str, format: str, msg: str = ""):  # noqa: A002
        self.message = f"Environment variable: {name} not of expected format: {format}. "
        self.message += f"\n{msg}" if msg else ""
        super().__init__(self.message)


class InvalidGridError(StateGridError):
    """Raised when an invalid grid catalog is encountered."""


class GridAlreadyExistsError(StateGridError):
    """Raised when a grid catalog already exists."""


class GridNotFoundError(StateGridError):
    """Raised when a grid catalog doesn't exist."""


class EnsembleAlreadyExistsError(StateGridError):
    """Raised when an ensemble store already exists."""


class EnsembleNotFoundError(StateGridError):
    """Raised when an ensemble store doesn't exist."""


class InvalidEnsembleError(StateGridError):
    """Raised when an invalid ensemble store is encountered."""


def _describe_range(indices: Any) -> str:
    """Short textual form of an index vector for error messages."""
    try:
        size = len(indices)
    except TypeError:
        return str(indices)
    if size == 0:
        return "[]"
    return f"[{min(indices)}..{max(indices)}] ({size} indices)"

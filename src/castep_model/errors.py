"""Exception hierarchy for castep_model.

Every error raised by the package derives from :class:`CastepModelError`.
The concrete classes also inherit from the matching builtin exception so
callers that only catch ``ValueError``/``KeyError``/``RuntimeError`` keep
working.
"""

from __future__ import annotations


class CastepModelError(Exception):
    """Base class for all castep_model errors."""


class ParseError(CastepModelError, ValueError):
    """Raised when a nested-format document cannot be turned into a model.

    Parameters
    ----------
    message:
        Human readable description of the problem.
    line:
        Optional 1-based line number of the offending token.

    """

    def __init__(self, message: str, line: int | None = None) -> None:
        self.line = line
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)


class ValidationError(CastepModelError, ValueError):
    """Raised when a model mutation would break one of its invariants."""


class NotFoundError(CastepModelError, KeyError):
    """Raised when an atom id is not present in a model."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message instead
        return str(self.args[0]) if self.args else ""


class GeometryError(CastepModelError, ValueError):
    """Raised when a geometric operation cannot be carried out."""


class DegenerateAxisError(GeometryError):
    """Raised when a rotation axis has (near) zero magnitude."""


class ExportError(CastepModelError, RuntimeError):
    """Raised when a model cannot be rendered or written to a target format."""

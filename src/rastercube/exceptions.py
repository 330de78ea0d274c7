# src/rastercube/exceptions.py

"""
This module defines the error taxonomy shared by every rastercube component.

Construction-time errors (ConfigurationError, BandMismatchError, ExpressionError)
are raised while a cube graph is composed, before any pixel is read.
Evaluation-time errors (SourceReadError, ExternalProcessError, BandMismatchError)
are raised for a single chunk and wrapped by the scheduler in a
ChunkEvaluationError that names the failing coordinate and node.
"""

from typing import Optional, Tuple

__all__ = [
    "CubeError",
    "ConfigurationError",
    "SourceReadError",
    "BandMismatchError",
    "ExpressionError",
    "ExternalProcessError",
    "FramingError",
    "ChunkEvaluationError"
]

class CubeError(Exception):
    """Base class for all rastercube errors."""

class ConfigurationError(CubeError):
    """Invalid view parameters, unknown reducer or incompatible views."""

class SourceReadError(CubeError):
    """A source image that is the sole contributor of a chunk could not be read."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path

class BandMismatchError(CubeError):
    """Unknown band names, duplicate band names or inconsistent chunk shapes."""

class ExpressionError(CubeError):
    """An arithmetic expression could not be parsed or references unknown bands."""

    def __init__(self, message: str, expression: Optional[str] = None, position: Optional[int] = None):
        if expression is not None and position is not None:
            message = f"{message}\n  {expression}\n  {' ' * position}^"
        super().__init__(message)
        self.expression = expression
        self.position = position

class ExternalProcessError(CubeError):
    """
    An external worker failed: non-zero exit, malformed framing or timeout.

    Attributes:
        returncode: Exit code of the worker, None if it was killed or never started.
        stderr: Captured standard error of the worker (decoded, possibly truncated).
    """

    STDERR_LIMIT = 8192

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: Optional[str] = None):
        self.returncode = returncode
        self.stderr = (stderr or "")[-self.STDERR_LIMIT:]
        if self.stderr.strip():
            message = f"{message}\n--- worker stderr ---\n{self.stderr.rstrip()}"
        super().__init__(message)

class FramingError(ExternalProcessError):
    """A chunk frame violated the wire format."""

class ChunkEvaluationError(CubeError):
    """
    Raised by the scheduler for the first fatal error of an evaluation.

    Attributes:
        coord: The (t, y, x) chunk coordinate that failed.
        node: Kind of the graph node where the error originated.
        error: The underlying exception.
    """

    def __init__(self, coord: Tuple[int, int, int], node: str, error: BaseException):
        super().__init__(
            f"Evaluation of chunk {tuple(coord)} failed in {node} node: "
            f"{type(error).__name__}: {error}"
        )
        self.coord = tuple(coord)
        self.node = node
        self.error = error

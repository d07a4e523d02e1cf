# core/errors.py
from __future__ import annotations

from typing import Optional


class FieldSolverError(Exception):
    """Base class for all errors raised by the field solver."""


class ConfigurationError(FieldSolverError, ValueError):
    """Malformed grid, region or solver configuration. Fatal before any solve."""


class NodeIndexError(FieldSolverError, IndexError):
    """Linear index requested for a node that is not an interior unknown."""

    def __init__(self, i: int, j: int, k: int, shape: tuple) -> None:
        self.node = (int(i), int(j), int(k))
        self.shape = tuple(int(n) for n in shape)
        super().__init__(
            f"node (i={self.node[0]}, j={self.node[1]}, k={self.node[2]}) is not an "
            f"interior node of a grid with {self.shape} nodes"
        )


class BackendAllocationError(FieldSolverError):
    """Linear-algebra backend could not allocate or set up a matrix/solve context."""


class BackendSolveError(FieldSolverError):
    """Linear-algebra backend failed to produce a converged solution."""

    def __init__(self, message: str, info: Optional[int] = None) -> None:
        self.info = info
        super().__init__(message if info is None else f"{message} (info={info})")

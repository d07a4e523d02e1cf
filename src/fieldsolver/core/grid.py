# core/grid.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Tuple

import numpy as np

from fieldsolver.core.errors import ConfigurationError, NodeIndexError


# Axis-aligned neighbours: (direction, axis, offset)
NEIGHBOR_DIRECTIONS: Tuple[Tuple[str, int, int], ...] = (
    ("left", 0, -1),
    ("right", 0, +1),
    ("bottom", 1, -1),
    ("top", 1, +1),
    ("near", 2, -1),
    ("far", 2, +1),
)

Node = Tuple[int, int, int]


@dataclass(frozen=True)
class Grid3D:
    """
    A regular 3D structured grid of nodal points.

    Node (i, j, k) sits at
        (x_min + i*dx, y_min + j*dy, z_min + k*dz),   0 <= i < nx, ...

    Nodes with any index at 0 or n-1 form the domain edge; they carry the
    externally supplied Dirichlet potential. The remaining interior nodes are
    the unknowns of the Poisson system, numbered x fastest, then y, then z:

        p = (i-1) + (j-1)*(nx-2) + (k-1)*(nx-2)*(ny-2)
    """
    nx: int
    ny: int
    nz: int
    dx: float
    dy: float
    dz: float
    x_min: float = 0.0
    y_min: float = 0.0
    z_min: float = 0.0

    def __post_init__(self) -> None:
        if int(self.nx) < 2 or int(self.ny) < 2 or int(self.nz) < 2:
            raise ConfigurationError(
                f"Grid3D requires nx, ny, nz >= 2; got {(self.nx, self.ny, self.nz)}"
            )
        for name in ("dx", "dy", "dz"):
            h = float(getattr(self, name))
            if not np.isfinite(h) or h <= 0.0:
                raise ConfigurationError(f"Grid3D requires {name} > 0; got {h}")

    @classmethod
    def from_volume(
        cls,
        *,
        lx: float,
        ly: float,
        lz: float,
        nx: int,
        ny: int,
        nz: int,
        x_min: float = 0.0,
        y_min: float = 0.0,
        z_min: float = 0.0,
    ) -> "Grid3D":
        """Build a grid spanning [x_min, x_min + lx] x ... with the given node counts."""
        if min(int(nx), int(ny), int(nz)) < 2:
            raise ConfigurationError("from_volume requires at least 2 nodes per axis.")
        return cls(
            nx=int(nx), ny=int(ny), nz=int(nz),
            dx=float(lx) / (int(nx) - 1),
            dy=float(ly) / (int(ny) - 1),
            dz=float(lz) / (int(nz) - 1),
            x_min=float(x_min), y_min=float(y_min), z_min=float(z_min),
        )

    @property
    def shape(self) -> Tuple[int, int, int]:
        return int(self.nx), int(self.ny), int(self.nz)

    @property
    def cell_sizes(self) -> Tuple[float, float, float]:
        return float(self.dx), float(self.dy), float(self.dz)

    @property
    def interior_shape(self) -> Tuple[int, int, int]:
        return int(self.nx) - 2, int(self.ny) - 2, int(self.nz) - 2

    @property
    def n_unknowns(self) -> int:
        mx, my, mz = self.interior_shape
        return max(mx, 0) * max(my, 0) * max(mz, 0)

    @property
    def axis_weights(self) -> Tuple[float, float, float]:
        """
        Cross-axis cell-size products scaling the second difference along x, y, z:
            (dy^2 dz^2, dx^2 dz^2, dx^2 dy^2)
        """
        dx2, dy2, dz2 = self.dx ** 2, self.dy ** 2, self.dz ** 2
        return dy2 * dz2, dx2 * dz2, dx2 * dy2

    def require_interior(self) -> None:
        """Fail fast if the interior node set is empty."""
        if min(self.interior_shape) < 1:
            raise ConfigurationError(
                f"grid {self.shape} has no interior nodes; every axis needs more than 2 nodes"
            )

    # -----------------------------
    # Coordinates
    # -----------------------------

    def x(self) -> np.ndarray:
        return self.x_min + self.dx * np.arange(self.nx)

    def y(self) -> np.ndarray:
        return self.y_min + self.dy * np.arange(self.ny)

    def z(self) -> np.ndarray:
        return self.z_min + self.dz * np.arange(self.nz)

    def mesh(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        return np.meshgrid(self.x(), self.y(), self.z(), indexing="ij")

    def node_position(self, i: int, j: int, k: int) -> Tuple[float, float, float]:
        return (
            self.x_min + i * self.dx,
            self.y_min + j * self.dy,
            self.z_min + k * self.dz,
        )

    # -----------------------------
    # Node classification / navigation
    # -----------------------------

    def in_bounds(self, i: int, j: int, k: int) -> bool:
        return 0 <= i < self.nx and 0 <= j < self.ny and 0 <= k < self.nz

    def at_domain_edge(self, i: int, j: int, k: int) -> bool:
        return (
            i <= 0 or i >= self.nx - 1
            or j <= 0 or j >= self.ny - 1
            or k <= 0 or k >= self.nz - 1
        )

    def is_interior(self, i: int, j: int, k: int) -> bool:
        return self.in_bounds(i, j, k) and not self.at_domain_edge(i, j, k)

    def adjacent_nodes(self, i: int, j: int, k: int) -> Iterator[Tuple[str, Node]]:
        """Yield (direction, node) for the up-to-six axis neighbours inside the grid."""
        for direction, axis, step in NEIGHBOR_DIRECTIONS:
            nb = [i, j, k]
            nb[axis] += step
            if self.in_bounds(*nb):
                yield direction, (nb[0], nb[1], nb[2])

    def direction_weight(self, direction: str) -> float:
        """Stencil weight of the neighbour in `direction` (see axis_weights)."""
        for name, axis, _ in NEIGHBOR_DIRECTIONS:
            if name == direction:
                return self.axis_weights[axis]
        raise ValueError(f"unknown neighbour direction '{direction}'")

    # -----------------------------
    # Interior index bijection
    # -----------------------------

    def ijk_to_index(self, i: int, j: int, k: int) -> int:
        if not self.is_interior(i, j, k):
            raise NodeIndexError(i, j, k, self.shape)
        mx, my, _ = self.interior_shape
        return (i - 1) + (j - 1) * mx + (k - 1) * mx * my

    def index_to_ijk(self, p: int) -> Node:
        n = self.n_unknowns
        if not 0 <= p < n:
            raise IndexError(f"unknown index {p} out of range [0, {n})")
        mx, my, _ = self.interior_shape
        k, rem = divmod(int(p), mx * my)
        j, i = divmod(rem, mx)
        return i + 1, j + 1, k + 1

    def ijk_to_indices(self, nodes: np.ndarray) -> np.ndarray:
        """Vectorised ijk_to_index for an (N, 3) integer array of nodes."""
        nodes = np.asarray(nodes, dtype=np.int64).reshape(-1, 3)
        if nodes.size == 0:
            return np.zeros(0, dtype=np.int64)
        i, j, k = nodes[:, 0], nodes[:, 1], nodes[:, 2]
        bad = (
            (i <= 0) | (i >= self.nx - 1)
            | (j <= 0) | (j >= self.ny - 1)
            | (k <= 0) | (k >= self.nz - 1)
        )
        if np.any(bad):
            raise NodeIndexError(*nodes[np.argmax(bad)], self.shape)
        mx, my, _ = self.interior_shape
        return (i - 1) + (j - 1) * mx + (k - 1) * mx * my

    # -----------------------------
    # Interior <-> unknown vector
    # -----------------------------

    def interior_to_vector(self, field: np.ndarray) -> np.ndarray:
        """Flatten field[1:-1, 1:-1, 1:-1] in unknown order (x fastest)."""
        if field.shape != self.shape:
            raise ValueError(f"field has shape {field.shape}, expected {self.shape}")
        return np.asarray(field[1:-1, 1:-1, 1:-1]).reshape(-1, order="F")

    def vector_to_interior(self, v: np.ndarray) -> np.ndarray:
        """Inverse of interior_to_vector: (n_unknowns,) -> (nx-2, ny-2, nz-2)."""
        if v.shape != (self.n_unknowns,):
            raise ValueError(f"vector has shape {v.shape}, expected ({self.n_unknowns},)")
        return np.asarray(v).reshape(self.interior_shape, order="F")

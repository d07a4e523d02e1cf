# operators/field.py
from __future__ import annotations

from typing import Optional

import numpy as np

from fieldsolver.core.grid import Grid3D


def electric_field_from_potential(
    potential: np.ndarray,
    grid: Grid3D,
    out: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    E = -grad(phi) on every node of the grid.

    Centred differences inside each axis, one-sided first differences at
    the two ends of each axis. Returns (nx, ny, nz, 3); written into `out` if given.
    """
    if potential.shape != grid.shape:
        raise ValueError(f"potential has shape {potential.shape}, expected {grid.shape}")
    gx, gy, gz = np.gradient(potential, grid.dx, grid.dy, grid.dz, edge_order=1)

    if out is None:
        out = np.empty(grid.shape + (3,), dtype=float)
    out[..., 0] = -gx
    out[..., 1] = -gy
    out[..., 2] = -gz
    return out

# core/mesh.py
from __future__ import annotations

from typing import Optional

import numpy as np

from fieldsolver.core.config import BoundaryConditions
from fieldsolver.core.grid import Grid3D


class SpatialMesh:
    """
    Dense node-centred fields on a Grid3D.

    charge_density : (nx, ny, nz)     read by the RHS assembly
    potential      : (nx, ny, nz)     domain edge read, interior written by the solver
    electric_field : (nx, ny, nz, 3)  written by the field extraction
    """

    def __init__(
        self,
        grid: Grid3D,
        *,
        boundary: Optional[BoundaryConditions] = None,
        charge_density: Optional[np.ndarray] = None,
    ) -> None:
        self.grid = grid
        shape = grid.shape
        self.charge_density = np.zeros(shape, dtype=float)
        self.potential = np.zeros(shape, dtype=float)
        self.electric_field = np.zeros(shape + (3,), dtype=float)

        if charge_density is not None:
            charge_density = np.asarray(charge_density, dtype=float)
            if charge_density.shape != shape:
                raise ValueError(
                    f"charge_density has shape {charge_density.shape}, expected {shape}"
                )
            self.charge_density[...] = charge_density

        self.boundary = boundary if boundary is not None else BoundaryConditions()
        self.set_boundary_potentials(self.boundary)

    @property
    def shape(self):
        return self.grid.shape

    def set_boundary_potentials(self, bc: BoundaryConditions) -> None:
        """Write face potentials. Faces are written x, y, z; shared edges keep the last one."""
        self.boundary = bc
        phi = self.potential
        phi[0, :, :] = bc.left
        phi[-1, :, :] = bc.right
        phi[:, 0, :] = bc.bottom
        phi[:, -1, :] = bc.top
        phi[:, :, 0] = bc.near
        phi[:, :, -1] = bc.far

    def clear_old_density_values(self) -> None:
        self.charge_density.fill(0.0)

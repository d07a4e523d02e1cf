# operators/rhs.py
from __future__ import annotations

import logging
from typing import Iterable, List, Optional

import numpy as np

from fieldsolver.core.grid import Grid3D
from fieldsolver.core.mesh import SpatialMesh
from fieldsolver.core.regions import InnerRegion
from fieldsolver.operators.backend import ADD, INSERT, LinearSystemBackend, ScipyDirectBackend, VectorHandle
from fieldsolver.operators.embedded import adjacent_nodes_not_at_domain_edge_and_inside_region

logger = logging.getLogger(__name__)


def init_rhs_vector_in_full_domain(mesh: SpatialMesh) -> np.ndarray:
    """
    Source term and domain-edge contributions for every interior unknown:

        b = -4 pi rho dx^2 dy^2 dz^2
            - dy^2 dz^2 (phi_left  + phi_right)   on the layers next to the x faces
            - dx^2 dz^2 (phi_bottom + phi_top)    on the layers next to the y faces
            - dx^2 dy^2 (phi_near  + phi_far)     on the layers next to the z faces

    With a single interior layer along an axis both faces contribute to it.
    """
    grid = mesh.grid
    grid.require_interior()
    phi = mesh.potential
    dx, dy, dz = grid.cell_sizes
    wx, wy, wz = grid.axis_weights

    b = -4.0 * np.pi * mesh.charge_density[1:-1, 1:-1, 1:-1] * (dx * dx * dy * dy * dz * dz)

    b[0, :, :] -= wx * phi[0, 1:-1, 1:-1]
    b[-1, :, :] -= wx * phi[-1, 1:-1, 1:-1]
    b[:, 0, :] -= wy * phi[1:-1, 0, 1:-1]
    b[:, -1, :] -= wy * phi[1:-1, -1, 1:-1]
    b[:, :, 0] -= wz * phi[1:-1, 1:-1, 0]
    b[:, :, -1] -= wz * phi[1:-1, 1:-1, -1]

    return b.reshape(-1, order="F")


def set_rhs_at_nodes_occupied_by_objects(
    backend: LinearSystemBackend,
    handle: VectorHandle,
    grid: Grid3D,
    region: InnerRegion,
) -> None:
    """Zero RHS at region-interior unknowns (their rows are identity rows)."""
    rows = grid.ijk_to_indices(region.nodes.inner_not_at_domain_edge)
    backend.set_vector_entries(handle, rows, 0.0, mode=INSERT)


def modify_rhs_near_object_boundaries(
    backend: LinearSystemBackend,
    handle: VectorHandle,
    grid: Grid3D,
    region: InnerRegion,
) -> None:
    """Move the region potential of dropped couplings to the RHS (accumulating)."""
    rows: List[int] = []
    values: List[float] = []
    for i, j, k in region.nodes.near_boundary_not_at_domain_edge:
        for direction, _ in adjacent_nodes_not_at_domain_edge_and_inside_region(grid, region, i, j, k):
            rows.append(grid.ijk_to_index(i, j, k))
            values.append(-region.potential * grid.direction_weight(direction))
    if rows:
        backend.set_vector_entries(handle, rows, values, mode=ADD)


def assemble_rhs(
    mesh: SpatialMesh,
    regions: Iterable[InnerRegion],
    backend: Optional[LinearSystemBackend] = None,
) -> np.ndarray:
    """RHS for one solve: full-domain terms, then every region in order."""
    grid = mesh.grid
    backend = ScipyDirectBackend() if backend is None else backend

    with backend.create_vector(grid.n_unknowns, name="rhs") as handle:
        backend.set_vector_entries(handle, np.arange(grid.n_unknowns), init_rhs_vector_in_full_domain(mesh))
        regions = list(regions)
        for region in regions:
            set_rhs_at_nodes_occupied_by_objects(backend, handle, grid, region)
        for region in regions:
            modify_rhs_near_object_boundaries(backend, handle, grid, region)
        b = backend.get_vector_values(handle)

    return b

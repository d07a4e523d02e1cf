# operators/embedded.py
from __future__ import annotations

import logging
from typing import Iterable, Iterator, List, Optional, Tuple

import numpy as np
import scipy.sparse as sp

from fieldsolver.core.errors import ConfigurationError
from fieldsolver.core.grid import Grid3D, Node
from fieldsolver.core.regions import InnerRegion
from fieldsolver.operators.assemble import assemble_poisson_matrix
from fieldsolver.operators.backend import INSERT, LinearSystemBackend, MatrixHandle, ScipyDirectBackend

logger = logging.getLogger(__name__)


def adjacent_nodes_not_at_domain_edge_and_inside_region(
    grid: Grid3D,
    region: InnerRegion,
    i: int,
    j: int,
    k: int,
) -> Iterator[Tuple[str, Node]]:
    """Yield (direction, node) for axis neighbours that are unknowns lying inside `region`."""
    inside = region.nodes.inside_mask
    for direction, nb in grid.adjacent_nodes(i, j, k):
        if not grid.at_domain_edge(*nb) and inside[nb]:
            yield direction, nb


def cross_out_nodes_occupied_by_objects(
    backend: LinearSystemBackend,
    handle: MatrixHandle,
    grid: Grid3D,
    region: InnerRegion,
) -> None:
    """Rows of region-interior unknowns become identity rows."""
    rows = grid.ijk_to_indices(region.nodes.inner_not_at_domain_edge)
    backend.zero_rows(handle, rows, diag=1.0)
    logger.debug("region '%s': %d identity rows", region.name, len(rows))


def modify_equation_near_object_boundaries(
    backend: LinearSystemBackend,
    handle: MatrixHandle,
    grid: Grid3D,
    region: InnerRegion,
) -> None:
    """Drop couplings from near-boundary rows to unknowns inside the region."""
    n_modified = 0
    for i, j, k in region.nodes.near_boundary_not_at_domain_edge:
        cols = [
            grid.ijk_to_index(*nb)
            for _, nb in adjacent_nodes_not_at_domain_edge_and_inside_region(grid, region, i, j, k)
        ]
        if not cols:
            continue
        backend.set_matrix_entries(handle, grid.ijk_to_index(i, j, k), cols, [0.0] * len(cols), mode=INSERT)
        n_modified += 1
    logger.debug("region '%s': %d near-boundary rows modified", region.name, n_modified)


def _log_shared_rows(grid: Grid3D, regions: List[InnerRegion]) -> None:
    owner = np.full(grid.shape, -1, dtype=int)
    for n, region in enumerate(regions):
        nodes = region.nodes.inner_not_at_domain_edge
        if len(nodes) == 0:
            continue
        i, j, k = nodes[:, 0], nodes[:, 1], nodes[:, 2]
        shared = np.count_nonzero(owner[i, j, k] >= 0)
        if shared:
            logger.debug(
                "region '%s' rewrites %d rows already set by an earlier region", region.name, shared
            )
        owner[i, j, k] = n


def construct_equation_matrix(
    grid: Grid3D,
    regions: Iterable[InnerRegion],
    backend: Optional[LinearSystemBackend] = None,
) -> sp.csr_matrix:
    """
    Base operator with every region applied in order, finalized to CSR.

    Regions must already be classified on `grid`.
    """
    regions = list(regions)
    A0 = assemble_poisson_matrix(grid)
    backend = ScipyDirectBackend() if backend is None else backend

    with backend.create_matrix(A0.shape[0], A0.shape[1], nnz_per_row=7, name="A", initial=A0) as handle:
        for region in regions:
            if region.nodes.grid != grid:
                raise ConfigurationError(
                    f"region '{region.name}' was classified on {region.nodes.grid}, "
                    f"not on {grid}"
                )
            cross_out_nodes_occupied_by_objects(backend, handle, grid, region)
            modify_equation_near_object_boundaries(backend, handle, grid, region)
        _log_shared_rows(grid, regions)
        A = backend.finalize_matrix(handle)

    logger.info("equation matrix: %d regions applied, nnz=%d", len(regions), A.nnz)
    return A

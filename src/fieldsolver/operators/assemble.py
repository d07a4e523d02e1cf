# operators/assemble.py
from __future__ import annotations

import logging

import scipy.sparse as sp

from fieldsolver.core.grid import Grid3D

logger = logging.getLogger(__name__)


def second_difference_1d(m: int) -> sp.csr_matrix:
    """
    1D second difference on m interior points, Dirichlet neighbours dropped:
        [-2, 1], [1, -2, 1], ..., [1, -2]      ([-2] when m == 1)
    """
    if m < 1:
        raise ValueError(f"second_difference_1d needs m >= 1; got {m}")
    if m == 1:
        return sp.csr_matrix([[-2.0]])
    return sp.diags([1.0, -2.0, 1.0], [-1, 0, 1], shape=(m, m), format="csr")


def multiply_pattern_along_diagonal(pattern: sp.spmatrix, n_times: int) -> sp.csr_matrix:
    """Block-diagonal matrix with `pattern` repeated n_times."""
    return sp.kron(sp.identity(n_times, format="csr"), pattern, format="csr")


def construct_d2dx2_in_3d(grid: Grid3D) -> sp.csr_matrix:
    mx, my, mz = grid.interior_shape
    d2dx2_2d = multiply_pattern_along_diagonal(second_difference_1d(mx), my)
    return multiply_pattern_along_diagonal(d2dx2_2d, mz)


def construct_d2dy2_in_3d(grid: Grid3D) -> sp.csr_matrix:
    mx, my, mz = grid.interior_shape
    # y neighbours sit mx rows apart
    d2dy2_2d = sp.kron(second_difference_1d(my), sp.identity(mx), format="csr")
    return multiply_pattern_along_diagonal(d2dy2_2d, mz)


def construct_d2dz2_in_3d(grid: Grid3D) -> sp.csr_matrix:
    mx, my, mz = grid.interior_shape
    # z neighbours sit mx*my rows apart
    return sp.kron(second_difference_1d(mz), sp.identity(mx * my), format="csr")


def assemble_poisson_matrix(grid: Grid3D) -> sp.csr_matrix:
    """
    7-point operator on the interior unknowns, multiplied through by dx^2 dy^2 dz^2:

        dy^2 dz^2 * Dxx + dx^2 dz^2 * Dyy + dx^2 dy^2 * Dzz

    Couplings to domain-edge nodes are dropped; their values enter through the RHS.
    """
    grid.require_interior()
    wx, wy, wz = grid.axis_weights

    A = (
        wx * construct_d2dx2_in_3d(grid)
        + wy * construct_d2dy2_in_3d(grid)
        + wz * construct_d2dz2_in_3d(grid)
    ).tocsr()
    A.eliminate_zeros()
    A.sort_indices()

    logger.info(
        "assembled Poisson operator for grid %s: %d unknowns, nnz=%d",
        grid.shape, A.shape[0], A.nnz,
    )
    return A

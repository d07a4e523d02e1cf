import numpy as np
import pytest

from fieldsolver.core.errors import ConfigurationError
from fieldsolver.core.grid import Grid3D
from fieldsolver.core.mesh import SpatialMesh
from fieldsolver.operators.assemble import (
    assemble_poisson_matrix,
    construct_d2dy2_in_3d,
    multiply_pattern_along_diagonal,
    second_difference_1d,
)
from fieldsolver.operators.rhs import init_rhs_vector_in_full_domain


def test_second_difference_1d():
    np.testing.assert_array_equal(second_difference_1d(1).toarray(), [[-2.0]])
    np.testing.assert_array_equal(
        second_difference_1d(3).toarray(),
        [[-2, 1, 0], [1, -2, 1], [0, 1, -2]],
    )


def test_pattern_along_diagonal_is_block_diagonal():
    D = multiply_pattern_along_diagonal(second_difference_1d(2), 3).toarray()
    assert D.shape == (6, 6)
    assert D[1, 2] == 0.0
    assert D[2, 3] == 1.0


def test_y_operator_couples_rows_nx_minus_2_apart():
    grid = Grid3D(nx=5, ny=5, nz=4, dx=1.0, dy=1.0, dz=1.0)
    Dyy = construct_d2dy2_in_3d(grid)
    p = grid.ijk_to_index(2, 2, 1)
    assert Dyy[p, grid.ijk_to_index(2, 1, 1)] == 1.0
    assert Dyy[p, grid.ijk_to_index(2, 3, 1)] == 1.0
    assert Dyy[p, grid.ijk_to_index(2, 2, 2)] == 0.0


def test_poisson_matrix_stencil_weights():
    grid = Grid3D(nx=5, ny=6, nz=7, dx=1.0, dy=2.0, dz=3.0)
    wx, wy, wz = grid.axis_weights
    A = assemble_poisson_matrix(grid)

    n = grid.n_unknowns
    assert A.shape == (n, n)
    assert abs(A - A.T).max() == 0.0
    np.testing.assert_allclose(A.diagonal(), -2.0 * (wx + wy + wz))

    p = grid.ijk_to_index(2, 2, 2)
    assert A[p, grid.ijk_to_index(3, 2, 2)] == wx
    assert A[p, grid.ijk_to_index(1, 2, 2)] == wx
    assert A[p, grid.ijk_to_index(2, 3, 2)] == wy
    assert A[p, grid.ijk_to_index(2, 2, 1)] == wz
    assert A.getrow(p).nnz == 7
    # corner unknown: three couplings dropped at the domain edge
    assert A.getrow(grid.ijk_to_index(1, 1, 1)).nnz == 4


def test_poisson_matrix_requires_interior():
    with pytest.raises(ConfigurationError):
        assemble_poisson_matrix(Grid3D(nx=2, ny=5, nz=5, dx=1.0, dy=1.0, dz=1.0))


def test_manufactured_quadratic_reproduces_source():
    # phi = x^2 + y^2 + z^2 has Laplacian 6, reproduced exactly by the stencil
    grid = Grid3D(nx=5, ny=6, nz=4, dx=0.5, dy=1.0, dz=2.0, x_min=-1.0)
    X, Y, Z = grid.mesh()
    phi = X ** 2 + Y ** 2 + Z ** 2

    mesh = SpatialMesh(grid)
    mesh.potential[...] = phi
    boundary_terms = init_rhs_vector_in_full_domain(mesh)

    A = assemble_poisson_matrix(grid)
    lhs = A @ grid.interior_to_vector(phi) - boundary_terms
    dx, dy, dz = grid.cell_sizes
    np.testing.assert_allclose(lhs, 6.0 * dx ** 2 * dy ** 2 * dz ** 2, rtol=1e-12)

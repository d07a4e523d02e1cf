import numpy as np
import pytest

from fieldsolver.core.errors import ConfigurationError
from fieldsolver.core.grid import Grid3D
from fieldsolver.core.regions import InnerRegionBox, InnerRegionSphere
from fieldsolver.operators.assemble import assemble_poisson_matrix
from fieldsolver.operators.embedded import construct_equation_matrix


def aniso_grid():
    return Grid3D(nx=7, ny=7, nz=7, dx=1.0, dy=2.0, dz=3.0)


def single_node_box(potential=1.0):
    # contains only node (3, 3, 3) at (3, 6, 9)
    return InnerRegionBox(
        "dot", potential, x_left=2.5, x_right=3.5, y_bottom=5.5, y_top=6.5, z_near=8.5, z_far=9.5
    )


def test_region_interior_rows_become_identity():
    grid = aniso_grid()
    box = single_node_box()
    box.classify(grid)
    A = construct_equation_matrix(grid, [box])

    p = grid.ijk_to_index(3, 3, 3)
    row = A.getrow(p)
    assert row.nnz == 1
    assert A[p, p] == 1.0
    col = A.getcol(p)
    assert col.nnz == 1


def test_near_boundary_rows_lose_coupling_to_region():
    grid = aniso_grid()
    wx, wy, wz = grid.axis_weights
    box = single_node_box()
    box.classify(grid)
    A = construct_equation_matrix(grid, [box])
    A0 = assemble_poisson_matrix(grid)

    p = grid.ijk_to_index(3, 3, 3)
    for nb in [(2, 3, 3), (4, 3, 3), (3, 2, 3), (3, 4, 3), (3, 3, 2), (3, 3, 4)]:
        q = grid.ijk_to_index(*nb)
        assert A[q, p] == 0.0
        assert A[q, q] == A0[q, q]
        assert A.getrow(q).nnz == 6

    q = grid.ijk_to_index(2, 3, 3)
    assert A[q, grid.ijk_to_index(1, 3, 3)] == wx
    assert A[q, grid.ijk_to_index(2, 4, 3)] == wy

    # rows away from the region are untouched
    far = grid.ijk_to_index(1, 1, 1)
    np.testing.assert_array_equal(A.getrow(far).toarray(), A0.getrow(far).toarray())


def test_region_touching_domain_edge():
    grid = Grid3D(nx=5, ny=5, nz=5, dx=1.0, dy=1.0, dz=1.0)
    box = InnerRegionBox("wall", 2.0, x_left=0, x_right=1, y_bottom=0, y_top=4, z_near=0, z_far=4)
    box.classify(grid)
    A = construct_equation_matrix(grid, [box])

    for j in range(1, 4):
        for k in range(1, 4):
            p = grid.ijk_to_index(1, j, k)
            assert A.getrow(p).nnz == 1
            q = grid.ijk_to_index(2, j, k)
            assert A[q, p] == 0.0


def test_no_regions_gives_base_operator():
    grid = aniso_grid()
    A = construct_equation_matrix(grid, [])
    assert abs(A - assemble_poisson_matrix(grid)).max() == 0.0


def test_overlapping_regions_accepted():
    grid = Grid3D(nx=5, ny=5, nz=5, dx=1.0, dy=1.0, dz=1.0)
    a = InnerRegionSphere("a", 1.0, origin=[2, 2, 2], radius=1.0)
    b = InnerRegionSphere("b", 2.0, origin=[2, 2, 2], radius=1.0)
    for r in (a, b):
        r.classify(grid)
    A = construct_equation_matrix(grid, [a, b])
    for p in grid.ijk_to_indices(a.nodes.inner_not_at_domain_edge):
        assert A.getrow(p).nnz == 1
        assert A[p, p] == 1.0


def test_region_classified_on_other_grid_rejected():
    sphere = InnerRegionSphere("s", 1.0, origin=[2, 2, 2], radius=1.0)
    sphere.classify(Grid3D(nx=5, ny=5, nz=5, dx=1.0, dy=1.0, dz=1.0))
    with pytest.raises(ConfigurationError):
        construct_equation_matrix(Grid3D(nx=6, ny=6, nz=6, dx=1.0, dy=1.0, dz=1.0), [sphere])


def test_region_classified_on_same_shape_other_spacing_rejected():
    sphere = InnerRegionSphere("s", 1.0, origin=[2, 2, 2], radius=1.0)
    sphere.classify(Grid3D(nx=5, ny=5, nz=5, dx=1.0, dy=1.0, dz=1.0, x_min=1.0))
    with pytest.raises(ConfigurationError):
        construct_equation_matrix(Grid3D(nx=5, ny=5, nz=5, dx=1.0, dy=1.0, dz=1.0), [sphere])

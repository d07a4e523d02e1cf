import numpy as np
import pytest

from fieldsolver.core.config import BoundaryConditions
from fieldsolver.core.grid import Grid3D
from fieldsolver.core.mesh import SpatialMesh


def test_boundary_faces_written():
    grid = Grid3D(nx=4, ny=5, nz=6, dx=1.0, dy=1.0, dz=1.0)
    bc = BoundaryConditions(left=1.0, right=2.0, bottom=3.0, top=4.0, near=5.0, far=6.0)
    mesh = SpatialMesh(grid, boundary=bc)

    assert mesh.potential[0, 2, 2] == 1.0
    assert mesh.potential[-1, 2, 2] == 2.0
    assert mesh.potential[2, 0, 2] == 3.0
    assert mesh.potential[2, -1, 2] == 4.0
    assert mesh.potential[2, 2, 0] == 5.0
    assert mesh.potential[2, 2, -1] == 6.0
    assert np.all(mesh.potential[1:-1, 1:-1, 1:-1] == 0.0)
    assert mesh.electric_field.shape == (4, 5, 6, 3)


def test_charge_density_shape_checked_and_cleared():
    grid = Grid3D(nx=3, ny=3, nz=3, dx=1.0, dy=1.0, dz=1.0)
    with pytest.raises(ValueError):
        SpatialMesh(grid, charge_density=np.ones((3, 3, 4)))
    mesh = SpatialMesh(grid, charge_density=np.ones((3, 3, 3)))
    mesh.clear_old_density_values()
    assert np.all(mesh.charge_density == 0.0)

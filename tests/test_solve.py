import logging

import numpy as np
import pytest

from fieldsolver.core.config import BoundaryConditions, SolverConfig
from fieldsolver.core.errors import BackendSolveError, ConfigurationError
from fieldsolver.core.grid import Grid3D
from fieldsolver.core.mesh import SpatialMesh
from fieldsolver.core.regions import InnerRegionBox, InnerRegionSphere, InnerRegionsManager
from fieldsolver.operators.backend import KRYLOV_METHODS, ScipyKrylovBackend
from fieldsolver.operators.solve import FieldSolver, SolverState, residual_norms

DIRECT = SolverConfig(method="direct")


def unit_grid(n=5):
    return Grid3D(nx=n, ny=n, nz=n, dx=1.0, dy=1.0, dz=1.0)


def centred_sphere(potential=10.0):
    return InnerRegionSphere("probe", potential, origin=[2, 2, 2], radius=1.0)


def test_sphere_in_grounded_box():
    grid = unit_grid()
    mesh = SpatialMesh(grid)
    sphere = centred_sphere(10.0)

    with FieldSolver(grid, [sphere], config=DIRECT) as solver:
        solver.eval_potential(mesh)
        assert solver.state is SolverState.SOLUTION_AVAILABLE

    phi = mesh.potential
    for i, j, k in sphere.nodes.inner:
        assert phi[i, j, k] == 10.0

    # distance sqrt(2): 6 phi = 20 + 2 phi_corner, corner: 6 phi_corner = 3 phi
    assert phi[1, 1, 2] == pytest.approx(4.0)
    assert phi[3, 2, 1] == pytest.approx(4.0)
    assert phi[1, 1, 1] == pytest.approx(2.0)
    assert phi[3, 3, 3] == pytest.approx(2.0)

    outside = ~sphere.nodes.inside_mask
    outside[0, :, :] = outside[-1, :, :] = False
    outside[:, 0, :] = outside[:, -1, :] = False
    outside[:, :, 0] = outside[:, :, -1] = False
    assert np.all((phi[outside] > 0.0) & (phi[outside] < 10.0))

    # domain edge untouched
    assert np.all(phi[0] == 0.0)
    assert np.all(phi[:, :, -1] == 0.0)


def test_uniform_potential_everywhere_direct_and_krylov():
    grid = unit_grid(7)
    for config in (DIRECT, SolverConfig(), SolverConfig(method="bicgstab", preconditioner="ilu")):
        mesh = SpatialMesh(grid, boundary=BoundaryConditions.uniform(3.0))
        sphere = InnerRegionSphere("s", 3.0, origin=[3, 3, 3], radius=1.5)
        with FieldSolver(grid, [sphere], config=config) as solver:
            solver.eval_potential_and_fields(mesh)
        np.testing.assert_allclose(mesh.potential, 3.0, rtol=0.0, atol=1e-8)
        np.testing.assert_allclose(mesh.electric_field, 0.0, atol=1e-7)


def test_manufactured_quadratic_solution():
    # phi = x^2 + y^2 + z^2, laplacian 6 = -4 pi rho
    grid = Grid3D(nx=6, ny=5, nz=7, dx=0.5, dy=1.0, dz=0.25, x_min=-1.0)
    X, Y, Z = grid.mesh()
    phi = X ** 2 + Y ** 2 + Z ** 2

    mesh = SpatialMesh(grid, charge_density=np.full(grid.shape, -6.0 / (4.0 * np.pi)))
    mesh.potential[...] = phi
    mesh.potential[1:-1, 1:-1, 1:-1] = 0.0

    with FieldSolver(grid, config=DIRECT) as solver:
        solver.eval_potential(mesh)
        assert solver.last_residual["||r||2/||b||2"] < 1e-12

    np.testing.assert_allclose(mesh.potential, phi, rtol=1e-10, atol=1e-10)


def test_region_potentials_pinned_in_solution_vector():
    grid = unit_grid(7)
    a = InnerRegionSphere("a", 5.0, origin=[2, 3, 3], radius=1.0)
    b = InnerRegionBox("b", -2.0, x_left=5, x_right=5, y_bottom=1, y_top=5, z_near=1, z_far=5)
    mesh = SpatialMesh(grid)
    with FieldSolver(grid, InnerRegionsManager([a, b]), config=SolverConfig(rtol=1e-10)) as solver:
        x = solver.eval_potential(mesh)
        assert np.all(x[grid.ijk_to_indices(a.nodes.inner_not_at_domain_edge)] == 5.0)
        assert np.all(x[grid.ijk_to_indices(b.nodes.inner_not_at_domain_edge)] == -2.0)
        np.testing.assert_array_equal(solver.solution, x)
    assert mesh.potential[5, 3, 3] == -2.0
    assert -2.0 < mesh.potential[4, 3, 3] < 5.0


def test_repeated_steps_reuse_operator():
    grid = unit_grid()
    mesh = SpatialMesh(grid)
    with FieldSolver(grid, [centred_sphere(1.0)], config=SolverConfig(rtol=1e-10)) as solver:
        A = solver.A
        solver.eval_potential(mesh)
        first = mesh.potential.copy()
        mesh.charge_density[1, 1, 1] = 1.0
        solver.eval_potential(mesh)
        assert solver.A is A
        assert mesh.potential[1, 1, 1] > first[1, 1, 1]


def test_rebuild_after_region_moves():
    grid = unit_grid(7)
    sphere = InnerRegionSphere("s", 4.0, origin=[2, 2, 2], radius=0.5)
    mesh = SpatialMesh(grid)
    with FieldSolver(grid, [sphere], config=DIRECT) as solver:
        solver.eval_potential(mesh)
        assert mesh.potential[2, 2, 2] == 4.0
        assert mesh.potential[4, 4, 4] < 4.0

        sphere.origin = np.array([4.0, 4.0, 4.0])
        solver.rebuild()
        assert solver.state is SolverState.OPERATOR_BUILT
        assert solver.solution is None
        solver.eval_potential(mesh)
        assert mesh.potential[4, 4, 4] == 4.0
        assert mesh.potential[2, 2, 2] < 4.0


def test_state_transitions_and_close():
    grid = unit_grid()
    solver = FieldSolver(grid, config=DIRECT)
    assert solver.state is SolverState.OPERATOR_BUILT

    solver.state = SolverState.SOLVING
    with pytest.raises(RuntimeError):
        solver.rebuild()
    with pytest.raises(RuntimeError):
        solver.eval_potential(SpatialMesh(grid))
    solver.state = SolverState.OPERATOR_BUILT

    solver.close()
    assert solver.state is SolverState.UNCONFIGURED
    assert not solver.backend.is_set_up
    with pytest.raises(RuntimeError):
        solver.eval_potential(SpatialMesh(grid))

    solver.rebuild()
    solver.eval_potential(SpatialMesh(grid))
    assert solver.state is SolverState.SOLUTION_AVAILABLE


def test_backend_failure_is_logged_and_reraised(caplog):
    grid = unit_grid()
    backend = ScipyKrylovBackend("gmres", rtol=1e-14, maxiter=1, restart=1, preconditioner=None)
    solver = FieldSolver(grid, [centred_sphere()], backend=backend)
    mesh = SpatialMesh(grid)
    mesh.charge_density[1:-1, 1:-1, 1:-1] = np.arange(27, dtype=float).reshape(3, 3, 3)

    with caplog.at_level(logging.ERROR, logger="fieldsolver.operators.solve"):
        with pytest.raises(BackendSolveError):
            solver.eval_potential(mesh)
    assert any(rec.levelno == logging.ERROR for rec in caplog.records)
    assert solver.state is SolverState.OPERATOR_BUILT
    assert solver.solution is None
    assert np.all(mesh.potential == 0.0)
    solver.close()


def test_mesh_grid_mismatch_rejected():
    grid = unit_grid()
    with FieldSolver(grid, config=DIRECT) as solver:
        with pytest.raises(ConfigurationError):
            solver.eval_potential(SpatialMesh(unit_grid(6)))
        other = Grid3D(nx=5, ny=5, nz=5, dx=0.5, dy=1.0, dz=1.0)
        with pytest.raises(ConfigurationError):
            solver.eval_potential(SpatialMesh(other))
        with pytest.raises(ConfigurationError):
            solver.eval_fields_from_potential(SpatialMesh(other))


def test_grid_without_interior_rejected():
    with pytest.raises(ConfigurationError):
        FieldSolver(Grid3D(nx=2, ny=5, nz=5, dx=1.0, dy=1.0, dz=1.0), config=DIRECT)


def test_residual_norms():
    import scipy.sparse as sp

    A = sp.identity(3, format="csr")
    norms = residual_norms(A, np.array([1.0, 2.0, 2.0]), np.array([1.0, 2.0, 4.0]))
    assert norms["||r||2"] == pytest.approx(2.0)
    assert norms["||r||inf"] == pytest.approx(2.0)
    assert norms["||x||2"] == pytest.approx(3.0)
    assert np.isnan(residual_norms(A, np.zeros(3), np.zeros(3))["||r||2/||b||2"])


@pytest.mark.parametrize("method", KRYLOV_METHODS)
def test_every_krylov_method_solves_sphere_case(method):
    grid = unit_grid()
    mesh = SpatialMesh(grid)
    sphere = centred_sphere(10.0)
    with FieldSolver(grid, [sphere], config=SolverConfig(method=method)) as solver:
        for _ in range(2):
            solver.eval_potential(mesh)
            assert solver.state is SolverState.SOLUTION_AVAILABLE

    assert mesh.potential[2, 2, 2] == 10.0
    assert mesh.potential[1, 1, 2] == pytest.approx(4.0, abs=1e-6)
    assert mesh.potential[1, 1, 1] == pytest.approx(2.0, abs=1e-6)


def test_rebuild_without_reclassify_detects_other_grid():
    grid = unit_grid()
    sphere = centred_sphere()
    with FieldSolver(grid, [sphere], config=DIRECT) as solver:
        sphere.classify(Grid3D(nx=5, ny=5, nz=5, dx=0.5, dy=1.0, dz=1.0))
        with pytest.raises(ConfigurationError):
            solver.rebuild(reclassify=False)
        solver.rebuild()
        assert solver.state is SolverState.OPERATOR_BUILT

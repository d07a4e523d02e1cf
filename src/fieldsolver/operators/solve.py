# operators/solve.py
from __future__ import annotations

import enum
import logging
from typing import Dict, Iterable, Optional, Union

import numpy as np
import scipy.sparse as sp

from fieldsolver.core.config import SolverConfig
from fieldsolver.core.errors import BackendAllocationError, BackendSolveError, ConfigurationError
from fieldsolver.core.grid import Grid3D
from fieldsolver.core.mesh import SpatialMesh
from fieldsolver.core.regions import InnerRegion, InnerRegionsManager
from fieldsolver.operators.backend import LinearSystemBackend, create_backend
from fieldsolver.operators.embedded import construct_equation_matrix
from fieldsolver.operators.field import electric_field_from_potential
from fieldsolver.operators.rhs import assemble_rhs

logger = logging.getLogger(__name__)


# ============================
# Low-level linear algebra
# ============================

def compute_residual(A: sp.spmatrix, x: np.ndarray, b: np.ndarray) -> np.ndarray:
    """
    r = b - A x
    """
    return b - A @ x


def residual_norms(A: sp.spmatrix, x: np.ndarray, b: np.ndarray) -> Dict[str, float]:
    """
    Common residual diagnostics.
    """
    r = compute_residual(A, x, b)
    bn = float(np.linalg.norm(b))
    rn = float(np.linalg.norm(r))
    return {
        "||r||2": rn,
        "||b||2": bn,
        "||r||2/||b||2": rn / bn if bn > 0 else np.nan,
        "||x||2": float(np.linalg.norm(x)),
        "||r||inf": float(np.max(np.abs(r))) if r.size else 0.0,
    }


# ============================
# Solver
# ============================

class SolverState(enum.Enum):
    UNCONFIGURED = "unconfigured"
    OPERATOR_BUILT = "operator_built"
    SOLVING = "solving"
    SOLUTION_AVAILABLE = "solution_available"


class FieldSolver:
    """
    Poisson solve with embedded fixed-potential regions.

    The equation matrix and the backend solve context persist between steps;
    rebuild() is the only way to change them (new region geometry, moved
    regions, new backend settings). Each step:

        eval_potential(mesh)              RHS, solve, pin region nodes, scatter to mesh.potential
        eval_fields_from_potential(mesh)  mesh.electric_field = -grad(mesh.potential)

    Use as a context manager (or call close()) to release the backend.
    """

    def __init__(
        self,
        grid: Grid3D,
        regions: Union[InnerRegionsManager, Iterable[InnerRegion], None] = None,
        *,
        config: Optional[SolverConfig] = None,
        backend: Optional[LinearSystemBackend] = None,
    ) -> None:
        self.grid = grid
        if isinstance(regions, InnerRegionsManager):
            self.regions = regions
        else:
            self.regions = InnerRegionsManager(() if regions is None else regions)
        self.config = SolverConfig() if config is None else config
        self.backend = create_backend(self.config) if backend is None else backend

        self.state = SolverState.UNCONFIGURED
        self.A: Optional[sp.csr_matrix] = None
        self.last_residual: Dict[str, float] = {}
        self._x: Optional[np.ndarray] = None

        self.rebuild()

    # --- operator lifecycle

    def rebuild(self, *, reclassify: bool = True) -> None:
        """Recompute region node sets (optional), the equation matrix and the solve context."""
        if self.state is SolverState.SOLVING:
            raise RuntimeError("cannot rebuild the operator while a solve is in progress")

        self.grid.require_interior()
        if reclassify:
            self.regions.classify(self.grid)

        self.backend.release()
        self.state = SolverState.UNCONFIGURED
        self.A = construct_equation_matrix(self.grid, self.regions, self.backend)
        try:
            self.backend.setup(self.A)
        except BackendAllocationError as exc:
            logger.error("backend setup failed: %s", exc)
            raise

        self._x = None
        self.state = SolverState.OPERATOR_BUILT
        for line in self.regions.describe():
            logger.info(line)

    def close(self) -> None:
        self.backend.release()
        self.A = None
        self._x = None
        self.state = SolverState.UNCONFIGURED

    def __enter__(self) -> "FieldSolver":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --- per-step operations

    def _check_mesh(self, mesh: SpatialMesh) -> None:
        g = mesh.grid
        if g.shape != self.grid.shape or not np.allclose(g.cell_sizes, self.grid.cell_sizes, rtol=1e-12, atol=0.0):
            raise ConfigurationError(
                f"mesh grid {g.shape} with cells {g.cell_sizes} does not match the solver grid "
                f"{self.grid.shape} with cells {self.grid.cell_sizes}"
            )

    def _require_operator(self) -> None:
        if self.state is SolverState.UNCONFIGURED:
            raise RuntimeError("solver has no operator; call rebuild() first")
        if self.state is SolverState.SOLVING:
            raise RuntimeError("a solve is already in progress")

    @property
    def solution(self) -> Optional[np.ndarray]:
        """Last solution vector in unknown order (None before the first solve)."""
        return None if self._x is None else self._x.copy()

    def eval_potential(self, mesh: SpatialMesh) -> np.ndarray:
        self._require_operator()
        self._check_mesh(mesh)

        b = assemble_rhs(mesh, self.regions, self.backend)
        x0 = self._x if self.config.reuse_initial_guess else None

        self.state = SolverState.SOLVING
        try:
            x = self.backend.solve(b, x0)
        except BackendSolveError as exc:
            logger.error("potential solve failed: %s", exc)
            raise
        finally:
            if self.state is SolverState.SOLVING:
                self.state = SolverState.OPERATOR_BUILT

        self.last_residual = residual_norms(self.A, x, b)

        for region in self.regions:
            rows = self.grid.ijk_to_indices(region.nodes.inner_not_at_domain_edge)
            x[rows] = region.potential

        self._x = x
        mesh.potential[1:-1, 1:-1, 1:-1] = self.grid.vector_to_interior(x)
        self.state = SolverState.SOLUTION_AVAILABLE

        logger.info(
            "potential solved: %s, iterations=%s, ||r||2/||b||2=%.3e",
            self.backend.last_info.get("method"),
            self.backend.last_info.get("iterations"),
            self.last_residual["||r||2/||b||2"],
        )
        return x

    def eval_fields_from_potential(self, mesh: SpatialMesh) -> np.ndarray:
        self._check_mesh(mesh)
        return electric_field_from_potential(mesh.potential, self.grid, out=mesh.electric_field)

    def eval_potential_and_fields(self, mesh: SpatialMesh) -> None:
        self.eval_potential(mesh)
        self.eval_fields_from_potential(mesh)

# operators/backend.py
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Sequence

import numpy as np
import pyamg
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from fieldsolver.core.config import SolverConfig
from fieldsolver.core.errors import BackendAllocationError, BackendSolveError

logger = logging.getLogger(__name__)

INSERT = "insert"
ADD = "add"


# ============================
# Handles
# ============================

class _Handle:
    """Scoped backend object; released on context exit or by release()."""

    kind = "object"

    def __init__(self, name: str) -> None:
        self.name = name
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def _check(self) -> None:
        if self._released:
            raise BackendAllocationError(f"{self.kind} '{self.name}' used after release")

    def release(self) -> None:
        self._released = True

    def __enter__(self):
        self._check()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class MatrixHandle(_Handle):
    kind = "matrix"

    def __init__(self, name: str, matrix: sp.lil_matrix, nnz_per_row: int) -> None:
        super().__init__(name)
        self._matrix = matrix
        self.nnz_per_row = nnz_per_row

    @property
    def matrix(self) -> sp.lil_matrix:
        self._check()
        return self._matrix

    @property
    def shape(self):
        return self._matrix.shape

    def release(self) -> None:
        super().release()
        self._matrix = None


class VectorHandle(_Handle):
    kind = "vector"

    def __init__(self, name: str, values: np.ndarray) -> None:
        super().__init__(name)
        self._values = values

    @property
    def values(self) -> np.ndarray:
        self._check()
        return self._values

    @property
    def size(self) -> int:
        return int(self._values.size)

    def release(self) -> None:
        super().release()
        self._values = None


def _check_mode(mode: str) -> None:
    if mode not in (INSERT, ADD):
        raise ValueError(f"mode must be '{INSERT}' or '{ADD}'; got {mode!r}")


# ============================
# Backend contract
# ============================

class LinearSystemBackend(ABC):
    """
    Matrix/vector storage plus a solve context for one coefficient matrix.

    Storage is scipy-based for every implementation: matrices are assembled
    as LIL and finalized to CSR. Subclasses provide the solve context:

        setup(A)        build factorization / preconditioner for A
        solve(b, x0)    solve A x = b
        release()       drop the solve context
    """

    name = "backend"

    def __init__(self) -> None:
        self.A: Optional[sp.csr_matrix] = None
        self.last_info: Dict[str, Any] = {}

    # --- matrices

    def create_matrix(
        self,
        rows: int,
        cols: int,
        nnz_per_row: int = 7,
        name: str = "A",
        initial: Optional[sp.spmatrix] = None,
    ) -> MatrixHandle:
        if rows < 1 or cols < 1:
            raise BackendAllocationError(f"cannot allocate a {rows}x{cols} matrix '{name}'")
        if initial is not None:
            if initial.shape != (rows, cols):
                raise BackendAllocationError(
                    f"initial matrix has shape {initial.shape}, expected {(rows, cols)}"
                )
            M = sp.lil_matrix(initial, dtype=float)
        else:
            M = sp.lil_matrix((rows, cols), dtype=float)
        return MatrixHandle(name, M, nnz_per_row)

    def set_matrix_entries(
        self,
        handle: MatrixHandle,
        row: int,
        cols: Sequence[int],
        values: Sequence[float],
        mode: str = INSERT,
    ) -> None:
        _check_mode(mode)
        M = handle.matrix
        if len(cols) != len(values):
            raise ValueError("cols and values must have the same length")
        for c, v in zip(cols, values):
            if mode == ADD:
                M[row, c] = M[row, c] + v
            else:
                M[row, c] = v

    def zero_rows(self, handle: MatrixHandle, rows: Sequence[int], diag: float = 1.0) -> None:
        """Replace each row by `diag` on the diagonal and nothing else."""
        M = handle.matrix
        for r in rows:
            r = int(r)
            M.rows[r] = [r]
            M.data[r] = [float(diag)]

    def finalize_matrix(self, handle: MatrixHandle) -> sp.csr_matrix:
        A = handle.matrix.tocsr()
        A.eliminate_zeros()
        A.sort_indices()
        return A

    # --- vectors

    def create_vector(self, size: int, name: str = "b") -> VectorHandle:
        if size < 1:
            raise BackendAllocationError(f"cannot allocate vector '{name}' of size {size}")
        return VectorHandle(name, np.zeros(int(size), dtype=float))

    def set_vector_entries(
        self,
        handle: VectorHandle,
        indices: Sequence[int],
        values,
        mode: str = INSERT,
    ) -> None:
        """Scatter `values` into `handle`. In add mode repeated indices accumulate."""
        _check_mode(mode)
        v = handle.values
        idx = np.asarray(indices, dtype=np.int64)
        vals = np.broadcast_to(np.asarray(values, dtype=float), idx.shape)
        if mode == ADD:
            np.add.at(v, idx, vals)
        else:
            v[idx] = vals

    def get_vector_values(self, handle: VectorHandle, indices: Optional[Sequence[int]] = None) -> np.ndarray:
        v = handle.values
        if indices is None:
            return v.copy()
        return v[np.asarray(indices, dtype=np.int64)].copy()

    # --- solve context

    @abstractmethod
    def setup(self, A: sp.spmatrix) -> None:
        ...

    @abstractmethod
    def solve(self, b: np.ndarray, x0: Optional[np.ndarray] = None) -> np.ndarray:
        ...

    def release(self) -> None:
        self.A = None

    @property
    def is_set_up(self) -> bool:
        return self.A is not None

    def _require_setup(self) -> sp.csr_matrix:
        if self.A is None:
            raise BackendAllocationError(f"{self.name} backend has no matrix; call setup(A) first")
        return self.A

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def _check_finite(x: np.ndarray, method: str, info: Optional[int] = None) -> np.ndarray:
    if not np.all(np.isfinite(x)):
        raise BackendSolveError(f"{method} returned a non-finite solution", info=info)
    return x


# ============================
# Direct
# ============================

class ScipyDirectBackend(LinearSystemBackend):
    """Sparse LU (SuperLU) factorized once in setup, reused for every solve."""

    name = "direct"

    def __init__(self) -> None:
        super().__init__()
        self._lu = None

    def setup(self, A: sp.spmatrix) -> None:
        try:
            self._lu = spla.splu(sp.csc_matrix(A))
        except (RuntimeError, ValueError) as exc:
            raise BackendAllocationError(f"sparse LU factorization failed: {exc}") from exc
        self.A = sp.csr_matrix(A)
        logger.info("direct backend: factorized %dx%d matrix (nnz=%d)", A.shape[0], A.shape[1], A.nnz)

    def solve(self, b: np.ndarray, x0: Optional[np.ndarray] = None) -> np.ndarray:
        self._require_setup()
        x = self._lu.solve(np.asarray(b, dtype=float))
        self.last_info = {"method": self.name, "iterations": 0, "info": 0}
        return _check_finite(x, self.name)

    def release(self) -> None:
        super().release()
        self._lu = None


# ============================
# Krylov
# ============================

KRYLOV_METHODS = ("gmres", "lgmres", "bicgstab", "cg")


class ScipyKrylovBackend(LinearSystemBackend):
    """
    scipy.sparse.linalg Krylov solve with an optional preconditioner.

    preconditioner:
      "amg"    pyamg smoothed aggregation, one V-cycle per application
      "ilu"    incomplete LU (spilu)
      "jacobi" inverse diagonal
      None     unpreconditioned
    """

    name = "krylov"

    def __init__(
        self,
        method: str = "gmres",
        *,
        rtol: float = 1e-12,
        atol: float = 0.0,
        maxiter: Optional[int] = None,
        restart: int = 50,
        preconditioner: Optional[str] = "amg",
    ) -> None:
        super().__init__()
        if method not in KRYLOV_METHODS:
            raise ValueError(f"unknown Krylov method '{method}'; use one of {KRYLOV_METHODS}")
        self.method = method
        self.rtol = float(rtol)
        self.atol = float(atol)
        self.maxiter = maxiter
        self.restart = int(restart)
        self.preconditioner = preconditioner
        self.M: Optional[spla.LinearOperator] = None

    def _build_preconditioner(self, A: sp.csr_matrix) -> Optional[spla.LinearOperator]:
        pc = self.preconditioner
        if pc is None:
            return None
        if pc == "amg":
            ml = pyamg.smoothed_aggregation_solver(A)
            logger.debug("AMG hierarchy:\n%s", ml)
            return ml.aspreconditioner(cycle="V")
        if pc == "ilu":
            ilu = spla.spilu(sp.csc_matrix(A))
            return spla.LinearOperator(A.shape, matvec=ilu.solve, dtype=float)
        if pc == "jacobi":
            d = A.diagonal()
            if np.any(d == 0.0):
                raise ValueError("zero on the diagonal; Jacobi preconditioner undefined")
            inv_d = 1.0 / d
            return spla.LinearOperator(A.shape, matvec=lambda r: inv_d * r, dtype=float)
        raise ValueError(f"unknown preconditioner '{pc}'")

    def setup(self, A: sp.spmatrix) -> None:
        A = sp.csr_matrix(A, dtype=float)
        try:
            self.M = self._build_preconditioner(A)
        except (RuntimeError, ValueError) as exc:
            raise BackendAllocationError(
                f"{self.preconditioner} preconditioner setup failed: {exc}"
            ) from exc
        self.A = A
        logger.info(
            "krylov backend: %s, preconditioner=%s, %dx%d matrix (nnz=%d)",
            self.method, self.preconditioner, A.shape[0], A.shape[1], A.nnz,
        )

    def solve(self, b: np.ndarray, x0: Optional[np.ndarray] = None) -> np.ndarray:
        A = self._require_setup()
        b = np.asarray(b, dtype=float)
        iterations = [0]

        def count(_):
            iterations[0] += 1

        common = dict(x0=x0, rtol=self.rtol, atol=self.atol, M=self.M, callback=count)
        # lgmres has no None default for maxiter
        if self.maxiter is not None:
            common["maxiter"] = int(self.maxiter)
        if self.method == "gmres":
            x, info = spla.gmres(A, b, restart=self.restart, callback_type="pr_norm", **common)
        elif self.method == "lgmres":
            x, info = spla.lgmres(A, b, **common)
        elif self.method == "bicgstab":
            x, info = spla.bicgstab(A, b, **common)
        else:
            x, info = spla.cg(A, b, **common)

        self.last_info = {"method": self.method, "iterations": iterations[0], "info": int(info)}
        if info > 0:
            raise BackendSolveError(
                f"{self.method} did not converge to rtol={self.rtol:g} "
                f"after {iterations[0]} iterations",
                info=int(info),
            )
        if info < 0:
            raise BackendSolveError(f"{self.method} breakdown or illegal input", info=int(info))
        return _check_finite(x, self.method, info=int(info))

    def release(self) -> None:
        super().release()
        self.M = None


def create_backend(config: Optional[SolverConfig] = None) -> LinearSystemBackend:
    """Backend factory keyed on SolverConfig.method."""
    config = SolverConfig() if config is None else config
    if config.method == "direct":
        return ScipyDirectBackend()
    return ScipyKrylovBackend(
        config.method,
        rtol=config.rtol,
        atol=config.atol,
        maxiter=config.maxiter,
        restart=config.restart,
        preconditioner=config.preconditioner,
    )

# core/config.py
from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any, Mapping, Optional

from fieldsolver.core.errors import ConfigurationError


SOLVER_METHODS = ("gmres", "lgmres", "bicgstab", "cg", "direct")
PRECONDITIONERS = ("amg", "ilu", "jacobi", None)

# PETSc-style option names accepted by SolverConfig.from_options
_OPTION_ALIASES = {
    "ksp_type": "method",
    "ksp_rtol": "rtol",
    "ksp_atol": "atol",
    "ksp_max_it": "maxiter",
    "ksp_gmres_restart": "restart",
    "pc_type": "preconditioner",
}

_METHOD_ALIASES = {"preonly": "direct", "lu": "direct"}
_PC_ALIASES = {"gamg": "amg", "ml": "amg", "none": None, "": None}

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    s = str(value).strip().lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    raise ValueError(f"expected a boolean, got {value!r}")


@dataclass(frozen=True)
class SolverConfig:
    """
    Linear-solve settings handed to the backend.

    Defaults follow the usual setup for this operator: restarted GMRES with an
    algebraic-multigrid preconditioner, relative tolerance 1e-12, previous
    solution reused as the initial guess.
    """
    method: str = "gmres"
    rtol: float = 1e-12
    atol: float = 0.0
    maxiter: Optional[int] = None
    restart: int = 50
    preconditioner: Optional[str] = "amg"
    reuse_initial_guess: bool = True

    def __post_init__(self) -> None:
        if self.method not in SOLVER_METHODS:
            raise ConfigurationError(
                f"unknown solver method '{self.method}'; use one of {SOLVER_METHODS}"
            )
        if self.preconditioner not in PRECONDITIONERS:
            raise ConfigurationError(
                f"unknown preconditioner '{self.preconditioner}'; use one of {PRECONDITIONERS}"
            )
        if self.rtol < 0.0 or self.atol < 0.0:
            raise ConfigurationError("rtol and atol must be >= 0.")
        if self.rtol == 0.0 and self.atol == 0.0 and self.method != "direct":
            raise ConfigurationError("at least one of rtol, atol must be positive.")
        if self.maxiter is not None and int(self.maxiter) < 1:
            raise ConfigurationError("maxiter must be >= 1.")
        if int(self.restart) < 1:
            raise ConfigurationError("restart must be >= 1.")

    @classmethod
    def from_options(
        cls,
        options: Mapping[str, Any],
        *,
        base: Optional["SolverConfig"] = None,
    ) -> "SolverConfig":
        """
        Override `base` (default: SolverConfig()) with externally supplied options.

        Accepts field names as well as PETSc-style keys
        (ksp_type, ksp_rtol, ksp_atol, ksp_max_it, ksp_gmres_restart, pc_type).
        Unknown keys raise ConfigurationError.
        """
        base = cls() if base is None else base
        known = {f.name for f in fields(cls)}
        updates: dict = {}

        for key, value in options.items():
            name = _OPTION_ALIASES.get(key.lstrip("-"), key.lstrip("-"))
            if name not in known:
                raise ConfigurationError(f"unknown solver option '{key}'")
            updates[name] = value

        if "method" in updates:
            method = str(updates["method"]).strip().lower()
            updates["method"] = _METHOD_ALIASES.get(method, method)
        if "preconditioner" in updates and updates["preconditioner"] is not None:
            pc = str(updates["preconditioner"]).strip().lower()
            updates["preconditioner"] = _PC_ALIASES.get(pc, pc)

        try:
            for name in ("rtol", "atol"):
                if name in updates:
                    updates[name] = float(updates[name])
            for name in ("maxiter", "restart"):
                if name in updates and updates[name] is not None:
                    updates[name] = int(updates[name])
            if "reuse_initial_guess" in updates:
                updates["reuse_initial_guess"] = _as_bool(updates["reuse_initial_guess"])
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"invalid solver option value: {exc}") from exc

        return replace(base, **updates)


@dataclass(frozen=True)
class BoundaryConditions:
    """
    Dirichlet potentials on the six faces of the domain.

    left/right: i = 0 / i = nx-1
    bottom/top: j = 0 / j = ny-1
    near/far:   k = 0 / k = nz-1
    """
    left: float = 0.0
    right: float = 0.0
    bottom: float = 0.0
    top: float = 0.0
    near: float = 0.0
    far: float = 0.0

    @classmethod
    def uniform(cls, potential: float) -> "BoundaryConditions":
        v = float(potential)
        return cls(left=v, right=v, bottom=v, top=v, near=v, far=v)

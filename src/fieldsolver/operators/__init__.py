"""
Operators: discretization/assembly + embedded regions + RHS + linear solves.

Public API:
- assemble_poisson_matrix, construct_equation_matrix, assemble_rhs
- LinearSystemBackend implementations and create_backend
- FieldSolver, residual_norms, compute_residual
- electric_field_from_potential
"""

# Assembly
from .assemble import (
    second_difference_1d,
    multiply_pattern_along_diagonal,
    construct_d2dx2_in_3d,
    construct_d2dy2_in_3d,
    construct_d2dz2_in_3d,
    assemble_poisson_matrix,
)
from .embedded import construct_equation_matrix
from .rhs import assemble_rhs

# Backends
from .backend import (
    LinearSystemBackend,
    MatrixHandle,
    VectorHandle,
    ScipyDirectBackend,
    ScipyKrylovBackend,
    create_backend,
)

# Solves
from .solve import FieldSolver, SolverState, residual_norms, compute_residual
from .field import electric_field_from_potential

__all__ = [
    # Assembly
    "second_difference_1d",
    "multiply_pattern_along_diagonal",
    "construct_d2dx2_in_3d",
    "construct_d2dy2_in_3d",
    "construct_d2dz2_in_3d",
    "assemble_poisson_matrix",
    "construct_equation_matrix",
    "assemble_rhs",

    # Backends
    "LinearSystemBackend",
    "MatrixHandle",
    "VectorHandle",
    "ScipyDirectBackend",
    "ScipyKrylovBackend",
    "create_backend",

    # Solves
    "FieldSolver",
    "SolverState",
    "residual_norms",
    "compute_residual",
    "electric_field_from_potential",
]

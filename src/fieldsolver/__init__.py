"""
fieldsolver: finite-difference Poisson solver on a 3D grid with embedded
fixed-potential conducting regions.
"""

from .core import (
    Grid3D,
    SpatialMesh,
    SolverConfig,
    BoundaryConditions,
    InnerRegionBox,
    InnerRegionSphere,
    InnerRegionCylinder,
    InnerRegionTube,
    InnerRegionsManager,
    region_from_config,
)
from .operators import FieldSolver, SolverState, create_backend

__all__ = [
    "Grid3D",
    "SpatialMesh",
    "SolverConfig",
    "BoundaryConditions",
    "InnerRegionBox",
    "InnerRegionSphere",
    "InnerRegionCylinder",
    "InnerRegionTube",
    "InnerRegionsManager",
    "region_from_config",
    "FieldSolver",
    "SolverState",
    "create_backend",
]

__version__ = "0.1.0"

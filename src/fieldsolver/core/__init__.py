"""
Core: problem definition (grid, mesh fields, configs, embedded regions, errors).
"""

from .errors import (
    FieldSolverError,
    ConfigurationError,
    NodeIndexError,
    BackendAllocationError,
    BackendSolveError,
)
from .config import SolverConfig, BoundaryConditions
from .grid import Grid3D, NEIGHBOR_DIRECTIONS
from .mesh import SpatialMesh
from .regions import (
    RegionNodes,
    InnerRegion,
    InnerRegionBox,
    InnerRegionSphere,
    InnerRegionCylinder,
    InnerRegionTube,
    InnerRegionsManager,
    region_from_config,
    load_region_metadata,
)

__all__ = [
    # Errors
    "FieldSolverError",
    "ConfigurationError",
    "NodeIndexError",
    "BackendAllocationError",
    "BackendSolveError",

    # Configs
    "SolverConfig",
    "BoundaryConditions",

    # Grid + mesh
    "Grid3D",
    "NEIGHBOR_DIRECTIONS",
    "SpatialMesh",

    # Regions
    "RegionNodes",
    "InnerRegion",
    "InnerRegionBox",
    "InnerRegionSphere",
    "InnerRegionCylinder",
    "InnerRegionTube",
    "InnerRegionsManager",
    "region_from_config",
    "load_region_metadata",
]

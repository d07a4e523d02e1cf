# core/regions.py
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from fieldsolver.core.errors import ConfigurationError
from fieldsolver.core.grid import Grid3D

logger = logging.getLogger(__name__)


# -----------------------------
# Node classification
# -----------------------------

def _nodes_in_unknown_order(mask: np.ndarray) -> np.ndarray:
    """(N, 3) node array of True entries, ordered x fastest then y then z."""
    nodes = np.argwhere(mask.transpose(2, 1, 0))[:, ::-1]
    nodes = np.ascontiguousarray(nodes, dtype=np.int64)
    nodes.setflags(write=False)
    return nodes


def _dilate_6(mask: np.ndarray) -> np.ndarray:
    """Nodes with at least one axis neighbour in `mask`."""
    adj = np.zeros_like(mask)
    adj[1:, :, :] |= mask[:-1, :, :]
    adj[:-1, :, :] |= mask[1:, :, :]
    adj[:, 1:, :] |= mask[:, :-1, :]
    adj[:, :-1, :] |= mask[:, 1:, :]
    adj[:, :, 1:] |= mask[:, :, :-1]
    adj[:, :, :-1] |= mask[:, :, 1:]
    return adj


def domain_edge_mask(grid: Grid3D) -> np.ndarray:
    edge = np.ones(grid.shape, dtype=bool)
    edge[1:-1, 1:-1, 1:-1] = False
    return edge


@dataclass(frozen=True)
class RegionNodes:
    """
    Node sets of one region on one grid. Immutable; recompute with
    InnerRegion.classify(grid) whenever the geometry or the grid changes.

    Arrays are (N, 3) integer node coordinates ordered like the unknowns.
    """
    grid: Grid3D
    inside_mask: np.ndarray
    inner: np.ndarray
    inner_not_at_domain_edge: np.ndarray
    near_boundary: np.ndarray
    near_boundary_not_at_domain_edge: np.ndarray

    def is_inside(self, i: int, j: int, k: int) -> bool:
        return bool(self.inside_mask[i, j, k])

    @property
    def grid_shape(self) -> Tuple[int, int, int]:
        return self.grid.shape


def classify_nodes(region: "InnerRegion", grid: Grid3D) -> RegionNodes:
    X, Y, Z = grid.mesh()
    inside = np.asarray(region.contains_point(X, Y, Z), dtype=bool)
    inside.setflags(write=False)

    edge = domain_edge_mask(grid)
    near = _dilate_6(inside) & ~inside

    return RegionNodes(
        grid=grid,
        inside_mask=inside,
        inner=_nodes_in_unknown_order(inside),
        inner_not_at_domain_edge=_nodes_in_unknown_order(inside & ~edge),
        near_boundary=_nodes_in_unknown_order(near),
        near_boundary_not_at_domain_edge=_nodes_in_unknown_order(near & ~edge),
    )


# -----------------------------
# Regions
# -----------------------------

def _finite(name: str, value: Any) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be a number; got {value!r}") from exc
    if not np.isfinite(v):
        raise ConfigurationError(f"{name} must be finite; got {v}")
    return v


def _point(name: str, value: Sequence[float]) -> np.ndarray:
    if len(value) != 3:
        raise ConfigurationError(f"{name} must have 3 components; got {value!r}")
    return np.array([_finite(f"{name}[{n}]", c) for n, c in enumerate(value)], dtype=float)


class InnerRegion(ABC):
    """
    A conducting object embedded in the domain and held at a fixed potential.

    Subclasses provide the geometry through `contains_point`, which must accept
    scalars or broadcastable numpy arrays. `model` names an optional particle
    interaction model; it does not change how the region enters the Poisson
    system.
    """

    object_type: str = ""

    def __init__(self, name: str, potential: float, *, model: Optional[str] = None) -> None:
        if not isinstance(name, str) or not name:
            raise ConfigurationError("region name must be a non-empty string.")
        self.name = name
        self.potential = _finite(f"{name}: potential", potential)
        self.model = model
        self.total_absorbed_particles = 0
        self.total_absorbed_charge = 0.0
        self._nodes: Optional[RegionNodes] = None

    @abstractmethod
    def contains_point(self, x, y, z):
        ...

    @abstractmethod
    def parameters(self) -> Dict[str, Any]:
        """Shape-specific parameters (JSON-safe)."""

    @property
    def has_model(self) -> bool:
        return self.model is not None

    # --- node sets

    def classify(self, grid: Grid3D) -> RegionNodes:
        self._nodes = classify_nodes(self, grid)
        logger.debug(
            "region '%s': %d inner nodes (%d not at edge), %d near-boundary (%d not at edge)",
            self.name,
            len(self._nodes.inner),
            len(self._nodes.inner_not_at_domain_edge),
            len(self._nodes.near_boundary),
            len(self._nodes.near_boundary_not_at_domain_edge),
        )
        return self._nodes

    @property
    def nodes(self) -> RegionNodes:
        if self._nodes is None:
            raise RuntimeError(f"region '{self.name}' has not been classified on a grid yet.")
        return self._nodes

    def contains_node(self, i: int, j: int, k: int, grid: Grid3D) -> bool:
        return bool(self.contains_point(*grid.node_position(i, j, k)))

    # --- particles

    def check_if_points_inside(self, positions: np.ndarray) -> np.ndarray:
        p = np.asarray(positions, dtype=float).reshape(-1, 3)
        return np.asarray(self.contains_point(p[:, 0], p[:, 1], p[:, 2]), dtype=bool)

    def absorb(self, positions: np.ndarray, charges: np.ndarray) -> np.ndarray:
        """Count particles inside the region and accumulate their charge. Returns the mask."""
        inside = self.check_if_points_inside(positions)
        q = np.asarray(charges, dtype=float).reshape(-1)
        if q.shape != inside.shape:
            raise ValueError(f"charges has shape {q.shape}, expected {inside.shape}")
        self.total_absorbed_particles += int(np.count_nonzero(inside))
        self.total_absorbed_charge += float(np.sum(q[inside]))
        return inside

    # --- reporting

    def describe(self) -> str:
        params = ", ".join(f"{k} = {v}" for k, v in self.parameters().items())
        return (
            f"Inner region: name = {self.name}, type = {self.object_type}, "
            f"potential = {self.potential}, {params}"
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, potential={self.potential})"


class InnerRegionBox(InnerRegion):
    object_type = "box"

    def __init__(
        self,
        name: str,
        potential: float,
        *,
        x_left: float,
        x_right: float,
        y_bottom: float,
        y_top: float,
        z_near: float,
        z_far: float,
        model: Optional[str] = None,
    ) -> None:
        super().__init__(name, potential, model=model)
        self.x_left = _finite(f"{name}: x_left", x_left)
        self.x_right = _finite(f"{name}: x_right", x_right)
        self.y_bottom = _finite(f"{name}: y_bottom", y_bottom)
        self.y_top = _finite(f"{name}: y_top", y_top)
        self.z_near = _finite(f"{name}: z_near", z_near)
        self.z_far = _finite(f"{name}: z_far", z_far)

    def contains_point(self, x, y, z):
        xlo, xhi = sorted((self.x_left, self.x_right))
        ylo, yhi = sorted((self.y_bottom, self.y_top))
        zlo, zhi = sorted((self.z_near, self.z_far))
        return (
            (x >= xlo) & (x <= xhi)
            & (y >= ylo) & (y <= yhi)
            & (z >= zlo) & (z <= zhi)
        )

    def parameters(self) -> Dict[str, Any]:
        return {
            "x_left": self.x_left, "x_right": self.x_right,
            "y_bottom": self.y_bottom, "y_top": self.y_top,
            "z_near": self.z_near, "z_far": self.z_far,
        }


class InnerRegionSphere(InnerRegion):
    object_type = "sphere"

    def __init__(
        self,
        name: str,
        potential: float,
        *,
        origin: Sequence[float],
        radius: float,
        model: Optional[str] = None,
    ) -> None:
        super().__init__(name, potential, model=model)
        self.origin = _point(f"{name}: origin", origin)
        self.radius = _finite(f"{name}: radius", radius)
        if self.radius <= 0.0:
            raise ConfigurationError(f"{name}: radius must be > 0; got {self.radius}")

    def contains_point(self, x, y, z):
        ox, oy, oz = self.origin
        return (x - ox) ** 2 + (y - oy) ** 2 + (z - oz) ** 2 <= self.radius ** 2

    def parameters(self) -> Dict[str, Any]:
        return {"origin": self.origin.tolist(), "radius": self.radius}


class _AxialRegion(InnerRegion):
    """Shared geometry of regions built around a finite axis segment."""

    def _init_axis(self, axis_start: Sequence[float], axis_end: Sequence[float]) -> None:
        self.axis_start = _point(f"{self.name}: axis_start", axis_start)
        self.axis_end = _point(f"{self.name}: axis_end", axis_end)
        self._axis = self.axis_end - self.axis_start
        self._axis_len2 = float(self._axis @ self._axis)
        if self._axis_len2 == 0.0:
            raise ConfigurationError(f"{self.name}: axis_start and axis_end coincide.")

    def _axial_coordinates(self, x, y, z):
        """(t, r^2): position along the axis in [0, 1] units and squared distance to it."""
        ax, ay, az = self._axis
        px = x - self.axis_start[0]
        py = y - self.axis_start[1]
        pz = z - self.axis_start[2]
        t = (px * ax + py * ay + pz * az) / self._axis_len2
        rx = px - t * ax
        ry = py - t * ay
        rz = pz - t * az
        return t, rx * rx + ry * ry + rz * rz


class InnerRegionCylinder(_AxialRegion):
    object_type = "cylinder"

    def __init__(
        self,
        name: str,
        potential: float,
        *,
        axis_start: Sequence[float],
        axis_end: Sequence[float],
        radius: float,
        model: Optional[str] = None,
    ) -> None:
        super().__init__(name, potential, model=model)
        self._init_axis(axis_start, axis_end)
        self.radius = _finite(f"{name}: radius", radius)
        if self.radius <= 0.0:
            raise ConfigurationError(f"{name}: radius must be > 0; got {self.radius}")

    def contains_point(self, x, y, z):
        t, r2 = self._axial_coordinates(x, y, z)
        return (t >= 0.0) & (t <= 1.0) & (r2 <= self.radius ** 2)

    def parameters(self) -> Dict[str, Any]:
        return {
            "axis_start": self.axis_start.tolist(),
            "axis_end": self.axis_end.tolist(),
            "radius": self.radius,
        }


class InnerRegionTube(_AxialRegion):
    object_type = "tube"

    def __init__(
        self,
        name: str,
        potential: float,
        *,
        axis_start: Sequence[float],
        axis_end: Sequence[float],
        inner_radius: float,
        outer_radius: float,
        model: Optional[str] = None,
    ) -> None:
        super().__init__(name, potential, model=model)
        self._init_axis(axis_start, axis_end)
        self.inner_radius = _finite(f"{name}: inner_radius", inner_radius)
        self.outer_radius = _finite(f"{name}: outer_radius", outer_radius)
        if not 0.0 <= self.inner_radius < self.outer_radius:
            raise ConfigurationError(
                f"{name}: need 0 <= inner_radius < outer_radius; "
                f"got {self.inner_radius}, {self.outer_radius}"
            )

    def contains_point(self, x, y, z):
        t, r2 = self._axial_coordinates(x, y, z)
        return (
            (t >= 0.0) & (t <= 1.0)
            & (r2 >= self.inner_radius ** 2)
            & (r2 <= self.outer_radius ** 2)
        )

    def parameters(self) -> Dict[str, Any]:
        return {
            "axis_start": self.axis_start.tolist(),
            "axis_end": self.axis_end.tolist(),
            "inner_radius": self.inner_radius,
            "outer_radius": self.outer_radius,
        }


REGION_TYPES = {
    cls.object_type: cls
    for cls in (InnerRegionBox, InnerRegionSphere, InnerRegionCylinder, InnerRegionTube)
}


def region_from_config(conf: Mapping[str, Any]) -> InnerRegion:
    """
    Build a region from a mapping such as
        {"type": "sphere", "name": "probe", "potential": 10.0,
         "origin": [0.5, 0.5, 0.5], "radius": 0.1}
    """
    conf = dict(conf)
    kind = str(conf.pop("type", "")).strip().lower()
    if kind not in REGION_TYPES:
        raise ConfigurationError(
            f"unknown region type '{kind}'; use one of {sorted(REGION_TYPES)}"
        )
    try:
        name = conf.pop("name")
        potential = conf.pop("potential")
    except KeyError as exc:
        raise ConfigurationError(f"{kind} region config is missing {exc}") from exc
    try:
        return REGION_TYPES[kind](name, potential, **conf)
    except TypeError as exc:
        raise ConfigurationError(f"invalid parameters for {kind} region '{name}': {exc}") from exc


# -----------------------------
# Manager
# -----------------------------

class InnerRegionsManager:
    """Ordered collection of regions; every solver step iterates it in registration order."""

    def __init__(self, regions: Iterable[InnerRegion] = (), *, grid: Optional[Grid3D] = None) -> None:
        self.regions: List[InnerRegion] = list(regions)
        names = [r.name for r in self.regions]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"region names must be unique; got {names}")
        self.grid: Optional[Grid3D] = None
        if grid is not None:
            self.classify(grid)

    @classmethod
    def from_config(
        cls,
        confs: Iterable[Mapping[str, Any]],
        *,
        grid: Optional[Grid3D] = None,
    ) -> "InnerRegionsManager":
        return cls([region_from_config(c) for c in confs], grid=grid)

    def __iter__(self) -> Iterator[InnerRegion]:
        return iter(self.regions)

    def __len__(self) -> int:
        return len(self.regions)

    def __getitem__(self, key):
        if isinstance(key, str):
            for r in self.regions:
                if r.name == key:
                    return r
            raise KeyError(key)
        return self.regions[key]

    def classify(self, grid: Grid3D) -> None:
        """Recompute node sets of every region on `grid`."""
        self.grid = grid
        for r in self.regions:
            r.classify(grid)
        self._log_overlaps()

    def _log_overlaps(self) -> None:
        for a in range(len(self.regions)):
            for b in range(a + 1, len(self.regions)):
                ra, rb = self.regions[a], self.regions[b]
                shared = np.count_nonzero(ra.nodes.inside_mask & rb.nodes.inside_mask)
                if shared:
                    logger.debug(
                        "regions '%s' and '%s' share %d inner nodes; '%s' was registered last",
                        ra.name, rb.name, shared, rb.name,
                    )

    def check_if_point_inside(self, x: float, y: float, z: float) -> bool:
        return any(bool(r.contains_point(x, y, z)) for r in self.regions)

    def absorb(self, positions: np.ndarray, charges: np.ndarray) -> np.ndarray:
        """Each particle is absorbed by the first region containing it. Returns the mask."""
        p = np.asarray(positions, dtype=float).reshape(-1, 3)
        q = np.asarray(charges, dtype=float).reshape(-1)
        absorbed = np.zeros(len(p), dtype=bool)
        for r in self.regions:
            free = ~absorbed
            hit = np.zeros_like(absorbed)
            hit[free] = r.absorb(p[free], q[free])
            absorbed |= hit
        return absorbed

    def describe(self) -> List[str]:
        return [r.describe() for r in self.regions]

    def write_to_file(self, path: Path) -> None:
        """Save region parameters and node sets as compressed .npz with JSON metadata."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        meta: Dict[str, Any] = {"number_of_regions": len(self.regions), "regions": []}
        arrays: Dict[str, np.ndarray] = {}
        for r in self.regions:
            meta["regions"].append({
                "name": r.name,
                "object_type": r.object_type,
                "potential": r.potential,
                "model": r.model,
                "total_absorbed_particles": int(r.total_absorbed_particles),
                "total_absorbed_charge": float(r.total_absorbed_charge),
                **r.parameters(),
            })
            if r._nodes is not None:
                arrays[f"{r.name}__inner_nodes"] = np.asarray(r.nodes.inner)
                arrays[f"{r.name}__near_boundary_nodes"] = np.asarray(r.nodes.near_boundary)

        np.savez_compressed(path, meta_json=np.array(json.dumps(meta)), **arrays)


def load_region_metadata(path: Path) -> Dict[str, Any]:
    with np.load(Path(path)) as data:
        return json.loads(str(data["meta_json"]))

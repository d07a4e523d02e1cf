# diagnostics.py
from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional, Tuple

import numpy as np
import matplotlib.pyplot as plt

from fieldsolver.core.grid import Grid3D
from fieldsolver.core.mesh import SpatialMesh
from fieldsolver.core.regions import InnerRegion


# -----------------------------
# I/O helpers
# -----------------------------

def save_npz(path: Path, **arrays: np.ndarray) -> None:
    """Save compressed .npz (creates parent dirs)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savez_compressed(path, **arrays)


def save_mesh_npz(path: Path, mesh: SpatialMesh) -> None:
    g = mesh.grid
    save_npz(
        path,
        charge_density=mesh.charge_density,
        potential=mesh.potential,
        electric_field=mesh.electric_field,
        shape=np.array(g.shape),
        cell_sizes=np.array(g.cell_sizes),
        origin=np.array([g.x_min, g.y_min, g.z_min]),
    )


# -----------------------------
# Slicing
# -----------------------------

_AXES = {"x": 0, "y": 1, "z": 2}


def _slice_axes(axis: str) -> Tuple[int, int]:
    a = _AXES[axis]
    u, v = [n for n in range(3) if n != a]
    return u, v


def _take_slice(arr: np.ndarray, axis: str, index: int) -> np.ndarray:
    """2D slice (first in-plane axis, second in-plane axis) of a (nx, ny, nz) array."""
    if axis not in _AXES:
        raise ValueError(f"axis must be one of x, y, z; got {axis!r}")
    a = _AXES[axis]
    if not 0 <= index < arr.shape[a]:
        raise IndexError(f"slice index {index} out of range for axis {axis} (size {arr.shape[a]})")
    return np.take(arr, index, axis=a)


def _slice_extent(grid: Grid3D, axis: str) -> Tuple[float, float, float, float]:
    coords = (grid.x(), grid.y(), grid.z())
    u, v = _slice_axes(axis)
    return (float(coords[u][0]), float(coords[u][-1]), float(coords[v][0]), float(coords[v][-1]))


def _finish(fig, path: Optional[Path], show: bool, close: bool) -> None:
    fig.tight_layout()

    if path is not None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(path, dpi=200)

    if show:
        plt.show()

    if close:
        plt.close(fig)


# -----------------------------
# Plotting
# -----------------------------

def plot_potential_slice(
    mesh: SpatialMesh,
    *,
    axis: str = "z",
    index: Optional[int] = None,
    regions: Iterable[InnerRegion] = (),
    title: str = "",
    path: Optional[Path] = None,
    cmap: str | None = None,
    show: bool = True,
    close: bool = True,
) -> None:
    """
    Plot the potential on the plane `axis` = index (default: middle plane).

    Inner nodes of classified `regions` lying in the plane are marked.
    """
    grid = mesh.grid
    if index is None:
        index = grid.shape[_AXES.get(axis, 2)] // 2
    Z = _take_slice(mesh.potential, axis, index)
    extent = _slice_extent(grid, axis)
    u, v = _slice_axes(axis)
    names = "xyz"

    fig, ax = plt.subplots()
    im = ax.imshow(Z.T, origin="lower", aspect="auto", extent=extent, cmap=cmap)
    fig.colorbar(im, ax=ax, label="potential")

    coords = (grid.x(), grid.y(), grid.z())
    for region in regions:
        nodes = region.nodes.inner
        in_plane = nodes[nodes[:, _AXES[axis]] == index]
        if len(in_plane):
            ax.scatter(
                coords[u][in_plane[:, u]],
                coords[v][in_plane[:, v]],
                s=12, marker="s", facecolors="none", edgecolors="w", label=region.name,
            )
    if ax.get_legend_handles_labels()[0]:
        ax.legend(loc="upper right", fontsize="small")

    ax.set_title(title or f"potential, {axis} index {index}")
    ax.set_xlabel(names[u])
    ax.set_ylabel(names[v])
    _finish(fig, path, show, close)


def plot_field_slice(
    mesh: SpatialMesh,
    *,
    axis: str = "z",
    index: Optional[int] = None,
    stride: int = 1,
    title: str = "",
    path: Optional[Path] = None,
    cmap: str | None = None,
    show: bool = True,
    close: bool = True,
) -> None:
    """
    Plot |E| on a plane with in-plane components as arrows.
    """
    grid = mesh.grid
    if index is None:
        index = grid.shape[_AXES.get(axis, 2)] // 2
    if stride < 1:
        raise ValueError("stride must be >= 1.")
    u, v = _slice_axes(axis)
    names = "xyz"

    E = mesh.electric_field
    mag = _take_slice(np.linalg.norm(E, axis=-1), axis, index)
    Eu = _take_slice(E[..., u], axis, index)
    Ev = _take_slice(E[..., v], axis, index)
    extent = _slice_extent(grid, axis)

    coords = (grid.x(), grid.y(), grid.z())
    U, V = np.meshgrid(coords[u], coords[v], indexing="ij")

    fig, ax = plt.subplots()
    im = ax.imshow(mag.T, origin="lower", aspect="auto", extent=extent, cmap=cmap)
    fig.colorbar(im, ax=ax, label="|E|")
    s = slice(None, None, stride)
    ax.quiver(U[s, s], V[s, s], Eu[s, s], Ev[s, s], color="w")

    ax.set_title(title or f"electric field, {axis} index {index}")
    ax.set_xlabel(names[u])
    ax.set_ylabel(names[v])
    _finish(fig, path, show, close)

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np

from fieldsolver.core.config import BoundaryConditions, SolverConfig
from fieldsolver.core.grid import Grid3D
from fieldsolver.core.mesh import SpatialMesh
from fieldsolver.core.regions import InnerRegionsManager
from fieldsolver.operators.solve import FieldSolver
from fieldsolver.diagnostics import plot_field_slice, plot_potential_slice, save_mesh_npz, save_npz

logger = logging.getLogger("run_baseline")


REGIONS = [
    {"type": "sphere", "name": "probe", "potential": 10.0, "origin": [0.5, 0.5, 0.5], "radius": 0.15},
    {
        "type": "tube", "name": "collector", "potential": -5.0,
        "axis_start": [0.5, 0.5, 0.1], "axis_end": [0.5, 0.5, 0.25],
        "inner_radius": 0.1, "outer_radius": 0.2,
    },
    {
        "type": "box", "name": "plate", "potential": 0.0,
        "x_left": 0.1, "x_right": 0.9, "y_bottom": 0.1, "y_top": 0.9, "z_near": 0.82, "z_far": 0.86,
    },
]


def run_case(grid: Grid3D, config: SolverConfig, outdir: Path, *, n_steps: int = 3) -> dict[str, float]:
    outdir.mkdir(parents=True, exist_ok=True)

    mesh = SpatialMesh(grid, boundary=BoundaryConditions.uniform(0.0))
    regions = InnerRegionsManager.from_config(REGIONS)

    X, Y, Z = grid.mesh()
    with FieldSolver(grid, regions, config=config) as solver:
        for step in range(n_steps):
            # slowly varying space charge; operator is reused across steps
            mesh.clear_old_density_values()
            mesh.charge_density[...] = 1e-3 * (1.0 + step) * np.exp(
                -((X - 0.3) ** 2 + (Y - 0.7) ** 2 + (Z - 0.5) ** 2) / 0.01
            )
            solver.eval_potential_and_fields(mesh)
            logger.info("step %d: %s", step, solver.last_residual)

        metrics = {
            "rel_residual": float(solver.last_residual["||r||2/||b||2"]),
            "iterations": float(solver.backend.last_info.get("iterations", 0)),
            "max_abs_field": float(np.max(np.linalg.norm(mesh.electric_field, axis=-1))),
        }

    save_mesh_npz(outdir / "fields" / "mesh.npz", mesh)
    regions.write_to_file(outdir / "fields" / "regions.npz")

    plot_potential_slice(mesh, axis="y", regions=regions, title="potential (y mid-plane)",
                         path=outdir / "figs" / "potential_y.png", show=False)
    plot_field_slice(mesh, axis="y", stride=2, title="E (y mid-plane)",
                     path=outdir / "figs" / "field_y.png", show=False)

    save_npz(outdir / "metrics.npz", **{k: np.array(v) for k, v in metrics.items()})
    return metrics


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s: %(message)s")
    base_out = Path("outputs")

    grid = Grid3D.from_volume(lx=1.0, ly=1.0, lz=1.0, nx=41, ny=41, nz=41)
    configs = {
        "gmres_amg": SolverConfig(),
        "direct": SolverConfig(method="direct"),
    }

    for name, config in configs.items():
        metrics = run_case(grid, config, base_out / f"baseline_{name}")
        logger.info("%s %s", name, metrics)


if __name__ == "__main__":
    main()

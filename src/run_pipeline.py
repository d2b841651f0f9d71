"""
run_pipeline.py

Orchestrates a roadmap experiment:
1) Load config.json
2) Generate or load environment (traversability map -> occupancy grid)
3) Build roadmap (via roadmap_build.py)
4) Evaluate roadmap (evaluation_metrics.py)
5) Save metrics + plots
"""

from __future__ import annotations

import argparse
import json
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Optional, Union

import numpy as np

from environment import EnvironmentGenerator
from evaluation_metrics import EvaluationConfig, RoadmapEvaluator
from occupancy_grid import OccupancyGrid
from roadmap import Roadmap
from roadmap_build import RoadmapBuildConfig, build_roadmap
from visualization import RoadmapVisualizer


# ----------------------------
# Config helpers
# ----------------------------
def load_config(config_path: Path) -> Dict[str, Any]:
    with open(config_path, "r") as f:
        return json.load(f)


def infer_project_root(config_path: Path) -> Path:
    """
    - project_root/config/config.json -> root is parent of 'config'
    - otherwise root is config_path.parent
    """
    config_path = config_path.resolve()
    if config_path.parent.name == "config":
        return config_path.parent.parent
    return config_path.parent


def _apply_block(target: Any, block: Any) -> None:
    if not isinstance(block, dict):
        return
    for k, v in block.items():
        if hasattr(target, k):
            setattr(target, k, v)


def build_roadmap_cfg(cfg: Dict[str, Any]) -> RoadmapBuildConfig:
    rbc = RoadmapBuildConfig()
    _apply_block(rbc, cfg.get("roadmap", {}))
    return rbc.validate()


def build_eval_cfg(cfg: Dict[str, Any]) -> EvaluationConfig:
    ec = EvaluationConfig()
    _apply_block(ec, cfg.get("evaluation", {}))
    return ec


def resolve_under_root(project_root: Path, p: Union[str, Path]) -> Path:
    p = Path(p)
    return p if p.is_absolute() else (project_root / p).resolve()


# ----------------------------
# Environment stage
# ----------------------------
def run_environment(cfg: Dict[str, Any], project_root: Path) -> OccupancyGrid:
    map_cfg = cfg.get("map", {})
    perlin_cfg = cfg.get("perlin", {})
    cave_cfg = cfg.get("cave", {})
    wall_cfg = cfg.get("wall", {})
    vis_cfg = cfg.get("visualization", {})

    generator = str(map_cfg.get("generator", "cave")).lower()
    use_existing = bool(map_cfg.get("use_existing", True))
    resolution = float(map_cfg.get("resolution", 1.0))
    origin = tuple(map_cfg.get("origin", (0.0, 0.0)))
    obstacle_threshold = float(map_cfg.get("obstacle_threshold", 0.0))

    map_npy_path = resolve_under_root(project_root, vis_cfg.get("map_npy_path", "data/traversability_map.npy"))
    env_png_path = resolve_under_root(project_root, vis_cfg.get("env_output_path", "data/occupancy_grid.png"))
    show = bool(vis_cfg.get("show", False))

    if use_existing and map_npy_path.exists():
        print(f"[INFO] Using existing traversability map: {map_npy_path}")
        trav = np.load(map_npy_path)
    else:
        if use_existing:
            print(f"[WARN] map not found at {map_npy_path}; generating new one.")
        else:
            print("[INFO] Forced environment regeneration (use_existing=false).")

        env = EnvironmentGenerator(
            width=int(map_cfg.get("width", 100)),
            height=int(map_cfg.get("height", 100)),
            map_generator=generator,
            resolution=resolution,
            origin=origin,
            perlin_scale=float(perlin_cfg.get("scale", 30.0)),
            perlin_octaves=int(perlin_cfg.get("octaves", 3)),
            perlin_seed=int(perlin_cfg.get("seed", 0)),
            perlin_obstacle_level=float(perlin_cfg.get("obstacle_level", 0.35)),
            cave_fill_prob=float(cave_cfg.get("fill_probability", 0.45)),
            cave_birth_limit=int(cave_cfg.get("birth_limit", 4)),
            cave_death_limit=int(cave_cfg.get("death_limit", 3)),
            cave_steps=int(cave_cfg.get("steps", 5)),
            cave_min_traversability=float(cave_cfg.get("min_traversability", 0.3)),
            wall_gap=int(wall_cfg.get("gap", 1)),
            wall_thickness=int(wall_cfg.get("thickness", 1)),
        )
        trav = env.generate_traversability_map()

        map_npy_path.parent.mkdir(parents=True, exist_ok=True)
        np.save(map_npy_path, trav)
        print(f"[INFO] Saved traversability map to: {map_npy_path}")

    grid = OccupancyGrid.from_traversability(
        trav, resolution=resolution, origin=origin, obstacle_threshold=obstacle_threshold
    )

    inflate = int(map_cfg.get("inflate_cells", 0))
    if inflate > 0:
        grid = grid.inflated(inflate)
        print(f"[INFO] Inflated obstacles by {inflate} cell(s)")

    if bool(vis_cfg.get("plot_environment", True)):
        RoadmapVisualizer().plot_occupancy_grid(
            grid,
            title=f"Occupancy Grid ({generator})",
            save_path=env_png_path,
            show=show,
        )
    return grid


# ----------------------------
# Roadmap stage
# ----------------------------
def run_roadmap(cfg: Dict[str, Any], grid: OccupancyGrid) -> Roadmap:
    rb_cfg = build_roadmap_cfg(cfg)
    print(f"[INFO] RoadmapBuildConfig: {asdict(rb_cfg)}")
    roadmap = build_roadmap(grid, rb_cfg)
    print(f"[INFO] {roadmap}")
    return roadmap


# ----------------------------
# Evaluation stage
# ----------------------------
def run_evaluation(
    cfg: Dict[str, Any],
    project_root: Path,
    grid: OccupancyGrid,
    roadmap: Roadmap,
) -> Dict[str, Any]:
    evaluator = RoadmapEvaluator(build_eval_cfg(cfg))
    metrics = evaluator.evaluate(grid, roadmap)
    evaluator.print_report(metrics)

    out_dir = resolve_under_root(project_root, cfg.get("validation", {}).get("out_dir", "data/validation"))
    metrics_path = out_dir / "evaluation_metrics.json"
    evaluator.save_json(metrics, metrics_path)
    print(f"[INFO] Saved evaluation metrics to: {metrics_path}")
    return metrics


# ----------------------------
# Plotting stage
# ----------------------------
def plot_roadmap(
    cfg: Dict[str, Any],
    project_root: Path,
    grid: OccupancyGrid,
    roadmap: Roadmap,
) -> Optional[Path]:
    vis_cfg = cfg.get("visualization", {})
    if not bool(vis_cfg.get("plot_roadmap", True)):
        return None
    png_path = resolve_under_root(project_root, vis_cfg.get("roadmap_output_path", "data/roadmap.png"))

    RoadmapVisualizer().plot_roadmap_overlay(
        grid,
        roadmap,
        save_path=png_path,
        show=bool(vis_cfg.get("show", False)),
        draw_waypoint_ids=bool(vis_cfg.get("draw_waypoint_ids", False)),
    )
    return png_path


# ----------------------------
# Pipeline main
# ----------------------------
def run(config_path: Path) -> Dict[str, Any]:
    config_path = Path(config_path).resolve()
    project_root = infer_project_root(config_path)
    cfg = load_config(config_path)

    pipe = cfg.get("pipeline", {})
    run_eval = bool(pipe.get("run_validation", True))

    grid = run_environment(cfg, project_root)
    roadmap = run_roadmap(cfg, grid)
    plot_roadmap(cfg, project_root, grid, roadmap)

    metrics: Dict[str, Any] = {}
    if run_eval:
        metrics = run_evaluation(cfg, project_root, grid, roadmap)
    else:
        print("[INFO] pipeline.run_validation=false -> skipping evaluation.")

    if not roadmap.is_connected:
        print(f"[WARN] Roadmap is not connected (status={roadmap.status.value}).")
    print("[INFO] Pipeline completed successfully.")
    return {"roadmap": roadmap, "metrics": metrics}


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--config", type=str, default="config/config.json", help="Path to config JSON")
    args = ap.parse_args()
    run(Path(args.config))


if __name__ == "__main__":
    main()

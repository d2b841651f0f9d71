"""
evaluation_metrics.py

Evaluation utilities for waypoint roadmaps built on an occupancy grid.

Inputs:
- grid: OccupancyGrid used to build the roadmap
- roadmap: Roadmap (waypoints, edges, status)

Outputs:
- metrics dict (JSON-serializable) + optional report printing

All distances are reported in world units (grid resolution applied).
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import json
import numpy as np
import networkx as nx
from scipy.ndimage import distance_transform_edt
from scipy.spatial import cKDTree

from occupancy_grid import OccupancyGrid
from roadmap import Roadmap


@dataclass
class EvaluationConfig:
    # Sampling stride (cells) for the coverage metric
    coverage_stride: int = 2

    clearance_percentiles: Tuple[float, float, float] = (10.0, 50.0, 90.0)
    nn_percentiles: Tuple[float, float, float] = (10.0, 50.0, 90.0)
    length_percentiles: Tuple[float, float, float] = (10.0, 50.0, 90.0)


class RoadmapEvaluator:
    def __init__(self, cfg: Optional[EvaluationConfig] = None) -> None:
        self.cfg = cfg or EvaluationConfig()

    # ----------------------------
    # Public API
    # ----------------------------
    def evaluate(self, grid: OccupancyGrid, roadmap: Roadmap) -> Dict[str, Any]:
        if grid is None or roadmap is None:
            raise ValueError("grid and roadmap are required")

        nodes_xy = roadmap.nodes_xy()
        edges = roadmap.index_edges()

        metrics: Dict[str, Any] = {
            "basic": {
                "map_shape": [int(grid.height), int(grid.width)],
                "resolution": float(grid.resolution),
                "num_waypoints": int(len(nodes_xy)),
                "num_edges": int(len(edges)),
                "num_repair_edges": int(len(roadmap.repair_edges)),
                "status": roadmap.status.value,
                "free_ratio": grid.free_ratio,
            }
        }
        metrics["graph"] = self._graph_metrics(roadmap.to_networkx())
        metrics["edges"] = self._edge_metrics(edges)
        metrics["spacing"] = self._nearest_neighbor_metrics(nodes_xy)
        metrics["coverage"] = self._coverage_metrics(grid, nodes_xy)
        metrics["clearance"] = self._clearance_metrics(grid, nodes_xy)
        metrics["edge_validity"] = self._edge_los_metrics(grid, nodes_xy, edges)
        return metrics

    def save_json(self, metrics: Dict[str, Any], out_path: Path) -> None:
        out_path = Path(out_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        with open(out_path, "w") as f:
            json.dump(metrics, f, indent=2)

    def print_report(self, metrics: Dict[str, Any]) -> None:
        b = metrics.get("basic", {})
        g = metrics.get("graph", {})
        e = metrics.get("edges", {})
        c = metrics.get("coverage", {})
        v = metrics.get("edge_validity", {})
        s = metrics.get("spacing", {})
        cl = metrics.get("clearance", {})

        print("\n========== ROADMAP EVALUATION REPORT ==========")
        free_ratio = b.get("free_ratio")
        free_str = "n/a" if free_ratio is None else f"{free_ratio:.3f}"
        print(f"- Map shape: {b.get('map_shape')}, resolution={b.get('resolution')}, free_ratio={free_str}")
        print(f"- Waypoints: {b.get('num_waypoints')} | Edges: {b.get('num_edges')} (repair: {b.get('num_repair_edges')})")
        print(f"- Status: {b.get('status')}")
        if g:
            print(f"- Connected components: {g.get('num_components')} | giant_component_ratio={g.get('giant_component_ratio')}")
            print(f"- Avg degree: {g.get('avg_degree')} | degree_p10_p50_p90={g.get('degree_p10_p50_p90')}")
        if e:
            print(f"- Edge length_p10_p50_p90={e.get('length_p10_p50_p90')} | max={e.get('length_max')}")
        if s:
            print(f"- NN dist min={s.get('nn_dist_min')} p10/p50/p90: {s.get('nn_dist_p10_p50_p90')}")
        if c:
            print(f"- Coverage mean_dist_to_waypoint={c.get('mean_dist_to_waypoint')} | p90={c.get('p90_dist_to_waypoint')}")
        if cl:
            print(f"- Waypoint clearance p10/p50/p90: {cl.get('clearance_p10_p50_p90')}")
        if v:
            print(f"- LOS valid edge ratio: {v.get('valid_ratio')} | invalid_edges={v.get('invalid_edges')}")
        print("===============================================\n")

    # ----------------------------
    # Metric blocks
    # ----------------------------
    def _graph_metrics(self, G: nx.Graph) -> Dict[str, Any]:
        n = G.number_of_nodes()
        if n == 0:
            return {
                "num_components": 0,
                "giant_component_ratio": None,
                "avg_degree": None,
                "degree_p10_p50_p90": None,
                "isolated_waypoints": 0,
            }

        comp_sizes = sorted((len(c) for c in nx.connected_components(G)), reverse=True)
        degs = np.array([G.degree[v] for v in G.nodes], dtype=float)

        return {
            "num_components": int(len(comp_sizes)),
            "giant_component_ratio": float(comp_sizes[0] / n),
            "avg_degree": float(np.mean(degs)),
            "degree_p10_p50_p90": self._percentiles(degs, (10, 50, 90)),
            "isolated_waypoints": int(np.sum(degs == 0)),
        }

    def _edge_metrics(self, edges: List[Tuple[int, int, float]]) -> Dict[str, Any]:
        if len(edges) == 0:
            return {"length_mean": None, "length_max": None, "length_p10_p50_p90": None}

        lengths = np.array([w for (_, _, w) in edges], dtype=float)
        return {
            "length_mean": float(np.mean(lengths)),
            "length_max": float(np.max(lengths)),
            "length_p10_p50_p90": self._percentiles(lengths, self.cfg.length_percentiles),
        }

    def _nearest_neighbor_metrics(self, nodes_xy: np.ndarray) -> Dict[str, Any]:
        if len(nodes_xy) < 2:
            return {"nn_dist_mean": None, "nn_dist_min": None, "nn_dist_p10_p50_p90": None}

        tree = cKDTree(nodes_xy)
        d, _ = tree.query(nodes_xy, k=2)  # [self, nn]
        dmins = d[:, 1].astype(float)

        return {
            "nn_dist_mean": float(np.mean(dmins)),
            "nn_dist_min": float(np.min(dmins)),
            "nn_dist_p10_p50_p90": self._percentiles(dmins, self.cfg.nn_percentiles),
        }

    def _coverage_metrics(self, grid: OccupancyGrid, nodes_xy: np.ndarray) -> Dict[str, Any]:
        free = grid.free_cells()  # (col, row)
        stride = max(1, int(self.cfg.coverage_stride))
        if len(free) == 0 or len(nodes_xy) == 0:
            return {"mean_dist_to_waypoint": None, "p90_dist_to_waypoint": None, "stride": stride}

        free = free[::stride]
        ox, oy = grid.origin
        pts = np.stack(
            [ox + (free[:, 0] + 0.5) * grid.resolution, oy + (free[:, 1] + 0.5) * grid.resolution],
            axis=1,
        )
        d, _ = cKDTree(nodes_xy).query(pts, k=1)

        return {
            "mean_dist_to_waypoint": float(np.mean(d)),
            "p90_dist_to_waypoint": float(np.percentile(d, 90)),
            "stride": stride,
            "num_sampled_free_cells": int(len(pts)),
        }

    def _clearance_metrics(self, grid: OccupancyGrid, nodes_xy: np.ndarray) -> Dict[str, Any]:
        if len(nodes_xy) == 0:
            return {"clearance_p10_p50_p90": None, "clearance_min": None}

        # distance (cells) from each free cell to the nearest non-free cell
        dist = distance_transform_edt(grid.free_mask.astype(np.uint8)).astype(float) * grid.resolution

        cells = np.array([grid.cell_of(x, y) for (x, y) in nodes_xy], dtype=int)
        cols = np.clip(cells[:, 0], 0, grid.width - 1)
        rows = np.clip(cells[:, 1], 0, grid.height - 1)
        clearance = dist[rows, cols]

        return {
            "clearance_p10_p50_p90": self._percentiles(clearance, self.cfg.clearance_percentiles),
            "clearance_min": float(np.min(clearance)),
        }

    def _edge_los_metrics(
        self,
        grid: OccupancyGrid,
        nodes_xy: np.ndarray,
        edges: List[Tuple[int, int, float]],
    ) -> Dict[str, Any]:
        if len(edges) == 0:
            return {"valid_ratio": None, "invalid_edges": 0, "checked_edges": 0}

        invalid = sum(
            1 for (i, j, _) in edges if not grid.is_line_free(nodes_xy[i], nodes_xy[j])
        )
        checked = len(edges)
        return {
            "valid_ratio": float((checked - invalid) / checked),
            "invalid_edges": int(invalid),
            "checked_edges": int(checked),
        }

    @staticmethod
    def _percentiles(arr: np.ndarray, ps: Tuple[float, float, float]) -> List[float]:
        a = np.asarray(arr, dtype=float)
        return [float(np.percentile(a, p)) for p in ps]

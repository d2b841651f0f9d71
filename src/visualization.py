"""
visualization.py

Centralized plotting for:
- Occupancy grids (free / occupied / unknown)
- Roadmap overlay (waypoints + connector edges + repair edges)

All plotting lives here, so environment.py and roadmap_build.py remain
"pure" generation/build modules.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional, Tuple

import numpy as np
import matplotlib

# Headless-friendly backend (Docker / CI / no X server)
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from occupancy_grid import OccupancyGrid
from roadmap import Roadmap


class RoadmapVisualizer:
    def __init__(
        self,
        map_cmap: str = "gray",
        free_value: float = 1.0,
        unknown_value: float = 0.6,
        occupied_value: float = 0.0,
    ):
        self.map_cmap = map_cmap
        self.free_value = free_value
        self.unknown_value = unknown_value
        self.occupied_value = occupied_value

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    @staticmethod
    def _finalize_figure(
        fig: Any,
        save_path: Optional[Path],
        show: bool,
        dpi: int = 200,
    ) -> None:
        plt.tight_layout()
        if save_path is not None:
            save_path = Path(save_path)
            save_path.parent.mkdir(parents=True, exist_ok=True)
            plt.savefig(save_path, dpi=dpi)
            print(f"[INFO] Saved figure to: {save_path}")

        if show:
            plt.show()
        else:
            plt.close(fig)

    def _grid_image(self, grid: OccupancyGrid) -> np.ndarray:
        img = np.full(grid.shape, self.occupied_value, dtype=float)
        img[grid.free_mask] = self.free_value
        img[grid.cells < 0] = self.unknown_value
        return img

    def _draw_grid(self, ax: Any, grid: OccupancyGrid) -> None:
        x0, y0, x1, y1 = grid.bounds()
        ax.imshow(
            self._grid_image(grid),
            origin="lower",
            cmap=self.map_cmap,
            interpolation="nearest",
            vmin=0.0,
            vmax=1.0,
            extent=(x0, x1, y0, y1),
        )
        ax.set_xlabel("x (world)")
        ax.set_ylabel("y (world)")

    # ------------------------------------------------------------------ #
    # 1) Occupancy grid
    # ------------------------------------------------------------------ #
    def plot_occupancy_grid(
        self,
        grid: OccupancyGrid,
        title: str = "Occupancy Grid",
        save_path: Optional[Path] = None,
        show: bool = False,
        figsize: Tuple[float, float] = (6, 6),
    ) -> None:
        if grid is None:
            raise ValueError("grid is None")

        fig, ax = plt.subplots(figsize=figsize)
        self._draw_grid(ax, grid)
        ax.set_title(title)
        self._finalize_figure(fig, save_path, show)

    # ------------------------------------------------------------------ #
    # 2) Roadmap overlay
    # ------------------------------------------------------------------ #
    def plot_roadmap_overlay(
        self,
        grid: OccupancyGrid,
        roadmap: Roadmap,
        title: Optional[str] = None,
        save_path: Optional[Path] = None,
        show: bool = False,
        figsize: Tuple[float, float] = (6, 6),
        # nodes
        node_size: float = 20.0,
        node_color: str = "tab:blue",
        node_edgecolor: str = "black",
        node_linewidth: float = 0.4,
        # edges
        edge_color: str = "tab:orange",
        edge_width: float = 1.0,
        edge_alpha: float = 0.7,
        repair_edge_color: str = "tab:red",
        repair_edge_width: float = 1.8,
        # labels (optional)
        draw_waypoint_ids: bool = False,
        waypoint_id_fontsize: int = 6,
    ) -> None:
        """Connector edges in edge_color, repair edges highlighted on top."""
        if grid is None:
            raise ValueError("grid is None")
        if roadmap is None:
            raise ValueError("roadmap is None")

        fig, ax = plt.subplots(figsize=figsize)
        self._draw_grid(ax, grid)

        repair = set(roadmap.repair_edges)
        for e in roadmap.edges:
            a = roadmap.waypoints[e.start]
            b = roadmap.waypoints[e.end]
            is_repair = e in repair
            ax.plot(
                [a.x, b.x],
                [a.y, b.y],
                color=repair_edge_color if is_repair else edge_color,
                linewidth=repair_edge_width if is_repair else edge_width,
                alpha=1.0 if is_repair else edge_alpha,
                zorder=3 if is_repair else 2,
            )

        xy = roadmap.nodes_xy()
        if len(xy):
            ax.scatter(
                xy[:, 0],
                xy[:, 1],
                s=node_size,
                c=node_color,
                edgecolors=node_edgecolor,
                linewidths=node_linewidth,
                zorder=4,
            )
        if draw_waypoint_ids:
            for wp in roadmap.waypoints.values():
                ax.text(wp.x, wp.y, wp.id, fontsize=waypoint_id_fontsize, ha="center", va="bottom", zorder=5)

        if title is None:
            title = f"Roadmap ({len(roadmap)} waypoints, {len(roadmap.edges)} edges, {roadmap.status.value})"
        ax.set_title(title)
        self._finalize_figure(fig, save_path, show)

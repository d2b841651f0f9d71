"""
roadmap_build.py

Build a probabilistic roadmap (PRM) of named waypoints on top of an
occupancy grid:

1) Sampling: random free cells, accepted only if >= min_spacing from every
   accepted waypoint (stops on a target count or a run of rejections)
2) Connection: up to k nearest neighbours within connect_radius, each edge
   accepted only if its straight line is free on the grid
3) Repair: while the graph has several components, join each minor
   component to the rest by its nearest line-free pair, searching in
   geometrically growing distance rings (radius no longer bounded by R)

Outputs:
- roadmap.Roadmap with waypoints, edges and a terminal RoadmapStatus
  (CONNECTED, UNCONNECTABLE, TIMEOUT)

Expected map:
- occupancy_grid.OccupancyGrid (free / occupied / unknown cells)
"""

from __future__ import annotations

import json
import math
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Set, Tuple

import networkx as nx
import numpy as np
from scipy.spatial import cKDTree
from scipy.spatial.distance import cdist

from occupancy_grid import OccupancyGrid
from roadmap import Edge, InsufficientFreeSpace, Roadmap, RoadmapStatus, Waypoint


@dataclass
class RoadmapBuildConfig:
    # Connection (K, D, R); D and R in world units (same as grid resolution)
    k: int = 5                         # max neighbours accepted per waypoint
    min_spacing: float = 1.0           # D: min distance between sampled waypoints
    connect_radius: float = 5.0        # R: neighbour search radius

    # Sampling
    max_waypoints: int = 500
    max_rejections: int = 1000         # consecutive rejections before giving up
    seed: Optional[int] = None

    # Repair
    repair_radius_growth: float = 2.0  # ring radius multiplier per relaxation step
    repair_max_radius: Optional[float] = None  # None = unbounded

    # Wall-clock budget in seconds (None = no limit)
    timeout: Optional[float] = None

    verbose: bool = False

    def validate(self) -> "RoadmapBuildConfig":
        if int(self.k) < 1:
            raise ValueError(f"k must be >= 1, got {self.k}")
        if not self.min_spacing > 0:
            raise ValueError(f"min_spacing must be > 0, got {self.min_spacing}")
        if not self.connect_radius > 0:
            raise ValueError(f"connect_radius must be > 0, got {self.connect_radius}")
        if not self.repair_radius_growth > 1.0:
            raise ValueError(f"repair_radius_growth must be > 1, got {self.repair_radius_growth}")
        if self.repair_max_radius is not None and not self.repair_max_radius > 0:
            raise ValueError(f"repair_max_radius must be > 0, got {self.repair_max_radius}")
        if self.timeout is not None and self.timeout < 0:
            raise ValueError(f"timeout must be >= 0, got {self.timeout}")
        return self


class Deadline:
    """Wall-clock budget and/or caller cancellation flag for one build."""

    def __init__(self, timeout: Optional[float] = None, cancel: Optional[Callable[[], bool]] = None) -> None:
        self._end = None if timeout is None else time.monotonic() + float(timeout)
        self._cancel = cancel
        self._hit = False

    def expired(self) -> bool:
        if self._hit:
            return True
        if self._cancel is not None and self._cancel():
            self._hit = True
        elif self._end is not None and time.monotonic() >= self._end:
            self._hit = True
        return self._hit


# ----------------------------
# Utilities
# ----------------------------
def load_config(config_path: Optional[str]) -> RoadmapBuildConfig:
    cfg = RoadmapBuildConfig()
    if not config_path:
        return cfg
    with open(config_path, "r") as f:
        data = json.load(f)
    # allow nesting under "roadmap"
    block = data.get("roadmap", data)
    for k, v in block.items():
        if hasattr(cfg, k):
            setattr(cfg, k, v)
    return cfg


def _log(cfg: RoadmapBuildConfig, msg: str, level: str = "INFO") -> None:
    if cfg.verbose:
        print(f"[{level}] {msg}")


def _coords(waypoints: Sequence[Waypoint]) -> np.ndarray:
    if len(waypoints) == 0:
        return np.zeros((0, 2), dtype=float)
    return np.array([[wp.x, wp.y] for wp in waypoints], dtype=float)


def _pair(i: int, j: int) -> Tuple[int, int]:
    return (i, j) if i < j else (j, i)


def _index_edges(waypoints: Sequence[Waypoint], edges: Sequence[Edge]) -> List[Tuple[int, int]]:
    index = {wp.id: i for i, wp in enumerate(waypoints)}
    out = []
    for e in edges:
        if e.start not in index or e.end not in index:
            raise ValueError(f"Edge {e.start}-{e.end} references an unknown waypoint")
        out.append(_pair(index[e.start], index[e.end]))
    return out


# ----------------------------
# 1) Sampling
# ----------------------------
def sample_waypoints(
    grid: OccupancyGrid,
    min_spacing: float,
    max_waypoints: int = 500,
    max_rejections: int = 1000,
    rng: Optional[np.random.Generator] = None,
    deadline: Optional[Deadline] = None,
) -> List[Waypoint]:
    """
    Random free-cell centres with pairwise distance >= min_spacing.

    Stops after max_waypoints accepted points or max_rejections consecutive
    rejections; running out of rejections early just yields fewer waypoints.
    Ids are wp_0, wp_1, ... in acceptance order.
    """
    if rng is None:
        rng = np.random.default_rng()
    if min_spacing <= 0:
        raise ValueError("min_spacing must be > 0")

    free = grid.free_cells()
    max_waypoints = max(0, int(max_waypoints))
    if len(free) == 0 or max_waypoints == 0:
        return []

    # small tolerance so cells exactly min_spacing apart are accepted
    d2 = float(min_spacing) ** 2 * (1.0 - 1e-9)
    accepted = np.zeros((max_waypoints, 2), dtype=float)
    n = 0
    rejections = 0

    while n < max_waypoints and rejections < max_rejections:
        if deadline is not None and deadline.expired():
            break
        col, row = free[rng.integers(0, len(free))]
        p = grid.cell_center(int(col), int(row))
        if n > 0:
            diff = accepted[:n] - p
            if float(np.min(np.einsum("ij,ij->i", diff, diff))) < d2:
                rejections += 1
                continue
        accepted[n] = p
        n += 1
        rejections = 0

    return [Waypoint(f"wp_{i}", float(accepted[i, 0]), float(accepted[i, 1])) for i in range(n)]


# ----------------------------
# 2) Radius-bounded k-nearest connection
# ----------------------------
def connect_waypoints(
    grid: OccupancyGrid,
    waypoints: Sequence[Waypoint],
    k: int,
    radius: float,
    deadline: Optional[Deadline] = None,
) -> List[Edge]:
    """
    For every waypoint, walk the others within `radius` nearest first
    (ties by sampling order) and accept up to k line-free edges. An edge that
    already exists counts towards k and is not added twice.
    """
    xy = _coords(waypoints)
    N = len(xy)
    if N < 2 or k < 1:
        return []

    tree = cKDTree(xy)
    kept: Set[Tuple[int, int]] = set()
    blocked: Set[Tuple[int, int]] = set()
    edges: List[Edge] = []

    for i in range(N):
        if deadline is not None and deadline.expired():
            break
        cand = [int(j) for j in tree.query_ball_point(xy[i], r=float(radius)) if int(j) != i]
        if not cand:
            continue
        dist = np.hypot(xy[cand, 0] - xy[i, 0], xy[cand, 1] - xy[i, 1])
        order = sorted(range(len(cand)), key=lambda c: (float(dist[c]), cand[c]))

        accepted = 0
        for c in order:
            if accepted >= k:
                break
            key = _pair(i, cand[c])
            if key in kept:
                accepted += 1
                continue
            if key in blocked:
                continue
            if not grid.is_line_free(xy[key[0]], xy[key[1]]):
                blocked.add(key)
                continue
            kept.add(key)
            edges.append(Edge.between(waypoints[key[0]].id, waypoints[key[1]].id))
            accepted += 1

    return edges


# ----------------------------
# 3) Connectivity repair
# ----------------------------
def _ordered_components(G: nx.Graph) -> List[Set[int]]:
    comps = [set(c) for c in nx.connected_components(G)]
    comps.sort(key=lambda c: (-len(c), min(c)))
    return comps


def _nearest_cross_pair(
    grid: OccupancyGrid,
    xy: np.ndarray,
    component: Set[int],
    radius: float,
    growth: float,
    max_radius: Optional[float],
    blocked: Set[Tuple[int, int]],
    deadline: Optional[Deadline],
) -> Optional[Tuple[int, int]]:
    """
    Nearest line-free pair (member of component, waypoint outside it).

    Candidates are examined ring by ring, (r_prev, r] with r growing by
    `growth` from `radius`; inside a ring pairs go by (distance, member
    index, outside index), so the first free pair is the nearest one.
    Returns None when no pair is free (or the deadline expired).
    """
    members = np.array(sorted(component), dtype=int)
    others = np.array(sorted(set(range(len(xy))) - component), dtype=int)
    if len(members) == 0 or len(others) == 0:
        return None

    d = cdist(xy[members], xy[others])
    d_max = float(d.max())
    limit = d_max if max_radius is None else min(d_max, float(max_radius))

    lo = -math.inf
    hi = float(radius)
    while True:
        ring = (d > lo) & (d <= min(hi, limit))
        ii, jj = np.nonzero(ring)
        if len(ii):
            order = np.lexsort((others[jj], members[ii], d[ii, jj]))
            for o in order:
                a, b = int(members[ii[o]]), int(others[jj[o]])
                key = _pair(a, b)
                if key in blocked:
                    continue
                if deadline is not None and deadline.expired():
                    return None
                if grid.is_line_free(xy[a], xy[b]):
                    return key
                blocked.add(key)
        if hi >= limit:
            return None
        lo, hi = hi, hi * growth


def repair_connectivity(
    grid: OccupancyGrid,
    waypoints: Sequence[Waypoint],
    edges: Sequence[Edge],
    radius: float,
    growth: float = 2.0,
    max_radius: Optional[float] = None,
    deadline: Optional[Deadline] = None,
) -> Tuple[List[Edge], RoadmapStatus]:
    """
    Add edges until the graph is one component.

    Returns (added edges, status): CONNECTED when every waypoint is reachable,
    UNCONNECTABLE when no remaining component can be joined to any other by a
    free straight line, TIMEOUT when the deadline expired first.
    """
    xy = _coords(waypoints)
    G = nx.Graph()
    G.add_nodes_from(range(len(xy)))
    G.add_edges_from(_index_edges(waypoints, edges))

    added: List[Edge] = []
    blocked: Set[Tuple[int, int]] = set()

    while True:
        comps = _ordered_components(G)
        if len(comps) <= 1:
            return added, RoadmapStatus.CONNECTED

        joined = None
        for comp in comps[1:]:
            if deadline is not None and deadline.expired():
                return added, RoadmapStatus.TIMEOUT
            joined = _nearest_cross_pair(
                grid, xy, comp, radius, growth, max_radius, blocked, deadline
            )
            if joined is not None:
                break

        if joined is None:
            if deadline is not None and deadline.expired():
                return added, RoadmapStatus.TIMEOUT
            return added, RoadmapStatus.UNCONNECTABLE

        G.add_edge(*joined)
        added.append(Edge.between(waypoints[joined[0]].id, waypoints[joined[1]].id))


# ----------------------------
# Main build function
# ----------------------------
def build_roadmap(
    grid: OccupancyGrid,
    cfg: Optional[RoadmapBuildConfig] = None,
    cancel: Optional[Callable[[], bool]] = None,
) -> Roadmap:
    """
    Sample, connect and repair a roadmap on `grid`.

    Raises InsufficientFreeSpace when fewer than two waypoints fit. When the
    timeout (cfg.timeout) or `cancel()` fires, the roadmap built so far is
    returned with status TIMEOUT.
    """
    cfg = (cfg or RoadmapBuildConfig()).validate()
    deadline = Deadline(cfg.timeout, cancel)
    rng = np.random.default_rng(cfg.seed)

    _log(cfg, f"Grid: {grid}")

    # 1) Sampling
    waypoints = sample_waypoints(
        grid,
        min_spacing=float(cfg.min_spacing),
        max_waypoints=int(cfg.max_waypoints),
        max_rejections=int(cfg.max_rejections),
        rng=rng,
        deadline=deadline,
    )
    _log(cfg, f"Sampled waypoints: {len(waypoints)}")
    if deadline.expired():
        _log(cfg, "Build budget exhausted during sampling.", "WARN")
        return Roadmap.from_parts(waypoints, [], RoadmapStatus.TIMEOUT)
    if len(waypoints) < 2:
        raise InsufficientFreeSpace(
            f"Only {len(waypoints)} waypoint(s) fit in the free space "
            f"(free cells={len(grid.free_cells())}, min_spacing={cfg.min_spacing})"
        )

    # 2) Connection
    edges = connect_waypoints(
        grid,
        waypoints,
        k=int(cfg.k),
        radius=float(cfg.connect_radius),
        deadline=deadline,
    )
    _log(cfg, f"Connector edges: {len(edges)}")
    if deadline.expired():
        _log(cfg, "Build budget exhausted during connection.", "WARN")
        return Roadmap.from_parts(waypoints, edges, RoadmapStatus.TIMEOUT)

    # 3) Repair
    added, status = repair_connectivity(
        grid,
        waypoints,
        edges,
        radius=float(cfg.connect_radius),
        growth=float(cfg.repair_radius_growth),
        max_radius=cfg.repair_max_radius,
        deadline=deadline,
    )
    _log(cfg, f"Repair edges: {len(added)} -> status={status.value}")
    if status is RoadmapStatus.UNCONNECTABLE:
        _log(cfg, "Roadmap has several components that no free straight line can join.", "WARN")

    return Roadmap.from_parts(waypoints, edges + added, status, repair_edges=added)


class RoadmapGenerator:
    """Regenerate-on-request front end: every call yields a fresh Roadmap."""

    def __init__(self, cfg: Optional[RoadmapBuildConfig] = None) -> None:
        self.cfg = (cfg or RoadmapBuildConfig()).validate()
        self.last_roadmap: Optional[Roadmap] = None

    def generate(self, grid: OccupancyGrid, cancel: Optional[Callable[[], bool]] = None) -> Roadmap:
        roadmap = build_roadmap(grid, self.cfg, cancel=cancel)
        self.last_roadmap = roadmap
        return roadmap


def main():
    import argparse

    ap = argparse.ArgumentParser()
    ap.add_argument("--config", type=str, default=None, help="Path to config JSON (optional)")
    ap.add_argument("--map", type=str, required=True, help="Path to a 2D .npy map")
    ap.add_argument(
        "--map-kind",
        choices=("traversability", "occupancy"),
        default="traversability",
        help="traversability in [0..1] (walls == 0) or occupancy values (-1, 0..100)",
    )
    ap.add_argument("--resolution", type=float, default=1.0, help="Meters per cell")
    args = ap.parse_args()

    cfg = load_config(args.config)
    cfg.verbose = True

    map_path = Path(args.map)
    if not map_path.exists():
        raise FileNotFoundError(f"Map not found: {map_path}")
    arr = np.load(map_path)
    if args.map_kind == "traversability":
        grid = OccupancyGrid.from_traversability(arr, resolution=args.resolution)
    else:
        grid = OccupancyGrid.from_array(arr, resolution=args.resolution)

    print(f"[INFO] Loaded map: {map_path} shape={arr.shape}")
    print(f"[INFO] RoadmapBuildConfig: {asdict(cfg)}")
    roadmap = build_roadmap(grid, cfg)
    print(f"[INFO] {roadmap}")


if __name__ == "__main__":
    main()

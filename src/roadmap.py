"""
roadmap.py

Value types for a finished waypoint roadmap:
- Waypoint: named world position plus its neighbour ids
- Edge: undirected pair of waypoint ids, (a, b) == (b, a)
- Roadmap: immutable waypoint mapping + edge tuple + terminal status

A Roadmap is built once by roadmap_build.build_roadmap and never mutated.
Consumers get read-only mappings, tuples, or fresh copies (to_networkx).
"""

from __future__ import annotations

import math
import re
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import networkx as nx
import numpy as np
from scipy.spatial import cKDTree


_WP_ID = re.compile(r"^wp_(\d+)$")


def waypoint_sort_key(wp_id: str) -> Tuple[int, int, str]:
    """Order ids by sampling index (wp_2 < wp_10); other names sort after, by text."""
    m = _WP_ID.match(wp_id)
    if m:
        return 0, int(m.group(1)), ""
    return 1, 0, wp_id


class RoadmapStatus(str, Enum):
    CONNECTED = "connected"
    UNCONNECTABLE = "unconnectable"
    TIMEOUT = "timeout"


class InsufficientFreeSpace(ValueError):
    """Fewer than two waypoints could be placed in the free space of the grid."""


@dataclass(frozen=True)
class Waypoint:
    id: str
    x: float
    y: float
    neighbours: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def xy(self) -> Tuple[float, float]:
        return self.x, self.y

    def distance_to(self, other: "Waypoint") -> float:
        return math.hypot(self.x - other.x, self.y - other.y)


@dataclass(frozen=True, eq=False)
class Edge:
    start: str
    end: str

    @classmethod
    def between(cls, a: str, b: str) -> "Edge":
        if a == b:
            raise ValueError(f"Edge endpoints must differ, got {a!r} twice")
        if waypoint_sort_key(b) < waypoint_sort_key(a):
            a, b = b, a
        return cls(a, b)

    @property
    def key(self) -> FrozenSet[str]:
        return frozenset((self.start, self.end))

    def other(self, wp_id: str) -> str:
        return self.end if wp_id == self.start else self.start

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Edge):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def __iter__(self):
        yield self.start
        yield self.end


@dataclass(frozen=True, eq=False)
class Roadmap:
    waypoints: Mapping[str, Waypoint]
    edges: Tuple[Edge, ...]
    status: RoadmapStatus
    repair_edges: Tuple[Edge, ...] = ()

    @classmethod
    def from_parts(
        cls,
        waypoints: Sequence[Waypoint],
        edges: Iterable[Edge],
        status: RoadmapStatus,
        repair_edges: Iterable[Edge] = (),
    ) -> "Roadmap":
        """
        Freeze waypoints + edges into a Roadmap. Neighbour sets are derived
        from the edges; duplicate edges collapse to the first occurrence.
        """
        positions: Dict[str, Tuple[float, float]] = {}
        for wp in waypoints:
            if wp.id in positions:
                raise ValueError(f"Duplicate waypoint id: {wp.id}")
            positions[wp.id] = (float(wp.x), float(wp.y))

        nbrs: Dict[str, Set[str]] = {wid: set() for wid in positions}
        unique: List[Edge] = []
        seen: Set[FrozenSet[str]] = set()
        for e in edges:
            if e.start not in positions or e.end not in positions:
                raise ValueError(f"Edge {e.start}-{e.end} references an unknown waypoint")
            if e.key in seen:
                continue
            seen.add(e.key)
            unique.append(e)
            nbrs[e.start].add(e.end)
            nbrs[e.end].add(e.start)

        repaired = tuple(dict.fromkeys(repair_edges))
        for e in repaired:
            if e.key not in seen:
                raise ValueError(f"Repair edge {e.start}-{e.end} is not part of the roadmap")

        frozen = {
            wid: Waypoint(wid, x, y, frozenset(nbrs[wid]))
            for wid, (x, y) in positions.items()
        }
        return cls(
            waypoints=MappingProxyType(frozen),
            edges=tuple(unique),
            status=RoadmapStatus(status),
            repair_edges=repaired,
        )

    # ----------------------------
    # Status
    # ----------------------------
    @property
    def is_connected(self) -> bool:
        return self.status is RoadmapStatus.CONNECTED

    def __len__(self) -> int:
        return len(self.waypoints)

    # ----------------------------
    # Exports for collaborators
    # ----------------------------
    def waypoint_list(self) -> List[Dict[str, Any]]:
        return [{"id": wp.id, "x": wp.x, "y": wp.y} for wp in self.waypoints.values()]

    def edge_list(self) -> List[Tuple[str, str]]:
        return [(e.start, e.end) for e in self.edges]

    def to_networkx(self) -> nx.Graph:
        G = nx.Graph()
        for wp in self.waypoints.values():
            G.add_node(wp.id, x=wp.x, y=wp.y)
        for e in self.edges:
            a = self.waypoints[e.start]
            b = self.waypoints[e.end]
            G.add_edge(e.start, e.end, weight=a.distance_to(b), repair=e in self._repair_set)
        return G

    @cached_property
    def _repair_set(self) -> FrozenSet[Edge]:
        return frozenset(self.repair_edges)

    @cached_property
    def _ids(self) -> Tuple[str, ...]:
        return tuple(self.waypoints.keys())

    @cached_property
    def _index(self) -> Dict[str, int]:
        return {wid: i for i, wid in enumerate(self._ids)}

    def nodes_xy(self) -> np.ndarray:
        """(N, 2) float array of waypoint positions, in waypoint order."""
        if not self.waypoints:
            return np.zeros((0, 2), dtype=float)
        return np.array([wp.xy for wp in self.waypoints.values()], dtype=float)

    def index_edges(self) -> List[Tuple[int, int, float]]:
        """Edges as (i, j, euclidean length) over nodes_xy() row indices."""
        out: List[Tuple[int, int, float]] = []
        for e in self.edges:
            i, j = self._index[e.start], self._index[e.end]
            out.append((i, j, self.waypoints[e.start].distance_to(self.waypoints[e.end])))
        return out

    # ----------------------------
    # Graph queries
    # ----------------------------
    def neighbours(self, wp_id: str) -> FrozenSet[str]:
        return self.waypoints[wp_id].neighbours

    def reachable_from(self, wp_id: str) -> Set[str]:
        if wp_id not in self.waypoints:
            raise KeyError(wp_id)
        visited = {wp_id}
        queue = deque([wp_id])
        while queue:
            cur = queue.popleft()
            for nxt in self.waypoints[cur].neighbours:
                if nxt not in visited:
                    visited.add(nxt)
                    queue.append(nxt)
        return visited

    def connected_components(self) -> List[Set[str]]:
        """Components, largest first (ties broken by lowest waypoint id)."""
        remaining = dict.fromkeys(self.waypoints)
        comps: List[Set[str]] = []
        for wid in list(remaining):
            if wid not in remaining:
                continue
            comp = self.reachable_from(wid)
            for v in comp:
                remaining.pop(v, None)
            comps.append(comp)
        comps.sort(key=lambda c: (-len(c), min(waypoint_sort_key(v) for v in c)))
        return comps

    # ----------------------------
    # Spatial queries
    # ----------------------------
    @cached_property
    def _tree(self) -> Optional[cKDTree]:
        if not self.waypoints:
            return None
        return cKDTree(self.nodes_xy())

    def nearest_waypoint(self, point: Sequence[float]) -> Optional[Waypoint]:
        if self._tree is None:
            return None
        _, idx = self._tree.query([float(point[0]), float(point[1])], k=1)
        return self.waypoints[self._ids[int(idx)]]

    def waypoints_near(self, point: Sequence[float], radius: float) -> List[Waypoint]:
        """Waypoints within `radius` of point, nearest first."""
        if self._tree is None:
            return []
        p = np.array([float(point[0]), float(point[1])])
        idxs = self._tree.query_ball_point(p, r=float(radius))
        found = [self.waypoints[self._ids[int(i)]] for i in idxs]
        found.sort(key=lambda wp: (math.hypot(wp.x - p[0], wp.y - p[1]), waypoint_sort_key(wp.id)))
        return found

    def __repr__(self) -> str:
        return (
            f"Roadmap(waypoints={len(self.waypoints)}, edges={len(self.edges)}, "
            f"repair_edges={len(self.repair_edges)}, status={self.status.value})"
        )

import itertools
import json

import networkx as nx
import numpy as np
import pytest

from conftest import wall_cells
from occupancy_grid import OccupancyGrid
from roadmap import Edge, InsufficientFreeSpace, RoadmapStatus, Waypoint
from roadmap_build import (
    Deadline,
    RoadmapBuildConfig,
    RoadmapGenerator,
    build_roadmap,
    connect_waypoints,
    load_config,
    repair_connectivity,
    sample_waypoints,
)


def _row_waypoints(xs, y=2.5, start=0):
    return [Waypoint(f"wp_{start + i}", float(x), y) for i, x in enumerate(xs)]


def _crossing(roadmap, wall_x, edges=None):
    out = []
    for e in roadmap.edges if edges is None else edges:
        a = roadmap.waypoints[e.start]
        b = roadmap.waypoints[e.end]
        if (a.x < wall_x) != (b.x < wall_x):
            out.append(e)
    return out


def _assert_consistent(roadmap):
    for e in roadmap.edges:
        assert e.start in roadmap.waypoints and e.end in roadmap.waypoints
        assert e.end in roadmap.neighbours(e.start)
        assert e.start in roadmap.neighbours(e.end)
    degree = sum(len(wp.neighbours) for wp in roadmap.waypoints.values())
    assert degree == 2 * len(roadmap.edges)


# ----------------------------
# Sampling
# ----------------------------
def test_samples_are_spaced_free_and_uniquely_named(free_grid):
    wps = sample_waypoints(free_grid, min_spacing=2.0, rng=np.random.default_rng(3))
    assert len(wps) >= 2
    assert [wp.id for wp in wps] == [f"wp_{i}" for i in range(len(wps))]
    for wp in wps:
        assert free_grid.is_free(wp.xy)
    for a, b in itertools.combinations(wps, 2):
        assert a.distance_to(b) >= 2.0 - 1e-9


def test_sampling_stops_at_target_count(free_grid):
    wps = sample_waypoints(free_grid, min_spacing=1.0, max_waypoints=7, rng=np.random.default_rng(0))
    assert len(wps) == 7


def test_sampling_terminates_on_small_map():
    grid = OccupancyGrid(2, 2, 1.0, [0] * 4)
    wps = sample_waypoints(grid, min_spacing=5.0, max_rejections=50, rng=np.random.default_rng(0))
    assert len(wps) == 1


def test_sampling_on_occupied_map_yields_nothing():
    grid = OccupancyGrid(3, 3, 1.0, [100] * 9)
    assert sample_waypoints(grid, min_spacing=1.0) == []


def test_sampling_counter_is_per_call(free_grid):
    first = sample_waypoints(free_grid, 2.0, rng=np.random.default_rng(1))
    second = sample_waypoints(free_grid, 2.0, rng=np.random.default_rng(2))
    assert first[0].id == second[0].id == "wp_0"


# ----------------------------
# Connection
# ----------------------------
def test_connector_tie_break_and_k_limit(free_grid):
    wps = [
        Waypoint("wp_0", 2.5, 2.5),
        Waypoint("wp_1", 3.5, 2.5),
        Waypoint("wp_2", 1.5, 2.5),
    ]
    edges = connect_waypoints(free_grid, wps, k=1, radius=1.5)
    assert edges == [Edge("wp_0", "wp_1"), Edge("wp_0", "wp_2")]


def test_connector_never_duplicates(free_grid):
    wps = _row_waypoints([0.5, 1.5, 2.5, 3.5])
    edges = connect_waypoints(free_grid, wps, k=3, radius=5.0)
    assert len(edges) == len(set(edges)) == 6


def test_connector_respects_radius(free_grid):
    wps = _row_waypoints([0.5, 5.5])
    assert connect_waypoints(free_grid, wps, k=3, radius=4.0) == []


def test_connector_skips_blocked_lines(closed_grid):
    wps = _row_waypoints([4.5, 6.5])
    assert connect_waypoints(closed_grid, wps, k=3, radius=5.0) == []


def test_connector_alone_leaves_wall_sides_apart(gap_grid):
    wps = _row_waypoints([0.5, 1.5, 2.5, 3.5, 4.5, 6.5, 7.5, 8.5, 9.5])
    edges = connect_waypoints(gap_grid, wps, k=8, radius=1.5)
    assert len(edges) == 7
    for e in edges:
        assert gap_grid.is_line_free(*(next(w.xy for w in wps if w.id == v) for v in e))


# ----------------------------
# Repair
# ----------------------------
def test_repair_adds_single_edge_through_gap(gap_grid):
    wps = _row_waypoints([0.5, 1.5, 2.5, 3.5, 4.5, 6.5, 7.5, 8.5, 9.5])
    edges = connect_waypoints(gap_grid, wps, k=8, radius=1.5)
    added, status = repair_connectivity(gap_grid, wps, edges, radius=1.5)
    assert status is RoadmapStatus.CONNECTED
    assert added == [Edge("wp_4", "wp_5")]


def test_repair_skips_blocked_nearest_pair(gap_grid):
    wps = [
        Waypoint("wp_0", 4.5, 3.5),
        Waypoint("wp_1", 3.5, 2.5),
        Waypoint("wp_2", 6.5, 2.5),
    ]
    edges = connect_waypoints(gap_grid, wps, k=3, radius=1.5)
    assert edges == [Edge("wp_0", "wp_1")]
    added, status = repair_connectivity(gap_grid, wps, edges, radius=1.5)
    assert status is RoadmapStatus.CONNECTED
    assert added == [Edge("wp_1", "wp_2")]


def test_repair_reports_unconnectable(closed_grid):
    wps = _row_waypoints([0.5, 1.5, 2.5, 3.5, 4.5, 6.5, 7.5, 8.5, 9.5])
    edges = connect_waypoints(closed_grid, wps, k=8, radius=1.5)
    added, status = repair_connectivity(closed_grid, wps, edges, radius=1.5)
    assert status is RoadmapStatus.UNCONNECTABLE
    assert added == []


def test_repair_joins_isolated_waypoints_on_the_same_side(closed_grid):
    wps = _row_waypoints([0.5, 4.5, 6.5, 9.5])
    added, status = repair_connectivity(closed_grid, wps, [], radius=1.0)
    assert status is RoadmapStatus.UNCONNECTABLE
    assert set(added) == {Edge("wp_0", "wp_1"), Edge("wp_2", "wp_3")}


def test_repair_radius_cap(gap_grid):
    wps = _row_waypoints([0.5, 1.5, 2.5, 3.5, 4.5, 6.5, 7.5, 8.5, 9.5])
    edges = connect_waypoints(gap_grid, wps, k=8, radius=1.5)
    added, status = repair_connectivity(gap_grid, wps, edges, radius=1.0, max_radius=1.9)
    assert status is RoadmapStatus.UNCONNECTABLE
    assert added == []


def test_repair_already_connected(free_grid):
    wps = _row_waypoints([0.5, 1.5])
    added, status = repair_connectivity(free_grid, wps, [Edge("wp_0", "wp_1")], radius=1.5)
    assert (added, status) == ([], RoadmapStatus.CONNECTED)


def test_repair_honours_deadline(closed_grid):
    wps = _row_waypoints([0.5, 4.5, 6.5, 9.5])
    added, status = repair_connectivity(
        closed_grid, wps, [], radius=1.0, deadline=Deadline(cancel=lambda: True)
    )
    assert status is RoadmapStatus.TIMEOUT
    assert added == []


# ----------------------------
# Full build
# ----------------------------
def test_open_room_scenario(free_grid):
    cfg = RoadmapBuildConfig(k=3, min_spacing=2.0, connect_radius=4.0, seed=0)
    rm = build_roadmap(free_grid, cfg)

    assert rm.status is RoadmapStatus.CONNECTED
    assert 15 <= len(rm) <= 30
    for wid in rm.waypoints:
        assert rm.reachable_from(wid) == set(rm.waypoints)
    for e in rm.edges:
        a, b = rm.waypoints[e.start], rm.waypoints[e.end]
        assert 0.0 <= min(a.x, b.x) and max(a.x, b.x) <= 10.0
        assert 0.0 <= min(a.y, b.y) and max(a.y, b.y) <= 10.0
        assert free_grid.is_line_free(a.xy, b.xy)
    for a, b in itertools.combinations(rm.waypoints.values(), 2):
        assert a.distance_to(b) >= 2.0 - 1e-9
    _assert_consistent(rm)


def test_same_seed_same_roadmap(free_grid):
    cfg = RoadmapBuildConfig(k=3, min_spacing=2.0, connect_radius=4.0, seed=42)
    a = build_roadmap(free_grid, cfg)
    b = build_roadmap(free_grid, cfg)
    assert a.waypoint_list() == b.waypoint_list()
    assert a.edge_list() == b.edge_list()
    assert a.status is b.status


def test_wall_with_gap_gets_connected():
    grid = OccupancyGrid.from_array(wall_cells(21, 11, 10, gap_rows=(5,)))
    cfg = RoadmapBuildConfig(k=8, min_spacing=1.0, connect_radius=1.5, max_rejections=2000, seed=7)
    rm = build_roadmap(grid, cfg)

    assert rm.status is RoadmapStatus.CONNECTED
    crossing = _crossing(rm, wall_x=10.5)
    assert crossing
    for e in rm.edges:
        assert grid.is_line_free(rm.waypoints[e.start].xy, rm.waypoints[e.end].xy)
    _assert_consistent(rm)


def test_repair_bridges_split_wall_sides_with_one_edge():
    grid = OccupancyGrid.from_array(wall_cells(21, 11, 10, gap_rows=(5,)))
    split_builds = 0
    for seed in range(20):
        cfg = RoadmapBuildConfig(
            k=8, min_spacing=1.0, connect_radius=1.5, max_waypoints=150, max_rejections=3000, seed=seed
        )
        rm = build_roadmap(grid, cfg)
        repair = set(rm.repair_edges)
        connector_edges = [e for e in rm.edges if e not in repair]
        G = nx.Graph()
        G.add_nodes_from(rm.waypoints)
        G.add_edges_from(tuple(e) for e in connector_edges)
        if nx.number_connected_components(G) != 2 or _crossing(rm, 10.5, connector_edges):
            continue

        split_builds += 1
        assert rm.status is RoadmapStatus.CONNECTED
        assert len(rm.repair_edges) == 1
        assert len(_crossing(rm, 10.5, rm.repair_edges)) == 1
    assert split_builds > 0


def test_diagonal_wall_is_unconnectable():
    cells = np.zeros((12, 12), dtype=int)
    np.fill_diagonal(cells, 100)
    grid = OccupancyGrid.from_array(cells)
    for seed in range(5):
        rm = build_roadmap(grid, RoadmapBuildConfig(k=4, min_spacing=1.5, connect_radius=2.5, seed=seed))
        assert rm.status is RoadmapStatus.UNCONNECTABLE
        for e in rm.edges:
            a, b = rm.waypoints[e.start], rm.waypoints[e.end]
            assert (a.x > a.y) == (b.x > b.y)
            assert grid.is_line_free(a.xy, b.xy)
        for comp in rm.connected_components():
            assert len({rm.waypoints[w].x > rm.waypoints[w].y for w in comp}) == 1


def test_unbroken_wall_is_unconnectable():
    grid = OccupancyGrid.from_array(wall_cells(21, 11, 10))
    cfg = RoadmapBuildConfig(k=4, min_spacing=1.5, connect_radius=2.5, seed=1)
    rm = build_roadmap(grid, cfg)

    assert rm.status is RoadmapStatus.UNCONNECTABLE
    assert not rm.is_connected
    assert _crossing(rm, wall_x=10.5) == []
    comps = rm.connected_components()
    assert len(comps) == 2
    for comp in comps:
        sides = {rm.waypoints[w].x < 10.5 for w in comp}
        assert len(sides) == 1


def test_single_free_cell_is_insufficient():
    cells = np.full((5, 5), 100)
    cells[2, 2] = 0
    grid = OccupancyGrid.from_array(cells)
    with pytest.raises(InsufficientFreeSpace):
        build_roadmap(grid, RoadmapBuildConfig(seed=0, max_rejections=20))


def test_occupied_grid_is_insufficient():
    grid = OccupancyGrid(4, 4, 1.0, [100] * 16)
    with pytest.raises(InsufficientFreeSpace):
        build_roadmap(grid, RoadmapBuildConfig(seed=0))


def test_zero_timeout_returns_timeout_status(free_grid):
    rm = build_roadmap(free_grid, RoadmapBuildConfig(seed=0, timeout=0.0))
    assert rm.status is RoadmapStatus.TIMEOUT
    assert len(rm) == 0
    assert rm.edges == ()


@pytest.mark.parametrize("budget", [5, 60, 400])
def test_cancel_midway_leaves_consistent_roadmap(free_grid, budget):
    calls = itertools.count()
    cfg = RoadmapBuildConfig(k=3, min_spacing=1.0, connect_radius=3.0, seed=0, max_rejections=30)
    rm = build_roadmap(free_grid, cfg, cancel=lambda: next(calls) >= budget)
    assert rm.status in (RoadmapStatus.TIMEOUT, RoadmapStatus.CONNECTED)
    _assert_consistent(rm)


def test_world_units_with_resolution_and_origin():
    grid = OccupancyGrid(20, 20, 0.05, [0] * 400, origin=(-0.5, 1.0))
    cfg = RoadmapBuildConfig(k=4, min_spacing=0.1, connect_radius=0.25, seed=5)
    rm = build_roadmap(grid, cfg)
    x0, y0, x1, y1 = grid.bounds()
    assert rm.status is RoadmapStatus.CONNECTED
    for wp in rm.waypoints.values():
        assert x0 < wp.x < x1 and y0 < wp.y < y1
        assert grid.is_free(wp.xy)


@pytest.mark.parametrize(
    "field,value",
    [("k", 0), ("min_spacing", 0.0), ("connect_radius", -1.0),
     ("repair_radius_growth", 1.0), ("repair_max_radius", 0.0), ("timeout", -1.0)],
)
def test_config_validation(field, value):
    cfg = RoadmapBuildConfig()
    setattr(cfg, field, value)
    with pytest.raises(ValueError):
        cfg.validate()


def test_load_config_reads_roadmap_block(tmp_path):
    path = tmp_path / "cfg.json"
    path.write_text(json.dumps({"roadmap": {"k": 7, "min_spacing": 0.5, "unknown_key": 1}}))
    cfg = load_config(str(path))
    assert cfg.k == 7
    assert cfg.min_spacing == 0.5
    assert not hasattr(cfg, "unknown_key")
    assert load_config(None) == RoadmapBuildConfig()


def test_generator_returns_fresh_roadmaps(free_grid):
    gen = RoadmapGenerator(RoadmapBuildConfig(k=3, min_spacing=2.0, connect_radius=4.0, seed=0))
    first = gen.generate(free_grid)
    second = gen.generate(free_grid)
    assert first is not second
    assert gen.last_roadmap is second
    assert first.waypoint_list() == second.waypoint_list()


def test_repair_edges_are_tracked(gap_grid):
    cfg = RoadmapBuildConfig(k=2, min_spacing=2.0, connect_radius=2.0, seed=3)
    rm = build_roadmap(gap_grid, cfg)
    assert set(rm.repair_edges) <= set(rm.edges)

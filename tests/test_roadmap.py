import pytest

from roadmap import Edge, Roadmap, RoadmapStatus, Waypoint, waypoint_sort_key


def _line_roadmap(status=RoadmapStatus.CONNECTED):
    wps = [Waypoint(f"wp_{i}", float(i), 0.0) for i in range(4)]
    edges = [Edge.between("wp_0", "wp_1"), Edge.between("wp_2", "wp_1"), Edge.between("wp_2", "wp_3")]
    return Roadmap.from_parts(wps, edges, status)


def test_sort_key_uses_sampling_index():
    ids = ["wp_10", "wp_2", "dock", "wp_0"]
    assert sorted(ids, key=waypoint_sort_key) == ["wp_0", "wp_2", "wp_10", "dock"]


def test_edge_is_unordered():
    assert Edge.between("wp_3", "wp_1") == Edge("wp_1", "wp_3")
    assert Edge("wp_3", "wp_1") == Edge("wp_1", "wp_3")
    assert len({Edge("wp_3", "wp_1"), Edge("wp_1", "wp_3")}) == 1
    assert Edge.between("wp_10", "wp_2").start == "wp_2"


def test_self_loop_rejected():
    with pytest.raises(ValueError):
        Edge.between("wp_1", "wp_1")


def test_neighbours_derived_from_edges():
    rm = _line_roadmap()
    assert rm.neighbours("wp_1") == frozenset({"wp_0", "wp_2"})
    assert rm.neighbours("wp_3") == frozenset({"wp_2"})


def test_duplicate_edges_collapse():
    wps = [Waypoint("wp_0", 0.0, 0.0), Waypoint("wp_1", 1.0, 0.0)]
    rm = Roadmap.from_parts(wps, [Edge("wp_0", "wp_1"), Edge("wp_1", "wp_0")], RoadmapStatus.CONNECTED)
    assert rm.edge_list() == [("wp_0", "wp_1")]


def test_unknown_endpoint_rejected():
    with pytest.raises(ValueError):
        Roadmap.from_parts([Waypoint("wp_0", 0.0, 0.0)], [Edge("wp_0", "wp_9")], RoadmapStatus.CONNECTED)


def test_duplicate_waypoint_rejected():
    wps = [Waypoint("wp_0", 0.0, 0.0), Waypoint("wp_0", 1.0, 0.0)]
    with pytest.raises(ValueError):
        Roadmap.from_parts(wps, [], RoadmapStatus.CONNECTED)


def test_roadmap_is_read_only():
    rm = _line_roadmap()
    with pytest.raises(TypeError):
        rm.waypoints["wp_9"] = Waypoint("wp_9", 0.0, 0.0)
    with pytest.raises(AttributeError):
        rm.status = RoadmapStatus.TIMEOUT


def test_exports():
    rm = _line_roadmap()
    assert rm.waypoint_list()[2] == {"id": "wp_2", "x": 2.0, "y": 0.0}
    assert rm.edge_list() == [("wp_0", "wp_1"), ("wp_1", "wp_2"), ("wp_2", "wp_3")]
    assert rm.nodes_xy().shape == (4, 2)
    assert rm.index_edges()[1] == (1, 2, pytest.approx(1.0))


def test_to_networkx_is_a_copy():
    rm = _line_roadmap()
    G = rm.to_networkx()
    assert G.number_of_nodes() == 4
    assert G.number_of_edges() == 3
    assert G.nodes["wp_3"]["x"] == 3.0
    G.remove_node("wp_0")
    assert "wp_0" in rm.waypoints


def test_reachability_and_components():
    wps = [Waypoint(f"wp_{i}", float(i), 0.0) for i in range(5)]
    edges = [Edge.between("wp_0", "wp_1"), Edge.between("wp_3", "wp_4")]
    rm = Roadmap.from_parts(wps, edges, RoadmapStatus.UNCONNECTABLE)
    assert rm.reachable_from("wp_0") == {"wp_0", "wp_1"}
    assert rm.connected_components() == [{"wp_0", "wp_1"}, {"wp_3", "wp_4"}, {"wp_2"}]
    assert not rm.is_connected
    with pytest.raises(KeyError):
        rm.reachable_from("wp_99")


def test_connected_roadmap_reaches_everything_from_any_waypoint():
    rm = _line_roadmap()
    assert rm.is_connected
    for wid in rm.waypoints:
        assert rm.reachable_from(wid) == set(rm.waypoints)


def test_spatial_queries():
    rm = _line_roadmap()
    assert rm.nearest_waypoint((2.2, 0.3)).id == "wp_2"
    assert [wp.id for wp in rm.waypoints_near((1.4, 0.0), 1.0)] == ["wp_1", "wp_2"]
    empty = Roadmap.from_parts([], [], RoadmapStatus.TIMEOUT)
    assert empty.nearest_waypoint((0.0, 0.0)) is None
    assert empty.waypoints_near((0.0, 0.0), 5.0) == []


def test_repair_edges_must_belong_to_roadmap():
    wps = [Waypoint("wp_0", 0.0, 0.0), Waypoint("wp_1", 1.0, 0.0)]
    with pytest.raises(ValueError):
        Roadmap.from_parts(wps, [], RoadmapStatus.CONNECTED, repair_edges=[Edge("wp_0", "wp_1")])

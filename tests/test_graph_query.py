import pytest

from kgraph.data.graph_store import InMemoryGraphStore
from kgraph.data.models import GraphEdge, GraphNode
from kgraph.errors import NotFoundError
from kgraph.graph.query import GraphQueryEngine


def build_chain(isolated=False):
    """A -> B -> C -> D with C typed as a topic; optionally an unconnected E."""
    store = InMemoryGraphStore()
    nodes = {}
    for label, node_type, segment in (("A", "brand", "s1"), ("B", "brand", "s1"), ("C", "topic", "s2"), ("D", "brand", "s2")):
        nodes[label] = store.add_node(GraphNode("ds", node_type, label, segment_id=segment))
    if isolated:
        nodes["E"] = store.add_node(GraphNode("ds", "brand", "E"))
    for source, target in (("A", "B"), ("B", "C"), ("C", "D")):
        store.add_edge(GraphEdge("ds", nodes[source].id, nodes[target].id, "related_to", weight=0.5))
    return GraphQueryEngine(store), nodes


def test_density_of_four_nodes_and_three_edges():
    engine, _ = build_chain()
    assert engine.density("ds") == pytest.approx(0.5)
    assert engine.density("empty") == 0.0


def test_shortest_path_follows_edge_direction():
    engine, nodes = build_chain()

    path = engine.shortest_path(nodes["A"].id, nodes["D"].id)

    assert path.distance == 3
    assert [node.label for node in path.nodes] == ["A", "B", "C", "D"]
    assert len(path.edges) == 3
    assert engine.shortest_path(nodes["D"].id, nodes["A"].id) is None
    assert engine.shortest_path(nodes["A"].id, nodes["D"].id, max_depth=2) is None


def test_shortest_path_to_self_and_missing_nodes():
    engine, nodes = build_chain()
    path = engine.shortest_path(nodes["A"].id, nodes["A"].id)
    assert path.distance == 0
    assert [node.label for node in path.nodes] == ["A"]
    with pytest.raises(NotFoundError):
        engine.shortest_path(nodes["A"].id, "missing")


def test_neighbors_expand_undirected_and_filter_types():
    engine, nodes = build_chain()

    assert sorted(node.label for node in engine.neighbors(nodes["B"].id).nodes) == ["A", "C"]
    assert sorted(node.label for node in engine.neighbors(nodes["A"].id, depth=2).nodes) == ["B", "C"]
    filtered = engine.neighbors(nodes["A"].id, depth=3, node_types=["brand"])
    assert [node.label for node in filtered.nodes] == ["B"]


def test_communities_skip_small_components():
    engine, _ = build_chain(isolated=True)

    result = engine.detect_communities("ds", min_size=3)

    assert len(result.communities) == 1
    community = result.communities[0]
    assert community.size == 4
    assert community.internal_edges == 3
    assert community.density == pytest.approx(0.5)
    assert [node.label for node in engine.isolated_nodes("ds")] == ["E"]


def test_centrality_variants():
    engine, nodes = build_chain(isolated=True)

    degree = engine.centrality("ds", "degree", limit=2)
    assert sorted(result.node.label for result in degree) == ["B", "C"]
    assert [result.rank for result in degree] == [1, 2]

    betweenness = {result.node.label: result.centrality for result in engine.centrality("ds", "betweenness", limit=0)}
    assert betweenness == {"A": 0.0, "B": 2.0, "C": 2.0, "D": 0.0, "E": 0.0}

    closeness = {result.node.label: result.centrality for result in engine.centrality("ds", "closeness", limit=0)}
    assert closeness["B"] == pytest.approx(0.75)
    assert closeness["A"] == pytest.approx(0.5)
    assert closeness["E"] == 0.0

    with pytest.raises(ValueError):
        engine.centrality("ds", "pagerank")


def test_average_path_length_ignores_unreachable_pairs():
    engine, _ = build_chain(isolated=True)
    assert engine.average_path_length("ds") == pytest.approx(10 / 6)


def test_influential_and_bridge_nodes():
    engine, _ = build_chain()
    assert [result.node.label for result in engine.influential_nodes("ds", min_connections=2)] in (["B", "C"], ["C", "B"])
    assert engine.influential_nodes("ds", node_type="topic", min_connections=2)[0].node.label == "C"
    assert sorted(result.node.label for result in engine.bridge_nodes("ds", min_betweenness=1.0)) == ["B", "C"]


def test_segment_graph_renders_edge_endpoints_as_labels():
    engine, _ = build_chain()

    graph = engine.segment_graph("s1", dataset_id="ds")

    assert sorted(node.label for node in graph.nodes) == ["A", "B"]
    assert len(graph.edges) == 1
    assert (graph.edges[0]["from"], graph.edges[0]["to"], graph.edges[0]["type"]) == ("A", "B", "related_to")

from datetime import datetime, timezone

import pytest

from kgraph.analytics.metrics import compute_graph_metrics
from kgraph.data.models import GraphEdge, GraphNode


def build_node(label: str, node_type: str, document_id: str, **properties) -> GraphNode:
    return GraphNode(
        dataset_id="ds",
        node_type=node_type,
        label=label,
        document_id=document_id,
        segment_id=f"seg-{document_id}",
        properties=properties,
    )


def test_compute_graph_metrics_counts_nodes_and_edges():
    nike = build_node(
        "Nike",
        "brand",
        "d1",
        confidence=0.9,
        graphEntityId="entity-1",
        temporal_data={"mention_count": 3},
    )
    adidas = build_node("Adidas", "brand", "d2", confidence=0.7)
    edge = GraphEdge(
        dataset_id="ds",
        source_node_id=nike.id,
        target_node_id=adidas.id,
        edge_type="competes_with",
        weight=0.8,
        created_at=datetime(2024, 1, 15, tzinfo=timezone.utc),
    )

    metrics = compute_graph_metrics([nike, adidas], [edge])

    metadata = metrics["metadata"]
    node_summary = metrics["node_summary"]
    edge_summary = metrics["edge_summary"]
    documents = metrics["documents"]
    top_nodes = metrics["top_nodes_by_degree"]
    timeline = metrics["timeline"]
    graph_summary = metrics["graph_summary"]

    assert metadata["num_nodes"] == 2
    assert metadata["num_edges"] == 1
    assert node_summary["node_type_counts"]["brand"] == 2
    assert node_summary["avg_confidence"] == pytest.approx(0.8)
    assert node_summary["linked_to_dictionary"] == 1
    assert node_summary["dictionary_link_rate"] == 0.5
    assert node_summary["linked_by_type"] == {"brand": 1}
    assert node_summary["total_mentions"] == 4
    assert node_summary["most_mentioned"][0]["label"] == "Nike"
    assert node_summary["most_mentioned"][0]["mentions"] == 3
    assert edge_summary["type_pair_counts"] == {"brand->brand": 1}
    assert edge_summary["edge_type_counts"]["competes_with"] == 1
    assert edge_summary["max_edge_weight"] == 0.8
    assert edge_summary["median_edge_weight"] == 0.8
    assert edge_summary["graph_density"] == 1.0
    assert documents == {"unique_documents": 2, "unique_segments": 2}
    assert top_nodes[0]["degree"] == 1
    assert timeline["total_days"] == 1
    assert timeline["daily"][0] == {"date": "2024-01-15", "edges": 1, "unique_nodes": 2}
    assert timeline["peak_edges"] == 1
    assert timeline["peak_nodes"] == 2
    assert graph_summary["connected_components"] == 1
    assert graph_summary["largest_component_size"] == 2
    assert graph_summary["median_degree"] == 1
    assert graph_summary["isolated_nodes"] == 0


def test_compute_graph_metrics_for_empty_graph():
    metrics = compute_graph_metrics([], [])
    assert metrics["metadata"]["num_nodes"] == 0
    assert metrics["node_summary"]["node_type_counts"] == {}
    assert metrics["top_nodes_by_degree"] == []

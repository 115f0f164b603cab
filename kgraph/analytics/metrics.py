"""Aggregation helpers producing dashboard-ready graph metrics."""
from __future__ import annotations

from collections import Counter, defaultdict
from itertools import combinations
from statistics import median, pstdev, quantiles
from typing import DefaultDict, Dict, List, Sequence, Set

from ..data.models import GraphEdge, GraphNode, utcnow


def compute_graph_metrics(
    nodes: Sequence[GraphNode],
    edges: Sequence[GraphEdge],
    top_n: int = 10,
) -> Dict[str, object]:
    """Compute aggregate metrics for one dataset's nodes and edges.

    The returned dictionary is JSON-serialisable and suitable for dashboard consumption.
    """
    metrics: Dict[str, object] = {
        "metadata": {
            "generated_at": utcnow().isoformat(),
            "num_nodes": len(nodes),
            "num_edges": len(edges),
        },
        "timeline": {
            "daily": [],
            "total_days": 0,
        },
    }

    if not nodes:
        metrics.update(
            {
                "node_summary": {
                    "node_type_counts": {},
                    "avg_confidence": 0.0,
                    "linked_to_dictionary": 0,
                    "dictionary_link_rate": 0.0,
                    "linked_by_type": {},
                    "total_mentions": 0,
                    "most_mentioned": [],
                },
                "edge_summary": {
                    "edge_type_counts": {},
                    "avg_edge_weight": 0.0,
                    "graph_density": 0.0,
                    "type_pair_counts": {},
                },
                "documents": {"unique_documents": 0, "unique_segments": 0},
                "top_nodes_by_degree": [],
            }
        )
        return metrics

    node_type_counter = Counter(node.node_type for node in nodes)
    confidences = [node.confidence for node in nodes if "confidence" in node.properties]
    linked_by_type = Counter(node.node_type for node in nodes if node.properties.get("graphEntityId"))
    linked = sum(linked_by_type.values())
    mention_counts = {node.id: _mention_count(node) for node in nodes}
    most_mentioned = [
        {"id": node.id, "label": node.label, "node_type": node.node_type, "mentions": mention_counts[node.id]}
        for node in sorted(nodes, key=lambda item: (-mention_counts[item.id], item.label))[:top_n]
    ]
    document_ids = {node.document_id for node in nodes if node.document_id}
    segment_ids = {node.segment_id for node in nodes if node.segment_id}

    edge_type_counter = Counter(edge.edge_type for edge in edges)
    node_types = {node.id: node.node_type for node in nodes}
    type_pair_counter = Counter(
        "%s->%s" % (node_types.get(edge.source_node_id, "unknown"), node_types.get(edge.target_node_id, "unknown"))
        for edge in edges
    )
    edge_weights = [edge.weight for edge in edges]
    avg_edge_weight = sum(edge_weights) / len(edge_weights) if edge_weights else 0.0

    degree_counter: Counter = Counter()
    adjacency: DefaultDict[str, Set[str]] = defaultdict(set)
    for edge in edges:
        degree_counter[edge.source_node_id] += 1
        degree_counter[edge.target_node_id] += 1
        adjacency[edge.source_node_id].add(edge.target_node_id)
        adjacency[edge.target_node_id].add(edge.source_node_id)

    for node in nodes:
        adjacency.setdefault(node.id, set())

    top_nodes_by_degree: List[Dict[str, object]] = []
    node_lookup = {node.id: node for node in nodes}
    for node_id, degree in degree_counter.most_common(top_n):
        node = node_lookup.get(node_id)
        if not node:
            continue
        top_nodes_by_degree.append(
            {
                "id": node_id,
                "label": node.label,
                "node_type": node.node_type,
                "degree": degree,
            }
        )

    num_nodes = len(nodes)
    density = 0.0
    if num_nodes > 1:
        density = len(edges) / (num_nodes * (num_nodes - 1) / 2)

    edges_per_day: DefaultDict[str, int] = defaultdict(int)
    nodes_per_day: DefaultDict[str, Set[str]] = defaultdict(set)
    for edge in edges:
        date_key = edge.created_at.date().isoformat()
        edges_per_day[date_key] += 1
        nodes_per_day[date_key].update({edge.source_node_id, edge.target_node_id})

    daily_timeline: List[Dict[str, object]] = [
        {
            "date": date_key,
            "edges": edges_per_day[date_key],
            "unique_nodes": len(nodes_per_day[date_key]),
        }
        for date_key in sorted(edges_per_day.keys())
    ]

    total_degree = sum(degree_counter.values())
    avg_degree = total_degree / num_nodes if num_nodes else 0.0
    max_degree = max(degree_counter.values(), default=0)
    degree_values = [len(neighbours) for neighbours in adjacency.values()]
    median_degree = median(degree_values) if degree_values else 0.0
    degree_percentile_90 = (
        quantiles(degree_values, n=10, method="inclusive")[8]
        if len(degree_values) > 1
        else float(max_degree)
    )
    isolated_nodes = sum(1 for neighbours in adjacency.values() if not neighbours)

    def _average_clustering() -> float:
        clustering_values: List[float] = []
        for neighbours in adjacency.values():
            neighbour_list = list(neighbours)
            degree = len(neighbour_list)
            if degree < 2:
                continue
            possible_edges = degree * (degree - 1) / 2
            closed_edges = sum(1 for left, right in combinations(neighbour_list, 2) if right in adjacency[left])
            clustering_values.append(closed_edges / possible_edges)
        if not clustering_values:
            return 0.0
        return sum(clustering_values) / len(clustering_values)

    def _connected_components() -> List[Set[str]]:
        components: List[Set[str]] = []
        visited: Set[str] = set()
        for start in adjacency:
            if start in visited:
                continue
            stack = [start]
            component: Set[str] = set()
            while stack:
                current = stack.pop()
                if current in visited:
                    continue
                visited.add(current)
                component.add(current)
                stack.extend(neighbour for neighbour in adjacency[current] if neighbour not in visited)
            components.append(component)
        return components

    components = _connected_components()

    metrics.update(
        {
            "node_summary": {
                "node_type_counts": dict(node_type_counter),
                "avg_confidence": sum(confidences) / len(confidences) if confidences else 0.0,
                "linked_to_dictionary": linked,
                "dictionary_link_rate": linked / len(nodes),
                "linked_by_type": dict(linked_by_type),
                "total_mentions": sum(mention_counts.values()),
                "most_mentioned": most_mentioned,
            },
            "edge_summary": {
                "edge_type_counts": dict(edge_type_counter),
                "avg_edge_weight": avg_edge_weight,
                "graph_density": density,
                "type_pair_counts": dict(type_pair_counter),
                "max_edge_weight": max(edge_weights, default=0.0),
                "min_edge_weight": min(edge_weights) if edge_weights else 0.0,
                "median_edge_weight": median(edge_weights) if edge_weights else 0.0,
                "std_edge_weight": pstdev(edge_weights) if len(edge_weights) > 1 else 0.0,
            },
            "documents": {
                "unique_documents": len(document_ids),
                "unique_segments": len(segment_ids),
            },
            "top_nodes_by_degree": top_nodes_by_degree,
            "graph_summary": {
                "average_degree": avg_degree,
                "max_degree": max_degree,
                "connected_components": len(components),
                "largest_component_size": max((len(component) for component in components), default=0),
                "median_degree": median_degree,
                "degree_percentile_90": degree_percentile_90,
                "isolated_nodes": isolated_nodes,
                "average_clustering_coefficient": _average_clustering(),
            },
        }
    )

    metrics["timeline"] = {
        "daily": daily_timeline,
        "total_days": len(daily_timeline),
        "peak_edges": max(edges_per_day.values(), default=0),
        "peak_nodes": max((len(ids) for ids in nodes_per_day.values()), default=0),
    }

    return metrics


def _mention_count(node: GraphNode) -> int:
    temporal = node.properties.get("temporal_data")
    if isinstance(temporal, dict):
        try:
            return max(int(temporal.get("mention_count", 1)), 1)
        except (TypeError, ValueError):
            return 1
    return 1

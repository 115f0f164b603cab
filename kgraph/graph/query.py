"""Read-only traversal and structural analytics over a dataset's persisted graph."""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Optional, Set

import numpy as np

from ..data.graph_store import GraphStore
from ..data.models import GraphEdge, GraphNode
from ..errors import NotFoundError
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

CENTRALITY_TYPES = ("degree", "betweenness", "closeness")


@dataclass(slots=True)
class GraphPath:
    nodes: List[GraphNode]
    edges: List[GraphEdge]
    distance: int


@dataclass(slots=True)
class Neighborhood:
    nodes: List[GraphNode] = field(default_factory=list)
    edges: List[GraphEdge] = field(default_factory=list)


@dataclass(slots=True)
class Community:
    id: int
    nodes: List[GraphNode]
    internal_edges: int
    density: float

    @property
    def size(self) -> int:
        return len(self.nodes)


@dataclass(slots=True)
class CommunityDetectionResult:
    communities: List[Community]
    modularity: float


@dataclass(slots=True)
class CentralityResult:
    node: GraphNode
    centrality: float
    rank: int = 0


@dataclass(slots=True)
class SegmentGraph:
    nodes: List[GraphNode]
    edges: List[Dict[str, object]]


class _GraphView:
    """Snapshot of one dataset with directed and undirected adjacency."""

    def __init__(self, nodes: Iterable[GraphNode], edges: Iterable[GraphEdge]) -> None:
        self.nodes: Dict[str, GraphNode] = {node.id: node for node in nodes}
        self.edges: List[GraphEdge] = [
            edge
            for edge in edges
            if edge.source_node_id in self.nodes and edge.target_node_id in self.nodes
        ]
        self.outgoing: Dict[str, List[GraphEdge]] = {node_id: [] for node_id in self.nodes}
        self.incident: Dict[str, List[GraphEdge]] = {node_id: [] for node_id in self.nodes}
        self.undirected: Dict[str, Set[str]] = {node_id: set() for node_id in self.nodes}
        for edge in self.edges:
            self.outgoing[edge.source_node_id].append(edge)
            self.incident[edge.source_node_id].append(edge)
            if edge.target_node_id != edge.source_node_id:
                self.incident[edge.target_node_id].append(edge)
            self.undirected[edge.source_node_id].add(edge.target_node_id)
            self.undirected[edge.target_node_id].add(edge.source_node_id)

    def distances_from(self, start: str) -> Dict[str, int]:
        distances = {start: 0}
        queue: Deque[str] = deque([start])
        while queue:
            current = queue.popleft()
            for neighbor in sorted(self.undirected[current]):
                if neighbor not in distances:
                    distances[neighbor] = distances[current] + 1
                    queue.append(neighbor)
        return distances

    def undirected_path(self, source: str, target: str) -> Optional[List[str]]:
        if source == target:
            return [source]
        previous: Dict[str, str] = {source: source}
        queue: Deque[str] = deque([source])
        while queue:
            current = queue.popleft()
            for neighbor in sorted(self.undirected[current]):
                if neighbor in previous:
                    continue
                previous[neighbor] = current
                if neighbor == target:
                    path = [target]
                    while path[-1] != source:
                        path.append(previous[path[-1]])
                    return path[::-1]
                queue.append(neighbor)
        return None


class GraphQueryEngine:
    """Traversals and centrality over a graph store; nothing here writes."""

    def __init__(self, graph_store: GraphStore) -> None:
        self.graph_store = graph_store

    # ----------------------------------------------------------------- traversal
    def shortest_path(self, source_node_id: str, target_node_id: str, max_depth: int = 5) -> Optional[GraphPath]:
        """Directed breadth-first search; ``None`` when the target is not reached within ``max_depth`` hops."""
        source = self._require_node(source_node_id)
        self._require_node(target_node_id)
        if source_node_id == target_node_id:
            return GraphPath(nodes=[source], edges=[], distance=0)

        view = self._view(source.dataset_id)
        via: Dict[str, GraphEdge] = {}
        depth = {source_node_id: 0}
        queue: Deque[str] = deque([source_node_id])
        while queue:
            current = queue.popleft()
            if depth[current] >= max_depth:
                continue
            for edge in view.outgoing.get(current, []):
                neighbor = edge.target_node_id
                if neighbor in depth:
                    continue
                depth[neighbor] = depth[current] + 1
                via[neighbor] = edge
                if neighbor == target_node_id:
                    return self._reconstruct(view, source_node_id, target_node_id, via)
                queue.append(neighbor)
        LOGGER.debug("No path from %s to %s within %s hops", source_node_id, target_node_id, max_depth)
        return None

    def neighbors(
        self,
        node_id: str,
        depth: int = 1,
        node_types: Optional[Iterable[str]] = None,
    ) -> Neighborhood:
        """Undirected expansion up to ``depth`` hops; ``node_types`` limits which neighbors are kept and expanded."""
        start = self._require_node(node_id)
        allowed = set(node_types) if node_types else None
        view = self._view(start.dataset_id)

        visited = {node_id}
        found: List[str] = []
        edge_ids: Dict[str, GraphEdge] = {}
        frontier = [node_id]
        for _ in range(max(0, depth)):
            next_frontier = []
            for current in frontier:
                for edge in view.incident[current]:
                    edge_ids.setdefault(edge.id, edge)
                    neighbor = edge.target_node_id if edge.source_node_id == current else edge.source_node_id
                    if neighbor in visited:
                        continue
                    if allowed is not None and view.nodes[neighbor].node_type not in allowed:
                        continue
                    visited.add(neighbor)
                    found.append(neighbor)
                    next_frontier.append(neighbor)
            frontier = next_frontier
        return Neighborhood(
            nodes=[view.nodes[neighbor] for neighbor in found],
            edges=list(edge_ids.values()),
        )

    # ----------------------------------------------------------------- structure
    def detect_communities(self, dataset_id: str, min_size: int = 3) -> CommunityDetectionResult:
        """Connected components of the undirected view, with density and an approximate modularity."""
        view = self._view(dataset_id)
        visited: Set[str] = set()
        communities: List[Community] = []
        for node_id in view.nodes:
            if node_id in visited:
                continue
            members: List[str] = []
            stack = [node_id]
            while stack:
                current = stack.pop()
                if current in visited:
                    continue
                visited.add(current)
                members.append(current)
                stack.extend(neighbor for neighbor in view.undirected[current] if neighbor not in visited)
            if len(members) < min_size:
                continue
            member_set = set(members)
            internal = sum(
                1
                for edge in view.edges
                if edge.source_node_id in member_set and edge.target_node_id in member_set
            )
            communities.append(
                Community(
                    id=len(communities),
                    nodes=[view.nodes[member] for member in members],
                    internal_edges=internal,
                    density=_pair_ratio(internal, len(members)),
                )
            )
        modularity = _approximate_modularity(communities, len(view.edges))
        LOGGER.info(
            "Found %s communities of size >= %s in dataset %s (modularity %.3f)",
            len(communities),
            min_size,
            dataset_id,
            modularity,
        )
        return CommunityDetectionResult(communities=communities, modularity=modularity)

    def centrality(self, dataset_id: str, centrality_type: str = "degree", limit: int = 10) -> List[CentralityResult]:
        if centrality_type not in CENTRALITY_TYPES:
            raise ValueError(f"Unknown centrality type {centrality_type!r}; expected one of {CENTRALITY_TYPES}")
        view = self._view(dataset_id)
        if centrality_type == "degree":
            scores = {node_id: float(len(view.incident[node_id])) for node_id in view.nodes}
        elif centrality_type == "betweenness":
            scores = self._betweenness(view)
        else:
            scores = {node_id: self._closeness(view, node_id) for node_id in view.nodes}

        ranked = sorted(
            (CentralityResult(node=view.nodes[node_id], centrality=score) for node_id, score in scores.items()),
            key=lambda result: result.centrality,
            reverse=True,
        )
        for rank, result in enumerate(ranked, start=1):
            result.rank = rank
        return ranked[:limit] if limit else ranked

    def density(self, dataset_id: str) -> float:
        """``|E| / (|V| * (|V| - 1) / 2)``; zero for fewer than two nodes."""
        nodes = self.graph_store.find_nodes(dataset_id)
        edges = self.graph_store.find_edges(dataset_id)
        return _pair_ratio(len(edges), len(nodes))

    def average_path_length(self, dataset_id: str) -> float:
        """Mean undirected BFS distance over every reachable pair of distinct nodes."""
        view = self._view(dataset_id)
        node_ids = list(view.nodes)
        lengths: List[int] = []
        for index, node_id in enumerate(node_ids):
            distances = view.distances_from(node_id)
            lengths.extend(distances[other] for other in node_ids[index + 1 :] if other in distances)
        return float(np.mean(lengths)) if lengths else 0.0

    # ----------------------------------------------------------------- helpers
    def influential_nodes(
        self,
        dataset_id: str,
        node_type: Optional[str] = None,
        min_connections: int = 5,
        limit: int = 20,
    ) -> List[CentralityResult]:
        ranked = self.centrality(dataset_id, "degree", limit=0)
        return [
            result
            for result in ranked
            if result.centrality >= min_connections and (node_type is None or result.node.node_type == node_type)
        ][:limit]

    def isolated_nodes(self, dataset_id: str, node_type: Optional[str] = None) -> List[GraphNode]:
        view = self._view(dataset_id)
        return [
            node
            for node_id, node in view.nodes.items()
            if not view.incident[node_id] and (node_type is None or node.node_type == node_type)
        ]

    def bridge_nodes(self, dataset_id: str, min_betweenness: float = 0.1, limit: int = 50) -> List[CentralityResult]:
        return [
            result
            for result in self.centrality(dataset_id, "betweenness", limit=limit)
            if result.centrality >= min_betweenness
        ]

    def segment_graph(self, segment_id: str, dataset_id: Optional[str] = None) -> SegmentGraph:
        """Nodes of one segment and the edges among them, endpoints rendered as labels."""
        nodes = self.graph_store.find_nodes(dataset_id, segment_id=segment_id)
        labels = {node.id: node.label for node in nodes}
        edges = []
        for edge in self.graph_store.find_edges(dataset_id):
            if edge.source_node_id in labels and edge.target_node_id in labels:
                edges.append(
                    {
                        "id": edge.id,
                        "from": labels[edge.source_node_id],
                        "to": labels[edge.target_node_id],
                        "type": edge.edge_type,
                        "weight": edge.weight,
                        "properties": dict(edge.properties),
                    }
                )
        return SegmentGraph(nodes=nodes, edges=edges)

    def _betweenness(self, view: _GraphView) -> Dict[str, float]:
        """Counts the node pairs whose BFS shortest path passes through each node."""
        scores = {node_id: 0.0 for node_id in view.nodes}
        node_ids = list(view.nodes)
        for index, source in enumerate(node_ids):
            for target in node_ids[index + 1 :]:
                path = view.undirected_path(source, target)
                if not path:
                    continue
                for inner in path[1:-1]:
                    scores[inner] += 1.0
        return scores

    @staticmethod
    def _closeness(view: _GraphView, node_id: str) -> float:
        distances = view.distances_from(node_id)
        total = sum(distances.values())
        if len(distances) <= 1 or total == 0:
            return 0.0
        return (len(distances) - 1) / total

    @staticmethod
    def _reconstruct(
        view: _GraphView,
        source_id: str,
        target_id: str,
        via: Dict[str, GraphEdge],
    ) -> GraphPath:
        edges: List[GraphEdge] = []
        current = target_id
        while current != source_id:
            edge = via[current]
            edges.append(edge)
            current = edge.source_node_id
        edges.reverse()
        nodes = [view.nodes[source_id]] + [view.nodes[edge.target_node_id] for edge in edges]
        return GraphPath(nodes=nodes, edges=edges, distance=len(edges))

    def _require_node(self, node_id: str) -> GraphNode:
        node = self.graph_store.get_node(node_id)
        if node is None:
            raise NotFoundError("node", node_id)
        return node

    def _view(self, dataset_id: str) -> _GraphView:
        return _GraphView(self.graph_store.find_nodes(dataset_id), self.graph_store.find_edges(dataset_id))


def _pair_ratio(edge_count: int, node_count: int) -> float:
    possible = node_count * (node_count - 1) / 2
    return edge_count / possible if possible > 0 else 0.0


def _approximate_modularity(communities: List[Community], total_edges: int) -> float:
    if total_edges == 0:
        return 0.0
    modularity = 0.0
    for community in communities:
        expected = community.size * (community.size - 1) / 2
        modularity += community.internal_edges / total_edges - (expected / total_edges) ** 2
    return modularity

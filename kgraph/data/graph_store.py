"""Graph store interface and the in-memory implementation used by the pipeline."""
from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from collections import Counter
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from .models import GraphEdge, GraphNode, NormalizationLogEntry, utcnow
from ..errors import NotFoundError
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

_MISSING = object()


def resolve_property_path(properties: Dict[str, Any], path: str) -> Any:
    """Follow a dotted path such as ``temporal_data.mention_count`` into a property map."""
    current: Any = properties
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _matches_properties(properties: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    if not filters:
        return True
    return all(resolve_property_path(properties, path) == value for path, value in filters.items())


class GraphStore(ABC):
    """CRUD and filtered queries over graph nodes and edges."""

    @abstractmethod
    def add_node(self, node: GraphNode) -> GraphNode: ...

    @abstractmethod
    def get_node(self, node_id: str) -> Optional[GraphNode]: ...

    @abstractmethod
    def update_node(self, node: GraphNode) -> GraphNode: ...

    @abstractmethod
    def delete_node(self, node_id: str) -> None: ...

    @abstractmethod
    def find_nodes(
        self,
        dataset_id: Optional[str] = None,
        *,
        document_id: Optional[str] = None,
        segment_id: Optional[str] = None,
        node_type: Optional[str] = None,
        label: Optional[str] = None,
        property_filters: Optional[Dict[str, Any]] = None,
    ) -> List[GraphNode]: ...

    @abstractmethod
    def add_edge(self, edge: GraphEdge) -> GraphEdge: ...

    @abstractmethod
    def get_edge(self, edge_id: str) -> Optional[GraphEdge]: ...

    @abstractmethod
    def update_edge(self, edge: GraphEdge) -> GraphEdge: ...

    @abstractmethod
    def delete_edge(self, edge_id: str) -> None: ...

    @abstractmethod
    def find_edges(
        self,
        dataset_id: Optional[str] = None,
        *,
        source_node_id: Optional[str] = None,
        target_node_id: Optional[str] = None,
        edge_type: Optional[str] = None,
        node_id: Optional[str] = None,
    ) -> List[GraphEdge]: ...

    @abstractmethod
    def append_normalization_log(self, entry: NormalizationLogEntry) -> None: ...

    @abstractmethod
    def normalization_log(self, dataset_id: Optional[str] = None) -> List[NormalizationLogEntry]: ...

    @abstractmethod
    @contextmanager
    def transaction(self) -> Iterator["GraphStore"]: ...

    def find_edge(self, source_node_id: str, target_node_id: str, edge_type: str) -> Optional[GraphEdge]:
        edges = self.find_edges(
            source_node_id=source_node_id,
            target_node_id=target_node_id,
            edge_type=edge_type,
        )
        return edges[0] if edges else None

    def node_type_counts(self, dataset_id: Optional[str] = None) -> Dict[str, int]:
        return dict(Counter(node.node_type for node in self.find_nodes(dataset_id)))

    def edge_type_counts(self, dataset_id: Optional[str] = None) -> Dict[str, int]:
        return dict(Counter(edge.edge_type for edge in self.find_edges(dataset_id)))

    def top_nodes_by_degree(self, dataset_id: Optional[str] = None, limit: int = 10) -> List[tuple[GraphNode, int]]:
        degree: Counter[str] = Counter()
        for edge in self.find_edges(dataset_id):
            degree[edge.source_node_id] += 1
            degree[edge.target_node_id] += 1
        nodes = {node.id: node for node in self.find_nodes(dataset_id)}
        ranked = sorted(nodes.values(), key=lambda node: (-degree.get(node.id, 0), node.label))
        return [(node, degree.get(node.id, 0)) for node in ranked[:limit]]


class InMemoryGraphStore(GraphStore):
    """Thread-safe dictionary-backed store.

    Records are copied on the way in and out so callers must go through
    ``update_node``/``update_edge`` to persist changes. ``transaction`` holds the
    store lock and restores a snapshot if the block raises.
    """

    def __init__(self) -> None:
        self._nodes: Dict[str, GraphNode] = {}
        self._edges: Dict[str, GraphEdge] = {}
        self._log: List[NormalizationLogEntry] = []
        self._lock = threading.RLock()

    def add_node(self, node: GraphNode) -> GraphNode:
        with self._lock:
            if node.id in self._nodes:
                raise ValueError(f"Node {node.id} already exists")
            self._nodes[node.id] = copy.deepcopy(node)
        return copy.deepcopy(node)

    def get_node(self, node_id: str) -> Optional[GraphNode]:
        with self._lock:
            node = self._nodes.get(node_id)
            return copy.deepcopy(node) if node is not None else None

    def update_node(self, node: GraphNode) -> GraphNode:
        with self._lock:
            if node.id not in self._nodes:
                raise NotFoundError("node", node.id)
            node.updated_at = utcnow()
            self._nodes[node.id] = copy.deepcopy(node)
        return node

    def delete_node(self, node_id: str) -> None:
        with self._lock:
            if self._nodes.pop(node_id, None) is None:
                raise NotFoundError("node", node_id)
            incident = [
                edge_id
                for edge_id, edge in self._edges.items()
                if node_id in (edge.source_node_id, edge.target_node_id)
            ]
            for edge_id in incident:
                del self._edges[edge_id]
        if incident:
            LOGGER.debug("Deleted node %s with %s incident edges", node_id, len(incident))

    def find_nodes(
        self,
        dataset_id: Optional[str] = None,
        *,
        document_id: Optional[str] = None,
        segment_id: Optional[str] = None,
        node_type: Optional[str] = None,
        label: Optional[str] = None,
        property_filters: Optional[Dict[str, Any]] = None,
    ) -> List[GraphNode]:
        with self._lock:
            matches = [
                node
                for node in self._nodes.values()
                if (dataset_id is None or node.dataset_id == dataset_id)
                and (document_id is None or node.document_id == document_id)
                and (segment_id is None or node.segment_id == segment_id)
                and (node_type is None or node.node_type == node_type)
                and (label is None or node.label == label)
                and _matches_properties(node.properties, property_filters)
            ]
            return [copy.deepcopy(node) for node in matches]

    def add_edge(self, edge: GraphEdge) -> GraphEdge:
        with self._lock:
            source = self._nodes.get(edge.source_node_id)
            target = self._nodes.get(edge.target_node_id)
            if source is None or target is None:
                raise ValueError(
                    f"Edge endpoints must exist: {edge.source_node_id} -> {edge.target_node_id}"
                )
            if source.dataset_id != edge.dataset_id or target.dataset_id != edge.dataset_id:
                raise ValueError("Edge endpoints must belong to the edge's dataset")
            if self.find_edge(edge.source_node_id, edge.target_node_id, edge.edge_type):
                raise ValueError(
                    f"Edge {edge.source_node_id} -[{edge.edge_type}]-> {edge.target_node_id} already exists"
                )
            self._edges[edge.id] = copy.deepcopy(edge)
        return copy.deepcopy(edge)

    def get_edge(self, edge_id: str) -> Optional[GraphEdge]:
        with self._lock:
            edge = self._edges.get(edge_id)
            return copy.deepcopy(edge) if edge is not None else None

    def update_edge(self, edge: GraphEdge) -> GraphEdge:
        with self._lock:
            if edge.id not in self._edges:
                raise NotFoundError("edge", edge.id)
            if edge.source_node_id not in self._nodes or edge.target_node_id not in self._nodes:
                raise ValueError(f"Edge {edge.id} would reference a missing node")
            edge.updated_at = utcnow()
            self._edges[edge.id] = copy.deepcopy(edge)
        return edge

    def delete_edge(self, edge_id: str) -> None:
        with self._lock:
            if self._edges.pop(edge_id, None) is None:
                raise NotFoundError("edge", edge_id)

    def find_edges(
        self,
        dataset_id: Optional[str] = None,
        *,
        source_node_id: Optional[str] = None,
        target_node_id: Optional[str] = None,
        edge_type: Optional[str] = None,
        node_id: Optional[str] = None,
    ) -> List[GraphEdge]:
        with self._lock:
            matches = [
                edge
                for edge in self._edges.values()
                if (dataset_id is None or edge.dataset_id == dataset_id)
                and (source_node_id is None or edge.source_node_id == source_node_id)
                and (target_node_id is None or edge.target_node_id == target_node_id)
                and (edge_type is None or edge.edge_type == edge_type)
                and (node_id is None or node_id in (edge.source_node_id, edge.target_node_id))
            ]
            return [copy.deepcopy(edge) for edge in matches]

    def append_normalization_log(self, entry: NormalizationLogEntry) -> None:
        with self._lock:
            self._log.append(copy.deepcopy(entry))

    def normalization_log(self, dataset_id: Optional[str] = None) -> List[NormalizationLogEntry]:
        with self._lock:
            return [
                copy.deepcopy(entry)
                for entry in self._log
                if dataset_id is None or entry.dataset_id == dataset_id
            ]

    @contextmanager
    def transaction(self) -> Iterator["InMemoryGraphStore"]:
        with self._lock:
            snapshot = (
                copy.deepcopy(self._nodes),
                copy.deepcopy(self._edges),
                list(self._log),
            )
            try:
                yield self
            except BaseException:
                self._nodes, self._edges, self._log = snapshot
                LOGGER.debug("Rolled back graph store transaction")
                raise

"""Mirror a dataset's nodes and edges into Neo4j."""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from ..data.models import GraphEdge, GraphNode
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

_IDENTIFIER = re.compile(r"[^A-Za-z0-9_]")


@dataclass(slots=True)
class Neo4jConfig:
    uri: str
    user: str
    password: str
    database: Optional[str] = None


def _cypher_label(value: str) -> str:
    cleaned = _IDENTIFIER.sub("_", value).strip("_")
    return cleaned or "Unknown"


def _flatten_properties(properties: Dict[str, Any]) -> Dict[str, Any]:
    """Neo4j properties must be primitives; nested values are stored as JSON strings."""
    flat: Dict[str, Any] = {}
    for key, value in properties.items():
        if isinstance(value, (dict, list, tuple)):
            flat[key] = json.dumps(value, default=str)
        elif value is not None:
            flat[key] = value
    return flat


class Neo4jLoader:
    """Wrapper around the official Neo4j driver to persist the knowledge graph."""

    def __init__(self, config: Neo4jConfig, driver: Any = None):
        self.config = config
        if driver is None:
            try:
                from neo4j import GraphDatabase  # type: ignore[import-not-found]
            except ImportError as exc:  # pragma: no cover
                raise ImportError("neo4j must be installed to use the Neo4j loader") from exc
            driver = GraphDatabase.driver(config.uri, auth=(config.user, config.password))
        self._driver = driver

    def close(self) -> None:
        self._driver.close()

    def sync_graph(self, nodes: Iterable[GraphNode], edges: Iterable[GraphEdge]) -> Dict[str, int]:
        """MERGE the supplied nodes and relationships; returns how many of each were written."""
        counts = {"nodes": 0, "edges": 0}
        session_kwargs = {"database": self.config.database} if self.config.database else {}
        with self._driver.session(**session_kwargs) as session:
            for node in nodes:
                session.execute_write(self._merge_node, node)
                counts["nodes"] += 1
            LOGGER.info("Persisted %s nodes", counts["nodes"])
            for edge in edges:
                session.execute_write(self._merge_edge, edge)
                counts["edges"] += 1
            LOGGER.info("Persisted %s edges", counts["edges"])
        return counts

    @staticmethod
    def _merge_node(tx, node: GraphNode) -> None:
        label_clause = ":".join(["Entity", _cypher_label(node.node_type.title())])
        tx.run(
            f"MERGE (n:{label_clause} {{id: $id}}) "
            "SET n += $properties, n.label = $label, n.node_type = $node_type, "
            "n.dataset_id = $dataset_id, n.document_id = $document_id, n.segment_id = $segment_id",
            id=node.id,
            label=node.label,
            node_type=node.node_type,
            dataset_id=node.dataset_id,
            document_id=node.document_id,
            segment_id=node.segment_id,
            properties=_flatten_properties(node.properties),
        )

    @staticmethod
    def _merge_edge(tx, edge: GraphEdge) -> None:
        rel_type = _cypher_label(edge.edge_type.upper())
        tx.run(
            "MATCH (source:Entity {id: $source_id}) "
            "MATCH (target:Entity {id: $target_id}) "
            f"MERGE (source)-[rel:{rel_type}]->(target) "
            "SET rel += $properties, rel.id = $id, rel.weight = $weight, "
            "rel.dataset_id = $dataset_id, rel.segment_id = $segment_id",
            source_id=edge.source_node_id,
            target_id=edge.target_node_id,
            id=edge.id,
            weight=edge.weight,
            dataset_id=edge.dataset_id,
            segment_id=edge.segment_id,
            properties=_flatten_properties(edge.properties),
        )


def persist_graph(
    config: Neo4jConfig,
    nodes: Iterable[GraphNode],
    edges: Iterable[GraphEdge],
    driver: Any = None,
) -> Dict[str, int]:
    loader = Neo4jLoader(config, driver=driver)
    try:
        return loader.sync_graph(nodes, edges)
    finally:
        loader.close()

"""Duplicate detection and transactional merging of graph nodes."""
from __future__ import annotations

from dataclasses import dataclass, field
from itertools import groupby
from typing import Dict, Iterable, List, Optional, Sequence

from .similarity import similarity
from ..data.graph_store import GraphStore
from ..data.models import GraphEdge, GraphNode, NormalizationLogEntry, NormalizationMethod
from ..errors import MergeFailure, NotFoundError
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

POST_EXTRACTION_THRESHOLD = 0.9


@dataclass(slots=True)
class NodeSimilarity:
    node: GraphNode
    similarity: float


@dataclass(slots=True)
class DuplicateGroup:
    canonical_name: str
    nodes: List[GraphNode]
    # lowest seed-to-member similarity in the group
    similarity: float


@dataclass(slots=True)
class MergedNode:
    original: GraphNode
    normalized: GraphNode
    similarity: float


@dataclass(slots=True)
class NormalizationOptions:
    similarity_threshold: float = 0.8
    method: NormalizationMethod = NormalizationMethod.FUZZY_MATCH


@dataclass(slots=True)
class NormalizationResult:
    normalized: int = 0
    duplicates: List[MergedNode] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def extend(self, other: "NormalizationResult") -> None:
        self.normalized += other.normalized
        self.duplicates.extend(other.duplicates)
        self.errors.extend(other.errors)


def _label_order(node: GraphNode) -> tuple[str, str]:
    return node.label.lower(), node.label


class EntityNormalizer:
    """Finds near-duplicate nodes of one type and merges them into a canonical node."""

    def __init__(self, graph_store: GraphStore) -> None:
        self.graph_store = graph_store

    def find_similar_nodes(self, node: GraphNode, threshold: float = 0.8) -> List[NodeSimilarity]:
        """Other nodes of the same dataset and type whose label is within ``threshold``."""
        candidates = self.graph_store.find_nodes(node.dataset_id, node_type=node.node_type)
        matches = []
        for candidate in candidates:
            if candidate.id == node.id:
                continue
            score = similarity(node.label, candidate.label)
            if score >= threshold:
                matches.append(NodeSimilarity(candidate, score))
        matches.sort(key=lambda match: match.similarity, reverse=True)
        return matches

    def find_duplicates(
        self,
        dataset_id: str,
        node_type: Optional[str] = None,
        threshold: float = 0.8,
    ) -> List[DuplicateGroup]:
        nodes = self.graph_store.find_nodes(dataset_id, node_type=node_type)
        nodes.sort(key=lambda node: (node.node_type, *_label_order(node)))
        groups: List[DuplicateGroup] = []
        for _, typed in groupby(nodes, key=lambda node: node.node_type):
            groups.extend(self._group_duplicates(list(typed), threshold))
        LOGGER.info("Found %s duplicate groups in dataset %s", len(groups), dataset_id)
        return groups

    def merge_nodes(
        self,
        source_ids: Sequence[str],
        target_id: str,
        *,
        method: NormalizationMethod = NormalizationMethod.MANUAL,
    ) -> GraphNode:
        """Fold ``source_ids`` into ``target_id`` atomically.

        Edges are repointed at the target, edges that end up parallel on the
        same (source, target, type) collapse into one, and self-loops produced
        by the merge are dropped. Source properties are layered over the
        target's in order. One log entry is written per merged node.
        """
        sources = [source_id for source_id in dict.fromkeys(source_ids) if source_id != target_id]
        if self.graph_store.get_node(target_id) is None:
            raise NotFoundError("node", target_id)
        try:
            with self.graph_store.transaction():
                merged = self._apply_merge(sources, target_id, method)
        except NotFoundError:
            raise
        except Exception as exc:
            raise MergeFailure(target_id, sources, str(exc)) from exc
        LOGGER.info("Merged %s nodes into %s", len(sources), merged.label)
        return merged

    def normalize_nodes_by_key(
        self,
        dataset_id: str,
        key_node_ids: Iterable[str],
        options: Optional[NormalizationOptions] = None,
    ) -> NormalizationResult:
        options = options or NormalizationOptions()
        result = NormalizationResult()
        key_nodes = [
            node
            for node in (self.graph_store.get_node(node_id) for node_id in key_node_ids)
            if node is not None and node.dataset_id == dataset_id
        ]
        if not key_nodes:
            LOGGER.warning("No key nodes found in dataset %s; nothing to normalize", dataset_id)
            return result

        for node_type in dict.fromkeys(node.node_type for node in key_nodes):
            nodes = self.graph_store.find_nodes(dataset_id, node_type=node_type)
            keys = [node for node in key_nodes if node.node_type == node_type]
            result.extend(self._normalize_group(nodes, keys, options))
        LOGGER.info(
            "Key normalization of dataset %s: %s merged, %s errors",
            dataset_id,
            result.normalized,
            len(result.errors),
        )
        return result

    def normalize_after_extraction(self, document_id: str) -> NormalizationResult:
        """Merge a document's fresh nodes with close matches across their dataset."""
        nodes = self.graph_store.find_nodes(document_id=document_id)
        result = NormalizationResult()
        if not nodes:
            LOGGER.warning("No nodes found for document %s; skipping normalization", document_id)
            return result
        options = NormalizationOptions(
            similarity_threshold=POST_EXTRACTION_THRESHOLD,
            method=NormalizationMethod.FUZZY_MATCH,
        )
        for _, typed in groupby(sorted(nodes, key=lambda node: node.node_type), key=lambda node: node.node_type):
            result.extend(self._normalize_group(list(typed), [], options))
        LOGGER.info("Post-extraction normalization of %s merged %s nodes", document_id, result.normalized)
        return result

    def normalize_dataset(
        self,
        dataset_id: str,
        node_types: Optional[Iterable[str]] = None,
        threshold: float = 0.8,
    ) -> NormalizationResult:
        options = NormalizationOptions(similarity_threshold=threshold)
        allowed = set(node_types) if node_types else None
        nodes = [
            node
            for node in self.graph_store.find_nodes(dataset_id)
            if allowed is None or node.node_type in allowed
        ]
        result = NormalizationResult()
        for _, typed in groupby(sorted(nodes, key=lambda node: node.node_type), key=lambda node: node.node_type):
            result.extend(self._normalize_group(list(typed), [], options))
        LOGGER.info("Dataset normalization of %s merged %s nodes", dataset_id, result.normalized)
        return result

    def _group_duplicates(self, nodes: List[GraphNode], threshold: float) -> List[DuplicateGroup]:
        groups = []
        processed: set[str] = set()
        for index, seed in enumerate(nodes):
            if seed.id in processed:
                continue
            members = [seed]
            scores = []
            for candidate in nodes[index + 1 :]:
                if candidate.id in processed:
                    continue
                score = similarity(seed.label, candidate.label)
                if score >= threshold:
                    members.append(candidate)
                    scores.append(score)
                    processed.add(candidate.id)
            if len(members) > 1:
                processed.add(seed.id)
                groups.append(DuplicateGroup(seed.label, members, min(scores)))
        return groups

    def _normalize_group(
        self,
        nodes: List[GraphNode],
        key_nodes: List[GraphNode],
        options: NormalizationOptions,
    ) -> NormalizationResult:
        result = NormalizationResult()
        processed: set[str] = set()
        key_ids = {node.id for node in key_nodes}
        for node in nodes:
            if node.id in processed:
                continue
            processed.add(node.id)
            current = self.graph_store.get_node(node.id)
            if current is None:
                continue
            similar = [
                match.node
                for match in self.find_similar_nodes(current, options.similarity_threshold)
                if match.node.id not in processed or match.node.id in key_ids
            ]
            if not similar:
                continue

            candidates = [current, *similar]
            canonical = next((candidate for candidate in candidates if candidate.id in key_ids), None)
            if canonical is None:
                canonical = current
                for candidate in similar:
                    if candidate.confidence > canonical.confidence:
                        canonical = candidate
            to_merge = [candidate for candidate in candidates if candidate.id != canonical.id]
            try:
                self.merge_nodes([n.id for n in to_merge], canonical.id, method=options.method)
            except (MergeFailure, NotFoundError) as exc:
                LOGGER.warning("Normalization merge into %s failed: %s", canonical.label, exc)
                result.errors.append(f"Failed to merge nodes into {canonical.label!r}: {exc}")
                continue
            processed.update(n.id for n in to_merge)
            processed.add(canonical.id)
            result.normalized += len(to_merge)
            result.duplicates.extend(
                MergedNode(original, canonical, similarity(original.label, canonical.label))
                for original in to_merge
            )
        return result

    def _apply_merge(self, source_ids: List[str], target_id: str, method: NormalizationMethod) -> GraphNode:
        store = self.graph_store
        target = store.get_node(target_id)
        if target is None:
            raise NotFoundError("node", target_id)
        sources: List[GraphNode] = []
        for source_id in source_ids:
            source = store.get_node(source_id)
            if source is None:
                raise NotFoundError("node", source_id)
            if source.dataset_id != target.dataset_id:
                raise ValueError(f"Node {source_id} belongs to a different dataset")
            sources.append(source)

        remap: Dict[str, str] = {source_id: target_id for source_id in source_ids}
        touched: Dict[str, GraphEdge] = {}
        for source_id in source_ids:
            for edge in store.find_edges(node_id=source_id):
                touched[edge.id] = edge
        for edge_id in touched:
            edge = store.get_edge(edge_id)
            if edge is not None:
                self._repoint_edge(edge, remap)

        properties = dict(target.properties)
        for source in sources:
            properties.update(source.properties)
        target.properties = properties
        store.update_node(target)

        for source in sources:
            store.delete_node(source.id)
            confidence = 1.0 if method == NormalizationMethod.MANUAL else similarity(source.label, target.label)
            store.append_normalization_log(
                NormalizationLogEntry(
                    dataset_id=target.dataset_id,
                    original_entity=source.label,
                    normalized_to=target.label,
                    method=method,
                    confidence=confidence,
                    node_id=source.id,
                )
            )
        return target

    def _repoint_edge(self, edge: GraphEdge, remap: Dict[str, str]) -> None:
        store = self.graph_store
        new_source = remap.get(edge.source_node_id, edge.source_node_id)
        new_target = remap.get(edge.target_node_id, edge.target_node_id)
        if new_source == new_target and edge.source_node_id != edge.target_node_id:
            store.delete_edge(edge.id)
            return
        existing = store.find_edge(new_source, new_target, edge.edge_type)
        if existing is not None and existing.id != edge.id:
            existing.weight = edge.weight
            existing.properties = {**existing.properties, **edge.properties}
            store.update_edge(existing)
            store.delete_edge(edge.id)
            return
        edge.source_node_id = new_source
        edge.target_node_id = new_target
        store.update_edge(edge)

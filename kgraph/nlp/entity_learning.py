"""Grow the entity dictionary from extraction output and observed graph usage."""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

import numpy as np

from .entity_dictionary import DEFAULT_SCOPE, EntityDictionary, UsageEvent
from .similarity import similarity
from ..data.graph_store import GraphStore
from ..data.models import (
    DictionaryEntity,
    EntitySource,
    ExtractedNode,
    ExtractionResult,
    GraphNode,
    NodeType,
    utcnow,
)
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

NODE_PATTERN_MIN_FREQUENCY = 3
EDGE_PATTERN_MIN_FREQUENCY = 2


@dataclass(slots=True)
class UsageData:
    occurrence_count: int
    last_used: datetime
    average_similarity: float
    context_variety: int


@dataclass(slots=True)
class SuggestedEntity:
    entity_type: str
    canonical_name: str
    aliases: List[str]
    confidence: float
    source: str = "pattern_analysis"


@dataclass(slots=True)
class SuggestionEvidence:
    occurrence_count: int
    contexts: List[str] = field(default_factory=list)
    related_entities: List[str] = field(default_factory=list)


@dataclass(slots=True)
class LearningSuggestion:
    entity: SuggestedEntity
    evidence: SuggestionEvidence


@dataclass(slots=True)
class LearningSummary:
    usage_recorded: int = 0
    aliases_added: int = 0
    entities_created: int = 0
    errors: List[str] = field(default_factory=list)


def generate_aliases(label: str) -> List[str]:
    """Spacing and casing variants of a label, excluding the label itself."""
    variants = []
    if " " in label:
        parts = label.split()
        variants.extend(["".join(parts), "_".join(parts), "-".join(parts)])
    variants.append(label.lower())
    return [variant for variant in dict.fromkeys(variants) if variant != label]


def calculate_entity_confidence(
    source: EntitySource | str,
    usage: UsageData,
    now: Optional[datetime] = None,
) -> float:
    """Heuristic confidence from usage; every factor is capped.

    base 0.5, frequency up to +0.3, recency up to +0.2, similarity up to +0.2,
    context variety up to +0.1 and +0.1 for manually curated entities.
    """
    now = now or utcnow()
    last_used = usage.last_used
    if last_used.tzinfo is None:
        last_used = last_used.replace(tzinfo=timezone.utc)
    days_since = max(0.0, (now - last_used).total_seconds() / 86400)

    confidence = 0.5
    confidence += min(0.3, usage.occurrence_count * 0.05)
    confidence += max(0.0, 0.2 - days_since * 0.01)
    confidence += max(0.0, min(1.0, usage.average_similarity)) * 0.2
    confidence += min(0.1, usage.context_variety * 0.02)
    if source == EntitySource.MANUAL or source == EntitySource.MANUAL.value:
        confidence += 0.1
    return max(0.0, min(1.0, confidence))


class EntityLearner:
    """Feeds extraction results back into the dictionary."""

    def __init__(
        self,
        dictionary: EntityDictionary,
        graph_store: GraphStore,
        match_threshold: float = 0.8,
        create_confidence: float = 0.7,
    ) -> None:
        self.dictionary = dictionary
        self.graph_store = graph_store
        self.match_threshold = match_threshold
        self.create_confidence = create_confidence

    def learn_from_extraction(self, result: ExtractionResult, scope: str = DEFAULT_SCOPE) -> LearningSummary:
        summary = LearningSummary()
        types_by_label: Dict[str, str] = {}
        for node in result.nodes:
            types_by_label.setdefault(node.label, node.node_type)
            self._learn_node(node, scope, summary)

        for edge in result.edges:
            for label in (edge.source, edge.target):
                if label in types_by_label:
                    continue
                types_by_label[label] = NodeType.ORGANIZATION.value
                node = ExtractedNode(label=label, node_type=NodeType.ORGANIZATION.value, properties=dict(edge.properties))
                self._learn_node(node, scope, summary)

        LOGGER.debug(
            "Learning for %s: %s usages, %s aliases, %s new entities, %s errors",
            scope,
            summary.usage_recorded,
            summary.aliases_added,
            summary.entities_created,
            len(summary.errors),
        )
        return summary

    def suggest_new_entities(self, scope: str = DEFAULT_SCOPE) -> List[LearningSuggestion]:
        known = {entity.canonical_name for entity in self.dictionary.store.list_entities(scope)}
        nodes = self.graph_store.find_nodes(scope)
        nodes_by_id = {node.id: node for node in nodes}
        suggestions: List[LearningSuggestion] = []
        suggested: set[tuple[str, str]] = set()

        groups: Dict[tuple[str, str], List[GraphNode]] = defaultdict(list)
        for node in nodes:
            groups[(node.label, node.node_type)].append(node)
        for (label, node_type), members in groups.items():
            if len(members) < NODE_PATTERN_MIN_FREQUENCY or label in known:
                continue
            suggestions.append(self._suggest(label, node_type, members, len(members), []))
            suggested.add((label, node_type))

        related: Dict[tuple[str, str], set[str]] = defaultdict(set)
        edge_counts: Dict[tuple[str, str], int] = defaultdict(int)
        for edge in self.graph_store.find_edges(scope):
            source = nodes_by_id.get(edge.source_node_id)
            target = nodes_by_id.get(edge.target_node_id)
            if source is None or target is None:
                continue
            for endpoint, other in ((source, target), (target, source)):
                key = (endpoint.label, endpoint.node_type)
                edge_counts[key] += 1
                related[key].add(other.label)
        for key, count in edge_counts.items():
            if count < EDGE_PATTERN_MIN_FREQUENCY or key in suggested or key[0] in known:
                continue
            suggestions.append(self._suggest(key[0], key[1], groups.get(key, []), count, sorted(related[key])))

        suggestions.sort(key=lambda suggestion: suggestion.entity.confidence, reverse=True)
        LOGGER.info("Generated %s entity suggestions for %s", len(suggestions), scope)
        return suggestions

    def calculate_entity_confidence(
        self,
        entity: DictionaryEntity,
        usage: UsageData,
        now: Optional[datetime] = None,
    ) -> float:
        return calculate_entity_confidence(entity.source, usage, now)

    def update_entity_confidence(self, entity_pk: str) -> DictionaryEntity:
        """Recompute an entity's confidence from the graph nodes that refer to it."""
        entity = self.dictionary.get_entity(entity_pk)
        usage = self._usage_data(entity)
        confidence = calculate_entity_confidence(entity.source, usage)
        metadata = {
            **entity.metadata,
            "usage_count": usage.occurrence_count,
            "last_used": usage.last_used.isoformat(),
            "average_similarity": usage.average_similarity,
            "context_variety": usage.context_variety,
        }
        updated = self.dictionary.update_entity(entity_pk, confidence_score=confidence, metadata=metadata)
        LOGGER.debug("Confidence of %s is now %.3f", entity.canonical_name, confidence)
        return updated

    def discover_entity_aliases(self, scope: str = DEFAULT_SCOPE) -> int:
        """Register close node labels of the same type as aliases; returns how many were added."""
        added = 0
        for entity in self.dictionary.store.list_entities(scope):
            labels = {node.label for node in self.graph_store.find_nodes(scope, node_type=entity.entity_type)}
            for label in sorted(labels):
                if label == entity.canonical_name:
                    continue
                if similarity(entity.canonical_name, label) >= self.match_threshold:
                    if self.add_alias_if_not_exists(entity.id, label):
                        added += 1
        LOGGER.info("Discovered %s aliases in %s", added, scope)
        return added

    def add_alias_if_not_exists(self, entity_pk: str, alias: str) -> bool:
        return self.dictionary.add_alias(entity_pk, alias, similarity_score=1.0)

    def _learn_node(self, node: ExtractedNode, scope: str, summary: LearningSummary) -> None:
        try:
            exact = next(
                (e for e in self.dictionary.store.list_entities(scope) if e.canonical_name == node.label),
                None,
            )
            if exact is not None:
                self.dictionary.update_entity_from_usage(exact.id, UsageEvent(label=node.label))
                summary.usage_recorded += 1
                return

            similar = self.dictionary.find_similar_entities(
                node.label,
                scope=scope,
                entity_type=node.node_type,
                threshold=self.match_threshold,
            )
            if similar:
                best = similar[0].entity
                self.dictionary.update_entity_from_usage(
                    best.id,
                    UsageEvent(matched_alias=node.label, label=node.label),
                )
                summary.usage_recorded += 1
                if self.add_alias_if_not_exists(best.id, node.label):
                    summary.aliases_added += 1
                return

            confidence = node.confidence or 0.0
            if confidence >= self.create_confidence:
                self.dictionary.add_entity(
                    node.node_type,
                    node.label,
                    scope=scope,
                    confidence_score=confidence,
                    source=EntitySource.LEARNED,
                    metadata={
                        "learned_from": "extraction",
                        "confidence": confidence,
                        "first_seen": utcnow().isoformat(),
                        "usage_count": 1,
                    },
                )
                summary.entities_created += 1
        except Exception as exc:
            LOGGER.warning("Learning from node %r failed: %s", node.label, exc)
            summary.errors.append(f"{node.label}: {exc}")

    def _suggest(
        self,
        label: str,
        node_type: str,
        members: List[GraphNode],
        frequency: int,
        related: List[str],
    ) -> LearningSuggestion:
        usage = UsageData(
            occurrence_count=frequency,
            last_used=max((node.updated_at for node in members), default=utcnow()),
            average_similarity=float(np.mean([node.confidence or 0.5 for node in members])) if members else 0.5,
            context_variety=len({node.document_id for node in members if node.document_id}),
        )
        contexts = [str(node.properties["context"]) for node in members if node.properties.get("context")]
        return LearningSuggestion(
            entity=SuggestedEntity(
                entity_type=node_type,
                canonical_name=label,
                aliases=generate_aliases(label),
                confidence=calculate_entity_confidence(EntitySource.LEARNED, usage),
            ),
            evidence=SuggestionEvidence(
                occurrence_count=frequency,
                contexts=contexts,
                related_entities=related,
            ),
        )

    def _usage_data(self, entity: DictionaryEntity) -> UsageData:
        names = [entity.canonical_name, *entity.alias_texts()]
        scores: List[float] = []
        documents: set[str] = set()
        last_used: Optional[datetime] = None
        for node in self.graph_store.find_nodes(entity.scope):
            if node.properties.get("graphEntityId") == entity.id:
                score = 1.0
            elif node.node_type == entity.entity_type:
                score = max(similarity(node.label, name) for name in names)
                if score < self.match_threshold:
                    continue
            else:
                continue
            scores.append(score)
            if node.document_id:
                documents.add(node.document_id)
            if last_used is None or node.updated_at > last_used:
                last_used = node.updated_at

        if not scores:
            recorded = entity.metadata.get("last_used")
            return UsageData(
                occurrence_count=entity.usage_count,
                last_used=_parse_timestamp(recorded) or entity.created_at,
                average_similarity=0.0,
                context_variety=0,
            )
        return UsageData(
            occurrence_count=len(scores),
            last_used=last_used or utcnow(),
            average_similarity=float(np.mean(scores)),
            context_variety=len(documents),
        )


def _parse_timestamp(value) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None

"""Dataclasses describing the graph, dictionary and document records handled by the pipeline."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NodeType(str, Enum):
    AUTHOR = "author"
    BRAND = "brand"
    TOPIC = "topic"
    HASHTAG = "hashtag"
    INFLUENCER = "influencer"
    LOCATION = "location"
    ORGANIZATION = "organization"
    PRODUCT = "product"
    EVENT = "event"


class EdgeType(str, Enum):
    MENTIONS = "mentions"
    SENTIMENT = "sentiment"
    INTERACTS_WITH = "interacts_with"
    COMPETES_WITH = "competes_with"
    DISCUSSES = "discusses"
    SHARES_TOPIC = "shares_topic"
    FOLLOWS = "follows"
    COLLABORATES = "collaborates"
    INFLUENCES = "influences"
    LOCATED_IN = "located_in"
    PART_OF = "part_of"
    RELATED_TO = "related_to"


class EntitySource(str, Enum):
    MANUAL = "manual"
    IMPORTED = "imported"
    AUTO_DISCOVERED = "auto_discovered"
    LEARNED = "learned"


class NormalizationMethod(str, Enum):
    MANUAL = "manual"
    FUZZY_MATCH = "fuzzy_match"
    EXACT_MATCH = "exact_match"
    LLM_ASSISTED = "llm_assisted"


class SegmentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(slots=True)
class GraphNode:
    """A typed entity of the persisted property graph.

    ``node_type`` is usually a :class:`NodeType` value but custom types are
    stored as plain strings. ``properties`` is an open map; well-known keys are
    ``normalized_name``, ``confidence``, ``sentiment_score``, ``temporal_data``
    and ``graphEntityId``.
    """

    dataset_id: str
    node_type: str
    label: str
    document_id: Optional[str] = None
    segment_id: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def confidence(self) -> float:
        value = self.properties.get("confidence")
        try:
            return float(value) if value is not None else 0.0
        except (TypeError, ValueError):
            return 0.0


@dataclass(slots=True)
class GraphEdge:
    """A typed, weighted relationship between two nodes of one dataset."""

    dataset_id: str
    source_node_id: str
    target_node_id: str
    edge_type: str
    weight: float = 1.0
    document_id: Optional[str] = None
    segment_id: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class EntityAlias:
    """Variant text that maps to a dictionary entity."""

    alias: str
    entity_id: str = ""
    language: Optional[str] = None
    script: Optional[str] = None
    alias_type: str = "variant"
    similarity_score: float = 1.0
    match_count: int = 0
    last_matched_at: Optional[datetime] = None
    id: str = field(default_factory=new_id)


@dataclass(slots=True)
class DictionaryEntity:
    """A canonical entity with its aliases."""

    entity_type: str
    canonical_name: str
    scope: str = "default"
    entity_id: Optional[str] = None
    confidence_score: float = 1.0
    source: EntitySource = EntitySource.MANUAL
    metadata: Dict[str, Any] = field(default_factory=dict)
    aliases: List[EntityAlias] = field(default_factory=list)
    equivalent_entities: List[str] = field(default_factory=list)
    provenance: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def usage_count(self) -> int:
        return int(self.metadata.get("usage_count", 0) or 0)

    def alias_texts(self) -> List[str]:
        return [alias.alias for alias in self.aliases]

    def find_alias(self, text: str) -> Optional[EntityAlias]:
        lowered = text.strip().lower()
        for alias in self.aliases:
            if alias.alias.strip().lower() == lowered:
                return alias
        return None


@dataclass(slots=True)
class NormalizationLogEntry:
    """Append-only audit record written for every merged node."""

    dataset_id: str
    original_entity: str
    normalized_to: str
    method: NormalizationMethod
    confidence: float
    node_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)


@dataclass(slots=True)
class Dataset:
    """A collection of documents sharing graph settings."""

    name: str
    settings: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)

    @property
    def graph_settings(self) -> Dict[str, Any]:
        return dict(self.settings.get("graph_settings") or {})


@dataclass(slots=True)
class Document:
    dataset_id: str
    title: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)


@dataclass(slots=True)
class DocumentSegment:
    """A chunk of document text; the unit of LLM extraction."""

    document_id: str
    dataset_id: str
    content: str
    position: int = 0
    status: SegmentStatus = SegmentStatus.PENDING
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    id: str = field(default_factory=new_id)


@dataclass(slots=True)
class ExtractedNode:
    """A node as produced by the LLM, before persistence."""

    label: str
    node_type: str
    properties: Dict[str, Any] = field(default_factory=dict)

    @property
    def confidence(self) -> Optional[float]:
        value = self.properties.get("confidence")
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None


@dataclass(slots=True)
class ExtractedEdge:
    """A relationship as produced by the LLM; endpoints are node labels."""

    source: str
    target: str
    edge_type: str
    weight: float = 1.0
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ExtractionResult:
    nodes: List[ExtractedNode] = field(default_factory=list)
    edges: List[ExtractedEdge] = field(default_factory=list)
    extraction_method: str = "json"

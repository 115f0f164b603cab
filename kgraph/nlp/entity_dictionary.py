"""Canonical entity dictionary: CRUD, fuzzy matching against text and usage tracking."""
from __future__ import annotations

import copy
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional

from .similarity import phrase_similarity, similarity, tokenize
from ..data.dictionary_store import DictionaryStore
from ..data.graph_store import GraphStore
from ..data.models import DictionaryEntity, EntityAlias, EntitySource, utcnow
from ..errors import ConfigurationError, ConflictError, NotFoundError
from ..utils.cache import TTLCache, text_key
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

DEFAULT_SCOPE = "default"
MATCH_CACHE_TTL_SECONDS = 3600
USAGE_CONFIDENCE_STEP = 0.01

_UPDATABLE_FIELDS = {
    "entity_type",
    "canonical_name",
    "entity_id",
    "confidence_score",
    "source",
    "metadata",
    "equivalent_entities",
    "provenance",
    "aliases",
}


@dataclass(slots=True)
class EntityMatch:
    entity: DictionaryEntity
    similarity: float
    matched_text: str
    alias: Optional[EntityAlias] = None


@dataclass(slots=True)
class UsageEvent:
    """A single observed use of a dictionary entity by an extraction."""

    matched_alias: Optional[str] = None
    node_id: Optional[str] = None
    label: Optional[str] = None


@dataclass(slots=True)
class BulkImportOptions:
    skip_duplicates: bool = True
    update_existing: bool = False
    default_confidence: float = 0.8


@dataclass(slots=True)
class BulkImportResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)


def _field(record: Mapping[str, Any], snake: str, camel: str, default: Any = None) -> Any:
    if snake in record and record[snake] is not None:
        return record[snake]
    return record.get(camel, default)


def build_aliases(values: Iterable[Any], entity_id: str = "") -> List[EntityAlias]:
    """Turn strings or alias dicts into alias records, dropping case-insensitive repeats."""
    aliases: List[EntityAlias] = []
    seen: set[str] = set()
    for value in values or []:
        if isinstance(value, EntityAlias):
            alias = value
        elif isinstance(value, Mapping):
            alias = EntityAlias(
                alias=str(value.get("alias", "")).strip(),
                entity_id=entity_id,
                language=value.get("language"),
                script=value.get("script"),
                alias_type=value.get("type") or value.get("alias_type") or "variant",
                similarity_score=float(_field(value, "similarity_score", "similarityScore", 1.0)),
            )
        else:
            alias = EntityAlias(alias=str(value).strip(), entity_id=entity_id)
        key = alias.alias.lower()
        if not key or key in seen:
            continue
        seen.add(key)
        aliases.append(alias)
    return aliases


class EntityDictionary:
    """Service over a :class:`DictionaryStore`.

    Match results are cached per (scope, threshold, text) for an hour and the
    cache is cleared by every write before the write returns.
    """

    def __init__(
        self,
        store: DictionaryStore,
        cache: Optional[TTLCache] = None,
        graph_store: Optional[GraphStore] = None,
    ) -> None:
        self.store = store
        self.cache = cache or TTLCache(ttl_seconds=MATCH_CACHE_TTL_SECONDS, name="entity-matches")
        self.graph_store = graph_store
        self._write_lock = threading.RLock()
        self._generation = 0

    # ------------------------------------------------------------------ writes
    def add_entity(
        self,
        entity_type: str,
        canonical_name: str,
        *,
        scope: str = DEFAULT_SCOPE,
        aliases: Iterable[Any] = (),
        entity_id: Optional[str] = None,
        confidence_score: float = 1.0,
        source: EntitySource = EntitySource.MANUAL,
        metadata: Optional[dict[str, Any]] = None,
        equivalent_entities: Optional[List[str]] = None,
        provenance: Optional[dict[str, Any]] = None,
    ) -> DictionaryEntity:
        canonical_name = canonical_name.strip()
        if not canonical_name:
            raise ValueError("canonical_name must not be empty")
        with self._write_lock:
            self._check_unique(scope, entity_type, canonical_name, entity_id)
            entity = DictionaryEntity(
                entity_type=entity_type,
                canonical_name=canonical_name,
                scope=scope,
                entity_id=entity_id,
                confidence_score=_clamp(confidence_score),
                source=EntitySource(source),
                metadata=dict(metadata or {}),
                equivalent_entities=list(equivalent_entities or []),
                provenance=dict(provenance or {}),
            )
            entity.aliases = build_aliases(aliases, entity.id)
            self.store.save_entity(entity)
            self._invalidate()
        LOGGER.info("Added %s entity %s with %s aliases", entity_type, canonical_name, len(entity.aliases))
        return entity

    def update_entity(self, entity_pk: str, **changes: Any) -> DictionaryEntity:
        """Apply field changes; passing ``aliases`` replaces the whole alias list."""
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown entity fields: {sorted(unknown)}")
        with self._write_lock:
            entity = self.get_entity(entity_pk)
            entity_type = changes.get("entity_type", entity.entity_type)
            canonical_name = changes.get("canonical_name", entity.canonical_name)
            global_id = changes.get("entity_id", entity.entity_id)
            if (entity_type, canonical_name, global_id) != (
                entity.entity_type,
                entity.canonical_name,
                entity.entity_id,
            ):
                self._check_unique(entity.scope, entity_type, canonical_name, global_id, exclude=entity.id)

            for name, value in changes.items():
                if name == "aliases":
                    entity.aliases = build_aliases(value, entity.id)
                elif name == "source":
                    entity.source = EntitySource(value)
                elif name == "confidence_score":
                    entity.confidence_score = _clamp(value)
                else:
                    setattr(entity, name, value)
            self.store.save_entity(entity)
            self._invalidate()
        LOGGER.info("Updated entity %s (%s)", entity.canonical_name, ", ".join(sorted(changes)))
        return entity

    def delete_entity(self, entity_pk: str) -> None:
        with self._write_lock:
            entity = self.get_entity(entity_pk)
            self.store.delete_entity(entity_pk)
            self._invalidate()
            unlinked = self._unlink_graph_nodes(entity_pk)
        LOGGER.info("Deleted entity %s (unlinked %s graph nodes)", entity.canonical_name, unlinked)

    def add_alias(
        self,
        entity_pk: str,
        alias: str,
        *,
        similarity_score: float = 1.0,
        language: Optional[str] = None,
        script: Optional[str] = None,
        alias_type: str = "variant",
    ) -> bool:
        """Attach an alias unless the entity already has it; returns whether one was added."""
        alias = alias.strip()
        with self._write_lock:
            entity = self.get_entity(entity_pk)
            if not alias or entity.find_alias(alias) or alias.lower() == entity.canonical_name.lower():
                return False
            entity.aliases.append(
                EntityAlias(
                    alias=alias,
                    entity_id=entity.id,
                    language=language,
                    script=script,
                    alias_type=alias_type,
                    similarity_score=similarity_score,
                )
            )
            self.store.save_entity(entity)
            self._invalidate()
        LOGGER.debug("Added alias %r to %s", alias, entity.canonical_name)
        return True

    def bulk_import(
        self,
        records: Iterable[Mapping[str, Any]],
        *,
        scope: str = DEFAULT_SCOPE,
        options: Optional[BulkImportOptions] = None,
    ) -> BulkImportResult:
        options = options or BulkImportOptions()
        result = BulkImportResult()
        for record in records:
            name = str(_field(record, "canonical_name", "canonicalName", "") or "").strip()
            try:
                entity_type = _field(record, "entity_type", "entityType")
                if not name or not entity_type:
                    raise ValueError("entity_type and canonical_name are required")
                metadata = dict(record.get("metadata") or {})
                for key in ("description", "category", "tags"):
                    if record.get(key) is not None:
                        metadata[key] = record[key]
                aliases = record.get("aliases") or []
                confidence = _field(record, "confidence_score", "confidenceScore", options.default_confidence)
                existing = self.store.find_by_name(scope, entity_type, name)
                if existing is not None:
                    if options.update_existing:
                        changes: dict[str, Any] = {
                            "metadata": {**existing.metadata, **metadata},
                            "confidence_score": confidence,
                        }
                        if aliases:
                            changes["aliases"] = aliases
                        self.update_entity(existing.id, **changes)
                        result.updated += 1
                    elif options.skip_duplicates:
                        result.skipped += 1
                    else:
                        raise ConflictError(f"Entity {name!r} already exists")
                    continue
                self.add_entity(
                    entity_type,
                    name,
                    scope=scope,
                    aliases=aliases,
                    entity_id=_field(record, "entity_id", "entityId"),
                    confidence_score=confidence,
                    source=EntitySource.IMPORTED,
                    metadata=metadata,
                )
                result.created += 1
            except Exception as exc:
                result.errors.append(f"Failed to import {name!r}: {exc}")
                LOGGER.warning("Failed to import entity %r: %s", name, exc)
        LOGGER.info(
            "Bulk import into %s: %s created, %s updated, %s skipped, %s errors",
            scope,
            result.created,
            result.updated,
            result.skipped,
            len(result.errors),
        )
        return result

    def build_initial_dictionary(self, dataset_id: str) -> List[DictionaryEntity]:
        """Seed the dataset's dictionary from the labels already present in its graph."""
        if self.graph_store is None:
            raise ConfigurationError("build_initial_dictionary requires a graph store")
        groups: Counter[tuple[str, str]] = Counter()
        last_seen: dict[tuple[str, str], Any] = {}
        for node in self.graph_store.find_nodes(dataset_id):
            key = (node.node_type, node.label)
            groups[key] += 1
            if key not in last_seen or node.created_at > last_seen[key]:
                last_seen[key] = node.created_at

        existing = {(e.entity_type, e.canonical_name) for e in self.store.list_entities(dataset_id)}
        created: List[DictionaryEntity] = []
        for (node_type, label), count in groups.most_common():
            if (node_type, label) in existing:
                continue
            created.append(
                self.add_entity(
                    node_type,
                    label,
                    scope=dataset_id,
                    confidence_score=0.8,
                    source=EntitySource.AUTO_DISCOVERED,
                    metadata={
                        "usage_count": count,
                        "last_used": last_seen[(node_type, label)].isoformat(),
                        "extraction_patterns": [label],
                    },
                )
            )
        LOGGER.info(
            "Built %s dictionary entities from graph of dataset %s (%s already known)",
            len(created),
            dataset_id,
            len(groups) - len(created),
        )
        return created

    # ------------------------------------------------------------------- reads
    def get_entity(self, entity_pk: str) -> DictionaryEntity:
        entity = self.store.get_entity(entity_pk)
        if entity is None:
            raise NotFoundError("entity", entity_pk)
        return entity

    def export(self, scope: Optional[str] = None) -> List[dict[str, Any]]:
        return [
            {
                "entity_type": entity.entity_type,
                "canonical_name": entity.canonical_name,
                "entity_id": entity.entity_id,
                "confidence_score": entity.confidence_score,
                "source": entity.source.value,
                "description": entity.metadata.get("description"),
                "category": entity.metadata.get("category"),
                "tags": entity.metadata.get("tags"),
                "aliases": entity.alias_texts(),
                "metadata": entity.metadata,
            }
            for entity in sorted(self.store.list_entities(scope), key=lambda e: (e.entity_type, e.canonical_name))
        ]

    def find_entities(
        self,
        scope: Optional[str] = None,
        *,
        entity_type: Optional[str] = None,
        search_term: Optional[str] = None,
        source: Optional[EntitySource] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> tuple[List[DictionaryEntity], int]:
        """Filtered listing, newest first; returns the page and the unpaginated total."""
        term = search_term.lower() if search_term else None
        entities = [
            entity
            for entity in self.store.list_entities(scope)
            if (entity_type is None or entity.entity_type == entity_type)
            and (source is None or entity.source == EntitySource(source))
            and (
                term is None
                or term in entity.canonical_name.lower()
                or any(term in alias.lower() for alias in entity.alias_texts())
            )
        ]
        entities.sort(key=lambda entity: entity.created_at, reverse=True)
        total = len(entities)
        end = offset + limit if limit else None
        return entities[offset:end], total

    def find_matching_entities(
        self,
        text: str,
        threshold: float = 0.7,
        *,
        scope: str = DEFAULT_SCOPE,
    ) -> List[EntityMatch]:
        """Match every canonical name and alias against ``text``, best first."""
        key = text_key(scope, threshold, text)
        generation = self._generation
        hit, cached = self.cache.get(key)
        if hit:
            LOGGER.debug("Entity match cache hit for scope %s", scope)
            return copy.deepcopy(cached)

        tokens = tokenize(text)
        matches: List[EntityMatch] = []
        for entity in self.store.list_entities(scope):
            canonical = phrase_similarity(entity.canonical_name, tokens)
            if canonical.similarity >= threshold:
                matches.append(EntityMatch(entity, canonical.similarity, canonical.matched_text))
            for alias in entity.aliases:
                aliased = phrase_similarity(alias.alias, tokens)
                if aliased.similarity >= threshold:
                    matches.append(EntityMatch(entity, aliased.similarity, aliased.matched_text, alias))
        matches.sort(key=lambda match: match.similarity, reverse=True)

        with self._write_lock:
            # A write during the scan leaves the result stale.
            if generation == self._generation:
                self.cache.set(key, copy.deepcopy(matches))
        return matches

    def find_similar_entities(
        self,
        label: str,
        *,
        scope: str = DEFAULT_SCOPE,
        entity_type: Optional[str] = None,
        threshold: float = 0.8,
    ) -> List[EntityMatch]:
        """Compare a whole label against canonical names and aliases, one best match per entity."""
        matches: List[EntityMatch] = []
        for entity in self.store.list_entities(scope):
            if entity_type is not None and entity.entity_type != entity_type:
                continue
            best = EntityMatch(entity, similarity(label, entity.canonical_name), label)
            for alias in entity.aliases:
                score = similarity(label, alias.alias)
                if score > best.similarity:
                    best = EntityMatch(entity, score, label, alias)
            if best.similarity >= threshold:
                matches.append(best)
        matches.sort(key=lambda match: match.similarity, reverse=True)
        return matches

    def update_entity_from_usage(self, entity_pk: str, event: Optional[UsageEvent] = None) -> DictionaryEntity:
        """Record a usage hit; confidence rises with the usage count and never decreases."""
        event = event or UsageEvent()
        with self._write_lock:
            entity = self.get_entity(entity_pk)
            now = utcnow()
            usage_count = entity.usage_count + 1
            entity.metadata["usage_count"] = usage_count
            entity.metadata["last_used"] = now.isoformat()
            entity.confidence_score = min(1.0, entity.confidence_score + usage_count * USAGE_CONFIDENCE_STEP)
            if event.matched_alias:
                alias = entity.find_alias(event.matched_alias)
                if alias is not None:
                    alias.match_count += 1
                    alias.last_matched_at = now
            self.store.save_entity(entity)
            self._invalidate()
        return entity

    def get_statistics(self, scope: Optional[str] = None) -> dict[str, Any]:
        entities = self.store.list_entities(scope)
        by_usage = sorted(entities, key=lambda entity: entity.usage_count, reverse=True)
        recent = sorted(entities, key=lambda entity: entity.created_at, reverse=True)
        return {
            "total_entities": len(entities),
            "total_aliases": sum(len(entity.aliases) for entity in entities),
            "entities_by_type": dict(Counter(entity.entity_type for entity in entities)),
            "entities_by_source": dict(Counter(entity.source.value for entity in entities)),
            "top_entities": [
                {
                    "id": entity.id,
                    "canonical_name": entity.canonical_name,
                    "usage_count": entity.usage_count,
                    "last_used": entity.metadata.get("last_used"),
                }
                for entity in by_usage[:10]
            ],
            "recent_activity": [
                {
                    "id": entity.id,
                    "canonical_name": entity.canonical_name,
                    "action": "created",
                    "timestamp": entity.created_at.isoformat(),
                }
                for entity in recent[:10]
            ],
        }

    # ----------------------------------------------------------------- helpers
    def _check_unique(
        self,
        scope: str,
        entity_type: str,
        canonical_name: str,
        global_id: Optional[str],
        exclude: Optional[str] = None,
    ) -> None:
        if global_id:
            owner = self.store.find_by_global_id(global_id)
            if owner is not None and owner.id != exclude:
                raise ConflictError(f"Entity id {global_id!r} is already used by {owner.canonical_name!r}")
        owner = self.store.find_by_name(scope, entity_type, canonical_name)
        if owner is not None and owner.id != exclude:
            raise ConflictError(f"{entity_type} entity {canonical_name!r} already exists in scope {scope!r}")

    def _invalidate(self) -> None:
        self._generation += 1
        cleared = self.cache.clear()
        if cleared:
            LOGGER.debug("Invalidated %s cached entity matches", cleared)

    def _unlink_graph_nodes(self, entity_pk: str) -> int:
        if self.graph_store is None:
            return 0
        nodes = self.graph_store.find_nodes(property_filters={"graphEntityId": entity_pk})
        for node in nodes:
            node.properties.pop("graphEntityId", None)
            self.graph_store.update_node(node)
        return len(nodes)


def _clamp(value: Any) -> float:
    return max(0.0, min(1.0, float(value)))

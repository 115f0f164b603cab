import pytest

from kgraph.data.dictionary_store import InMemoryDictionaryStore
from kgraph.data.graph_store import InMemoryGraphStore
from kgraph.data.models import EntitySource, GraphNode
from kgraph.errors import ConfigurationError, ConflictError, NotFoundError
from kgraph.nlp.entity_dictionary import BulkImportOptions, EntityDictionary, UsageEvent


def build_dictionary(graph_store=None) -> EntityDictionary:
    return EntityDictionary(InMemoryDictionaryStore(), graph_store=graph_store)


def test_matching_finds_compacted_canonical_name():
    dictionary = build_dictionary()
    dictionary.add_entity("organization", "Acme Corp")

    matches = dictionary.find_matching_entities("I love AcmeCorp products", 0.7)

    assert len(matches) == 1
    assert matches[0].entity.canonical_name == "Acme Corp"
    assert matches[0].similarity >= 0.7
    assert "acmecorp" in matches[0].matched_text


def test_matching_reports_alias_and_sorts_best_first():
    dictionary = build_dictionary()
    dictionary.add_entity("brand", "Nike", aliases=["Nike Inc"])
    dictionary.add_entity("brand", "Adidas")

    matches = dictionary.find_matching_entities("nike inc beats adidass", 0.7)

    names = [match.entity.canonical_name for match in matches]
    assert set(names) == {"Nike", "Adidas"}
    assert matches[0].similarity >= matches[-1].similarity
    alias_match = next(match for match in matches if match.alias is not None)
    assert alias_match.alias.alias == "Nike Inc"
    assert alias_match.similarity == 1.0


def test_match_cache_is_cleared_by_writes():
    dictionary = build_dictionary()
    assert dictionary.find_matching_entities("acme corp rocks") == []
    dictionary.add_entity("organization", "Acme Corp")
    assert len(dictionary.find_matching_entities("acme corp rocks")) == 1


def test_matching_is_scoped():
    dictionary = build_dictionary()
    dictionary.add_entity("brand", "Nike", scope="ds-1")
    assert dictionary.find_matching_entities("nike shoes", scope="ds-2") == []
    assert len(dictionary.find_matching_entities("nike shoes", scope="ds-1")) == 1


def test_duplicate_canonical_name_conflicts():
    dictionary = build_dictionary()
    dictionary.add_entity("brand", "Nike")
    with pytest.raises(ConflictError):
        dictionary.add_entity("brand", "Nike")
    dictionary.add_entity("organization", "Nike")


def test_duplicate_global_id_conflicts():
    dictionary = build_dictionary()
    dictionary.add_entity("brand", "Nike", entity_id="Q483915")
    with pytest.raises(ConflictError):
        dictionary.add_entity("brand", "Nike Inc", entity_id="Q483915")


def test_update_replaces_aliases_and_rejects_unknown_fields():
    dictionary = build_dictionary()
    entity = dictionary.add_entity("brand", "Nike", aliases=["NIKE"])

    updated = dictionary.update_entity(entity.id, aliases=["Nike Inc", "nike inc"], confidence_score=1.7)

    assert updated.alias_texts() == ["Nike Inc"]
    assert updated.confidence_score == 1.0
    with pytest.raises(ValueError):
        dictionary.update_entity(entity.id, colour="red")


def test_add_alias_skips_existing_and_canonical():
    dictionary = build_dictionary()
    entity = dictionary.add_entity("brand", "Nike", aliases=["NIKE"])
    assert dictionary.add_alias(entity.id, "nike") is False
    assert dictionary.add_alias(entity.id, "Nike") is False
    assert dictionary.add_alias(entity.id, "Nike Inc", similarity_score=0.9) is True
    stored = dictionary.get_entity(entity.id)
    assert stored.find_alias("nike inc").similarity_score == 0.9
    assert all(alias.entity_id == entity.id for alias in stored.aliases)


def test_usage_raises_confidence_monotonically_and_counts_alias():
    dictionary = build_dictionary()
    entity = dictionary.add_entity("brand", "Nike", aliases=["Nike Inc"], confidence_score=0.5)

    first = dictionary.update_entity_from_usage(entity.id, UsageEvent(matched_alias="Nike Inc"))
    second = dictionary.update_entity_from_usage(entity.id)

    assert first.confidence_score == pytest.approx(0.51)
    assert second.confidence_score == pytest.approx(0.53)
    assert second.usage_count == 2
    assert second.find_alias("Nike Inc").match_count == 1
    assert second.metadata["last_used"]


def test_usage_on_missing_entity_raises_not_found():
    dictionary = build_dictionary()
    with pytest.raises(NotFoundError):
        dictionary.update_entity_from_usage("missing")


def test_find_similar_entities_filters_by_type():
    dictionary = build_dictionary()
    dictionary.add_entity("brand", "Adidas")
    dictionary.add_entity("location", "Adidas")

    matches = dictionary.find_similar_entities("Addidas", entity_type="brand", threshold=0.8)

    assert [match.entity.entity_type for match in matches] == ["brand"]
    assert matches[0].similarity == pytest.approx(6 / 7)


def test_bulk_import_accepts_camel_case_and_reports_counts():
    dictionary = build_dictionary()
    dictionary.add_entity("brand", "Nike")
    records = [
        {"entityType": "brand", "canonicalName": "Nike", "aliases": ["NIKE"]},
        {"entity_type": "brand", "canonical_name": "Puma", "aliases": ["PUMA SE"], "tags": ["sportswear"]},
        {"entity_type": "brand"},
    ]

    result = dictionary.bulk_import(records)

    assert (result.created, result.updated, result.skipped) == (1, 0, 1)
    assert len(result.errors) == 1
    puma, total = dictionary.find_entities(search_term="puma")
    assert total == 1
    assert puma[0].source == EntitySource.IMPORTED
    assert puma[0].confidence_score == pytest.approx(0.8)
    assert puma[0].metadata["tags"] == ["sportswear"]


def test_bulk_import_updates_existing_when_asked():
    dictionary = build_dictionary()
    dictionary.add_entity("brand", "Nike")
    result = dictionary.bulk_import(
        [{"entity_type": "brand", "canonical_name": "Nike", "aliases": ["NIKE"]}],
        options=BulkImportOptions(update_existing=True),
    )
    assert result.updated == 1
    entities, _ = dictionary.find_entities()
    assert entities[0].alias_texts() == ["NIKE"]


def test_export_import_round_trip_preserves_names_types_and_aliases():
    source = build_dictionary()
    source.add_entity("brand", "Nike", aliases=["Nike Inc", "NIKE"])
    source.add_entity("organization", "Acme Corp", aliases=["ACME"])
    exported = source.export()

    target = build_dictionary()
    target.bulk_import(exported)
    reexported = target.export()

    def _key(rows):
        return sorted((row["entity_type"], row["canonical_name"], frozenset(row["aliases"])) for row in rows)

    assert _key(reexported) == _key(exported)


def test_find_entities_paginates_newest_first():
    dictionary = build_dictionary()
    for name in ("Alpha", "Beta", "Gamma"):
        dictionary.add_entity("brand", name)

    page, total = dictionary.find_entities(limit=2, offset=1)

    assert total == 3
    assert len(page) == 2


def test_delete_entity_unlinks_graph_nodes():
    graph = InMemoryGraphStore()
    dictionary = build_dictionary(graph)
    entity = dictionary.add_entity("brand", "Nike", scope="ds")
    node = graph.add_node(GraphNode("ds", "brand", "Nike", properties={"graphEntityId": entity.id}))

    dictionary.delete_entity(entity.id)

    assert "graphEntityId" not in graph.get_node(node.id).properties
    with pytest.raises(NotFoundError):
        dictionary.get_entity(entity.id)


def test_build_initial_dictionary_from_graph_labels():
    graph = InMemoryGraphStore()
    dictionary = build_dictionary(graph)
    dictionary.add_entity("brand", "Nike", scope="ds")
    for label in ("Nike", "Adidas", "Adidas"):
        graph.add_node(GraphNode("ds", "brand", label))

    created = dictionary.build_initial_dictionary("ds")

    assert [entity.canonical_name for entity in created] == ["Adidas"]
    assert created[0].source == EntitySource.AUTO_DISCOVERED
    assert created[0].confidence_score == pytest.approx(0.8)
    assert created[0].usage_count == 2


def test_build_initial_dictionary_requires_graph_store():
    with pytest.raises(ConfigurationError):
        build_dictionary().build_initial_dictionary("ds")


def test_statistics_summarize_types_and_sources():
    dictionary = build_dictionary()
    dictionary.add_entity("brand", "Nike", aliases=["NIKE"])
    dictionary.add_entity("organization", "Acme Corp", source=EntitySource.LEARNED)

    stats = dictionary.get_statistics()

    assert stats["total_entities"] == 2
    assert stats["total_aliases"] == 1
    assert stats["entities_by_type"] == {"brand": 1, "organization": 1}
    assert stats["entities_by_source"] == {"manual": 1, "learned": 1}


def test_bulk_update_without_aliases_keeps_existing_aliases():
    dictionary = build_dictionary()
    dictionary.add_entity("organization", "Acme Corp", aliases=["ACME", "Acme Inc"])

    result = dictionary.bulk_import(
        [{"entity_type": "organization", "canonical_name": "Acme Corp", "description": "Tools"}],
        options=BulkImportOptions(update_existing=True),
    )

    assert result.updated == 1
    entities, _ = dictionary.find_entities()
    assert entities[0].alias_texts() == ["ACME", "Acme Inc"]
    assert entities[0].metadata["description"] == "Tools"


class WriteDuringScanStore(InMemoryDictionaryStore):
    """Runs ``on_scan`` once, after the entity list has been read."""

    def __init__(self) -> None:
        super().__init__()
        self.on_scan = None

    def list_entities(self, scope=None):
        entities = super().list_entities(scope)
        callback, self.on_scan = self.on_scan, None
        if callback is not None:
            callback()
        return entities


def test_matches_computed_across_a_write_are_not_cached():
    store = WriteDuringScanStore()
    dictionary = EntityDictionary(store)
    dictionary.add_entity("brand", "Nike")
    store.on_scan = lambda: dictionary.add_entity("brand", "Puma")

    first = dictionary.find_matching_entities("nike and puma drop new shoes")
    second = dictionary.find_matching_entities("nike and puma drop new shoes")

    assert [match.entity.canonical_name for match in first] == ["Nike"]
    assert {match.entity.canonical_name for match in second} == {"Nike", "Puma"}
    assert len(dictionary.cache) == 1

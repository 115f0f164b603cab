import json
import threading

import pytest

from kgraph.data.dictionary_store import InMemoryDictionaryStore
from kgraph.data.graph_store import InMemoryGraphStore
from kgraph.data.models import Dataset, Document, DocumentSegment, EntitySource, GraphNode, SegmentStatus
from kgraph.data.segment_store import InMemorySegmentStore
from kgraph.errors import ConfigurationError, NotFoundError
from kgraph.nlp.entity_dictionary import EntityDictionary
from kgraph.nlp.llm_client import ProviderRegistry
from kgraph.pipelines.graph_extraction import ExtractionConfig, GraphExtractor, resolve_config
from kgraph.pipelines.progress import RecordingProgressSink

SETTINGS = {"aiProviderId": "fake", "model": "test-model"}


def graph_json(nodes, edges=()):
    return json.dumps(
        {
            "nodes": [
                {"label": label, "type": node_type, **({"confidence": conf} if conf is not None else {})}
                for label, node_type, conf in nodes
            ],
            "edges": [
                {"from": source, "to": target, "type": edge_type, "weight": weight}
                for source, target, edge_type, weight in edges
            ],
        }
    )


NIKE_ADIDAS = graph_json(
    [("Nike", "brand", None), ("Adidas", "brand", None)],
    [("Nike", "Adidas", "competes_with", 0.8)],
)


class FakeClient:
    """Replays canned responses; an exception in the script is raised instead."""

    def __init__(self, script):
        self.script = script
        self.calls = []
        self._lock = threading.Lock()

    def complete(self, system_prompt, user_prompt, json_schema, temperature):
        with self._lock:
            self.calls.append({"system": system_prompt, "user": user_prompt, "temperature": temperature})
            if callable(self.script):
                response = self.script(user_prompt)
            else:
                response = self.script.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def build(texts, script, settings=SETTINGS, dictionary=None, progress=None, metadata=None):
    graph = InMemoryGraphStore()
    segments = InMemorySegmentStore()
    dataset = segments.add_dataset(Dataset(name="brand-posts", settings={"graph_settings": dict(settings or {})}))
    document = segments.add_document(Document(dataset.id, title="post"))
    stored = segments.add_segments(
        DocumentSegment(document.id, dataset.id, text, position=index, metadata=dict(metadata or {}))
        for index, text in enumerate(texts)
    )
    client = FakeClient(script)
    models = []
    providers = ProviderRegistry()

    def _factory(model):
        models.append(model)
        return client

    providers.register_factory("fake", _factory)
    extractor = GraphExtractor(graph, segments, providers, dictionary=dictionary, progress=progress)
    return extractor, graph, segments, dataset, document, stored, client, models


def test_single_segment_creates_nodes_and_weighted_edge():
    extractor, graph, segments, dataset, document, stored, client, _ = build(
        ["Nike and Adidas are rivals."], [NIKE_ADIDAS]
    )

    result = extractor.extract_document(document.id)

    assert (result.completed, result.failed, result.skipped) == (1, 0, 0)
    assert (result.nodes_created, result.edges_created) == (2, 1)
    nodes = {node.label: node for node in graph.find_nodes(dataset.id)}
    assert sorted(nodes) == ["Adidas", "Nike"]
    assert nodes["Nike"].properties["normalized_name"] == "Nike"
    assert nodes["Nike"].properties["temporal_data"]["mention_count"] == 1
    assert nodes["Nike"].segment_id == stored[0].id
    edge = graph.find_edges(dataset.id)[0]
    assert edge.edge_type == "competes_with"
    assert edge.weight == pytest.approx(0.8)
    assert edge.source_node_id == nodes["Nike"].id
    assert segments.get_segment(stored[0].id).status == SegmentStatus.COMPLETED
    assert "Nike and Adidas are rivals." in client.calls[0]["user"]
    assert client.calls[0]["temperature"] == 0.7


def test_failing_segment_does_not_abort_batch_and_is_retried():
    puma = graph_json([("Puma", "brand", None), ("Reebok", "brand", None)])
    extractor, graph, segments, dataset, document, stored, client, _ = build(
        ["first", "second", "third"],
        [NIKE_ADIDAS, "I am unable to help with that.", puma],
    )

    result = extractor.extract_document(document.id)

    assert (result.completed, result.failed) == (2, 1)
    assert list(result.errors()) == [stored[1].id]
    assert segments.get_segment(stored[1].id).status == SegmentStatus.ERROR
    assert segments.get_segment(stored[1].id).error
    assert segments.get_segment(stored[2].id).status == SegmentStatus.COMPLETED
    assert len(graph.find_nodes(dataset.id)) == 4

    client.script.append(graph_json([("Asics", "brand", None)]))
    retry = extractor.extract_document(document.id)

    assert [outcome.segment_id for outcome in retry.outcomes] == [stored[1].id]
    assert retry.completed == 1
    assert segments.get_segment(stored[1].id).error is None


def test_missing_provider_configuration_fails_before_any_call():
    extractor, _, segments, _, document, stored, client, models = build(["text"], [NIKE_ADIDAS], settings={})

    with pytest.raises(ConfigurationError):
        extractor.extract_document(document.id)

    assert client.calls == []
    assert models == []
    assert segments.get_segment(stored[0].id).status == SegmentStatus.PENDING


def test_unknown_provider_is_reported_up_front():
    extractor, _, _, _, document, _, client, _ = build(["text"], [NIKE_ADIDAS])
    with pytest.raises(NotFoundError):
        extractor.extract_document(document.id, config={"aiProviderId": "missing"})
    assert client.calls == []


def test_explicit_config_overrides_dataset_settings():
    extractor, _, _, _, document, _, client, models = build(["text"], [NIKE_ADIDAS])
    extractor.extract_document(document.id, config=ExtractionConfig(model="other-model", temperature=0.1))
    assert models == ["other-model"]
    assert client.calls[0]["temperature"] == 0.1


def test_resolve_config_precedence_and_defaults():
    resolved = resolve_config(
        {"model": "dataset-model", "temperature": 0.2},
        ExtractionConfig(temperature=0.3),
        defaults={"ai_provider_id": "local", "model": "default-model", "maxWorkers": 0},
    )
    assert (resolved.ai_provider_id, resolved.model, resolved.temperature) == ("local", "dataset-model", 0.3)
    assert resolved.max_workers == 1
    assert resolved.confidence_threshold == 0.5
    assert resolved.enable_deduplication is True
    assert resolved.enable_hybrid_extraction is False


def test_segments_with_nodes_or_in_flight_are_skipped():
    extractor, graph, segments, dataset, document, stored, client, _ = build(["a", "b"], [])
    graph.add_node(GraphNode(dataset.id, "brand", "Nike", document_id=document.id, segment_id=stored[0].id))
    segments.set_status(stored[1].id, SegmentStatus.PROCESSING)

    result = extractor.extract_from_segments([s.id for s in stored], dataset.id, document.id)

    assert result.skipped == 2
    assert client.calls == []


def test_duplicate_labels_merge_into_existing_nodes():
    first = graph_json([("Nike", "brand", 0.6), ("Acme Corp", "organization", None)])
    second = graph_json([("Nike", "brand", 0.9), ("AcmeCorp", "organization", None)])
    extractor, graph, _, dataset, document, _, _, _ = build(["one", "two"], [first, second])

    result = extractor.extract_document(document.id)

    assert [outcome.nodes_merged for outcome in result.outcomes] == [0, 2]
    nodes = {node.label: node for node in graph.find_nodes(dataset.id)}
    assert sorted(nodes) == ["Acme Corp", "Nike"]
    assert nodes["Nike"].properties["confidence"] == 0.9
    assert nodes["Nike"].properties["temporal_data"]["mention_count"] == 2


def test_low_confidence_nodes_and_their_edges_are_dropped():
    response = graph_json(
        [("Nike", "brand", 0.9), ("Maybe Brand", "brand", 0.2)],
        [("Nike", "Maybe Brand", "competes_with", 0.5)],
    )
    extractor, graph, _, dataset, document, _, _, _ = build(["text"], [response])

    result = extractor.extract_document(document.id)

    assert (result.nodes_created, result.edges_created) == (1, 0)
    assert [node.label for node in graph.find_nodes(dataset.id)] == ["Nike"]


def test_repeated_edges_update_weight_instead_of_duplicating():
    weaker = graph_json(
        [("Nike", "brand", None), ("Adidas", "brand", None)],
        [("Nike", "Adidas", "competes_with", 0.3)],
    )
    extractor, graph, _, dataset, document, _, _, _ = build(["one", "two"], [NIKE_ADIDAS, weaker])

    result = extractor.extract_document(document.id)

    assert [outcome.edges_updated for outcome in result.outcomes] == [0, 1]
    edges = graph.find_edges(dataset.id)
    assert len(edges) == 1
    assert edges[0].weight == pytest.approx(0.3)


def test_nodes_are_linked_to_dictionary_or_auto_created():
    graph = InMemoryGraphStore()
    dictionary = EntityDictionary(InMemoryDictionaryStore(), graph_store=graph)
    segments = InMemorySegmentStore()
    dataset = segments.add_dataset(Dataset(name="brands", settings={"graph_settings": dict(SETTINGS)}))
    document = segments.add_document(Document(dataset.id))
    segments.add_segments([DocumentSegment(document.id, dataset.id, "Nike, Adidas and Puma")])
    nike = dictionary.add_entity("brand", "Nike", scope=dataset.id)
    providers = ProviderRegistry()
    client = FakeClient(
        [graph_json([("Nike", "brand", None), ("Adidas", "brand", 0.95), ("Puma", "brand", 0.6)])]
    )
    providers.register_factory("fake", lambda model: client)
    extractor = GraphExtractor(graph, segments, providers, dictionary=dictionary)

    extractor.extract_document(document.id, config={"learnFromExtraction": False})

    nodes = {node.label: node for node in graph.find_nodes(dataset.id)}
    assert nodes["Nike"].properties["graphEntityId"] == nike.id
    assert dictionary.get_entity(nike.id).usage_count == 1
    discovered, _ = dictionary.find_entities(dataset.id, source=EntitySource.AUTO_DISCOVERED)
    assert [entity.canonical_name for entity in discovered] == ["Adidas"]
    assert nodes["Adidas"].properties["graphEntityId"] == discovered[0].id
    assert "graphEntityId" not in nodes["Puma"].properties


def test_hybrid_extraction_constrains_the_prompt():
    graph = InMemoryGraphStore()
    dictionary = EntityDictionary(InMemoryDictionaryStore(), graph_store=graph)
    segments = InMemorySegmentStore()
    settings = {**SETTINGS, "enableHybridExtraction": True}
    dataset = segments.add_dataset(Dataset(name="brands", settings={"graph_settings": settings}))
    document = segments.add_document(Document(dataset.id))
    segments.add_segments([DocumentSegment(document.id, dataset.id, "Loving acmecorp today")])
    dictionary.add_entity("organization", "Acme Corp", scope=dataset.id)
    providers = ProviderRegistry()
    client = FakeClient([graph_json([("Acme Corp", "organization", None)])])
    providers.register_factory("fake", lambda model: client)
    extractor = GraphExtractor(graph, segments, providers, dictionary=dictionary)

    result = extractor.extract_document(document.id)

    prompt = client.calls[0]["user"]
    assert "Known organization entities in this content:\n- Acme Corp" in prompt
    assert "EXTRACTION RULES:" in prompt
    assert result.completed == 1


def test_metadata_block_is_appended_for_document_prompts():
    extractor, _, _, _, document, _, client, _ = build(
        ["<p>Nike <b>rocks</b></p>"],
        [NIKE_ADIDAS],
        metadata={"platform": "twitter", "author": "jane"},
    )
    extractor.extract_document(document.id)
    prompt = client.calls[0]["user"]
    assert "<b>" not in prompt
    assert 'Metadata: {"platform": "twitter", "author": "jane"' in prompt


def test_progress_events_follow_the_segment_lifecycle():
    sink = RecordingProgressSink()
    extractor, _, _, _, document, _, _, _ = build(["ok", "bad"], [NIKE_ADIDAS, "no graph"], progress=sink)

    extractor.extract_document(document.id)

    assert sink.stages() == [
        "started",
        "processing_segment",
        "llm_call",
        "creating_nodes",
        "creating_edges",
        "processing_segment",
        "llm_call",
        "error",
        "completed",
    ]
    assert sink.events[-1].counts["failed"] == 1


def test_llm_timeout_marks_segment_as_error():
    release = threading.Event()

    def _slow(prompt):
        release.wait(5)
        return NIKE_ADIDAS

    extractor, _, segments, _, document, stored, _, _ = build(["slow"], _slow, settings={**SETTINGS, "llmTimeout": 0.05})
    try:
        result = extractor.extract_document(document.id)
    finally:
        release.set()

    assert result.failed == 1
    assert "timed out" in result.outcomes[0].error
    assert segments.get_segment(stored[0].id).status == SegmentStatus.ERROR


def test_cancel_event_stops_between_segments():
    cancel = threading.Event()
    cancel.set()
    extractor, _, segments, _, document, stored, client, _ = build(["a", "b"], [NIKE_ADIDAS, NIKE_ADIDAS])

    result = extractor.extract_document(document.id, cancel_event=cancel)

    assert result.cancelled is True
    assert result.outcomes == []
    assert client.calls == []
    assert all(segments.get_segment(s.id).status == SegmentStatus.PENDING for s in stored)


def test_parallel_workers_process_every_segment():
    responses = {
        "alpha": graph_json([("Nike", "brand", None)]),
        "beta": graph_json([("Adidas", "brand", None)]),
        "gamma": graph_json([("Puma", "brand", None)]),
    }

    def _by_content(prompt):
        return next(response for marker, response in responses.items() if marker in prompt)

    extractor, graph, _, dataset, document, _, client, _ = build(
        ["alpha", "beta", "gamma"], _by_content, settings={**SETTINGS, "maxWorkers": 3}
    )

    result = extractor.extract_document(document.id)

    assert result.completed == 3
    assert len(client.calls) == 3
    assert sorted(node.label for node in graph.find_nodes(dataset.id)) == ["Adidas", "Nike", "Puma"]


def test_dataset_extraction_aggregates_documents_and_background_jobs():
    extractor, graph, segments, dataset, document, _, client, _ = build(["one"], [NIKE_ADIDAS])
    other = segments.add_document(Document(dataset.id, title="second"))
    segments.add_segments([DocumentSegment(other.id, dataset.id, "two")])
    client.script.append(graph_json([("Puma", "brand", None)]))

    result = extractor.extract_dataset(dataset.id)

    assert result.completed == 2
    assert set(result.per_document()) == {document.id, other.id}
    assert result.summary()["nodes_created"] == 3

    third = segments.add_document(Document(dataset.id, title="third"))
    segments.add_segments([DocumentSegment(third.id, dataset.id, "three")])
    client.script.append(graph_json([("Asics", "brand", None)]))
    try:
        job = extractor.submit_document(third.id)
        assert job.result(timeout=5).completed == 1
    finally:
        extractor.close()


def test_hung_llm_call_fails_only_its_own_segment():
    release = threading.Event()

    def _first_hangs(prompt):
        if "first" in prompt:
            release.wait(5)
        return graph_json([("Nike", "brand", None)])

    extractor, _, segments, _, document, stored, _, _ = build(
        ["first post", "second post", "third post"],
        _first_hangs,
        settings={**SETTINGS, "llmTimeout": 0.3},
    )
    try:
        result = extractor.extract_document(document.id)
    finally:
        release.set()

    assert [outcome.status for outcome in result.outcomes] == ["error", "completed", "completed"]
    assert "timed out" in result.outcomes[0].error
    assert segments.get_segment(stored[0].id).status == SegmentStatus.ERROR
    assert segments.get_segment(stored[2].id).status == SegmentStatus.COMPLETED


def test_claim_is_refused_while_a_segment_is_processing():
    _, _, segments, _, _, stored, _, _ = build(["post"], [])

    assert segments.claim(stored[0].id) is True
    assert segments.get_segment(stored[0].id).status == SegmentStatus.PROCESSING
    assert segments.claim(stored[0].id) is False

    segments.set_status(stored[0].id, SegmentStatus.ERROR, "boom")
    assert segments.claim(stored[0].id) is True
    assert segments.get_segment(stored[0].id).error is None


def test_concurrent_runs_do_not_process_a_segment_twice(monkeypatch):
    entered = threading.Event()
    release = threading.Event()

    def _blocking(prompt):
        entered.set()
        release.wait(5)
        return NIKE_ADIDAS

    extractor, graph, segments, dataset, document, stored, client, _ = build(["shared"], _blocking)
    background = threading.Thread(
        target=extractor.extract_from_segments,
        args=([stored[0].id], dataset.id, document.id),
    )
    background.start()
    try:
        assert entered.wait(5)
        # Both runs got past the up-front check before either claimed the segment.
        monkeypatch.setattr(extractor, "_skip_reason", lambda segment: None)
        second = extractor.extract_from_segments([stored[0].id], dataset.id, document.id)
    finally:
        release.set()
        background.join(5)

    assert second.skipped == 1
    assert len(client.calls) == 1
    assert segments.get_segment(stored[0].id).status == SegmentStatus.COMPLETED
    assert len(graph.find_nodes(dataset.id)) == 2

    third = extractor.extract_from_segments([stored[0].id], dataset.id, document.id)
    assert third.skipped == 1
    assert len(client.calls) == 1
    assert segments.get_segment(stored[0].id).status == SegmentStatus.COMPLETED

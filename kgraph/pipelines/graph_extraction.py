"""Drive LLM extraction over document segments and persist the resulting nodes and edges."""
from __future__ import annotations

import dataclasses
import json
import re
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .progress import ProgressEvent, ProgressSink, ProgressStage, emit
from ..data.graph_store import GraphStore
from ..data.models import (
    Dataset,
    Document,
    DocumentSegment,
    EntitySource,
    ExtractedEdge,
    ExtractedNode,
    ExtractionResult,
    GraphEdge,
    GraphNode,
    SegmentStatus,
    utcnow,
)
from ..data.segment_loader import html_to_text
from ..data.segment_store import InMemorySegmentStore
from ..errors import ConfigurationError, ConflictError, KGraphError
from ..nlp.entity_dictionary import EntityDictionary, EntityMatch, UsageEvent
from ..nlp.entity_learning import EntityLearner
from ..nlp.entity_normalization import EntityNormalizer, NormalizationResult
from ..nlp.hybrid_extraction import HybridExtractionPreprocessor
from ..nlp.llm_client import LLMClient, ProviderRegistry
from ..nlp.prompts import Prompt, PromptSelector, determine_content_type, render_prompt
from ..nlp.response_parser import parse_extraction_response
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

OUTCOME_COMPLETED = "completed"
OUTCOME_ERROR = "error"
OUTCOME_SKIPPED = "skipped"

_CAMEL_KEYS = {
    "aiProviderId": "ai_provider_id",
    "promptId": "prompt_id",
    "enableDeduplication": "enable_deduplication",
    "enableHybridExtraction": "enable_hybrid_extraction",
    "hybridThreshold": "hybrid_threshold",
    "confidenceThreshold": "confidence_threshold",
    "entityLinkThreshold": "entity_link_threshold",
    "autoCreateConfidence": "auto_create_confidence",
    "normalizeAfterExtraction": "normalize_after_extraction",
    "learnFromExtraction": "learn_from_extraction",
    "maxWorkers": "max_workers",
    "llmTimeout": "llm_timeout",
}


@dataclass(slots=True)
class ExtractionConfig:
    ai_provider_id: Optional[str] = None
    model: Optional[str] = None
    prompt_id: Optional[str] = None
    temperature: Optional[float] = None
    enable_deduplication: Optional[bool] = None
    enable_hybrid_extraction: Optional[bool] = None
    hybrid_threshold: Optional[float] = None
    confidence_threshold: Optional[float] = None
    entity_link_threshold: Optional[float] = None
    auto_create_confidence: Optional[float] = None
    normalize_after_extraction: Optional[bool] = None
    learn_from_extraction: Optional[bool] = None
    max_workers: Optional[int] = None
    llm_timeout: Optional[float] = None

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, Any]]) -> "ExtractionConfig":
        """Build from snake_case or camelCase keys; unknown keys are ignored."""
        names = {f.name for f in dataclasses.fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in (values or {}).items():
            name = _CAMEL_KEYS.get(key, key)
            if name in names:
                kwargs[name] = value
        return cls(**kwargs)

    def overridden_by(self, other: "ExtractionConfig") -> "ExtractionConfig":
        """Field-by-field overlay: every field ``other`` sets wins."""
        merged = dataclasses.replace(self)
        for f in dataclasses.fields(other):
            value = getattr(other, f.name)
            if value is not None:
                setattr(merged, f.name, value)
        return merged


@dataclass(slots=True)
class ResolvedExtractionConfig:
    ai_provider_id: str
    model: str
    prompt_id: Optional[str] = None
    temperature: float = 0.7
    enable_deduplication: bool = True
    enable_hybrid_extraction: bool = False
    hybrid_threshold: float = 0.7
    confidence_threshold: float = 0.5
    entity_link_threshold: float = 0.9
    auto_create_confidence: float = 0.8
    normalize_after_extraction: bool = True
    learn_from_extraction: bool = True
    max_workers: int = 1
    llm_timeout: Optional[float] = 120


def resolve_config(
    dataset_settings: Optional[Mapping[str, Any]],
    explicit: Optional[ExtractionConfig | Mapping[str, Any]] = None,
    defaults: Optional[Mapping[str, Any]] = None,
) -> ResolvedExtractionConfig:
    """Explicit config over dataset graph settings over ``defaults``.

    Raises :class:`ConfigurationError` when no layer names a provider and model.
    """
    config = ExtractionConfig.from_mapping(defaults)
    config = config.overridden_by(ExtractionConfig.from_mapping(dataset_settings))
    if explicit is not None:
        if not isinstance(explicit, ExtractionConfig):
            explicit = ExtractionConfig.from_mapping(explicit)
        config = config.overridden_by(explicit)

    if not config.ai_provider_id or not config.model:
        raise ConfigurationError(
            "AI provider and model are required for graph extraction; set them on the call or in "
            "the dataset graph settings",
            details={"ai_provider_id": config.ai_provider_id, "model": config.model},
        )
    values = {
        f.name: getattr(config, f.name)
        for f in dataclasses.fields(config)
        if getattr(config, f.name) is not None
    }
    resolved = ResolvedExtractionConfig(**values)
    resolved.max_workers = max(1, int(resolved.max_workers))
    return resolved


@dataclass(slots=True)
class SegmentOutcome:
    segment_id: str
    document_id: str
    status: str
    nodes_created: int = 0
    nodes_merged: int = 0
    edges_created: int = 0
    edges_updated: int = 0
    extraction_method: Optional[str] = None
    error: Optional[str] = None


@dataclass(slots=True)
class BatchResult:
    """Per-segment outcomes of one extraction run plus post-processing results."""

    dataset_id: str
    document_id: Optional[str] = None
    outcomes: List[SegmentOutcome] = field(default_factory=list)
    normalization: List[NormalizationResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def nodes_created(self) -> int:
        return sum(outcome.nodes_created for outcome in self.outcomes)

    @property
    def edges_created(self) -> int:
        return sum(outcome.edges_created for outcome in self.outcomes)

    @property
    def completed(self) -> int:
        return self._count(OUTCOME_COMPLETED)

    @property
    def failed(self) -> int:
        return self._count(OUTCOME_ERROR)

    @property
    def skipped(self) -> int:
        return self._count(OUTCOME_SKIPPED)

    def errors(self) -> Dict[str, str]:
        return {o.segment_id: o.error or "" for o in self.outcomes if o.status == OUTCOME_ERROR}

    def absorb(self, other: "BatchResult") -> None:
        self.outcomes.extend(other.outcomes)
        self.normalization.extend(other.normalization)
        self.cancelled = self.cancelled or other.cancelled

    def per_document(self) -> Dict[str, Dict[str, int]]:
        summary: Dict[str, Dict[str, int]] = {}
        for outcome in self.outcomes:
            counts = summary.setdefault(
                outcome.document_id,
                {"completed": 0, "error": 0, "skipped": 0, "nodes_created": 0, "edges_created": 0},
            )
            counts[outcome.status] += 1
            counts["nodes_created"] += outcome.nodes_created
            counts["edges_created"] += outcome.edges_created
        return summary

    def summary(self) -> Dict[str, Any]:
        return {
            "dataset_id": self.dataset_id,
            "document_id": self.document_id,
            "segments": len(self.outcomes),
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "nodes_created": self.nodes_created,
            "edges_created": self.edges_created,
            "cancelled": self.cancelled,
            "documents": self.per_document(),
        }

    def _count(self, status: str) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)


@dataclass(slots=True)
class _RunContext:
    dataset: Dataset
    document: Optional[Document]
    config: ResolvedExtractionConfig
    client: LLMClient
    prompt: Prompt
    content_type: str


class GraphExtractor:
    """Runs the per-segment extraction state machine ``pending -> processing -> completed|error``."""

    def __init__(
        self,
        graph_store: GraphStore,
        segment_store: InMemorySegmentStore,
        providers: ProviderRegistry,
        prompt_selector: Optional[PromptSelector] = None,
        dictionary: Optional[EntityDictionary] = None,
        normalizer: Optional[EntityNormalizer] = None,
        learner: Optional[EntityLearner] = None,
        hybrid: Optional[HybridExtractionPreprocessor] = None,
        progress: Optional[ProgressSink] = None,
        defaults: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.graph_store = graph_store
        self.segment_store = segment_store
        self.providers = providers
        self.prompt_selector = prompt_selector or PromptSelector()
        self.dictionary = dictionary
        self.normalizer = normalizer or EntityNormalizer(graph_store)
        self.learner = learner or (EntityLearner(dictionary, graph_store) if dictionary else None)
        self.hybrid = hybrid or (HybridExtractionPreprocessor(dictionary) if dictionary else None)
        self.progress = progress
        self.defaults = dict(defaults or {})
        self._write_lock = threading.RLock()
        self._jobs: Optional[ThreadPoolExecutor] = None

    # ----------------------------------------------------------------- drivers
    def extract_from_segments(
        self,
        segment_ids: Iterable[str],
        dataset_id: str,
        document_id: Optional[str] = None,
        config: Optional[ExtractionConfig | Mapping[str, Any]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchResult:
        """Extract a batch of segments; one failing segment never aborts the others."""
        context = self._prepare(dataset_id, document_id, config)
        segments = [self.segment_store.get_segment(segment_id) for segment_id in segment_ids]
        result = BatchResult(dataset_id=dataset_id, document_id=document_id)

        runnable: List[DocumentSegment] = []
        for segment in segments:
            reason = self._skip_reason(segment)
            if reason:
                LOGGER.info("Skipping segment %s: %s", segment.id, reason)
                result.outcomes.append(SegmentOutcome(segment.id, segment.document_id, OUTCOME_SKIPPED))
            else:
                runnable.append(segment)

        self._emit(
            ProgressStage.STARTED,
            context,
            f"Starting extraction of {len(runnable)} segments",
            counts={"segments": len(runnable), "skipped": len(segments) - len(runnable)},
        )
        LOGGER.info(
            "Extracting %s segments of dataset %s with %s/%s (prompt %s)",
            len(runnable),
            dataset_id,
            context.config.ai_provider_id,
            context.config.model,
            context.prompt.id,
        )

        if context.config.max_workers > 1 and len(runnable) > 1:
            result.outcomes.extend(self._run_parallel(runnable, context, cancel_event, result))
        else:
            for segment in runnable:
                if cancel_event is not None and cancel_event.is_set():
                    result.cancelled = True
                    LOGGER.warning("Extraction cancelled before segment %s", segment.id)
                    break
                result.outcomes.append(self._process_segment(segment, context))

        if context.config.normalize_after_extraction:
            result.normalization.extend(self._normalize_documents(result))

        self._emit(
            ProgressStage.COMPLETED,
            context,
            "Extraction finished",
            counts={
                "completed": result.completed,
                "failed": result.failed,
                "skipped": result.skipped,
                "nodes_created": result.nodes_created,
                "edges_created": result.edges_created,
            },
        )
        LOGGER.info(
            "Extraction of dataset %s finished: %s completed, %s failed, %s skipped, %s nodes, %s edges",
            dataset_id,
            result.completed,
            result.failed,
            result.skipped,
            result.nodes_created,
            result.edges_created,
        )
        return result

    def extract_document(
        self,
        document_id: str,
        config: Optional[ExtractionConfig | Mapping[str, Any]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchResult:
        document = self.segment_store.get_document(document_id)
        segments = self.segment_store.segments_for_document(
            document_id, statuses=(SegmentStatus.PENDING, SegmentStatus.ERROR)
        )
        return self.extract_from_segments(
            [segment.id for segment in segments],
            document.dataset_id,
            document_id,
            config=config,
            cancel_event=cancel_event,
        )

    def extract_dataset(
        self,
        dataset_id: str,
        config: Optional[ExtractionConfig | Mapping[str, Any]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchResult:
        """Run every document of the dataset in turn and aggregate the outcomes."""
        dataset = self.segment_store.get_dataset(dataset_id)
        resolve_config(dataset.graph_settings, config, self.defaults)

        result = BatchResult(dataset_id=dataset_id)
        for document in self.segment_store.documents_for_dataset(dataset_id):
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                break
            result.absorb(self.extract_document(document.id, config=config, cancel_event=cancel_event))
        return result

    def submit_document(
        self,
        document_id: str,
        config: Optional[ExtractionConfig | Mapping[str, Any]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> "Future[BatchResult]":
        """Queue a document extraction as a background job and return its future."""
        document = self.segment_store.get_document(document_id)
        dataset = self.segment_store.get_dataset(document.dataset_id)
        resolve_config(dataset.graph_settings, config, self.defaults)
        if self._jobs is None:
            self._jobs = ThreadPoolExecutor(max_workers=1, thread_name_prefix="extraction-job")
        LOGGER.info("Queued extraction job for document %s", document_id)
        return self._jobs.submit(self.extract_document, document_id, config, cancel_event)

    def close(self) -> None:
        if self._jobs is not None:
            self._jobs.shutdown(wait=True)
            self._jobs = None

    # ----------------------------------------------------------------- batch
    def _prepare(
        self,
        dataset_id: str,
        document_id: Optional[str],
        config: Optional[ExtractionConfig | Mapping[str, Any]],
    ) -> _RunContext:
        dataset = self.segment_store.get_dataset(dataset_id)
        document = self.segment_store.get_document(document_id) if document_id else None
        resolved = resolve_config(dataset.graph_settings, config, self.defaults)
        client = self.providers.create_client(resolved.ai_provider_id, resolved.model)
        if resolved.prompt_id:
            prompt = self.prompt_selector.catalog.get(resolved.prompt_id)
        else:
            prompt = self.prompt_selector.select(dataset, document)
        return _RunContext(
            dataset=dataset,
            document=document,
            config=resolved,
            client=client,
            prompt=prompt,
            content_type=determine_content_type(dataset, document),
        )

    def _skip_reason(self, segment: DocumentSegment) -> Optional[str]:
        if segment.status == SegmentStatus.PROCESSING:
            return "already processing"
        if self.graph_store.find_nodes(segment.dataset_id, segment_id=segment.id):
            return "graph nodes already exist"
        return None

    def _run_parallel(
        self,
        segments: List[DocumentSegment],
        context: _RunContext,
        cancel_event: Optional[threading.Event],
        result: BatchResult,
    ) -> List[SegmentOutcome]:
        def _guarded(segment: DocumentSegment) -> Optional[SegmentOutcome]:
            if cancel_event is not None and cancel_event.is_set():
                return None
            return self._process_segment(segment, context)

        with ThreadPoolExecutor(
            max_workers=context.config.max_workers,
            thread_name_prefix="segment-worker",
        ) as pool:
            outcomes = list(pool.map(_guarded, segments))
        if any(outcome is None for outcome in outcomes):
            result.cancelled = True
            LOGGER.warning("Extraction cancelled; %s segments left pending", outcomes.count(None))
        return [outcome for outcome in outcomes if outcome is not None]

    def _normalize_documents(self, result: BatchResult) -> List[NormalizationResult]:
        document_ids = sorted(
            {o.document_id for o in result.outcomes if o.status == OUTCOME_COMPLETED and o.nodes_created}
        )
        results = []
        for document_id in document_ids:
            try:
                results.append(self.normalizer.normalize_after_extraction(document_id))
            except Exception as exc:
                LOGGER.warning("Normalization after extraction failed for document %s: %s", document_id, exc)
        return results

    # ----------------------------------------------------------------- segment
    def _process_segment(self, segment: DocumentSegment, context: _RunContext) -> SegmentOutcome:
        outcome = SegmentOutcome(segment.id, segment.document_id, OUTCOME_COMPLETED)
        if not self.segment_store.claim(segment.id):
            LOGGER.info("Skipping segment %s: claimed by another run", segment.id)
            outcome.status = OUTCOME_SKIPPED
            return outcome
        if self.graph_store.find_nodes(segment.dataset_id, segment_id=segment.id):
            LOGGER.info("Skipping segment %s: completed by another run", segment.id)
            self.segment_store.set_status(segment.id, SegmentStatus.COMPLETED)
            outcome.status = OUTCOME_SKIPPED
            return outcome
        self._emit(ProgressStage.PROCESSING_SEGMENT, context, "Processing segment", segment=segment)

        matches: List[EntityMatch] = []
        try:
            user_prompt, matches = self._build_user_prompt(segment, context)

            self._emit(ProgressStage.LLM_CALL, context, "Calling language model", segment=segment)
            raw = self._call_llm(context, user_prompt)

            extraction = parse_extraction_response(raw)
            extraction = _drop_low_confidence(extraction, context.config.confidence_threshold)
            outcome.extraction_method = extraction.extraction_method

            with self._write_lock:
                self._emit(
                    ProgressStage.CREATING_NODES,
                    context,
                    "Creating nodes",
                    segment=segment,
                    counts={"nodes": len(extraction.nodes)},
                )
                nodes_by_label, created, merged = self._persist_nodes(extraction.nodes, segment, context)
                outcome.nodes_created, outcome.nodes_merged = created, merged

                self._emit(
                    ProgressStage.CREATING_EDGES,
                    context,
                    "Creating edges",
                    segment=segment,
                    counts={"edges": len(extraction.edges)},
                )
                outcome.edges_created, outcome.edges_updated = self._persist_edges(
                    extraction.edges, nodes_by_label, segment
                )
        except Exception as exc:
            LOGGER.error("Extraction failed for segment %s: %s", segment.id, exc)
            self.segment_store.set_status(segment.id, SegmentStatus.ERROR, str(exc))
            self._emit(ProgressStage.ERROR, context, str(exc), segment=segment)
            outcome.status = OUTCOME_ERROR
            outcome.error = str(exc)
            return outcome

        self._post_process(extraction, matches, context)
        self.segment_store.set_status(segment.id, SegmentStatus.COMPLETED)
        LOGGER.debug(
            "Segment %s completed: %s nodes created, %s merged, %s edges created, %s updated",
            segment.id,
            outcome.nodes_created,
            outcome.nodes_merged,
            outcome.edges_created,
            outcome.edges_updated,
        )
        return outcome

    def _build_user_prompt(
        self,
        segment: DocumentSegment,
        context: _RunContext,
    ) -> Tuple[str, List[EntityMatch]]:
        text = html_to_text(segment.content)
        metadata = _segment_metadata(segment, context.document)
        values: Dict[str, Any] = {
            **metadata,
            "node_types": ", ".join(self.prompt_selector.available_node_types(context.content_type)),
            "edge_types": ", ".join(self.prompt_selector.available_edge_types(context.content_type)),
        }
        template = context.prompt.user_prompt_template

        if context.config.enable_hybrid_extraction and self.hybrid is not None:
            preprocessed = self.hybrid.preprocess_text(
                text,
                scope=context.dataset.id,
                threshold=context.config.hybrid_threshold,
            )
            base_prompt = render_prompt(template, {**values, "content": text})
            prompt = self.hybrid.build_constrained_prompt(text, preprocessed.matched_entities, base_prompt)
            return prompt, preprocessed.matched_entities

        if "{{platform}}" in template:
            block = text
        else:
            block = f"{text}\n\nMetadata: {json.dumps(metadata, default=str)}"
        return render_prompt(template, {**values, "content": block}), []

    def _call_llm(self, context: _RunContext, user_prompt: str) -> str:
        config = context.config
        call = (
            context.prompt.system_prompt,
            user_prompt,
            context.prompt.json_schema,
            config.temperature,
        )
        if not config.llm_timeout:
            return context.client.complete(*call)

        # One thread per call: an abandoned call must not hold a slot later calls wait on.
        outcome: Dict[str, Any] = {}

        def _run() -> None:
            try:
                outcome["response"] = context.client.complete(*call)
            except Exception as exc:
                outcome["error"] = exc

        worker = threading.Thread(target=_run, name="llm-call", daemon=True)
        worker.start()
        worker.join(config.llm_timeout)
        if worker.is_alive():
            raise TimeoutError(f"LLM call timed out after {config.llm_timeout}s")
        if "error" in outcome:
            raise outcome["error"]
        return outcome["response"]

    # ----------------------------------------------------------------- persistence
    def _persist_nodes(
        self,
        extracted: List[ExtractedNode],
        segment: DocumentSegment,
        context: _RunContext,
    ) -> Tuple[Dict[str, GraphNode], int, int]:
        nodes_by_label: Dict[str, GraphNode] = {}
        created = merged = 0
        now = utcnow().isoformat()
        for item in extracted:
            existing = None
            if context.config.enable_deduplication:
                existing = self._find_existing_node(segment.dataset_id, item)

            if existing is not None:
                existing.properties = _merge_node_properties(existing.properties, item.properties, now)
                node = self.graph_store.update_node(existing)
                merged += 1
            else:
                properties = dict(item.properties)
                properties.setdefault("normalized_name", item.label)
                properties["temporal_data"] = {
                    "first_mentioned": now,
                    "last_mentioned": now,
                    "mention_count": 1,
                }
                node = self.graph_store.add_node(
                    GraphNode(
                        dataset_id=segment.dataset_id,
                        node_type=item.node_type,
                        label=item.label,
                        document_id=segment.document_id,
                        segment_id=segment.id,
                        properties=properties,
                    )
                )
                created += 1
                node = self._link_to_dictionary(node, item, context)
            nodes_by_label[item.label] = node
        return nodes_by_label, created, merged

    def _find_existing_node(self, dataset_id: str, item: ExtractedNode) -> Optional[GraphNode]:
        same_label = self.graph_store.find_nodes(dataset_id, node_type=item.node_type, label=item.label)
        if same_label:
            return same_label[0]

        normalized = str(item.properties.get("normalized_name") or item.label)
        same_normalized = self.graph_store.find_nodes(
            dataset_id,
            node_type=item.node_type,
            property_filters={"normalized_name": normalized},
        )
        if same_normalized:
            return same_normalized[0]

        key = _squash(normalized)
        for node in self.graph_store.find_nodes(dataset_id, node_type=item.node_type):
            if _squash(str(node.properties.get("normalized_name") or node.label)) == key:
                return node
        return None

    def _link_to_dictionary(self, node: GraphNode, item: ExtractedNode, context: _RunContext) -> GraphNode:
        if self.dictionary is None:
            return node
        scope = context.dataset.id
        try:
            matches = [
                match
                for match in self.dictionary.find_similar_entities(
                    node.label,
                    scope=scope,
                    entity_type=node.node_type,
                    threshold=context.config.entity_link_threshold,
                )
                if match.similarity > context.config.entity_link_threshold
                or match.similarity >= 1.0
            ]
            if matches:
                best = matches[0]
                node.properties["graphEntityId"] = best.entity.id
                self.dictionary.add_alias(best.entity.id, node.label, similarity_score=best.similarity)
                self.dictionary.update_entity_from_usage(
                    best.entity.id,
                    UsageEvent(matched_alias=node.label, node_id=node.id, label=node.label),
                )
                LOGGER.debug("Linked node %s to entity %s", node.label, best.entity.canonical_name)
                return self.graph_store.update_node(node)

            confidence = item.confidence
            if confidence is not None and confidence >= context.config.auto_create_confidence:
                entity = self.dictionary.add_entity(
                    node.node_type,
                    node.label,
                    scope=scope,
                    confidence_score=confidence,
                    source=EntitySource.AUTO_DISCOVERED,
                    metadata={"usage_count": 1, "first_seen_node": node.id},
                )
                node.properties["graphEntityId"] = entity.id
                LOGGER.debug("Auto-created dictionary entity %s", entity.canonical_name)
                return self.graph_store.update_node(node)
        except ConflictError as exc:
            LOGGER.debug("Dictionary entity for %s already exists under another type: %s", node.label, exc)
        except KGraphError as exc:
            LOGGER.warning("Dictionary linking failed for node %s: %s", node.label, exc)
        return node

    def _persist_edges(
        self,
        extracted: List[ExtractedEdge],
        nodes_by_label: Dict[str, GraphNode],
        segment: DocumentSegment,
    ) -> Tuple[int, int]:
        folded = {label.casefold(): node for label, node in nodes_by_label.items()}
        created = updated = 0
        for item in extracted:
            source = nodes_by_label.get(item.source) or folded.get(item.source.casefold())
            target = nodes_by_label.get(item.target) or folded.get(item.target.casefold())
            if source is None or target is None:
                LOGGER.warning(
                    "Skipping %s edge %r -> %r: endpoint not among extracted nodes",
                    item.edge_type,
                    item.source,
                    item.target,
                )
                continue

            existing = self.graph_store.find_edge(source.id, target.id, item.edge_type)
            if existing is not None:
                existing.weight = item.weight
                existing.properties = {**existing.properties, **item.properties}
                self.graph_store.update_edge(existing)
                updated += 1
                continue

            self.graph_store.add_edge(
                GraphEdge(
                    dataset_id=segment.dataset_id,
                    source_node_id=source.id,
                    target_node_id=target.id,
                    edge_type=item.edge_type,
                    weight=item.weight,
                    document_id=segment.document_id,
                    segment_id=segment.id,
                    properties=dict(item.properties),
                )
            )
            created += 1
        return created, updated

    def _post_process(
        self,
        extraction: ExtractionResult,
        matches: List[EntityMatch],
        context: _RunContext,
    ) -> None:
        if context.config.learn_from_extraction and self.learner is not None:
            try:
                self.learner.learn_from_extraction(extraction, scope=context.dataset.id)
            except Exception as exc:
                LOGGER.warning("Learning from extraction failed: %s", exc)
        if matches and self.hybrid is not None:
            try:
                self.hybrid.update_entity_usage_from_extraction(extraction, matches)
            except Exception as exc:
                LOGGER.warning("Hybrid usage update failed: %s", exc)

    def _emit(
        self,
        stage: ProgressStage,
        context: _RunContext,
        message: str,
        segment: Optional[DocumentSegment] = None,
        counts: Optional[Dict[str, int]] = None,
    ) -> None:
        emit(
            self.progress,
            ProgressEvent(
                stage=stage,
                dataset_id=context.dataset.id,
                message=message,
                document_id=segment.document_id if segment else (context.document.id if context.document else None),
                segment_id=segment.id if segment else None,
                counts=dict(counts or {}),
            ),
        )


def _segment_metadata(segment: DocumentSegment, document: Optional[Document]) -> Dict[str, Any]:
    sources = [segment.metadata, document.metadata if document else {}]

    def _pick(*keys: str) -> Any:
        for source in sources:
            for key in keys:
                if source.get(key) not in (None, ""):
                    return source[key]
        return None

    engagement = _pick("engagement", "engagement_metrics")
    if isinstance(engagement, Mapping):
        engagement = ", ".join(f"{key}={value}" for key, value in engagement.items())
    return {
        "platform": _pick("platform", "source") or "unknown",
        "author": _pick("author", "username") or "unknown",
        "date": _pick("date", "published_at", "created_at") or "unknown",
        "engagement": engagement or "n/a",
    }


def _drop_low_confidence(result: ExtractionResult, threshold: float) -> ExtractionResult:
    kept = [node for node in result.nodes if node.confidence is None or node.confidence >= threshold]
    dropped = len(result.nodes) - len(kept)
    if dropped:
        LOGGER.debug("Dropped %s nodes below confidence %.2f", dropped, threshold)
    return ExtractionResult(nodes=kept, edges=result.edges, extraction_method=result.extraction_method)


def _merge_node_properties(existing: Dict[str, Any], incoming: Dict[str, Any], now: str) -> Dict[str, Any]:
    merged = {**existing, **incoming}
    if "graphEntityId" in existing:
        merged["graphEntityId"] = existing["graphEntityId"]
    if "confidence" in existing and "confidence" in incoming:
        try:
            merged["confidence"] = max(float(existing["confidence"]), float(incoming["confidence"]))
        except (TypeError, ValueError):
            merged["confidence"] = existing["confidence"]
    temporal = dict(existing.get("temporal_data") or {})
    temporal.setdefault("first_mentioned", now)
    temporal["last_mentioned"] = now
    temporal["mention_count"] = int(temporal.get("mention_count", 1) or 1) + 1
    merged["temporal_data"] = temporal
    return merged


def _squash(value: str) -> str:
    return re.sub(r"\s+", "", value).casefold()

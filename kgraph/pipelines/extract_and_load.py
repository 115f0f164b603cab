"""End-to-end pipeline: load segments, seed the dictionary, extract the graph, export snapshots."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .graph_extraction import BatchResult, GraphExtractor
from .progress import LoggingProgressSink, ProgressSink
from ..analytics.brand_comparison import BrandComparison
from ..analytics.metrics import compute_graph_metrics
from ..data.dictionary_io import read_dictionary_table, write_dictionary_table
from ..data.dictionary_store import InMemoryDictionaryStore
from ..data.graph_store import GraphStore, InMemoryGraphStore
from ..data.models import Dataset, GraphEdge, GraphNode, utcnow
from ..data.segment_loader import SegmentLoader, SegmentSourceConfig
from ..data.segment_store import InMemorySegmentStore
from ..graph.neo4j_loader import Neo4jConfig, persist_graph
from ..nlp.entity_dictionary import BulkImportOptions, EntityDictionary
from ..nlp.llm_client import ProviderRegistry
from ..nlp.prompts import PromptCatalog, PromptSelector
from ..utils.cache import TTLCache
from ..utils.config import load_pipeline_config
from ..utils.io import write_json
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)


@dataclass(slots=True)
class PipelineResult:
    dataset: Optional[Dataset] = None
    batch: Optional[BatchResult] = None
    nodes: List[GraphNode] = field(default_factory=list)
    edges: List[GraphEdge] = field(default_factory=list)
    metrics: Dict[str, object] = field(default_factory=dict)


def run_pipeline(
    config_path: Optional[str | Path] = "config/pipeline.yaml",
    providers: Optional[ProviderRegistry] = None,
    graph_store: Optional[GraphStore] = None,
    progress: Optional[ProgressSink] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> PipelineResult:
    config = load_pipeline_config(config_path, environ)
    graph_store = graph_store or InMemoryGraphStore()
    segment_store = InMemorySegmentStore()

    dataset = _build_dataset(config)
    segment_store.add_dataset(dataset)
    documents = _load_segments(config, segment_store, dataset)
    if not documents:
        LOGGER.warning("No segments were loaded; aborting pipeline")
        return PipelineResult(dataset=dataset)

    dictionary_cfg = config.get("dictionary", {})
    dictionary = EntityDictionary(
        InMemoryDictionaryStore(),
        cache=TTLCache(ttl_seconds=dictionary_cfg.get("cache_ttl_seconds", 3600), name="entity-matches"),
        graph_store=graph_store,
    )
    seed_path = dictionary_cfg.get("seed_path")
    if seed_path:
        dictionary.bulk_import(
            read_dictionary_table(seed_path),
            scope=dataset.id,
            options=BulkImportOptions(update_existing=dictionary_cfg.get("update_existing", False)),
        )

    extraction_cfg = config.get("extraction", {})
    catalog = PromptCatalog.from_yaml(extraction_cfg["prompts_path"]) if extraction_cfg.get("prompts_path") else None
    extractor = GraphExtractor(
        graph_store,
        segment_store,
        providers or ProviderRegistry.from_config(config.get("providers", {})),
        prompt_selector=PromptSelector(catalog),
        dictionary=dictionary,
        progress=progress or LoggingProgressSink(),
        defaults=extraction_cfg,
    )
    try:
        batch = extractor.extract_dataset(dataset.id)
    finally:
        extractor.close()

    nodes = graph_store.find_nodes(dataset.id)
    edges = graph_store.find_edges(dataset.id)
    result = PipelineResult(dataset=dataset, batch=batch, nodes=nodes, edges=edges)

    analytics_cfg = config.get("analytics", {})
    snapshot_path = analytics_cfg.get("graph_snapshot_path")
    if snapshot_path:
        _write_graph_snapshot(nodes, edges, snapshot_path)

    metrics_payload = compute_graph_metrics(nodes, edges)
    metadata = metrics_payload.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}
        metrics_payload["metadata"] = metadata
    metadata["dataset_id"] = dataset.id
    metadata["extraction"] = batch.summary()
    if snapshot_path:
        metadata["graph_snapshot_path"] = snapshot_path
    metrics_path = analytics_cfg.get("metrics_path")
    if metrics_path:
        write_json(metrics_path, metrics_payload)
        LOGGER.info("Graph metrics saved to %s", metrics_path)
    result.metrics = metrics_payload

    brands = analytics_cfg.get("compare_brands") or []
    comparison_path = analytics_cfg.get("brand_comparison_path")
    if brands and comparison_path:
        comparison = BrandComparison(graph_store).compare_brands(dataset.id, brands)
        write_json(comparison_path, comparison)
        LOGGER.info("Brand comparison of %s saved to %s", ", ".join(brands), comparison_path)

    export_path = dictionary_cfg.get("export_path")
    if export_path:
        write_dictionary_table(export_path, dictionary.export(dataset.id))

    neo4j_cfg = config.get("graph", {}).get("neo4j")
    if neo4j_cfg:
        try:
            persist_graph(
                Neo4jConfig(
                    uri=neo4j_cfg["uri"],
                    user=neo4j_cfg["user"],
                    password=neo4j_cfg["password"],
                    database=neo4j_cfg.get("database"),
                ),
                nodes,
                edges,
            )
        except Exception as exc:  # pragma: no cover
            LOGGER.warning(
                "Failed to persist graph to Neo4j (%s). Continuing without database sync.",
                exc,
            )
    return result


def _build_dataset(config: Mapping[str, Any]) -> Dataset:
    data_cfg = config.get("data", {})
    metadata = dict(data_cfg.get("metadata") or {})
    if data_cfg.get("content_type"):
        metadata["content_type"] = data_cfg["content_type"]
    return Dataset(
        name=data_cfg.get("dataset_name", "default"),
        settings={"graph_settings": dict(data_cfg.get("graph_settings") or {})},
        metadata=metadata,
    )


def _load_segments(config: Mapping[str, Any], store: InMemorySegmentStore, dataset: Dataset):
    data_cfg = config.get("data", {})
    path = data_cfg.get("segments_path")
    if not path:
        LOGGER.warning("data.segments_path is not configured")
        return []
    source = SegmentSourceConfig(
        path=path,
        text_column=data_cfg.get("text_column", "content"),
        document_column=data_cfg.get("document_column", "document_id"),
        title_column=data_cfg.get("title_column", "title"),
        separator=data_cfg.get("separator", ","),
        limit=data_cfg.get("limit"),
    )
    if data_cfg.get("metadata_columns"):
        source.metadata_columns = list(data_cfg["metadata_columns"])
    return SegmentLoader(source).load_into(store, dataset)


def _write_graph_snapshot(nodes: List[GraphNode], edges: List[GraphEdge], path: str | Path) -> None:
    snapshot_path = Path(path)
    snapshot_path.parent.mkdir(parents=True, exist_ok=True)
    labels = {node.id: node.label for node in nodes}
    payload = {
        "generated_at": utcnow().isoformat(),
        "nodes": [
            {
                "id": node.id,
                "label": node.label,
                "type": node.node_type,
                "document_id": node.document_id,
                "segment_id": node.segment_id,
                "properties": node.properties,
            }
            for node in nodes
        ],
        "edges": [
            {
                "id": edge.id,
                "source": edge.source_node_id,
                "target": edge.target_node_id,
                "from": labels.get(edge.source_node_id),
                "to": labels.get(edge.target_node_id),
                "type": edge.edge_type,
                "weight": edge.weight,
                "properties": edge.properties,
            }
            for edge in edges
        ],
    }
    write_json(snapshot_path, payload)
    LOGGER.info("Saved graph snapshot to %s", snapshot_path)

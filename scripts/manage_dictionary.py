"""CLI helper to import, export and grow an entity dictionary."""
from __future__ import annotations

# ruff: noqa: E402

import argparse
import json
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from kgraph.data.dictionary_io import read_dictionary_table, write_dictionary_table
from kgraph.data.dictionary_store import InMemoryDictionaryStore
from kgraph.data.graph_store import InMemoryGraphStore
from kgraph.data.models import GraphEdge, GraphNode
from kgraph.nlp.entity_dictionary import BulkImportOptions, EntityDictionary
from kgraph.nlp.entity_learning import EntityLearner
from kgraph.utils.io import read_json, to_jsonable
from kgraph.utils.logging import get_logger

LOGGER = get_logger(__name__)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage the entity dictionary of a dataset.")
    parser.add_argument("--dictionary", required=True, help="Dictionary table (CSV, TSV or Parquet).")
    parser.add_argument("--scope", default="default", help="Dataset id the entities belong to.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    import_parser = subparsers.add_parser("import", help="Merge another table into the dictionary.")
    import_parser.add_argument("source", help="Table with entities to import.")
    import_parser.add_argument("--update-existing", action="store_true", help="Update entities that already exist.")

    export_parser = subparsers.add_parser("export", help="Write the dictionary to another table.")
    export_parser.add_argument("target", help="Output path; the suffix selects the format.")

    for name, help_text in (
        ("suggest", "Suggest new entities from a graph snapshot."),
        ("discover-aliases", "Add close node labels from a graph snapshot as aliases."),
    ):
        graph_parser = subparsers.add_parser(name, help=help_text)
        graph_parser.add_argument("snapshot", help="Graph snapshot JSON written by the pipeline.")

    return parser.parse_args()


def _load_graph(snapshot_path: str, scope: str) -> InMemoryGraphStore:
    store = InMemoryGraphStore()
    payload = read_json(snapshot_path)
    for item in payload.get("nodes", []):
        store.add_node(
            GraphNode(
                dataset_id=scope,
                node_type=item["type"],
                label=item["label"],
                document_id=item.get("document_id"),
                segment_id=item.get("segment_id"),
                properties=dict(item.get("properties") or {}),
                id=item["id"],
            )
        )
    for item in payload.get("edges", []):
        store.add_edge(
            GraphEdge(
                dataset_id=scope,
                source_node_id=item["source"],
                target_node_id=item["target"],
                edge_type=item["type"],
                weight=float(item.get("weight", 1.0)),
                properties=dict(item.get("properties") or {}),
                id=item["id"],
            )
        )
    return store


def main() -> None:
    args = _parse_args()
    dictionary_path = Path(args.dictionary)
    graph_store = _load_graph(args.snapshot, args.scope) if hasattr(args, "snapshot") else None
    dictionary = EntityDictionary(InMemoryDictionaryStore(), graph_store=graph_store)
    if dictionary_path.exists():
        dictionary.bulk_import(read_dictionary_table(dictionary_path), scope=args.scope)

    if args.command == "import":
        result = dictionary.bulk_import(
            read_dictionary_table(args.source),
            scope=args.scope,
            options=BulkImportOptions(update_existing=args.update_existing),
        )
        write_dictionary_table(dictionary_path, dictionary.export(args.scope))
        print(json.dumps(to_jsonable(result), indent=2))
    elif args.command == "export":
        write_dictionary_table(args.target, dictionary.export(args.scope))
    elif args.command == "suggest":
        learner = EntityLearner(dictionary, graph_store)
        print(json.dumps(to_jsonable(learner.suggest_new_entities(args.scope)), indent=2))
    elif args.command == "discover-aliases":
        learner = EntityLearner(dictionary, graph_store)
        added = learner.discover_entity_aliases(args.scope)
        write_dictionary_table(dictionary_path, dictionary.export(args.scope))
        LOGGER.info("Added %s aliases to %s", added, dictionary_path)


if __name__ == "__main__":
    main()

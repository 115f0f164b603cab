"""CLI entry point to execute the extraction and loading pipeline."""
from __future__ import annotations

# ruff: noqa: E402

import argparse
import json
import os
from pathlib import Path
import sys

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from kgraph.pipelines.extract_and_load import run_pipeline
from kgraph.utils.logging import configure_root_logger


def main() -> None:
    parser = argparse.ArgumentParser(description="Extract a knowledge graph from document segments with an LLM")
    parser.add_argument(
        "--config",
        default="config/pipeline.yaml",
        help="Path to the YAML configuration file",
    )
    parser.add_argument("--segments", help="Override data.segments_path")
    parser.add_argument("--dataset-name", help="Override data.dataset_name")
    parser.add_argument("--provider", help="Override extraction.ai_provider_id")
    parser.add_argument("--model", help="Override extraction.model")
    parser.add_argument("--log-level", default=None, help="Root log level (defaults to KGRAPH_LOG_LEVEL or INFO)")
    args = parser.parse_args()

    configure_root_logger(args.log_level.upper() if args.log_level else None)
    environ = dict(os.environ)
    if args.segments:
        environ["KGRAPH_DATA__SEGMENTS_PATH"] = args.segments
    if args.dataset_name:
        environ["KGRAPH_DATA__DATASET_NAME"] = args.dataset_name
    if args.provider:
        environ["KGRAPH_EXTRACTION__AI_PROVIDER_ID"] = args.provider
    if args.model:
        environ["KGRAPH_EXTRACTION__MODEL"] = args.model

    result = run_pipeline(args.config, environ=environ)
    if result.batch is not None:
        print(json.dumps(result.batch.summary(), indent=2))


if __name__ == "__main__":
    main()

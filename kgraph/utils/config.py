"""Configuration loading helpers."""
from __future__ import annotations

import copy
import os
import pathlib
from typing import Any, Dict, Mapping, Optional

import yaml

ENV_PREFIX = "KGRAPH_"

DEFAULT_CONFIG: Dict[str, Any] = {
    "providers": {},
    "extraction": {
        "temperature": 0.7,
        "enable_deduplication": True,
        "enable_hybrid_extraction": False,
        "hybrid_threshold": 0.7,
        "confidence_threshold": 0.5,
        "entity_link_threshold": 0.9,
        "auto_create_confidence": 0.8,
        "normalize_after_extraction": True,
        "learn_from_extraction": True,
        "max_workers": 1,
        "llm_timeout": 120,
    },
    "data": {},
    "dictionary": {"cache_ttl_seconds": 3600},
    "analytics": {
        "metrics_path": "artifacts/graph_metrics.json",
        "graph_snapshot_path": "artifacts/graph_snapshot.json",
        "brand_comparison_path": "artifacts/brand_comparison.json",
    },
    "graph": {},
}


def load_config(path: str | pathlib.Path) -> Dict[str, Any]:
    """Load a YAML configuration file."""
    config_path = pathlib.Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")
    with config_path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def merge_config(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(dict(base))
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def apply_env_overrides(
    config: Mapping[str, Any],
    environ: Optional[Mapping[str, str]] = None,
    prefix: str = ENV_PREFIX,
) -> Dict[str, Any]:
    """Override leaves from ``KGRAPH_SECTION__KEY=value`` variables; values are parsed as YAML."""
    environ = os.environ if environ is None else environ
    result = copy.deepcopy(dict(config))
    for name, raw in environ.items():
        if not name.startswith(prefix) or "__" not in name:
            continue
        path = [part.lower() for part in name[len(prefix) :].split("__") if part]
        if not path:
            continue
        cursor = result
        for part in path[:-1]:
            if not isinstance(cursor.get(part), dict):
                cursor[part] = {}
            cursor = cursor[part]
        cursor[path[-1]] = yaml.safe_load(raw) if raw else raw
    return result


def load_pipeline_config(
    path: Optional[str | pathlib.Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Built-in defaults, overlaid with the YAML file at ``path`` and then the environment."""
    config = DEFAULT_CONFIG
    if path is not None:
        config = merge_config(config, load_config(path))
    return apply_env_overrides(config, environ)

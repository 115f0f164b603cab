"""Tabular import/export of dictionary entities (CSV, TSV or Parquet)."""
from __future__ import annotations

import json
import pathlib
from typing import Any, Dict, Iterable, List, Mapping

import polars as pl  # type: ignore[import-not-found]

from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

LIST_SEPARATOR = "|"
COLUMNS = (
    "entity_type",
    "canonical_name",
    "entity_id",
    "confidence_score",
    "source",
    "description",
    "category",
    "tags",
    "aliases",
    "metadata",
)


def _split(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    return [part.strip() for part in str(value).split(LIST_SEPARATOR) if part.strip()]


def _join(value: Any) -> str:
    return LIST_SEPARATOR.join(_split(value))


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def read_dictionary_table(path: str | pathlib.Path) -> List[Dict[str, Any]]:
    """Rows as bulk-import records; list cells are split on ``|`` and blanks dropped."""
    table_path = pathlib.Path(path)
    if not table_path.exists():
        raise FileNotFoundError(f"Dictionary file not found: {table_path}")
    suffix = table_path.suffix.lower()
    if suffix == ".parquet":
        frame = pl.read_parquet(table_path)
    else:
        frame = pl.read_csv(
            table_path,
            separator="\t" if suffix == ".tsv" else ",",
            infer_schema_length=0,
        )

    records: List[Dict[str, Any]] = []
    for row in frame.iter_rows(named=True):
        record: Dict[str, Any] = {}
        for key, value in row.items():
            if _blank(value):
                continue
            if key in ("aliases", "tags"):
                record[key] = _split(value)
            elif key == "confidence_score":
                record[key] = float(value)
            elif key == "metadata":
                record[key] = json.loads(value) if isinstance(value, str) else value
            else:
                record[key] = value
        records.append(record)
    LOGGER.info("Read %s dictionary rows from %s", len(records), table_path)
    return records


def write_dictionary_table(path: str | pathlib.Path, rows: Iterable[Mapping[str, Any]]) -> pathlib.Path:
    """Write exported entity rows; lists become ``|``-joined cells and metadata a JSON string."""
    table_path = pathlib.Path(path)
    table_path.parent.mkdir(parents=True, exist_ok=True)
    columns: Dict[str, List[Any]] = {column: [] for column in COLUMNS}
    for row in rows:
        columns["entity_type"].append(row.get("entity_type"))
        columns["canonical_name"].append(row.get("canonical_name"))
        columns["entity_id"].append(row.get("entity_id"))
        columns["confidence_score"].append(float(row.get("confidence_score") or 0.0))
        columns["source"].append(row.get("source"))
        columns["description"].append(row.get("description"))
        columns["category"].append(row.get("category"))
        columns["tags"].append(_join(row.get("tags")))
        columns["aliases"].append(_join(row.get("aliases")))
        columns["metadata"].append(json.dumps(row.get("metadata") or {}, default=str, sort_keys=True))

    frame = pl.DataFrame(
        columns,
        schema={column: (pl.Float64 if column == "confidence_score" else pl.Utf8) for column in COLUMNS},
    )
    suffix = table_path.suffix.lower()
    if suffix == ".parquet":
        frame.write_parquet(table_path)
    else:
        frame.write_csv(table_path, separator="\t" if suffix == ".tsv" else ",")
    LOGGER.info("Wrote %s dictionary rows to %s", frame.height, table_path)
    return table_path

"""Load posts or pre-split segments from CSV/TSV, JSON Lines or Parquet into the segment store."""
from __future__ import annotations

import pathlib
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

import polars as pl  # type: ignore[import-not-found]
from bs4 import BeautifulSoup  # type: ignore[import-not-found]

from .models import Dataset, Document, DocumentSegment
from .segment_store import InMemorySegmentStore
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)


@dataclass(slots=True)
class SegmentSourceConfig:
    """Describes which columns hold the text, grouping and metadata of each row."""

    path: str | pathlib.Path
    text_column: str = "content"
    document_column: Optional[str] = "document_id"
    title_column: Optional[str] = "title"
    metadata_columns: List[str] = field(default_factory=lambda: ["platform", "author", "date", "engagement"])
    separator: str = ","
    encoding: str = "utf8"
    limit: Optional[int] = None


def html_to_text(value: str) -> str:
    """Reduce an HTML fragment to whitespace-normalized text; plain text passes through."""
    if "<" not in value or ">" not in value:
        return value.strip()
    soup = BeautifulSoup(value, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return " ".join(soup.get_text(" ", strip=True).split())


class SegmentLoader:
    def __init__(self, config: SegmentSourceConfig) -> None:
        self.config = config

    def iter_rows(self) -> Iterator[Dict[str, object]]:
        table = self._read_table()
        if table is None or table.height == 0:
            LOGGER.warning("Segment source %s produced no rows", self.config.path)
            return
        if self.config.text_column not in table.columns:
            raise ValueError(
                f"Column {self.config.text_column!r} missing from {self.config.path}; found {table.columns}"
            )
        if self.config.limit:
            table = table.head(self.config.limit)
        yield from table.iter_rows(named=True)

    def load_into(self, store: InMemorySegmentStore, dataset: Dataset) -> List[Document]:
        """Create one document per distinct document key (or per row) with ordered segments."""
        if _safe_dataset(store, dataset.id) is None:
            store.add_dataset(dataset)

        documents: Dict[str, Document] = {}
        positions: Dict[str, int] = {}
        segments: List[DocumentSegment] = []
        for index, row in enumerate(self.iter_rows()):
            text = html_to_text(str(row.get(self.config.text_column) or ""))
            if not text:
                continue
            key = self._document_key(row, index)
            document = documents.get(key)
            if document is None:
                title = row.get(self.config.title_column) if self.config.title_column else None
                document = Document(
                    dataset_id=dataset.id,
                    title=str(title) if title else key,
                    metadata={"source_key": key, "source_path": str(self.config.path)},
                )
                store.add_document(document)
                documents[key] = document
            metadata = {
                column: row[column]
                for column in self.config.metadata_columns
                if column in row and row[column] not in (None, "")
            }
            position = positions.get(key, 0)
            positions[key] = position + 1
            segments.append(
                DocumentSegment(
                    document_id=document.id,
                    dataset_id=dataset.id,
                    content=text,
                    position=position,
                    metadata=metadata,
                )
            )
        store.add_segments(segments)
        LOGGER.info(
            "Loaded %s segments in %s documents from %s",
            len(segments),
            len(documents),
            self.config.path,
        )
        return list(documents.values())

    def _document_key(self, row: Dict[str, object], index: int) -> str:
        column = self.config.document_column
        if column and row.get(column) not in (None, ""):
            return str(row[column])
        return f"row-{index}"

    def _read_table(self) -> Optional[pl.DataFrame]:
        path = pathlib.Path(self.config.path)
        if not path.exists():
            LOGGER.warning("Segment source path %s does not exist", path)
            return None
        suffix = path.suffix.lower()
        if suffix in {".jsonl", ".ndjson"}:
            return pl.read_ndjson(path)
        if suffix == ".parquet":
            return pl.read_parquet(path)
        separator = "\t" if suffix == ".tsv" else self.config.separator
        return pl.read_csv(
            path,
            separator=separator,
            encoding=self.config.encoding,
            infer_schema_length=0,
            truncate_ragged_lines=True,
        )


def _safe_dataset(store: InMemorySegmentStore, dataset_id: str) -> Optional[Dataset]:
    try:
        return store.get_dataset(dataset_id)
    except LookupError:
        return None

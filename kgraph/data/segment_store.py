"""Datasets, documents and segments plus the segment status marker."""
from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional

from .models import Dataset, Document, DocumentSegment, SegmentStatus
from ..errors import NotFoundError
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)


class InMemorySegmentStore:
    """Keeps documents and their segments; ``set_status`` is the resume marker for extraction."""

    def __init__(self) -> None:
        self._datasets: Dict[str, Dataset] = {}
        self._documents: Dict[str, Document] = {}
        self._segments: Dict[str, DocumentSegment] = {}
        self._lock = threading.RLock()

    def add_dataset(self, dataset: Dataset) -> Dataset:
        with self._lock:
            self._datasets[dataset.id] = dataset
        return dataset

    def get_dataset(self, dataset_id: str) -> Dataset:
        dataset = self._datasets.get(dataset_id)
        if dataset is None:
            raise NotFoundError("dataset", dataset_id)
        return dataset

    def add_document(self, document: Document) -> Document:
        with self._lock:
            if document.dataset_id not in self._datasets:
                raise NotFoundError("dataset", document.dataset_id)
            self._documents[document.id] = document
        return document

    def get_document(self, document_id: str) -> Document:
        document = self._documents.get(document_id)
        if document is None:
            raise NotFoundError("document", document_id)
        return document

    def documents_for_dataset(self, dataset_id: str) -> List[Document]:
        with self._lock:
            return [doc for doc in self._documents.values() if doc.dataset_id == dataset_id]

    def add_segments(self, segments: Iterable[DocumentSegment]) -> List[DocumentSegment]:
        added = []
        with self._lock:
            for segment in segments:
                if segment.document_id not in self._documents:
                    raise NotFoundError("document", segment.document_id)
                self._segments[segment.id] = segment
                added.append(segment)
        return added

    def get_segment(self, segment_id: str) -> DocumentSegment:
        segment = self._segments.get(segment_id)
        if segment is None:
            raise NotFoundError("segment", segment_id)
        return segment

    def segments_for_document(
        self,
        document_id: str,
        statuses: Optional[Iterable[SegmentStatus]] = None,
    ) -> List[DocumentSegment]:
        allowed = set(statuses) if statuses is not None else None
        with self._lock:
            segments = [
                segment
                for segment in self._segments.values()
                if segment.document_id == document_id
                and (allowed is None or segment.status in allowed)
            ]
        return sorted(segments, key=lambda segment: segment.position)

    def set_status(self, segment_id: str, status: SegmentStatus, error: Optional[str] = None) -> None:
        with self._lock:
            segment = self.get_segment(segment_id)
            segment.status = status
            segment.error = error if status == SegmentStatus.ERROR else None
        LOGGER.debug("Segment %s -> %s", segment_id, status.value)

    def claim(self, segment_id: str) -> bool:
        """Move a segment to ``processing`` unless another run already holds it."""
        with self._lock:
            segment = self.get_segment(segment_id)
            if segment.status == SegmentStatus.PROCESSING:
                return False
            segment.status = SegmentStatus.PROCESSING
            segment.error = None
        LOGGER.debug("Segment %s claimed", segment_id)
        return True

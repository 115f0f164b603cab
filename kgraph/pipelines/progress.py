"""Fire-and-forget progress events emitted while extraction runs."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from ..data.models import utcnow
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)


class ProgressStage(str, Enum):
    STARTED = "started"
    PROCESSING_SEGMENT = "processing_segment"
    LLM_CALL = "llm_call"
    CREATING_NODES = "creating_nodes"
    CREATING_EDGES = "creating_edges"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(slots=True)
class ProgressEvent:
    stage: ProgressStage
    dataset_id: str
    message: str = ""
    document_id: Optional[str] = None
    segment_id: Optional[str] = None
    counts: Dict[str, int] = field(default_factory=dict)
    timestamp: Any = field(default_factory=utcnow)


class ProgressSink(Protocol):
    def publish(self, event: ProgressEvent) -> None: ...


class LoggingProgressSink:
    """Writes events to the log; stands in when no delivery channel is wired up."""

    def publish(self, event: ProgressEvent) -> None:
        LOGGER.debug(
            "[%s] dataset=%s document=%s segment=%s %s %s",
            event.stage.value,
            event.dataset_id,
            event.document_id,
            event.segment_id,
            event.message,
            event.counts,
        )


class RecordingProgressSink:
    """Keeps every event in memory."""

    def __init__(self) -> None:
        self.events: List[ProgressEvent] = []

    def publish(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def stages(self) -> List[str]:
        return [event.stage.value for event in self.events]


def emit(sink: Optional[ProgressSink], event: ProgressEvent) -> None:
    """Publish without letting a sink failure reach the caller."""
    if sink is None:
        return
    try:
        sink.publish(event)
    except Exception as exc:
        LOGGER.warning("Progress sink failed on %s event: %s", event.stage.value, exc)

"""Exception taxonomy shared by the extraction, dictionary and graph components."""
from __future__ import annotations

from typing import Any, Optional


class KGraphError(Exception):
    """Base class for all errors raised by the package."""

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": type(self).__name__, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ConfigurationError(KGraphError):
    """Missing or invalid configuration; aborts a batch before any LLM call."""


class NotFoundError(KGraphError, LookupError):
    """A prompt, provider, node or entity required by an operation does not exist."""

    def __init__(self, kind: str, identifier: Any, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"{kind} not found: {identifier}",
            details={"kind": kind, "id": identifier},
        )
        self.kind = kind
        self.identifier = identifier


class ParseError(KGraphError, ValueError):
    """LLM output could not be decoded into nodes and edges."""


class ConflictError(KGraphError):
    """A create would violate a uniqueness rule."""


class MergeFailure(KGraphError):
    """A node merge could not be applied; the store was left untouched."""

    def __init__(self, target_id: str, source_ids: list[str], reason: str) -> None:
        super().__init__(
            f"Failed to merge {source_ids} into {target_id}: {reason}",
            details={"target_id": target_id, "source_ids": list(source_ids)},
        )
        self.target_id = target_id
        self.source_ids = list(source_ids)
        self.reason = reason

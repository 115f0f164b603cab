"""LLM-driven knowledge graph extraction, normalization and querying."""
from __future__ import annotations

__version__ = "0.3.0"

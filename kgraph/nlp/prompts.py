"""Extraction prompts, content-type driven prompt selection and template rendering."""
from __future__ import annotations

import pathlib
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..data.models import Dataset, Document, EdgeType, NodeType
from ..errors import NotFoundError
from ..utils.config import load_config
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

DEFAULT_CONTENT_TYPE = "document"
DOCUMENT_PROMPT_ID = "document-graph-extraction"
SOCIAL_MEDIA_PROMPT_ID = "social-media-graph-extraction"

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")

CONTENT_TYPE_KEYWORDS: Dict[str, tuple[str, ...]] = {
    "social_media": ("social", "twitter", "facebook", "instagram", "tiktok", "reddit"),
    "news": ("news", "article"),
    "academic": ("academic", "research", "paper"),
    "legal": ("legal", "contract", "law"),
    "medical": ("medical", "health", "clinical"),
    "financial": ("financial", "finance", "banking"),
}

NODE_TYPES_BY_CONTENT: Dict[str, List[str]] = {
    "social_media": [node_type.value for node_type in NodeType],
    "news": ["author", "organization", "topic", "location", "event", "product"],
    "academic": ["author", "organization", "topic", "event"],
    "legal": ["author", "organization", "topic", "location", "event"],
    "medical": ["author", "organization", "topic", "product", "event"],
    "financial": ["organization", "brand", "product", "topic", "event", "location"],
    DEFAULT_CONTENT_TYPE: ["author", "organization", "topic", "location", "event", "product"],
}

EDGE_TYPES_BY_CONTENT: Dict[str, List[str]] = {
    "social_media": [edge_type.value for edge_type in EdgeType],
    "news": ["mentions", "discusses", "related_to", "located_in", "part_of", "influences", "competes_with", "collaborates"],
    "academic": ["related_to", "part_of", "influences", "discusses", "collaborates"],
    "legal": ["related_to", "part_of", "mentions", "influences"],
    "medical": ["related_to", "part_of", "interacts_with", "influences"],
    "financial": ["related_to", "part_of", "competes_with", "collaborates", "influences", "located_in"],
    DEFAULT_CONTENT_TYPE: [
        "mentions",
        "related_to",
        "part_of",
        "located_in",
        "influences",
        "discusses",
        "collaborates",
        "competes_with",
    ],
}

EXTRACTION_JSON_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "nodes": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string"},
                    "type": {"type": "string", "enum": [node_type.value for node_type in NodeType]},
                    "label": {"type": "string"},
                    "properties": {"type": "object"},
                },
                "required": ["type", "label"],
            },
        },
        "edges": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "from": {"type": "string"},
                    "to": {"type": "string"},
                    "type": {"type": "string", "enum": [edge_type.value for edge_type in EdgeType]},
                    "weight": {"type": "number", "minimum": 0, "maximum": 1},
                    "properties": {"type": "object"},
                },
                "required": ["from", "to", "type"],
            },
        },
    },
    "required": ["nodes", "edges"],
}

_SYSTEM_PROMPT = (
    "You are an information extraction engine that builds knowledge graphs. "
    "Return only JSON with a `nodes` array and an `edges` array. Each node has "
    "`type`, `label` and optional `properties` (confidence between 0 and 1, "
    "sentiment_score between -1 and 1). Each edge has `from` and `to` node labels, "
    "a `type`, a `weight` between 0 and 1 and optional `properties`."
)


@dataclass(slots=True)
class Prompt:
    id: str
    name: str
    system_prompt: str
    user_prompt_template: str
    json_schema: Optional[Dict[str, Any]] = None
    content_types: List[str] = field(default_factory=list)
    is_active: bool = True


def default_prompts() -> List[Prompt]:
    return [
        Prompt(
            id=DOCUMENT_PROMPT_ID,
            name="Document Graph Extraction",
            system_prompt=_SYSTEM_PROMPT,
            user_prompt_template=(
                "Extract the entities and relationships from the following text.\n"
                "Allowed node types: {{node_types}}.\n"
                "Allowed edge types: {{edge_types}}.\n\n"
                "Text:\n{{content}}"
            ),
            json_schema=EXTRACTION_JSON_SCHEMA,
            content_types=["document", "news", "academic", "legal", "medical", "financial"],
        ),
        Prompt(
            id=SOCIAL_MEDIA_PROMPT_ID,
            name="Social Media Graph Extraction",
            system_prompt=_SYSTEM_PROMPT,
            user_prompt_template=(
                "Extract brands, products, people, topics, hashtags and their relationships "
                "from this social media post. Capture sentiment toward brands and products.\n"
                "Allowed node types: {{node_types}}.\n"
                "Allowed edge types: {{edge_types}}.\n\n"
                "Platform: {{platform}}\nAuthor: {{author}}\nDate: {{date}}\n"
                "Engagement: {{engagement}}\n\nPost:\n{{content}}"
            ),
            json_schema=EXTRACTION_JSON_SCHEMA,
            content_types=["social_media"],
        ),
    ]


def render_prompt(template: str, values: Mapping[str, Any]) -> str:
    """Replace every ``{{name}}`` placeholder present in ``values``; others are left as is."""

    def _substitute(match: re.Match) -> str:
        key = match.group(1)
        if key not in values:
            return match.group(0)
        value = values[key]
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_substitute, template)


def determine_content_type(dataset: Dataset, document: Optional[Document] = None) -> str:
    """Content type hint from document metadata, dataset metadata, then dataset name keywords."""
    if document is not None:
        hint = document.metadata.get("content_type") or document.metadata.get("data_source_type")
        if hint:
            return str(hint).lower()
    hint = dataset.metadata.get("content_type")
    if hint:
        return str(hint).lower()
    name = (dataset.name or "").lower()
    for content_type, keywords in CONTENT_TYPE_KEYWORDS.items():
        if any(keyword in name for keyword in keywords):
            return content_type
    return DEFAULT_CONTENT_TYPE


class PromptCatalog:
    """In-memory prompt registry; starts with the built-in prompts."""

    def __init__(self, prompts: Optional[Iterable[Prompt]] = None, include_defaults: bool = True) -> None:
        self._prompts: Dict[str, Prompt] = {}
        if include_defaults:
            for prompt in default_prompts():
                self.register(prompt)
        for prompt in prompts or []:
            self.register(prompt)

    @classmethod
    def from_yaml(cls, path: str | pathlib.Path) -> "PromptCatalog":
        """Load extra prompts from a YAML file with a top-level ``prompts`` list."""
        config = load_config(path)
        prompts = [
            Prompt(
                id=entry["id"],
                name=entry.get("name", entry["id"]),
                system_prompt=entry.get("system_prompt", _SYSTEM_PROMPT),
                user_prompt_template=entry["user_prompt_template"],
                json_schema=entry.get("json_schema", EXTRACTION_JSON_SCHEMA),
                content_types=list(entry.get("content_types", [])),
                is_active=entry.get("is_active", True),
            )
            for entry in config.get("prompts", [])
        ]
        LOGGER.info("Loaded %s prompts from %s", len(prompts), path)
        return cls(prompts)

    def register(self, prompt: Prompt) -> None:
        self._prompts[prompt.id] = prompt

    def get(self, prompt_id: str) -> Prompt:
        prompt = self._prompts.get(prompt_id)
        if prompt is None or not prompt.is_active:
            raise NotFoundError("prompt", prompt_id)
        return prompt

    def find_by_content_type(self, content_type: str) -> Optional[Prompt]:
        for prompt in self._prompts.values():
            if prompt.is_active and content_type in prompt.content_types:
                return prompt
        return None

    def default(self) -> Prompt:
        return self.get(DOCUMENT_PROMPT_ID)


class PromptSelector:
    def __init__(self, catalog: Optional[PromptCatalog] = None) -> None:
        self.catalog = catalog or PromptCatalog()

    def select(self, dataset: Dataset, document: Optional[Document] = None) -> Prompt:
        content_type = determine_content_type(dataset, document)
        prompt = self.catalog.find_by_content_type(content_type)
        if prompt is None:
            LOGGER.warning("No prompt for content type %s; using default", content_type)
            return self.catalog.default()
        LOGGER.debug("Selected prompt %s for content type %s", prompt.name, content_type)
        return prompt

    @staticmethod
    def available_node_types(content_type: str) -> List[str]:
        return list(NODE_TYPES_BY_CONTENT.get(content_type, NODE_TYPES_BY_CONTENT[DEFAULT_CONTENT_TYPE]))

    @staticmethod
    def available_edge_types(content_type: str) -> List[str]:
        return list(EDGE_TYPES_BY_CONTENT.get(content_type, EDGE_TYPES_BY_CONTENT[DEFAULT_CONTENT_TYPE]))

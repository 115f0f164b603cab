"""Decode raw LLM extraction output into typed nodes and edges.

JSON is looked for in a fenced code block first, then as the first bare
object or array in the text. Trailing commas are repaired. When no JSON can
be recovered a heuristic parser reads section headers and bullet lists; its
output is tagged ``structured_text`` and carries reduced confidence.
"""
from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .type_mapping import EDGE_TYPE_SYNONYMS, map_edge_type, map_node_type, normalize_type_key
from ..data.models import EdgeType, ExtractedEdge, ExtractedNode, ExtractionResult, NodeType
from ..errors import ParseError
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

STRUCTURED_NODE_CONFIDENCE = 0.8
STRUCTURED_IMPLIED_NODE_CONFIDENCE = 0.5
STRUCTURED_EDGE_CONFIDENCE = 0.7

_FENCED_BLOCK = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)\s*```")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_HEADER = re.compile(r"^(?:#{1,6}\s*)?(?:\*\*|__)?\s*([A-Za-z][A-Za-z &/-]*?)\s*:?\s*(?:\*\*|__)?\s*:?\s*$")
_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.+?)\s*$")
_ARROW = re.compile(r"^(.+?)\s*(?:->|→|=>)\s*(.+?)\s*(?:[:(]\s*([^)]*?)\s*\)?)?$")
_PARENTHESISED = re.compile(r"^(.+?)\s*\((.+?)\)\s*$")

_SECTION_KEYWORDS: Tuple[Tuple[str, str], ...] = (
    ("relationship", "relationships"),
    ("relation", "relationships"),
    ("interaction", "relationships"),
    ("connection", "relationships"),
    ("influencer", NodeType.INFLUENCER.value),
    ("hashtag", NodeType.HASHTAG.value),
    ("brand", NodeType.BRAND.value),
    ("product", NodeType.PRODUCT.value),
    ("service", NodeType.PRODUCT.value),
    ("topic", NodeType.TOPIC.value),
    ("theme", NodeType.TOPIC.value),
    ("location", NodeType.LOCATION.value),
    ("place", NodeType.LOCATION.value),
    ("event", NodeType.EVENT.value),
    ("user", NodeType.AUTHOR.value),
    ("author", NodeType.AUTHOR.value),
    ("people", NodeType.AUTHOR.value),
    ("person", NodeType.AUTHOR.value),
    ("bank", NodeType.ORGANIZATION.value),
    ("compan", NodeType.ORGANIZATION.value),
    ("organi", NodeType.ORGANIZATION.value),
    ("institution", NodeType.ORGANIZATION.value),
    ("entit", NodeType.ORGANIZATION.value),
)


def repair_json(text: str) -> str:
    """Strip a BOM and trailing commas before closing brackets."""
    return _TRAILING_COMMA.sub(r"\1", text.strip().lstrip("\ufeff"))


def _decode_at(text: str, start: int) -> Optional[Any]:
    decoder = json.JSONDecoder()
    try:
        value, _ = decoder.raw_decode(text, start)
        return value
    except json.JSONDecodeError:
        pass
    closing = "}" if text[start] == "{" else "]"
    end = text.rfind(closing)
    if end <= start:
        return None
    try:
        return json.loads(repair_json(text[start : end + 1]))
    except json.JSONDecodeError:
        return None


def _decode_span(text: str, opening: str, closing: str) -> Optional[Any]:
    start = text.find(opening)
    end = text.rfind(closing)
    if start < 0 or end <= start:
        return None
    candidate = text[start : end + 1]
    for attempt in (candidate, repair_json(candidate)):
        try:
            return json.loads(attempt)
        except json.JSONDecodeError:
            continue
    return None


def _usable(value: Any) -> bool:
    if isinstance(value, dict):
        return True
    return isinstance(value, list) and any(isinstance(item, dict) for item in value)


def extract_json_payload(text: str) -> Optional[Any]:
    """Return the decoded JSON object or array embedded in ``text``, if any.

    Candidates in order: fenced blocks, the widest ``{...}`` span, the widest
    ``[...]`` span, then the first object or array that decodes on its own.
    A list without any objects in it (``[1]``, ``[]``) is not accepted.
    """
    if not text:
        return None
    for block in _FENCED_BLOCK.findall(text):
        block = block.strip()
        if block and block[0] in "{[":
            value = _decode_at(block, 0)
            if _usable(value):
                LOGGER.debug("Decoded JSON from fenced block")
                return value

    candidates = (
        _decode_span(text, "{", "}"),
        _decode_span(text, "[", "]"),
        _decode_at(text, text.find("{")) if "{" in text else None,
        _decode_at(text, text.find("[")) if "[" in text else None,
    )
    for value in candidates:
        if _usable(value):
            return value
    return None


def parse_extraction_response(text: str, *, allow_structured_text: bool = True) -> ExtractionResult:
    """Parse LLM output into an :class:`ExtractionResult` or raise :class:`ParseError`."""
    payload = extract_json_payload(text)
    if payload is not None:
        result = payload_to_result(payload)
        LOGGER.debug("Parsed %s nodes and %s edges from JSON", len(result.nodes), len(result.edges))
        return result
    if allow_structured_text:
        result = parse_structured_text(text)
        if result is not None:
            LOGGER.info(
                "Recovered %s nodes and %s edges from structured text", len(result.nodes), len(result.edges)
            )
            return result
    preview = (text or "").strip()[:200]
    raise ParseError("LLM response contains no decodable nodes or edges", details={"preview": preview})


def payload_to_result(payload: Any) -> ExtractionResult:
    """Accept ``{nodes, edges}``, ``{entities, relationships}`` or a bare list."""
    if isinstance(payload, list):
        if len(payload) == 1 and isinstance(payload[0], dict) and _is_graph_container(payload[0]):
            return payload_to_result(payload[0])
        nodes_raw = [item for item in payload if isinstance(item, dict) and not _looks_like_edge(item)]
        edges_raw = [item for item in payload if isinstance(item, dict) and _looks_like_edge(item)]
        return _build_result(nodes_raw, edges_raw, {})
    if not isinstance(payload, dict):
        raise ParseError(f"Unsupported extraction payload of type {type(payload).__name__}")

    if "nodes" in payload or "edges" in payload:
        return _build_result(_as_list(payload.get("nodes")), _as_list(payload.get("edges")), {})
    if "entities" in payload or "relationships" in payload or "relations" in payload:
        entities = _as_list(payload.get("entities"))
        relationships = _as_list(payload.get("relationships") or payload.get("relations"))
        id_to_label = {
            str(entity["id"]): _node_label(entity)
            for entity in entities
            if isinstance(entity, dict) and entity.get("id") is not None and _node_label(entity)
        }
        return _build_result(entities, relationships, id_to_label)
    if _looks_like_edge(payload):
        return _build_result([], [payload], {})
    if _node_label(payload):
        return _build_result([payload], [], {})
    raise ParseError("JSON payload has neither nodes/edges nor entities/relationships")


def parse_structured_text(text: str) -> Optional[ExtractionResult]:
    """Last-resort reader for markdown-ish answers with section headers and bullets."""
    nodes: Dict[str, ExtractedNode] = {}
    edges: List[ExtractedEdge] = []
    section: Optional[str] = None

    for raw_line in (text or "").splitlines():
        line = raw_line.strip()
        if not line:
            continue
        bullet = _BULLET.match(line)
        if bullet is None:
            header = _HEADER.match(line)
            if header:
                section = _section_for(header.group(1))
            continue
        item = bullet.group(1).replace("**", "").strip()
        if section is None or not item:
            continue
        if section == "relationships":
            edges.extend(_structured_edges(item, nodes))
            continue
        match = _PARENTHESISED.match(item)
        label, description = (match.group(1), match.group(2)) if match else (item, None)
        label = label.strip(" :")
        if not label or label in nodes:
            continue
        properties: Dict[str, Any] = {"confidence": STRUCTURED_NODE_CONFIDENCE}
        if description:
            properties["description"] = description.strip()
        nodes[label] = ExtractedNode(label=label, node_type=section, properties=properties)

    if not nodes:
        return None
    return ExtractionResult(nodes=list(nodes.values()), edges=edges, extraction_method="structured_text")


def _structured_edges(item: str, nodes: Dict[str, ExtractedNode]) -> List[ExtractedEdge]:
    arrow = _ARROW.match(item)
    if arrow:
        pairs = [(arrow.group(1).strip(), arrow.group(2).strip())]
        qualifier = (arrow.group(3) or "").strip()
    else:
        match = _PARENTHESISED.match(item)
        if match is None:
            return []
        labels = [label.strip() for label in match.group(1).split(",") if label.strip()]
        pairs = [(labels[i], labels[j]) for i in range(len(labels)) for j in range(i + 1, len(labels))]
        qualifier = match.group(2).strip()

    edge_type = _known_edge_type(qualifier)
    edges = []
    for source, target in pairs:
        for label in (source, target):
            if label not in nodes:
                nodes[label] = ExtractedNode(
                    label=label,
                    node_type=NodeType.ORGANIZATION.value,
                    properties={"confidence": STRUCTURED_IMPLIED_NODE_CONFIDENCE},
                )
        properties: Dict[str, Any] = {"confidence": STRUCTURED_EDGE_CONFIDENCE}
        if qualifier:
            properties["context"] = qualifier
        edges.append(ExtractedEdge(source=source, target=target, edge_type=edge_type.value, properties=properties))
    return edges


def _known_edge_type(qualifier: str) -> EdgeType:
    key = normalize_type_key(qualifier)
    try:
        return EdgeType(key)
    except ValueError:
        pass
    return EDGE_TYPE_SYNONYMS.get(key, EdgeType.RELATED_TO)


def _section_for(title: str) -> Optional[str]:
    lowered = title.lower()
    for keyword, section in _SECTION_KEYWORDS:
        if keyword in lowered:
            return section
    return None


def _is_graph_container(value: Dict[str, Any]) -> bool:
    return any(key in value for key in ("nodes", "edges", "entities", "relationships"))


def _looks_like_edge(item: Dict[str, Any]) -> bool:
    has_source = any(key in item for key in ("from", "source", "sourceNodeLabel", "source_label", "source_id"))
    has_target = any(key in item for key in ("to", "target", "targetNodeLabel", "target_label", "target_id"))
    return has_source and has_target


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        return [value]
    raise ParseError(f"Expected a list of records, got {type(value).__name__}")


def _node_label(item: Dict[str, Any]) -> str:
    for key in ("label", "name", "canonical_name", "text", "id"):
        value = item.get(key)
        if isinstance(value, (str, int, float)) and str(value).strip():
            return str(value).strip()
    return ""


def _first(item: Dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        value = item.get(key)
        if value is not None and value != "":
            return value
    return None


def _coerce_weight(value: Any) -> float:
    if value is None:
        return 1.0
    try:
        weight = float(value)
    except (TypeError, ValueError):
        return 1.0
    return max(0.0, min(1.0, weight))


def _build_result(
    nodes_raw: List[Any],
    edges_raw: List[Any],
    id_to_label: Dict[str, str],
) -> ExtractionResult:
    nodes: List[ExtractedNode] = []
    for item in nodes_raw:
        if not isinstance(item, dict):
            continue
        label = _node_label(item)
        if not label:
            continue
        raw_type = _first(item, ("type", "node_type", "nodeType", "entity_type", "entityType"))
        properties = dict(item.get("properties") or {})
        for key in ("confidence", "sentiment_score", "normalized_name", "description"):
            if key in item and key not in properties:
                properties[key] = item[key]
        if item.get("id") is not None:
            properties.setdefault("original_id", item["id"])
        node_type = map_node_type(raw_type)
        if raw_type and normalize_type_key(raw_type) != node_type.value:
            properties.setdefault("original_type", raw_type)
        nodes.append(ExtractedNode(label=label, node_type=node_type.value, properties=properties))

    edges: List[ExtractedEdge] = []
    for item in edges_raw:
        if not isinstance(item, dict):
            continue
        source = _first(item, ("from", "source", "sourceNodeLabel", "source_label", "source_id"))
        target = _first(item, ("to", "target", "targetNodeLabel", "target_label", "target_id"))
        if source is None or target is None:
            continue
        source = id_to_label.get(str(source), str(source).strip())
        target = id_to_label.get(str(target), str(target).strip())
        if not source or not target:
            continue
        raw_type = _first(item, ("type", "edge_type", "edgeType", "relation", "relationship"))
        edge_type = map_edge_type(raw_type)
        properties = dict(item.get("properties") or {})
        for key in ("confidence", "sentiment", "sentiment_score", "context"):
            if key in item and key not in properties:
                properties[key] = item[key]
        if raw_type and normalize_type_key(raw_type) != edge_type.value:
            properties.setdefault("original_type", raw_type)
        edges.append(
            ExtractedEdge(
                source=source,
                target=target,
                edge_type=edge_type.value,
                weight=_coerce_weight(item.get("weight")),
                properties=properties,
            )
        )
    return ExtractionResult(nodes=nodes, edges=edges)

"""Map free-form LLM type strings onto the node and edge vocabularies."""
from __future__ import annotations

import re
from typing import Dict, Optional

from ..data.models import EdgeType, NodeType
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

DEFAULT_NODE_TYPE = NodeType.ORGANIZATION
DEFAULT_EDGE_TYPE = EdgeType.RELATED_TO

NODE_TYPE_SYNONYMS: Dict[str, NodeType] = {
    "person": NodeType.AUTHOR,
    "people": NodeType.AUTHOR,
    "user": NodeType.AUTHOR,
    "username": NodeType.AUTHOR,
    "account": NodeType.AUTHOR,
    "writer": NodeType.AUTHOR,
    "creator": NodeType.AUTHOR,
    "poster": NodeType.AUTHOR,
    "individual": NodeType.AUTHOR,
    "celebrity": NodeType.INFLUENCER,
    "kol": NodeType.INFLUENCER,
    "key_opinion_leader": NodeType.INFLUENCER,
    "company": NodeType.ORGANIZATION,
    "corporation": NodeType.ORGANIZATION,
    "org": NodeType.ORGANIZATION,
    "institution": NodeType.ORGANIZATION,
    "agency": NodeType.ORGANIZATION,
    "government": NodeType.ORGANIZATION,
    "bank": NodeType.ORGANIZATION,
    "business": NodeType.ORGANIZATION,
    "service": NodeType.ORGANIZATION,
    "team": NodeType.ORGANIZATION,
    "competitor": NodeType.BRAND,
    "trademark": NodeType.BRAND,
    "label": NodeType.BRAND,
    "item": NodeType.PRODUCT,
    "goods": NodeType.PRODUCT,
    "merchandise": NodeType.PRODUCT,
    "model": NodeType.PRODUCT,
    "device": NodeType.PRODUCT,
    "app": NodeType.PRODUCT,
    "software": NodeType.PRODUCT,
    "credit_card": NodeType.PRODUCT,
    "drug": NodeType.PRODUCT,
    "subject": NodeType.TOPIC,
    "theme": NodeType.TOPIC,
    "concept": NodeType.TOPIC,
    "keyword": NodeType.TOPIC,
    "issue": NodeType.TOPIC,
    "category": NodeType.TOPIC,
    "tag": NodeType.HASHTAG,
    "hash_tag": NodeType.HASHTAG,
    "place": NodeType.LOCATION,
    "city": NodeType.LOCATION,
    "country": NodeType.LOCATION,
    "region": NodeType.LOCATION,
    "address": NodeType.LOCATION,
    "venue": NodeType.LOCATION,
    "gpe": NodeType.LOCATION,
    "loc": NodeType.LOCATION,
    "campaign": NodeType.EVENT,
    "launch": NodeType.EVENT,
    "promotion": NodeType.EVENT,
    "conference": NodeType.EVENT,
    "incident": NodeType.EVENT,
    "meeting": NodeType.EVENT,
}

EDGE_TYPE_SYNONYMS: Dict[str, EdgeType] = {
    "mention": EdgeType.MENTIONS,
    "mentioned": EdgeType.MENTIONS,
    "refers_to": EdgeType.MENTIONS,
    "tags": EdgeType.MENTIONS,
    "likes": EdgeType.SENTIMENT,
    "dislikes": EdgeType.SENTIMENT,
    "loves": EdgeType.SENTIMENT,
    "hates": EdgeType.SENTIMENT,
    "praises": EdgeType.SENTIMENT,
    "criticizes": EdgeType.SENTIMENT,
    "has_sentiment": EdgeType.SENTIMENT,
    "sentiment_towards": EdgeType.SENTIMENT,
    "interacts": EdgeType.INTERACTS_WITH,
    "replies_to": EdgeType.INTERACTS_WITH,
    "retweets": EdgeType.INTERACTS_WITH,
    "comments_on": EdgeType.INTERACTS_WITH,
    "competes": EdgeType.COMPETES_WITH,
    "competitor_of": EdgeType.COMPETES_WITH,
    "rivals": EdgeType.COMPETES_WITH,
    "talks_about": EdgeType.DISCUSSES,
    "discuss": EdgeType.DISCUSSES,
    "about": EdgeType.DISCUSSES,
    "reviews": EdgeType.DISCUSSES,
    "shares": EdgeType.SHARES_TOPIC,
    "follow": EdgeType.FOLLOWS,
    "subscribes_to": EdgeType.FOLLOWS,
    "collaborates_with": EdgeType.COLLABORATES,
    "partners_with": EdgeType.COLLABORATES,
    "partnership": EdgeType.COLLABORATES,
    "works_with": EdgeType.COLLABORATES,
    "sponsors": EdgeType.COLLABORATES,
    "influence": EdgeType.INFLUENCES,
    "endorses": EdgeType.INFLUENCES,
    "promotes": EdgeType.INFLUENCES,
    "affects": EdgeType.INFLUENCES,
    "located_at": EdgeType.LOCATED_IN,
    "based_in": EdgeType.LOCATED_IN,
    "headquartered_in": EdgeType.LOCATED_IN,
    "lives_in": EdgeType.LOCATED_IN,
    "belongs_to": EdgeType.PART_OF,
    "member_of": EdgeType.PART_OF,
    "subsidiary_of": EdgeType.PART_OF,
    "owned_by": EdgeType.PART_OF,
    "works_for": EdgeType.PART_OF,
    "related": EdgeType.RELATED_TO,
    "associated_with": EdgeType.RELATED_TO,
    "offers": EdgeType.RELATED_TO,
    "sells": EdgeType.RELATED_TO,
    "produces": EdgeType.RELATED_TO,
    "uses": EdgeType.RELATED_TO,
    "used_for": EdgeType.RELATED_TO,
    "uses_hashtag": EdgeType.RELATED_TO,
}

_SEPARATORS = re.compile(r"[\s\-]+")


def normalize_type_key(value: Optional[str]) -> str:
    """``"Competes With"`` and ``"competes-with"`` both become ``"competes_with"``."""
    if value is None:
        return ""
    return _SEPARATORS.sub("_", str(value).strip().lower())


def map_node_type(value: Optional[str]) -> NodeType:
    key = normalize_type_key(value)
    try:
        return NodeType(key)
    except ValueError:
        pass
    mapped = NODE_TYPE_SYNONYMS.get(key)
    if mapped is None:
        LOGGER.warning("Unknown node type %r; using %s", value, DEFAULT_NODE_TYPE.value)
        return DEFAULT_NODE_TYPE
    return mapped


def map_edge_type(value: Optional[str]) -> EdgeType:
    key = normalize_type_key(value)
    try:
        return EdgeType(key)
    except ValueError:
        pass
    mapped = EDGE_TYPE_SYNONYMS.get(key)
    if mapped is None:
        LOGGER.warning("Unknown edge type %r; using %s", value, DEFAULT_EDGE_TYPE.value)
        return DEFAULT_EDGE_TYPE
    return mapped

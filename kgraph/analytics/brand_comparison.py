"""Side-by-side comparison of brand nodes: sentiment, mentions, engagement, topics and competitors."""
from __future__ import annotations

from collections import Counter, defaultdict
from datetime import datetime
from enum import Enum
from itertools import combinations
from typing import Any, DefaultDict, Dict, Iterable, List, Optional, Sequence, Set

from ..data.graph_store import GraphStore
from ..data.models import EdgeType, GraphEdge, GraphNode, NodeType, utcnow
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

NEUTRAL_SENTIMENT = 0.5
POSITIVE_ABOVE = 0.6
NEGATIVE_BELOW = 0.4
TREND_DELTA = 0.1
LOW_SENTIMENT = 0.4
LOW_ENGAGEMENT_RATE = 10.0
MARKET_POSITIONS = ((1000, "leader"), (500, "challenger"), (100, "follower"))


class ComparisonMetric(str, Enum):
    SENTIMENT = "sentiment"
    MENTION_VOLUME = "mention_volume"
    ENGAGEMENT = "engagement"
    TOPIC_ANALYSIS = "topic_analysis"
    MENTION_NETWORK = "mention_network"
    COMPETITIVE_LANDSCAPE = "competitive_landscape"
    TEMPORAL_TRENDS = "temporal_trends"


def _sentiment_score(edge: GraphEdge) -> float:
    value = edge.properties.get("sentiment_score")
    if value is None:
        return NEUTRAL_SENTIMENT
    try:
        return float(value)
    except (TypeError, ValueError):
        return NEUTRAL_SENTIMENT


def _interactions(edge: GraphEdge) -> int:
    try:
        return int(edge.properties.get("interaction_count") or 0)
    except (TypeError, ValueError):
        return 0


def sentiment_trend(edges: Sequence[GraphEdge]) -> str:
    """Compare the mean sentiment of the older and newer half of ``edges``."""
    if len(edges) < 2:
        return "stable"
    ordered = sorted(edges, key=lambda edge: edge.created_at)
    middle = len(ordered) // 2
    older = [_sentiment_score(edge) for edge in ordered[:middle]]
    newer = [_sentiment_score(edge) for edge in ordered[middle:]]
    delta = sum(newer) / len(newer) - sum(older) / len(older)
    if delta > TREND_DELTA:
        return "increasing"
    if delta < -TREND_DELTA:
        return "decreasing"
    return "stable"


def market_position(interaction_count: int) -> str:
    for floor, position in MARKET_POSITIONS:
        if interaction_count > floor:
            return position
    return "niche"


class BrandComparison:
    """Read-only brand comparisons over one dataset of a :class:`GraphStore`.

    Brands are matched by exact label among ``brand`` nodes; several nodes with
    the same label are aggregated. ``start``/``end`` restrict edges by their
    creation time.
    """

    def __init__(self, graph_store: GraphStore) -> None:
        self.graph_store = graph_store

    def compare_brands(
        self,
        dataset_id: str,
        brands: Sequence[str],
        metrics: Optional[Iterable[ComparisonMetric | str]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        requested = [ComparisonMetric(metric) for metric in (metrics or list(ComparisonMetric))]
        LOGGER.info("Comparing brands %s on %s", ", ".join(brands), ", ".join(m.value for m in requested))
        nodes = {brand: self._brand_nodes(dataset_id, brand) for brand in brands}
        missing = [brand for brand, found in nodes.items() if not found]
        if missing:
            LOGGER.warning("Brands without graph nodes in dataset %s: %s", dataset_id, ", ".join(missing))
        window = _Window(start, end)

        sections = {
            ComparisonMetric.SENTIMENT: lambda: self._sentiment(dataset_id, nodes, window),
            ComparisonMetric.MENTION_VOLUME: lambda: self._mention_volume(dataset_id, nodes, window),
            ComparisonMetric.ENGAGEMENT: lambda: self._engagement(dataset_id, nodes, window),
            ComparisonMetric.TOPIC_ANALYSIS: lambda: self._topics(dataset_id, nodes, window),
            ComparisonMetric.MENTION_NETWORK: lambda: self._mention_network(dataset_id, nodes, window),
            ComparisonMetric.COMPETITIVE_LANDSCAPE: lambda: self._competitors(dataset_id, nodes, window),
            ComparisonMetric.TEMPORAL_TRENDS: lambda: self._temporal_trends(dataset_id, nodes, window),
        }
        results = {metric.value: sections[metric]() for metric in requested}
        insights, recommendations = generate_insights(results)
        return {
            "brands": list(brands),
            "comparison_date": utcnow().isoformat(),
            "metrics": results,
            "summary": {
                "total_brands": len(brands),
                "missing_brands": missing,
                "analysis_period": window.describe(),
                "key_insights": insights,
                "recommendations": recommendations,
            },
        }

    # ----------------------------------------------------------------- sections
    def _sentiment(self, dataset_id, nodes, window) -> List[Dict[str, Any]]:
        results = []
        for brand, brand_nodes in nodes.items():
            if not brand_nodes:
                continue
            edges = self._incoming(dataset_id, brand_nodes, EdgeType.SENTIMENT, window)
            counts = Counter()
            total_score = 0.0
            for edge in edges:
                label = str(edge.properties.get("sentiment") or "").lower()
                score = _sentiment_score(edge)
                total_score += score
                if label == "positive" or score > POSITIVE_ABOVE:
                    counts["positive"] += 1
                elif label == "negative" or score < NEGATIVE_BELOW:
                    counts["negative"] += 1
                else:
                    counts["neutral"] += 1
            results.append(
                {
                    "brand": brand,
                    "positive": counts["positive"],
                    "negative": counts["negative"],
                    "neutral": counts["neutral"],
                    "total": len(edges),
                    "average_score": total_score / len(edges) if edges else NEUTRAL_SENTIMENT,
                    "trend": sentiment_trend(edges),
                }
            )
        return results

    def _mention_volume(self, dataset_id, nodes, window) -> List[Dict[str, Any]]:
        results = []
        for brand, brand_nodes in nodes.items():
            if not brand_nodes:
                continue
            edges = self._incoming(dataset_id, brand_nodes, EdgeType.MENTIONS, window)
            authors = {self._label(edge.source_node_id) for edge in edges}
            per_day = Counter(edge.created_at.date().isoformat() for edge in edges)
            peak_date, peak_mentions = max(sorted(per_day.items()), key=lambda item: item[1], default=(None, 0))
            results.append(
                {
                    "brand": brand,
                    "total_mentions": len(edges),
                    "unique_authors": len(authors),
                    "average_per_day": len(edges) / window.days(edges),
                    "peak_date": peak_date,
                    "peak_mentions": peak_mentions,
                }
            )
        return results

    def _engagement(self, dataset_id, nodes, window) -> List[Dict[str, Any]]:
        results = []
        for brand, brand_nodes in nodes.items():
            if not brand_nodes:
                continue
            edges = self._incoming(dataset_id, brand_nodes, EdgeType.INTERACTS_WITH, window)
            by_kind: Counter = Counter()
            total = 0
            top: Dict[str, Any] = {"context": "", "engagement": 0, "date": None}
            for edge in edges:
                count = _interactions(edge)
                total += count
                by_kind[str(edge.properties.get("type") or "other")] += count
                if count > top["engagement"]:
                    top = {
                        "context": edge.properties.get("context", ""),
                        "engagement": count,
                        "date": edge.created_at.isoformat(),
                    }
            results.append(
                {
                    "brand": brand,
                    "total_likes": by_kind["like"],
                    "total_shares": by_kind["share"],
                    "total_comments": by_kind["comment"],
                    "total_engagement": total,
                    "average_engagement_rate": total / len(edges) if edges else 0.0,
                    "top_interaction": top,
                }
            )
        return results

    def _topics(self, dataset_id, nodes, window) -> List[Dict[str, Any]]:
        per_brand: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for brand, brand_nodes in nodes.items():
            if not brand_nodes:
                continue
            topics: Dict[str, Dict[str, Any]] = {}
            for node in brand_nodes:
                edges = self.graph_store.find_edges(
                    dataset_id, source_node_id=node.id, edge_type=EdgeType.DISCUSSES.value
                )
                for edge in window.filter(edges):
                    topic = self._label(edge.target_node_id)
                    entry = topics.setdefault(topic, {"frequency": 0, "sentiment": 0.0, "documents": set()})
                    entry["frequency"] += 1
                    entry["sentiment"] += _sentiment_score(edge)
                    if edge.document_id:
                        entry["documents"].add(edge.document_id)
            per_brand[brand] = topics

        results = []
        for brand, topics in per_brand.items():
            others: Set[str] = set()
            for other, other_topics in per_brand.items():
                if other != brand:
                    others.update(other_topics)
            results.append(
                {
                    "brand": brand,
                    "topics": [
                        {
                            "topic": topic,
                            "frequency": entry["frequency"],
                            "sentiment": entry["sentiment"] / entry["frequency"],
                            "documents": len(entry["documents"]),
                        }
                        for topic, entry in sorted(topics.items(), key=lambda item: (-item[1]["frequency"], item[0]))
                    ],
                    "unique_topics": sorted(topic for topic in topics if topic not in others),
                    "shared_topics": sorted(topic for topic in topics if topic in others),
                }
            )
        return results

    def _mention_network(self, dataset_id, nodes, window) -> List[Dict[str, Any]]:
        mentioners: Dict[str, Dict[str, int]] = {}
        for brand, brand_nodes in nodes.items():
            if not brand_nodes:
                continue
            counts: DefaultDict[str, int] = defaultdict(int)
            for edge in self._incoming(dataset_id, brand_nodes, EdgeType.MENTIONS, window):
                counts[self._label(edge.source_node_id)] += max(_interactions(edge), 1)
            mentioners[brand] = dict(counts)

        results = []
        for first, second in combinations(mentioners, 2):
            left, right = mentioners[first], mentioners[second]
            shared = sorted(set(left) & set(right))
            larger = max(len(left), len(right))
            results.append(
                {
                    "brand1": first,
                    "brand2": second,
                    "shared_mentioners": [
                        {"mentioner": name, "mentions1": left[name], "mentions2": right[name]} for name in shared
                    ],
                    "overlap_coefficient": len(shared) / larger if larger else 0.0,
                    "unique_mentioners1": len(left) - len(shared),
                    "unique_mentioners2": len(right) - len(shared),
                }
            )
        return results

    def _competitors(self, dataset_id, nodes, window) -> List[Dict[str, Any]]:
        results = []
        for brand, brand_nodes in nodes.items():
            if not brand_nodes:
                continue
            competitors = []
            competitor_ids: Set[str] = set()
            for node in brand_nodes:
                edges = self.graph_store.find_edges(
                    dataset_id, source_node_id=node.id, edge_type=EdgeType.COMPETES_WITH.value
                )
                for edge in window.filter(edges):
                    count = _interactions(edge)
                    competitor_ids.add(edge.target_node_id)
                    competitors.append(
                        {
                            "competitor": self._label(edge.target_node_id),
                            "co_mention_frequency": count,
                            "competitive_sentiment": _sentiment_score(edge),
                            "market_position": market_position(count),
                        }
                    )
            own = sum(self._mention_count(dataset_id, node.id, window) for node in brand_nodes)
            rivals = sum(self._mention_count(dataset_id, node_id, window) for node_id in competitor_ids)
            results.append(
                {
                    "brand": brand,
                    "competitors": competitors,
                    "market_share": own / (own + rivals) * 100 if own + rivals else 0.0,
                    "competitive_intensity": len(competitors),
                }
            )
        return results

    def _temporal_trends(self, dataset_id, nodes, window) -> List[Dict[str, Any]]:
        results = []
        for brand, brand_nodes in nodes.items():
            if not brand_nodes:
                continue
            mentions = self._incoming(dataset_id, brand_nodes, EdgeType.MENTIONS, window)
            sentiments = self._incoming(dataset_id, brand_nodes, EdgeType.SENTIMENT, window)
            days: DefaultDict[str, Dict[str, Any]] = defaultdict(lambda: {"mentions": 0, "scores": []})
            for edge in mentions:
                days[edge.created_at.date().isoformat()]["mentions"] += 1
            for edge in sentiments:
                days[edge.created_at.date().isoformat()]["scores"].append(_sentiment_score(edge))
            results.append(
                {
                    "brand": brand,
                    "daily": [
                        {
                            "date": day,
                            "mentions": days[day]["mentions"],
                            "average_sentiment": (
                                sum(days[day]["scores"]) / len(days[day]["scores"]) if days[day]["scores"] else None
                            ),
                        }
                        for day in sorted(days)
                    ],
                    "sentiment_trend": sentiment_trend(sentiments),
                }
            )
        return results

    # ----------------------------------------------------------------- helpers
    def _brand_nodes(self, dataset_id: str, brand: str) -> List[GraphNode]:
        return self.graph_store.find_nodes(dataset_id, node_type=NodeType.BRAND.value, label=brand)

    def _incoming(
        self,
        dataset_id: str,
        brand_nodes: Sequence[GraphNode],
        edge_type: EdgeType,
        window: "_Window",
    ) -> List[GraphEdge]:
        edges: List[GraphEdge] = []
        for node in brand_nodes:
            edges.extend(self.graph_store.find_edges(dataset_id, target_node_id=node.id, edge_type=edge_type.value))
        return window.filter(edges)

    def _mention_count(self, dataset_id: str, node_id: str, window: "_Window") -> int:
        edges = self.graph_store.find_edges(dataset_id, target_node_id=node_id, edge_type=EdgeType.MENTIONS.value)
        return len(window.filter(edges))

    def _label(self, node_id: str) -> str:
        node = self.graph_store.get_node(node_id)
        return node.label if node is not None else node_id


class _Window:
    def __init__(self, start: Optional[datetime], end: Optional[datetime]) -> None:
        self.start = start
        self.end = end
        self._seen: List[datetime] = []

    def filter(self, edges: Iterable[GraphEdge]) -> List[GraphEdge]:
        kept = [
            edge
            for edge in edges
            if (self.start is None or edge.created_at >= self.start)
            and (self.end is None or edge.created_at <= self.end)
        ]
        self._seen.extend(edge.created_at for edge in kept)
        return kept

    def days(self, edges: Sequence[GraphEdge]) -> int:
        """Length of the window in days, or of the span ``edges`` cover when it is open."""
        first = self.start or min((edge.created_at for edge in edges), default=None)
        last = self.end or max((edge.created_at for edge in edges), default=None)
        if first is None or last is None:
            return 1
        return max((last.date() - first.date()).days + 1, 1)

    def describe(self) -> Dict[str, Optional[str]]:
        first = self.start or min(self._seen, default=None)
        last = self.end or max(self._seen, default=None)
        return {
            "start": first.isoformat() if first else None,
            "end": last.isoformat() if last else None,
        }


def generate_insights(metrics: Dict[str, Any]) -> tuple[List[str], List[str]]:
    """Headline findings and follow-up suggestions from computed comparison sections."""
    insights: List[str] = []
    recommendations: List[str] = []

    sentiment = metrics.get(ComparisonMetric.SENTIMENT.value) or []
    if sentiment:
        best = max(sentiment, key=lambda item: item["average_score"])
        insights.append(f"{best['brand']} has the highest sentiment score ({best['average_score']:.2f})")
        low = [item["brand"] for item in sentiment if item["total"] and item["average_score"] < LOW_SENTIMENT]
        if low:
            recommendations.append(f"Consider reputation management for {', '.join(low)}")

    volume = metrics.get(ComparisonMetric.MENTION_VOLUME.value) or []
    if volume:
        loudest = max(volume, key=lambda item: item["total_mentions"])
        insights.append(
            f"{loudest['brand']} has the highest mention volume ({loudest['total_mentions']} mentions)"
        )

    engagement = metrics.get(ComparisonMetric.ENGAGEMENT.value) or []
    quiet = [item["brand"] for item in engagement if item["average_engagement_rate"] < LOW_ENGAGEMENT_RATE]
    if quiet:
        recommendations.append(f"Improve content strategy for {', '.join(quiet)}")
    return insights, recommendations

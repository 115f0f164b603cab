from datetime import datetime, timezone

import pytest

from kgraph.analytics.brand_comparison import BrandComparison, market_position
from kgraph.data.graph_store import InMemoryGraphStore
from kgraph.data.models import GraphEdge, GraphNode

DAY_ONE = datetime(2024, 3, 1, 9, tzinfo=timezone.utc)
DAY_TWO = datetime(2024, 3, 2, 9, tzinfo=timezone.utc)


def build_graph():
    store = InMemoryGraphStore()
    nodes = {
        label: store.add_node(GraphNode("ds", node_type, label))
        for label, node_type in (
            ("Nike", "brand"),
            ("Adidas", "brand"),
            ("Puma", "brand"),
            ("ana", "author"),
            ("ben", "author"),
            ("cleo", "author"),
            ("running", "topic"),
            ("football", "topic"),
        )
    }

    def link(source, target, edge_type, when=DAY_ONE, **properties):
        store.add_edge(
            GraphEdge("ds", nodes[source].id, nodes[target].id, edge_type, properties=properties, created_at=when)
        )

    link("ana", "Nike", "sentiment", sentiment_score=0.9)
    link("ben", "Nike", "sentiment", DAY_TWO, sentiment="negative", sentiment_score=0.2)
    link("ana", "Adidas", "sentiment", sentiment="neutral", sentiment_score=0.5)

    link("ana", "Nike", "mentions")
    link("ben", "Nike", "mentions")
    link("cleo", "Nike", "mentions", DAY_TWO)
    link("ana", "Adidas", "mentions", DAY_TWO)
    link("ana", "Puma", "mentions")

    link("ana", "Nike", "interacts_with", type="like", interaction_count=30, context="new shoe")
    link("ben", "Nike", "interacts_with", type="share", interaction_count=10, context="launch")

    link("Nike", "running", "discusses", sentiment_score=0.8)
    link("Nike", "football", "discusses", sentiment_score=0.6)
    link("Adidas", "football", "discusses")

    link("Nike", "Puma", "competes_with", interaction_count=600, sentiment_score=0.4)
    return store


def by_brand(section):
    return {item["brand"]: item for item in section}


def test_sentiment_counts_and_trend():
    result = BrandComparison(build_graph()).compare_brands("ds", ["Nike", "Adidas"], metrics=["sentiment"])

    sentiment = by_brand(result["metrics"]["sentiment"])
    assert set(result["metrics"]) == {"sentiment"}
    nike = sentiment["Nike"]
    assert (nike["positive"], nike["negative"], nike["neutral"], nike["total"]) == (1, 1, 0, 2)
    assert nike["average_score"] == pytest.approx(0.55)
    assert nike["trend"] == "decreasing"
    assert sentiment["Adidas"]["neutral"] == 1
    assert sentiment["Adidas"]["trend"] == "stable"


def test_mention_volume_and_mention_network():
    result = BrandComparison(build_graph()).compare_brands(
        "ds", ["Nike", "Adidas"], metrics=["mention_volume", "mention_network"]
    )

    volume = by_brand(result["metrics"]["mention_volume"])
    assert volume["Nike"]["total_mentions"] == 3
    assert volume["Nike"]["unique_authors"] == 3
    assert volume["Nike"]["average_per_day"] == pytest.approx(1.5)
    assert (volume["Nike"]["peak_date"], volume["Nike"]["peak_mentions"]) == ("2024-03-01", 2)

    [pair] = result["metrics"]["mention_network"]
    assert (pair["brand1"], pair["brand2"]) == ("Nike", "Adidas")
    assert [shared["mentioner"] for shared in pair["shared_mentioners"]] == ["ana"]
    assert pair["overlap_coefficient"] == pytest.approx(1 / 3)
    assert (pair["unique_mentioners1"], pair["unique_mentioners2"]) == (2, 0)


def test_engagement_topics_and_competitors():
    result = BrandComparison(build_graph()).compare_brands(
        "ds", ["Nike", "Adidas"], metrics=["engagement", "topic_analysis", "competitive_landscape"]
    )
    metrics = result["metrics"]

    engagement = by_brand(metrics["engagement"])
    assert engagement["Nike"]["total_likes"] == 30
    assert engagement["Nike"]["total_shares"] == 10
    assert engagement["Nike"]["average_engagement_rate"] == pytest.approx(20.0)
    assert engagement["Nike"]["top_interaction"]["context"] == "new shoe"
    assert engagement["Adidas"]["total_engagement"] == 0

    topics = by_brand(metrics["topic_analysis"])
    assert topics["Nike"]["unique_topics"] == ["running"]
    assert topics["Nike"]["shared_topics"] == ["football"]
    assert topics["Adidas"]["unique_topics"] == []
    assert topics["Adidas"]["topics"][0]["sentiment"] == pytest.approx(0.5)

    nike = by_brand(metrics["competitive_landscape"])["Nike"]
    assert nike["competitors"] == [
        {
            "competitor": "Puma",
            "co_mention_frequency": 600,
            "competitive_sentiment": 0.4,
            "market_position": "challenger",
        }
    ]
    assert nike["market_share"] == pytest.approx(75.0)
    assert nike["competitive_intensity"] == 1

    assert result["summary"]["recommendations"] == ["Improve content strategy for Adidas"]


def test_temporal_trends_are_daily_counts():
    result = BrandComparison(build_graph()).compare_brands("ds", ["Nike"], metrics=["temporal_trends"])

    [nike] = result["metrics"]["temporal_trends"]
    assert nike["daily"] == [
        {"date": "2024-03-01", "mentions": 2, "average_sentiment": pytest.approx(0.9)},
        {"date": "2024-03-02", "mentions": 1, "average_sentiment": pytest.approx(0.2)},
    ]


def test_window_restricts_edges_and_is_reported():
    result = BrandComparison(build_graph()).compare_brands(
        "ds", ["Nike"], metrics=["mention_volume"], start=DAY_TWO
    )

    [nike] = result["metrics"]["mention_volume"]
    assert nike["total_mentions"] == 1
    assert nike["average_per_day"] == pytest.approx(1.0)
    assert result["summary"]["analysis_period"] == {
        "start": DAY_TWO.isoformat(),
        "end": DAY_TWO.isoformat(),
    }


def test_unknown_brands_are_reported_and_skipped():
    result = BrandComparison(build_graph()).compare_brands("ds", ["Nike", "Reebok"])

    summary = result["summary"]
    assert summary["total_brands"] == 2
    assert summary["missing_brands"] == ["Reebok"]
    assert [item["brand"] for item in result["metrics"]["sentiment"]] == ["Nike"]
    assert result["metrics"]["mention_network"] == []
    assert "Nike has the highest mention volume (3 mentions)" in summary["key_insights"]


def test_market_position_thresholds():
    assert [market_position(count) for count in (1001, 600, 101, 100)] == [
        "leader",
        "challenger",
        "follower",
        "niche",
    ]

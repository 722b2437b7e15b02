"""Tests for episode segmentation and taste consolidation."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from taste_engine.consolidation import (
    ConsolidationEngine,
    build_episode,
    consolidate_tastes,
    segment_episodes,
)
from taste_engine.exceptions import MalformedStateError
from taste_engine.graph import CognitiveGraph
from taste_engine.models import Episode, NodeType, TasteType, Trend

TS = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def _episode(episode_id: str, hours: int, patterns: list[str]) -> Episode:
    start = TS + timedelta(hours=hours)
    return Episode(
        id=episode_id,
        start_time=start,
        end_time=start + timedelta(hours=1),
        member_events=["x", "y"],
        patterns_detected=patterns,
        emotional_tone=0.4,
        genre_focus=["jazz"],
        artist_focus=["Low"],
        avg_rating=7.0,
        rating_variance=0.0,
    )


# ---------------------------------------------------------------------------
# Segmentation
# ---------------------------------------------------------------------------


class TestSegmentation:
    def test_six_hour_gap_splits_episodes(self, make_event) -> None:
        events = [make_event(hours=h, item_id=f"i{h}") for h in (0, 1, 2, 10, 11)]
        groups = segment_episodes(events)
        assert [[e.item_id for e in g] for g in groups] == [["i0", "i1", "i2"], ["i10", "i11"]]

    def test_single_event_runs_are_dropped(self, make_event) -> None:
        events = [make_event(hours=h) for h in (0, 10, 11)]
        assert [len(g) for g in segment_episodes(events)] == [2]

    def test_unsorted_input(self, make_event) -> None:
        events = [make_event(hours=h) for h in (11, 0, 10, 1)]
        assert [len(g) for g in segment_episodes(events)] == [2, 2]

    def test_build_episode(self, make_event) -> None:
        members = [
            make_event(rating=8, hours=0, genres=("jazz", "soul"), artist="Nina"),
            make_event(rating=6, hours=1, genres=("jazz",), artist="Bill"),
            make_event(rating=10, hours=2, genres=("soul",), artist="Nina"),
        ]
        episode = build_episode(members, ["deep_dive_sprints"])
        assert episode.id == f"episode_{int(TS.timestamp() * 1000)}"
        assert episode.avg_rating == pytest.approx(8.0)
        assert episode.emotional_tone == pytest.approx(0.6)
        assert episode.rating_variance == pytest.approx(8 / 3)
        assert episode.genre_focus == ["jazz", "soul"]
        assert episode.artist_focus == ["Nina", "Bill"]
        assert episode.end_time == TS + timedelta(hours=2)


# ---------------------------------------------------------------------------
# Consolidated tastes
# ---------------------------------------------------------------------------


class TestConsolidatedTastes:
    def test_recent_only_taste_is_stable(self, make_event) -> None:
        events = [make_event(rating=8, hours=i, genres=("jazz",)) for i in range(2)]
        tastes = consolidate_tastes(events, TS + timedelta(days=1))
        jazz = next(t for t in tastes if t.name == "jazz")
        assert jazz.type == TasteType.GENRE
        assert jazz.trend == Trend.STABLE
        assert jazz.recent_avg == jazz.older_avg == pytest.approx(8.0)
        assert jazz.confidence == pytest.approx(0.2 * 0.8)

    def test_strengthening_trend(self, make_event) -> None:
        now = TS + timedelta(days=365)
        events = [
            make_event(rating=6, hours=0, artist="Low"),
            make_event(rating=6, hours=1, artist="Low"),
            make_event(rating=9, hours=24 * 300, artist="Low"),
        ]
        low = next(t for t in consolidate_tastes(events, now) if t.name == "Low")
        assert low.type == TasteType.ARTIST
        assert low.trend == Trend.STRENGTHENING
        assert low.total_reviews == 3

    def test_low_rated_and_single_items_do_not_qualify(self, make_event) -> None:
        events = [
            make_event(rating=3, hours=0, genres=("pop",)),
            make_event(rating=4, hours=1, genres=("pop",)),
            make_event(rating=9, hours=2, tags=("lush",)),
        ]
        assert consolidate_tastes(events, TS + timedelta(days=1)) == []

    def test_sorted_by_confidence(self, make_event) -> None:
        events = [make_event(rating=9, hours=i, genres=("jazz",)) for i in range(5)]
        events += [make_event(rating=7, hours=10 + i, tags=("warm",)) for i in range(2)]
        tastes = consolidate_tastes(events, TS + timedelta(days=1))
        assert [t.name for t in tastes] == ["jazz", "warm"]
        assert tastes[1].type == TasteType.DESCRIPTOR


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TestConsolidationEngine:
    def test_keeps_fifty_most_recent_episodes(self, make_event) -> None:
        events = [make_event(hours=day * 24 + h) for day in range(60) for h in (0, 1)]
        engine = ConsolidationEngine()
        episodes = engine.extract_episodes(events)
        assert len(episodes) == 50
        assert episodes[0].start_time == TS + timedelta(days=10)

    def test_extraction_is_deterministic(self, make_event) -> None:
        events = [make_event(hours=h) for h in (0, 1, 10, 11)]
        first = ConsolidationEngine().extract_episodes(events)
        second = ConsolidationEngine().extract_episodes(events)
        assert [e.to_dict() for e in first] == [e.to_dict() for e in second]

    def test_patterns_detected_use_history_up_to_episode(self, make_event) -> None:
        events = [make_event(hours=h, artist="Low") for h in (0, 1, 2)]
        events += [make_event(hours=h, artist="Low") for h in (20, 21)]
        episodes = ConsolidationEngine().extract_episodes(events)
        assert episodes[0].patterns_detected == []
        assert "discography_completionist" in episodes[1].patterns_detected

    def test_write_to_graph(self) -> None:
        graph = CognitiveGraph()
        graph.add_node("pattern_a", NodeType.PATTERN, {}, 1.0, TS)
        graph.add_node("pattern_b", NodeType.PATTERN, {}, 1.0, TS)
        engine = ConsolidationEngine(
            [_episode("ep1", 0, ["a", "b", "c"]), _episode("ep2", 24, ["a"])]
        )
        engine.write_to_graph(graph, ["a", "b", "c"])

        assert len(graph.nodes_by_type(NodeType.EPISODE)) == 2
        assert graph.get_neighbors("ep1") == ["pattern_a", "pattern_b"]
        assert graph.get_edge("ep2|exhibited_in|pattern_a").weight == 1.0
        reinforces = graph.get_edge("pattern_a|reinforces|pattern_b")
        assert reinforces.weight == pytest.approx(0.5)
        assert "pattern_c" not in graph

    def test_episode_stats(self) -> None:
        assert ConsolidationEngine().episode_stats()["total_episodes"] == 0
        engine = ConsolidationEngine([_episode("ep1", 0, []), _episode("ep2", 24, [])])
        summary = engine.episode_stats()
        assert summary["total_episodes"] == 2
        assert summary["avg_episode_length"] == pytest.approx(2.0)
        assert summary["top_genres"] == ["jazz"]

    def test_recent_episodes_newest_first(self) -> None:
        engine = ConsolidationEngine([_episode("ep1", 0, []), _episode("ep2", 24, [])])
        assert [e.id for e in engine.recent_episodes(1)] == ["ep2"]
        assert engine.recent_episodes(0) == []

    def test_round_trip_and_malformed(self) -> None:
        engine = ConsolidationEngine([_episode("ep1", 0, ["a"])])
        assert ConsolidationEngine.load(engine.to_dict()).to_dict() == engine.to_dict()
        with pytest.raises(MalformedStateError):
            ConsolidationEngine.load({"episodes": []})
        with pytest.raises(MalformedStateError):
            ConsolidationEngine.load([{"id": "ep1"}])

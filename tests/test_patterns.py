"""Tests for pattern detectors and the PatternLearner lifecycle."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from taste_engine.exceptions import MalformedStateError
from taste_engine.graph import CognitiveGraph
from taste_engine.models import PatternCategory, PatternStatus
from taste_engine.patterns import (
    PatternLearner,
    count_oscillations,
    detect_patterns,
    pattern_node_id,
)

TS = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def _ids(detections) -> set[str]:
    return {d.id for d in detections}


def _by_id(detections) -> dict:
    return {d.id: d for d in detections}


# ---------------------------------------------------------------------------
# Detectors
# ---------------------------------------------------------------------------


class TestDetectors:
    def test_fewer_than_five_events_detects_nothing(self, make_event) -> None:
        events = [make_event(rating=10, hours=i) for i in range(4)]
        assert detect_patterns(events) == []

    def test_critical_ear(self, make_event) -> None:
        events = [make_event(rating=4.0, hours=i) for i in range(15)]
        found = _by_id(detect_patterns(events))
        assert found["critical_ear"].confidence == pytest.approx(0.5)
        assert found["critical_ear"].category == PatternCategory.RATING

    def test_critical_ear_needs_fifteen_ratings(self, make_event) -> None:
        events = [make_event(rating=4.0, hours=i) for i in range(14)]
        assert "critical_ear" not in _ids(detect_patterns(events))

    def test_music_optimist(self, make_event) -> None:
        events = [make_event(rating=8.0, hours=i) for i in range(15)]
        assert "music_optimist" in _ids(detect_patterns(events))

    def test_polarized_taste(self, make_event) -> None:
        ratings = [2, 9, 3, 10, 1, 8, 9, 2, 6, 9]
        events = [make_event(rating=r, hours=i) for i, r in enumerate(ratings)]
        found = _by_id(detect_patterns(events))
        assert found["polarized_taste"].confidence == pytest.approx(0.9)

    def test_perfection_seeker(self, make_event) -> None:
        events = [make_event(rating=r, hours=i) for i, r in enumerate([10, 10, 10, 7, 7])]
        found = _by_id(detect_patterns(events))
        assert found["perfection_seeker"].confidence == pytest.approx(0.6)

    def test_genre_explorer(self, make_event) -> None:
        events = [make_event(hours=i, genres=(f"g{i}",)) for i in range(10)]
        found = _by_id(detect_patterns(events))
        assert found["genre_explorer"].confidence == pytest.approx(1.0)

    def test_new_release_hunter_and_archive_diver(self, make_event) -> None:
        fresh = [make_event(hours=i, age=0.5) for i in range(10)]
        old = [make_event(hours=i, age=25.0) for i in range(15)]
        pattern = _by_id(detect_patterns(fresh))["new_release_hunter"]
        assert pattern.confidence == pytest.approx(0.75)
        assert _by_id(detect_patterns(old))["archive_diver"].confidence == pytest.approx(1.0)

    def test_discography_completionist(self, make_event) -> None:
        events = [make_event(hours=i * 48, artist="Low") for i in range(5)]
        found = _by_id(detect_patterns(events))
        assert found["discography_completionist"].confidence == pytest.approx(1 / 3)

    def test_deep_dive_sprint(self, make_event) -> None:
        events = [make_event(hours=i, artist="Low") for i in range(3)]
        events += [make_event(hours=10 + i, artist=f"other{i}") for i in range(2)]
        found = _by_id(detect_patterns(events))
        assert found["deep_dive_sprints"].confidence == pytest.approx(0.8)

    def test_no_deep_dive_when_spread_out(self, make_event) -> None:
        events = [make_event(hours=i * 24 * 10, artist="Low") for i in range(5)]
        assert "deep_dive_sprints" not in _ids(detect_patterns(events))

    def test_no_deep_dive_without_artist(self, make_event) -> None:
        events = [make_event(hours=i) for i in range(5)]
        assert "deep_dive_sprints" not in _ids(detect_patterns(events))

    def test_emotional_listener(self, make_event) -> None:
        events = [make_event(rating=0 if i % 2 else 10, hours=i) for i in range(10)]
        found = _by_id(detect_patterns(events))
        assert found["emotional_listener"].confidence == pytest.approx(1.0)

    def test_count_oscillations(self, make_event) -> None:
        genres = [("a",), ("a",), ("b",), ("a",), ("c",), ("a",)]
        events = [make_event(hours=i, genres=g) for i, g in enumerate(genres)]
        assert count_oscillations(events) == 5

    def test_discovery_comfort_oscillation(self, make_event) -> None:
        genres = [("a",), ("a",), ("b",), ("a",), ("c",), ("a",), ("d",), ("a",), ("e",), ("a",)]
        events = [make_event(hours=i, genres=g) for i, g in enumerate(genres)]
        found = _by_id(detect_patterns(events))
        assert found["discovery_comfort_oscillation"].confidence == pytest.approx(0.9)

    def test_detection_ignores_input_order(self, make_event) -> None:
        events = [make_event(hours=i, artist="Low") for i in range(5)]
        assert _ids(detect_patterns(events)) == _ids(detect_patterns(events[::-1]))


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestPatternLearner:
    @pytest.fixture
    def harsh_events(self, make_event):
        """15 ratings of 4: critical_ear (0.5) plus polarized_taste (1.0)."""
        return [make_event(rating=4.0, hours=i) for i in range(15)]

    def test_initial_status_depends_on_confidence(self, harsh_events) -> None:
        learner = PatternLearner()
        learner.learn(harsh_events, TS)
        assert learner.get("critical_ear").status == PatternStatus.EMERGING
        assert learner.get("polarized_taste").status == PatternStatus.CONFIRMED

    def test_redetection_updates_counts(self, harsh_events) -> None:
        learner = PatternLearner()
        learner.learn(harsh_events, TS)
        learner.learn(harsh_events, TS + timedelta(days=1))
        pattern = learner.get("critical_ear")
        assert pattern.occurrence_count == 2
        assert pattern.first_detected == TS
        assert pattern.last_confirmed == TS + timedelta(days=1)

    def test_emerging_confirms_after_three_occurrences(self, harsh_events) -> None:
        learner = PatternLearner()
        for day in range(3):
            learner.learn(harsh_events, TS + timedelta(days=day))
        assert learner.get("critical_ear").status == PatternStatus.CONFIRMED

    def test_confirmed_fades_then_goes_dormant(self, harsh_events) -> None:
        learner = PatternLearner()
        learner.learn(harsh_events, TS)
        learner.learn([], TS + timedelta(days=31))
        assert learner.get("polarized_taste").status == PatternStatus.FADING
        learner.learn([], TS + timedelta(days=61))
        assert learner.get("polarized_taste").status == PatternStatus.DORMANT
        assert "polarized_taste" not in learner.active_pattern_ids()

    def test_long_silence_cascades_to_dormant_in_one_run(self, harsh_events) -> None:
        learner = PatternLearner()
        learner.learn(harsh_events, TS)
        learner.learn([], TS + timedelta(days=90))
        assert learner.get("polarized_taste").status == PatternStatus.DORMANT

    def test_emerging_pattern_never_fades(self, harsh_events) -> None:
        learner = PatternLearner()
        learner.learn(harsh_events, TS)
        learner.learn([], TS + timedelta(days=90))
        assert learner.get("critical_ear").status == PatternStatus.EMERGING

    def test_dormant_pattern_revives_on_redetection(self, harsh_events) -> None:
        learner = PatternLearner()
        learner.learn(harsh_events, TS)
        learner.learn([], TS + timedelta(days=90))
        learner.learn(harsh_events, TS + timedelta(days=91))
        pattern = learner.get("polarized_taste")
        assert pattern.status == PatternStatus.EMERGING
        assert pattern.occurrence_count == 2

    def test_importance_from_graph(self, harsh_events) -> None:
        learner = PatternLearner()
        learner.learn(harsh_events, TS)
        graph = CognitiveGraph()
        learner.write_to_graph(graph)
        node = graph.get_node(pattern_node_id("critical_ear"))
        assert node.weight == pytest.approx(0.5)
        importance = learner.compute_importance(graph, TS)
        n = len(learner)
        for score in importance.values():
            assert score == pytest.approx(0.30 / n + 0.15)

    def test_importance_falls_back_to_confidence(self, harsh_events) -> None:
        learner = PatternLearner()
        learner.learn(harsh_events, TS)
        learner.compute_importance(CognitiveGraph(), TS)
        assert learner.get("critical_ear").importance_score == pytest.approx(0.5)
        ranked = learner.sorted_by_importance()
        assert ranked[-1].id == "critical_ear"

    def test_patterns_by_status(self, harsh_events) -> None:
        learner = PatternLearner()
        learner.learn(harsh_events, TS)
        emerging = [p.id for p in learner.patterns_by_status(PatternStatus.EMERGING)]
        assert emerging == ["critical_ear"]

    def test_round_trip(self, harsh_events) -> None:
        learner = PatternLearner()
        learner.learn(harsh_events, TS)
        restored = PatternLearner.load(learner.to_dict())
        assert restored.to_dict() == learner.to_dict()

    def test_load_rejects_non_list(self) -> None:
        with pytest.raises(MalformedStateError):
            PatternLearner.load({"critical_ear": {}})

    def test_load_rejects_bad_status(self, harsh_events) -> None:
        learner = PatternLearner()
        learner.learn(harsh_events, TS)
        data = learner.to_dict()
        data[0]["status"] = "vanished"
        with pytest.raises(MalformedStateError):
            PatternLearner.load(data)

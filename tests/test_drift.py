"""Tests for the drift detector and its snapshot inputs."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from taste_engine.drift import (
    DriftDetector,
    compute_listening_signature,
    compute_rating_style,
    split_recent,
)
from taste_engine.exceptions import MalformedStateError
from taste_engine.models import (
    DriftType,
    ListeningSignature,
    PatternCategory,
    PatternState,
    PatternStatus,
    RatingSkew,
    RatingStyle,
)

TS = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
NOW = TS + timedelta(days=60)


def _pattern(pattern_id: str, status: PatternStatus = PatternStatus.CONFIRMED) -> PatternState:
    return PatternState(
        id=pattern_id,
        name=pattern_id,
        description="",
        category=PatternCategory.RATING,
        status=status,
        confidence=0.8,
        first_detected=TS,
        last_confirmed=TS,
    )


def _types(alerts) -> list[DriftType]:
    return [a.type for a in alerts]


# ---------------------------------------------------------------------------
# Snapshot inputs
# ---------------------------------------------------------------------------


class TestSnapshots:
    def test_empty_signature_is_zero(self) -> None:
        assert compute_listening_signature([], NOW) == ListeningSignature()

    def test_signature_is_normalised(self, make_event) -> None:
        events = [
            make_event(rating=9, hours=i, genres=(f"g{i % 3}",), artist=f"a{i % 2}")
            for i in range(12)
        ]
        signature = compute_listening_signature(events, TS + timedelta(days=1))
        total = sum(signature.to_dict().values())
        assert total == pytest.approx(1.0, abs=0.05)
        assert all(0.0 <= v <= 1.0 for v in signature.to_dict().values())

    @pytest.mark.parametrize(
        "rating, skew",
        [(4.0, RatingSkew.HARSH), (6.5, RatingSkew.BALANCED), (8.0, RatingSkew.LENIENT)],
    )
    def test_rating_style_skew(self, make_event, rating: float, skew: RatingSkew) -> None:
        style = compute_rating_style([make_event(rating=rating, hours=i) for i in range(3)])
        assert style.skew == skew
        assert style.mean == pytest.approx(rating)
        assert style.std_dev == 0.0

    def test_split_recent(self, make_event) -> None:
        old = make_event(hours=0)
        new = make_event(hours=24 * 50)
        recent, older = split_recent([new, old], NOW)
        assert recent == [new]
        assert older == [old]


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------


class TestChecks:
    def test_first_run_reports_emergence(self) -> None:
        detector = DriftDetector()
        alerts = detector.detect_pattern_changes([_pattern("critical_ear")], NOW)
        assert _types(alerts) == [DriftType.PATTERN_EMERGENCE]
        assert alerts[0].magnitude == 0.5
        assert alerts[0].affected_patterns == ["critical_ear"]

    def test_unchanged_patterns_report_nothing(self) -> None:
        detector = DriftDetector(previous_pattern_ids=["critical_ear"])
        assert detector.detect_pattern_changes([_pattern("critical_ear")], NOW) == []

    def test_disappearance(self) -> None:
        detector = DriftDetector(previous_pattern_ids=["archive_diver"])
        alerts = detector.detect_pattern_changes([], NOW)
        assert _types(alerts) == [DriftType.PATTERN_DISAPPEARANCE]
        assert alerts[0].magnitude == 0.6

    def test_dormant_patterns_are_not_active(self, make_event) -> None:
        detector = DriftDetector(previous_pattern_ids=["archive_diver"])
        dormant = _pattern("archive_diver", PatternStatus.DORMANT)
        alerts = detector.detect([dormant], [], NOW)
        assert _types(alerts) == [DriftType.PATTERN_DISAPPEARANCE]

    def test_contradiction(self) -> None:
        detector = DriftDetector()
        patterns = [_pattern("critical_ear"), _pattern("music_optimist")]
        alerts = detector.detect_contradictions(patterns, NOW)
        assert _types(alerts) == [DriftType.CONTRADICTION]
        assert alerts[0].magnitude == 0.7
        assert alerts[0].affected_patterns == ["critical_ear", "music_optimist"]

    def test_signature_drift_needs_baseline(self) -> None:
        detector = DriftDetector()
        before = ListeningSignature(discovery=0.2, comfort=0.8)
        after = ListeningSignature(discovery=0.7, comfort=0.3)
        assert detector.detect_signature_drift(before, NOW) == []
        alerts = detector.detect_signature_drift(after, NOW)
        assert _types(alerts) == [DriftType.PREFERENCE_CHANGE] * 2
        assert alerts[0].magnitude == pytest.approx(0.5)
        assert detector.previous_signature == after

    def test_small_signature_change_is_ignored(self) -> None:
        detector = DriftDetector(previous_signature=ListeningSignature(discovery=0.5))
        assert detector.detect_signature_drift(ListeningSignature(discovery=0.6), NOW) == []

    def test_rating_style_shift(self) -> None:
        detector = DriftDetector()
        style = RatingStyle(4.0, 1.0, RatingSkew.HARSH)
        assert detector.detect_rating_style_shift(style, NOW) == []
        alerts = detector.detect_rating_style_shift(
            RatingStyle(8.0, 1.0, RatingSkew.LENIENT), NOW
        )
        assert _types(alerts) == [DriftType.RATING_STYLE_SHIFT] * 2
        assert alerts[0].magnitude == pytest.approx(0.8)
        assert alerts[1].magnitude == 0.5
        assert alerts[1].new_value == "lenient"

    def test_emotional_shift(self, make_event) -> None:
        older = [make_event(hours=i, tags=("bright",)) for i in range(5)]
        recent = [make_event(hours=24 * 50 + i, tags=("dark",)) for i in range(5)]
        alerts = DriftDetector().detect_emotional_shifts(recent, older, NOW)
        assert _types(alerts) == [DriftType.EMOTIONAL_SHIFT] * 2
        assert {a.description for a in alerts} == {
            'Now using "bright" less frequently',
            'Now using "dark" more frequently',
        }

    def test_emotional_shift_needs_five_reviews_per_window(self, make_event) -> None:
        older = [make_event(hours=i, tags=("bright",)) for i in range(4)]
        recent = [make_event(hours=24 * 50 + i, tags=("dark",)) for i in range(5)]
        assert DriftDetector().detect_emotional_shifts(recent, older, NOW) == []

    def test_genre_expansion_and_contraction(self, make_event) -> None:
        older = [make_event(hours=i, genres=(g,)) for i, g in enumerate("def")]
        recent = [make_event(hours=24 * 50 + i, genres=(g,)) for i, g in enumerate("abc")]
        alerts = DriftDetector().detect_genre_changes(recent, older, NOW)
        assert _types(alerts) == [DriftType.GENRE_EXPANSION, DriftType.GENRE_CONTRACTION]
        assert all(a.magnitude == pytest.approx(0.6) for a in alerts)

    def test_genre_changes_need_both_windows(self, make_event) -> None:
        recent = [make_event(hours=24 * 50 + i, genres=(g,)) for i, g in enumerate("abc")]
        assert DriftDetector().detect_genre_changes(recent, [], NOW) == []


# ---------------------------------------------------------------------------
# Alert buffer
# ---------------------------------------------------------------------------


class TestAlertBuffer:
    def test_capacity_evicts_oldest(self) -> None:
        detector = DriftDetector()
        patterns = [_pattern("critical_ear"), _pattern("music_optimist")]
        for _ in range(105):
            detector.detect_contradictions(patterns, NOW)
        alerts = detector.all_alerts()
        assert len(alerts) == 100
        assert alerts[0].id == "drift_6"
        assert alerts[-1].id == "drift_105"

    def test_significant_and_acknowledge(self) -> None:
        detector = DriftDetector()
        detector.detect_contradictions([_pattern("critical_ear"), _pattern("music_optimist")], NOW)
        detector.detect_signature_drift(ListeningSignature(), NOW)
        detector.detect_signature_drift(ListeningSignature(social=0.2), NOW)
        assert [a.id for a in detector.significant_alerts()] == ["drift_1"]
        assert detector.acknowledge("drift_1") is True
        assert detector.significant_alerts() == []
        assert detector.acknowledge("drift_99") is False

    def test_recent_alerts_newest_first(self) -> None:
        detector = DriftDetector()
        for _ in range(3):
            detector.detect_contradictions(
                [_pattern("critical_ear"), _pattern("music_optimist")], NOW
            )
        assert [a.id for a in detector.recent_alerts(2)] == ["drift_3", "drift_2"]
        assert detector.recent_alerts(0) == []

    def test_round_trip_keeps_sequence(self) -> None:
        detector = DriftDetector()
        detector.detect_pattern_changes([_pattern("critical_ear")], NOW)
        detector.detect_rating_style_shift(RatingStyle(6.0, 1.0, RatingSkew.BALANCED), NOW)
        restored = DriftDetector.load(detector.to_dict())
        assert restored.to_dict() == detector.to_dict()
        restored.detect_pattern_changes([], NOW)
        assert restored.all_alerts()[-1].id == "drift_2"

    def test_load_rejects_non_mapping(self) -> None:
        with pytest.raises(MalformedStateError):
            DriftDetector.load([1, 2, 3])

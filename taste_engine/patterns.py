"""Rule-based behavioural pattern detection with a lifecycle.

Detectors are pure functions of the rating history.  :class:`PatternLearner`
keeps the per-user pattern table, upserts detections into it, moves every
known pattern through the ``emerging → confirmed → fading → dormant``
lifecycle and ranks patterns with the cognitive graph.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Sequence

from taste_engine import stats
from taste_engine.exceptions import MalformedStateError
from taste_engine.graph import CognitiveGraph
from taste_engine.models import (
    NodeType,
    PatternCategory,
    PatternState,
    PatternStatus,
    RatingEvent,
)
from taste_engine.wire import ensure_utc

logger = logging.getLogger(__name__)

MIN_OBSERVATIONS = 5
CONFIRMATION_CONFIDENCE = 0.6
CONFIRMATION_OCCURRENCES = 3
FADING_AFTER_DAYS = 30
DORMANT_AFTER_DAYS = 60

_SECONDS_PER_DAY = 86400.0


@dataclass(frozen=True)
class Detection:
    """A single detector firing on a rating history."""

    id: str
    name: str
    description: str
    category: PatternCategory
    confidence: float


def pattern_node_id(pattern_id: str) -> str:
    return f"pattern_{pattern_id}"


def sort_events(events: Iterable[RatingEvent]) -> list[RatingEvent]:
    """Return *events* in timestamp order (stable for equal timestamps)."""
    return sorted(events, key=lambda e: e.timestamp)


# ---------------------------------------------------------------------------
# Detectors
# ---------------------------------------------------------------------------


def _rating_patterns(events: Sequence[RatingEvent]) -> list[Detection]:
    n = len(events)
    ratings = [e.rating for e in events]
    avg = stats.mean(ratings)
    found: list[Detection] = []

    if avg < 5.5 and n >= 15:
        found.append(
            Detection(
                "critical_ear",
                "Critical Ear",
                f"Average rating {avg:.1f}: high standards",
                PatternCategory.RATING,
                min(1.0, n / 30),
            )
        )
    if avg > 7.5 and n >= 15:
        found.append(
            Detection(
                "music_optimist",
                "Music Optimist",
                f"Average rating {avg:.1f}: finds joy everywhere",
                PatternCategory.RATING,
                min(1.0, n / 30),
            )
        )

    low = sum(1 for r in ratings if r <= 4)
    high = sum(1 for r in ratings if r >= 8)
    middle = sum(1 for r in ratings if 4 < r < 8)
    if (low + high) / n > 0.7 and middle / n < 0.3:
        found.append(
            Detection(
                "polarized_taste",
                "Polarized Taste",
                "Bimodal ratings: loves it or hates it",
                PatternCategory.RATING,
                (low + high) / n,
            )
        )

    tens = sum(1 for r in ratings if r == 10)
    nines = sum(1 for r in ratings if 9 <= r < 10)
    if tens > nines and tens >= 3:
        found.append(
            Detection(
                "perfection_seeker",
                "Perfection Seeker",
                "More 10s than near-perfect scores",
                PatternCategory.RATING,
                min(1.0, tens / 5),
            )
        )
    return found


def _discovery_patterns(events: Sequence[RatingEvent]) -> list[Detection]:
    n = len(events)
    found: list[Detection] = []

    genres = {g for e in events for g in e.genres}
    diversity = len(genres) / n
    if diversity > 0.5 and n >= 10:
        found.append(
            Detection(
                "genre_explorer",
                "Genre Explorer",
                f"{len(genres)} genres across {n} ratings",
                PatternCategory.DISCOVERY,
                min(1.0, diversity * 1.5),
            )
        )

    avg_age = stats.mean([e.item_age_years for e in events])
    if avg_age < 2 and n >= 10:
        found.append(
            Detection(
                "new_release_hunter",
                "New Release Hunter",
                "Stays on top of current music as it drops",
                PatternCategory.DISCOVERY,
                min(1.0, (2 - avg_age) / 2),
            )
        )
    if avg_age > 15 and n >= 15:
        found.append(
            Detection(
                "archive_diver",
                "Archive Diver",
                "Average release age over 15 years",
                PatternCategory.DISCOVERY,
                min(1.0, (avg_age - 15) / 10),
            )
        )
    return found


def _has_deep_dive_sprint(ordered: Sequence[RatingEvent]) -> bool:
    for i in range(len(ordered) - 2):
        window = ordered[i : i + 5]
        if len(window) < 3:
            continue
        lead = window[0].artist
        if not lead or sum(1 for e in window if e.artist == lead) < 3:
            continue
        span = (window[-1].timestamp - window[0].timestamp).total_seconds()
        if span / _SECONDS_PER_DAY <= 7:
            return True
    return False


def _engagement_patterns(ordered: Sequence[RatingEvent]) -> list[Detection]:
    found: list[Detection] = []

    per_artist = Counter(e.artist for e in ordered if e.artist)
    completed = [a for a, count in per_artist.items() if count >= 5]
    if completed:
        found.append(
            Detection(
                "discography_completionist",
                "Discography Completionist",
                f"{len(completed)} artist(s) with 5+ items rated",
                PatternCategory.ENGAGEMENT,
                min(1.0, len(completed) / 3),
            )
        )

    if _has_deep_dive_sprint(ordered):
        found.append(
            Detection(
                "deep_dive_sprints",
                "Deep Dive Sprints",
                "Goes all-in on artists when something clicks",
                PatternCategory.ENGAGEMENT,
                0.8,
            )
        )
    return found


def count_oscillations(ordered: Sequence[RatingEvent]) -> int:
    """Count switches between "all genres unseen" and "some genre seen" items.

    The first item, and any item without genres, counts as unseen.
    """
    seen: set[str] = set()
    oscillations = 0
    last_was_new: bool | None = None
    for event in ordered:
        is_new = not any(g in seen for g in event.genres)
        if last_was_new is not None and is_new != last_was_new:
            oscillations += 1
        last_was_new = is_new
        seen.update(event.genres)
    return oscillations


def _signature_patterns(ordered: Sequence[RatingEvent]) -> list[Detection]:
    n = len(ordered)
    found: list[Detection] = []

    sd = stats.std_dev([e.rating for e in ordered])
    if sd > 2.5 and n >= 10:
        found.append(
            Detection(
                "emotional_listener",
                "Emotional Listener",
                "Strong reactions reflected in rating variance",
                PatternCategory.SIGNATURE,
                min(1.0, sd / 3),
            )
        )

    oscillations = count_oscillations(ordered)
    if oscillations >= 5 and n >= 10:
        found.append(
            Detection(
                "discovery_comfort_oscillation",
                "Discovery/Comfort Oscillation",
                "Balances exploring new music with returning to favourites",
                PatternCategory.SIGNATURE,
                min(1.0, oscillations / 10),
            )
        )
    return found


_DETECTORS: tuple[Callable[[Sequence[RatingEvent]], list[Detection]], ...] = (
    _rating_patterns,
    _discovery_patterns,
    _engagement_patterns,
    _signature_patterns,
)


def detect_patterns(events: Iterable[RatingEvent]) -> list[Detection]:
    """Run every detector over *events*.

    Returns an empty list when fewer than :data:`MIN_OBSERVATIONS` events are
    supplied.
    """
    ordered = sort_events(events)
    if len(ordered) < MIN_OBSERVATIONS:
        return []
    detections: list[Detection] = []
    for detector in _DETECTORS:
        detections.extend(detector(ordered))
    return detections


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class PatternLearner:
    """Per-user pattern table.

    Args:
        patterns: Previously persisted patterns to continue from.
    """

    def __init__(self, patterns: Iterable[PatternState] = ()) -> None:
        self._patterns: dict[str, PatternState] = {p.id: p for p in patterns}

    def __len__(self) -> int:
        return len(self._patterns)

    def get(self, pattern_id: str) -> PatternState | None:
        return self._patterns.get(pattern_id)

    def patterns(self) -> list[PatternState]:
        return list(self._patterns.values())

    def learn(self, events: Iterable[RatingEvent], now: datetime) -> list[Detection]:
        """Detect patterns in *events*, upsert them and advance the lifecycle.

        Returns:
            The detections of this run.
        """
        now = ensure_utc(now)
        detections = detect_patterns(events)
        for detection in detections:
            self._upsert(detection, now)
        for pattern in self._patterns.values():
            _advance_lifecycle(pattern, now)
        logger.debug(
            "Detected %d pattern(s); %d known in total.",
            len(detections),
            len(self._patterns),
        )
        return detections

    def _upsert(self, detection: Detection, now: datetime) -> None:
        existing = self._patterns.get(detection.id)
        if existing is None:
            status = (
                PatternStatus.CONFIRMED
                if detection.confidence >= CONFIRMATION_CONFIDENCE
                else PatternStatus.EMERGING
            )
            self._patterns[detection.id] = PatternState(
                id=detection.id,
                name=detection.name,
                description=detection.description,
                category=detection.category,
                status=status,
                confidence=detection.confidence,
                first_detected=now,
                last_confirmed=now,
                occurrence_count=1,
                importance_score=0.0,
            )
            return

        existing.last_confirmed = now
        existing.occurrence_count += 1
        existing.confidence = max(existing.confidence, detection.confidence)
        existing.description = detection.description
        if existing.status in (PatternStatus.FADING, PatternStatus.DORMANT):
            existing.status = (
                PatternStatus.CONFIRMED
                if existing.occurrence_count >= CONFIRMATION_OCCURRENCES
                else PatternStatus.EMERGING
            )

    # ------------------------------------------------------------------
    # Graph ranking
    # ------------------------------------------------------------------

    def write_to_graph(self, graph: CognitiveGraph) -> None:
        """Add one ``pattern_<id>`` node per known pattern (weight = confidence)."""
        for pattern in self._patterns.values():
            graph.add_node(
                pattern_node_id(pattern.id),
                NodeType.PATTERN,
                {
                    "pattern_id": pattern.id,
                    "category": pattern.category.value,
                    "status": pattern.status.value,
                },
                pattern.confidence,
                pattern.last_confirmed,
            )

    def compute_importance(self, graph: CognitiveGraph, now: datetime) -> dict[str, float]:
        """Set each pattern's importance from the graph (confidence if absent)."""
        scores = graph.compute_importance_scores(now)
        importance: dict[str, float] = {}
        for pattern in self._patterns.values():
            node_scores = scores.get(pattern_node_id(pattern.id))
            pattern.importance_score = (
                node_scores.combined if node_scores is not None else pattern.confidence
            )
            importance[pattern.id] = pattern.importance_score
        return importance

    def sorted_by_importance(self) -> list[PatternState]:
        """Patterns by descending importance, ties broken by id."""
        return sorted(self._patterns.values(), key=lambda p: (-p.importance_score, p.id))

    def patterns_by_status(self, status: PatternStatus) -> list[PatternState]:
        return [p for p in self._patterns.values() if p.status == status]

    def active_pattern_ids(self) -> set[str]:
        """Ids of every pattern that is not dormant."""
        return {p.id for p in self._patterns.values() if p.status != PatternStatus.DORMANT}

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> list[dict[str, Any]]:
        return [p.to_dict() for p in self._patterns.values()]

    @classmethod
    def load(cls, data: Any) -> PatternLearner:
        """Rebuild a learner from :meth:`to_dict` output.

        Raises:
            MalformedStateError: If *data* is not a list of pattern dicts.
        """
        if not isinstance(data, list):
            raise MalformedStateError("patterns", "expected a list")
        return cls(PatternState.from_dict(item) for item in data)


def _advance_lifecycle(pattern: PatternState, now: datetime) -> None:
    days = (now - pattern.last_confirmed).total_seconds() / _SECONDS_PER_DAY
    if (
        pattern.status == PatternStatus.EMERGING
        and pattern.occurrence_count >= CONFIRMATION_OCCURRENCES
    ):
        pattern.status = PatternStatus.CONFIRMED
    if pattern.status == PatternStatus.CONFIRMED and days > FADING_AFTER_DAYS:
        pattern.status = PatternStatus.FADING
    if pattern.status == PatternStatus.FADING and days > DORMANT_AFTER_DAYS:
        pattern.status = PatternStatus.DORMANT

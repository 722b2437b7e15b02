"""Episode segmentation and recent-versus-historical taste consolidation."""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from itertools import combinations
from typing import Any, Callable, Iterable, Sequence

from taste_engine import stats
from taste_engine.exceptions import MalformedStateError
from taste_engine.graph import CognitiveGraph
from taste_engine.models import (
    ConsolidatedTaste,
    EdgeType,
    Episode,
    NodeType,
    RatingEvent,
    TasteType,
    Trend,
)
from taste_engine.patterns import detect_patterns, pattern_node_id, sort_events
from taste_engine.wire import ensure_utc

logger = logging.getLogger(__name__)

EPISODE_GAP = timedelta(hours=6)
MIN_EPISODE_EVENTS = 2
MAX_EPISODES = 50
RECENT_WINDOW = timedelta(days=180)
CONSOLIDATION_THRESHOLD = 6.0
MIN_TASTE_REVIEWS = 2
TREND_DIFF_THRESHOLD = 0.5


def segment_episodes(events: Iterable[RatingEvent]) -> list[list[RatingEvent]]:
    """Split *events* into time-ordered runs separated by gaps over six hours.

    Runs shorter than :data:`MIN_EPISODE_EVENTS` are dropped.
    """
    ordered = sort_events(events)
    groups: list[list[RatingEvent]] = []
    current: list[RatingEvent] = []
    for event in ordered:
        if current and event.timestamp - current[-1].timestamp > EPISODE_GAP:
            groups.append(current)
            current = []
        current.append(event)
    if current:
        groups.append(current)
    return [g for g in groups if len(g) >= MIN_EPISODE_EVENTS]


def build_episode(members: Sequence[RatingEvent], patterns_detected: list[str]) -> Episode:
    ratings = [e.rating for e in members]
    avg = stats.mean(ratings)
    genres = Counter(g for e in members for g in e.genres)
    artists = Counter(e.artist for e in members if e.artist)
    start = members[0].timestamp
    return Episode(
        id=f"episode_{int(start.timestamp() * 1000)}",
        start_time=start,
        end_time=members[-1].timestamp,
        member_events=[e.item_id for e in members],
        patterns_detected=patterns_detected,
        emotional_tone=(avg - 5) / 5,
        genre_focus=[g for g, _ in genres.most_common(5)],
        artist_focus=[a for a, _ in artists.most_common(3)],
        avg_rating=avg,
        rating_variance=stats.variance(ratings),
    )


# ---------------------------------------------------------------------------
# Consolidated tastes
# ---------------------------------------------------------------------------

_TASTE_KEYS: tuple[tuple[TasteType, Callable[[RatingEvent], Iterable[str]]], ...] = (
    (TasteType.GENRE, lambda e: e.genres),
    (TasteType.ARTIST, lambda e: [e.artist] if e.artist else []),
    (TasteType.DESCRIPTOR, lambda e: sorted(e.descriptor_tags)),
)


def _aggregate(
    events: Iterable[RatingEvent], keys: Callable[[RatingEvent], Iterable[str]]
) -> dict[str, tuple[float, int]]:
    totals: dict[str, float] = {}
    counts: dict[str, int] = {}
    for event in events:
        for key in keys(event):
            totals[key] = totals.get(key, 0.0) + event.rating
            counts[key] = counts.get(key, 0) + 1
    return {k: (totals[k] / counts[k], counts[k]) for k in totals}


def consolidate_tastes(
    events: Iterable[RatingEvent], now: datetime
) -> list[ConsolidatedTaste]:
    """Return the genres, artists and descriptors the user reliably rates well.

    History is split at ``now - 180 days``.  A name missing from one window
    takes the other window's average.  Results are sorted by confidence,
    highest first.
    """
    cutoff = ensure_utc(now) - RECENT_WINDOW
    recent: list[RatingEvent] = []
    older: list[RatingEvent] = []
    for event in events:
        (recent if event.timestamp > cutoff else older).append(event)

    tastes: list[ConsolidatedTaste] = []
    for taste_type, keys in _TASTE_KEYS:
        recent_agg = _aggregate(recent, keys)
        older_agg = _aggregate(older, keys)
        for name in sorted(set(recent_agg) | set(older_agg)):
            recent_avg, recent_count = recent_agg.get(name, (None, 0))
            older_avg, older_count = older_agg.get(name, (None, 0))
            if recent_avg is None:
                recent_avg = older_avg
            if older_avg is None:
                older_avg = recent_avg
            total = recent_count + older_count
            if total < MIN_TASTE_REVIEWS:
                continue
            combined = (recent_avg + older_avg) / 2
            if combined < CONSOLIDATION_THRESHOLD:
                continue
            diff = recent_avg - older_avg
            if diff > TREND_DIFF_THRESHOLD:
                trend = Trend.STRENGTHENING
            elif diff < -TREND_DIFF_THRESHOLD:
                trend = Trend.FADING
            else:
                trend = Trend.STABLE
            tastes.append(
                ConsolidatedTaste(
                    name=name,
                    type=taste_type,
                    trend=trend,
                    recent_avg=recent_avg,
                    older_avg=older_avg,
                    total_reviews=total,
                    confidence=min(1.0, total / 10) * (combined / 10),
                )
            )
    tastes.sort(key=lambda t: -t.confidence)
    return tastes


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ConsolidationEngine:
    """Holds the rolling episode window for one user."""

    def __init__(self, episodes: Iterable[Episode] = ()) -> None:
        self._episodes: list[Episode] = list(episodes)[-MAX_EPISODES:]

    @property
    def episodes(self) -> list[Episode]:
        return list(self._episodes)

    def extract_episodes(self, events: Sequence[RatingEvent]) -> list[Episode]:
        """Re-segment the full history and keep the 50 most recent episodes.

        Each episode lists the patterns detected on the history up to and
        including its last event.
        """
        ordered = sort_events(events)
        groups = segment_episodes(ordered)[-MAX_EPISODES:]
        episodes: list[Episode] = []
        for members in groups:
            end = members[-1].timestamp
            history = [e for e in ordered if e.timestamp <= end]
            detected = [d.id for d in detect_patterns(history)]
            episodes.append(build_episode(members, detected))
        self._episodes = episodes
        logger.debug("Segmented %d episode(s) from %d events.", len(episodes), len(ordered))
        return list(episodes)

    def write_to_graph(self, graph: CognitiveGraph, pattern_ids: Iterable[str]) -> None:
        """Add episode nodes plus ``exhibited_in`` and ``reinforces`` edges.

        Only patterns whose ``pattern_<id>`` node already exists in *graph*
        are linked.
        """
        known = sorted(p for p in set(pattern_ids) if pattern_node_id(p) in graph)
        for episode in self._episodes:
            graph.add_node(
                episode.id,
                NodeType.EPISODE,
                {"avg_rating": episode.avg_rating, "size": len(episode.member_events)},
                len(episode.member_events) / 10,
                episode.end_time,
            )
            for pattern_id in episode.patterns_detected:
                if pattern_id in known:
                    graph.add_edge(
                        episode.id,
                        pattern_node_id(pattern_id),
                        EdgeType.EXHIBITED_IN,
                        1.0,
                        episode.end_time,
                    )

        if not self._episodes:
            return
        latest = self._episodes[-1].end_time
        for first, second in combinations(known, 2):
            together = sum(
                1
                for ep in self._episodes
                if first in ep.patterns_detected and second in ep.patterns_detected
            )
            if together:
                graph.add_edge(
                    pattern_node_id(first),
                    pattern_node_id(second),
                    EdgeType.REINFORCES,
                    together / len(self._episodes),
                    latest,
                )

    def episode_stats(self) -> dict[str, Any]:
        """Summary over the retained episodes."""
        if not self._episodes:
            return {
                "total_episodes": 0,
                "avg_episode_length": 0.0,
                "avg_rating": 0.0,
                "top_genres": [],
                "top_artists": [],
            }
        genres = Counter(g for ep in self._episodes for g in ep.genre_focus)
        artists = Counter(a for ep in self._episodes for a in ep.artist_focus)
        return {
            "total_episodes": len(self._episodes),
            "avg_episode_length": stats.mean([len(ep.member_events) for ep in self._episodes]),
            "avg_rating": stats.mean([ep.avg_rating for ep in self._episodes]),
            "top_genres": [g for g, _ in genres.most_common(5)],
            "top_artists": [a for a, _ in artists.most_common(5)],
        }

    def recent_episodes(self, count: int = 10) -> list[Episode]:
        """The *count* newest episodes, newest first."""
        if count <= 0:
            return []
        return self._episodes[-count:][::-1]

    def to_dict(self) -> list[dict[str, Any]]:
        return [ep.to_dict() for ep in self._episodes]

    @classmethod
    def load(cls, data: Any) -> ConsolidationEngine:
        """Rebuild from :meth:`to_dict` output.

        Raises:
            MalformedStateError: If *data* is not a list of episode dicts.
        """
        if not isinstance(data, list):
            raise MalformedStateError("episodes", "expected a list")
        return cls(Episode.from_dict(item) for item in data)

"""Drift detection: diff the current behavioural snapshot against the last one.

The detector keeps the previous run's active pattern ids, listening
signature and rating style, and appends an alert to a bounded history for
every significant change it finds between runs.
"""

from __future__ import annotations

import logging
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Any, Iterable, Sequence

from taste_engine import stats
from taste_engine.exceptions import MalformedStateError
from taste_engine.models import (
    DriftAlert,
    DriftType,
    ListeningSignature,
    PatternState,
    PatternStatus,
    RatingEvent,
    RatingSkew,
    RatingStyle,
    malformed,
)
from taste_engine.patterns import sort_events
from taste_engine.wire import ensure_utc

logger = logging.getLogger(__name__)

MAX_ALERTS = 100
SIGNIFICANT_MAGNITUDE = 0.3
SIGNATURE_DRIFT_THRESHOLD = 0.15
RATING_DRIFT_THRESHOLD = 0.5
VIBE_DRIFT_THRESHOLD = 0.2
MIN_WINDOW_REVIEWS = 5
MIN_GENRE_CHANGES = 3
RECENT_WINDOW = timedelta(days=30)

HARSH_BELOW = 5.5
LENIENT_ABOVE = 7.5

CONTRADICTIONS: tuple[tuple[str, str], ...] = (
    ("critical_ear", "music_optimist"),
    ("new_release_hunter", "archive_diver"),
    ("genre_purist", "genre_explorer"),
)


# ---------------------------------------------------------------------------
# Snapshot inputs
# ---------------------------------------------------------------------------


def compute_listening_signature(
    events: Sequence[RatingEvent], now: datetime
) -> ListeningSignature:
    """Estimate the seven listening-mode activations from the rating log.

    Each raw score is capped at 1, the seven are normalised to sum to 1 and
    rounded to two decimals.  An empty log yields all zeros.
    """
    n = len(events)
    if n == 0:
        return ListeningSignature()
    now = ensure_utc(now)
    ordered = sort_events(events)

    artists = Counter(e.artist for e in ordered)
    genres = {g for e in ordered for g in e.genres}

    discovery = min(len(artists) / n * 0.5 + len(genres) / (2 * n) * 0.5, 1.0)

    repeat_ratio = sum(1 for c in artists.values() if c > 1) / max(len(artists), 1)
    comfort = min(repeat_ratio * 1.5 + 0.1, 1.0)

    consecutive = sum(
        1 for prev, cur in zip(ordered, ordered[1:]) if cur.artist == prev.artist
    )
    deep_dive = min(consecutive * 0.1 / max(n / 10, 1.0), 1.0)

    fresh = sum(1 for e in ordered if e.item_age_years <= 1)
    reactive = min(fresh / n * 2, 1.0)

    extremes = sum(1 for e in ordered if e.rating <= 2 or e.rating >= 8)
    emotional = min(extremes / n * 0.6, 1.0)

    recent = sum(1 for e in ordered if e.timestamp > now - RECENT_WINDOW)
    social = min(recent / 10, 1.0) * 0.3

    aesthetic = min(len(genres) / 20, 1.0) * 0.3

    raw = [discovery, comfort, deep_dive, reactive, emotional, social, aesthetic]
    total = sum(raw)
    scale = 1.0 / total if total > 0 else 1.0
    return ListeningSignature(
        **{
            dim: round(value * scale, 2)
            for dim, value in zip(ListeningSignature.DIMENSIONS, raw)
        }
    )


def compute_rating_style(events: Sequence[RatingEvent]) -> RatingStyle:
    """Mean, population standard deviation and skew label of the ratings."""
    ratings = [e.rating for e in events]
    avg = stats.mean(ratings)
    if avg < HARSH_BELOW:
        skew = RatingSkew.HARSH
    elif avg > LENIENT_ABOVE:
        skew = RatingSkew.LENIENT
    else:
        skew = RatingSkew.BALANCED
    return RatingStyle(mean=avg, std_dev=stats.std_dev(ratings), skew=skew)


def split_recent(
    events: Iterable[RatingEvent], now: datetime, window: timedelta = RECENT_WINDOW
) -> tuple[list[RatingEvent], list[RatingEvent]]:
    """Partition *events* into ``(recent, older)`` around ``now - window``."""
    cutoff = ensure_utc(now) - window
    recent: list[RatingEvent] = []
    older: list[RatingEvent] = []
    for event in sort_events(events):
        (recent if event.timestamp > cutoff else older).append(event)
    return recent, older


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------


class DriftDetector:
    """Stateful drift detector with a bounded alert history.

    Args:
        alerts: Previously emitted alerts, oldest first.
        previous_signature: Signature seen on the last run, if any.
        previous_rating_style: Rating style seen on the last run, if any.
        previous_pattern_ids: Active pattern ids seen on the last run.
        sequence: Number of alerts ever emitted; drives alert ids.
    """

    def __init__(
        self,
        alerts: Iterable[DriftAlert] = (),
        previous_signature: ListeningSignature | None = None,
        previous_rating_style: RatingStyle | None = None,
        previous_pattern_ids: Iterable[str] = (),
        sequence: int = 0,
    ) -> None:
        self._alerts: deque[DriftAlert] = deque(alerts, maxlen=MAX_ALERTS)
        self.previous_signature = previous_signature
        self.previous_rating_style = previous_rating_style
        self.previous_pattern_ids: set[str] = set(previous_pattern_ids)
        self.sequence = sequence

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def detect(
        self,
        patterns: Iterable[PatternState],
        events: Sequence[RatingEvent],
        now: datetime,
    ) -> list[DriftAlert]:
        """Run every drift check and return the alerts emitted by this run."""
        now = ensure_utc(now)
        active = [p for p in patterns if p.status != PatternStatus.DORMANT]
        recent, older = split_recent(events, now)

        emitted: list[DriftAlert] = []
        emitted += self.detect_pattern_changes(active, now)
        emitted += self.detect_contradictions(active, now)
        emitted += self.detect_signature_drift(
            compute_listening_signature(events, now), now
        )
        emitted += self.detect_rating_style_shift(compute_rating_style(events), now)
        emitted += self.detect_emotional_shifts(recent, older, now)
        emitted += self.detect_genre_changes(recent, older, now)

        if emitted:
            logger.debug("Emitted %d drift alert(s).", len(emitted))
        return emitted

    def detect_pattern_changes(
        self, active: Sequence[PatternState], now: datetime
    ) -> list[DriftAlert]:
        current = {p.id for p in active}
        alerts: list[DriftAlert] = []
        for pattern_id in sorted(self.previous_pattern_ids - current):
            alerts.append(
                self._emit(
                    DriftType.PATTERN_DISAPPEARANCE,
                    f'Pattern "{pattern_id}" has faded',
                    0.6,
                    pattern_id,
                    None,
                    [pattern_id],
                    now,
                )
            )
        for pattern_id in sorted(current - self.previous_pattern_ids):
            alerts.append(
                self._emit(
                    DriftType.PATTERN_EMERGENCE,
                    f'New pattern detected: "{pattern_id}"',
                    0.5,
                    None,
                    pattern_id,
                    [pattern_id],
                    now,
                )
            )
        self.previous_pattern_ids = current
        return alerts

    def detect_contradictions(
        self, active: Sequence[PatternState], now: datetime
    ) -> list[DriftAlert]:
        present = {p.id for p in active}
        return [
            self._emit(
                DriftType.CONTRADICTION,
                f'Contradictory patterns detected: "{a}" and "{b}"',
                0.7,
                a,
                b,
                [a, b],
                now,
            )
            for a, b in CONTRADICTIONS
            if a in present and b in present
        ]

    def detect_signature_drift(
        self, signature: ListeningSignature, now: datetime
    ) -> list[DriftAlert]:
        previous = self.previous_signature
        self.previous_signature = signature
        if previous is None:
            return []

        alerts: list[DriftAlert] = []
        for dim in ListeningSignature.DIMENSIONS:
            old = getattr(previous, dim)
            new = getattr(signature, dim)
            diff = abs(new - old)
            if diff > SIGNATURE_DRIFT_THRESHOLD:
                direction = "increased" if new > old else "decreased"
                alerts.append(
                    self._emit(
                        DriftType.PREFERENCE_CHANGE,
                        f"{dim.upper()} mode {direction} by {diff * 100:.0f}%",
                        min(1.0, diff),
                        old,
                        new,
                        [],
                        now,
                    )
                )
        return alerts

    def detect_rating_style_shift(
        self, style: RatingStyle, now: datetime
    ) -> list[DriftAlert]:
        previous = self.previous_rating_style
        self.previous_rating_style = style
        if previous is None:
            return []

        alerts: list[DriftAlert] = []
        diff = abs(style.mean - previous.mean)
        if diff > RATING_DRIFT_THRESHOLD:
            direction = "more generous" if style.mean > previous.mean else "more critical"
            alerts.append(
                self._emit(
                    DriftType.RATING_STYLE_SHIFT,
                    f"Rating style became {direction} "
                    f"({previous.mean:.1f} to {style.mean:.1f})",
                    min(1.0, diff / 5),
                    previous.mean,
                    style.mean,
                    [],
                    now,
                )
            )
        if style.skew != previous.skew:
            alerts.append(
                self._emit(
                    DriftType.RATING_STYLE_SHIFT,
                    f"Rating skew changed from {previous.skew.value} to {style.skew.value}",
                    0.5,
                    previous.skew.value,
                    style.skew.value,
                    [],
                    now,
                )
            )
        return alerts

    def detect_emotional_shifts(
        self,
        recent: Sequence[RatingEvent],
        older: Sequence[RatingEvent],
        now: datetime,
    ) -> list[DriftAlert]:
        """Compare descriptor frequencies between the two windows."""
        if len(recent) < MIN_WINDOW_REVIEWS or len(older) < MIN_WINDOW_REVIEWS:
            return []

        recent_counts = Counter(tag for e in recent for tag in e.descriptor_tags)
        older_counts = Counter(tag for e in older for tag in e.descriptor_tags)
        recent_total = sum(recent_counts.values()) or 1
        older_total = sum(older_counts.values()) or 1

        alerts: list[DriftAlert] = []
        for tag in sorted(set(recent_counts) | set(older_counts)):
            recent_freq = recent_counts[tag] / recent_total
            older_freq = older_counts[tag] / older_total
            diff = recent_freq - older_freq
            if abs(diff) > VIBE_DRIFT_THRESHOLD:
                direction = "more" if diff > 0 else "less"
                alerts.append(
                    self._emit(
                        DriftType.EMOTIONAL_SHIFT,
                        f'Now using "{tag}" {direction} frequently',
                        min(1.0, abs(diff)),
                        older_freq,
                        recent_freq,
                        [],
                        now,
                    )
                )
        return alerts

    def detect_genre_changes(
        self,
        recent: Sequence[RatingEvent],
        older: Sequence[RatingEvent],
        now: datetime,
    ) -> list[DriftAlert]:
        """Report genres that newly appear in, or vanish from, the recent window."""
        if not recent or not older:
            return []
        recent_genres = {g for e in recent for g in e.genres}
        older_genres = {g for e in older for g in e.genres}

        alerts: list[DriftAlert] = []
        added = sorted(recent_genres - older_genres)
        if len(added) >= MIN_GENRE_CHANGES:
            alerts.append(
                self._emit(
                    DriftType.GENRE_EXPANSION,
                    f"Exploring {len(added)} new genres: {', '.join(added[:3])}",
                    min(1.0, len(added) / 5),
                    len(older_genres),
                    len(recent_genres),
                    [],
                    now,
                )
            )
        dropped = sorted(older_genres - recent_genres)
        if len(dropped) >= MIN_GENRE_CHANGES:
            alerts.append(
                self._emit(
                    DriftType.GENRE_CONTRACTION,
                    f"Moved away from {len(dropped)} genres: {', '.join(dropped[:3])}",
                    min(1.0, len(dropped) / 5),
                    len(older_genres),
                    len(recent_genres),
                    [],
                    now,
                )
            )
        return alerts

    def _emit(
        self,
        drift_type: DriftType,
        description: str,
        magnitude: float,
        old_value: Any,
        new_value: Any,
        affected: list[str],
        now: datetime,
    ) -> DriftAlert:
        self.sequence += 1
        alert = DriftAlert(
            id=f"drift_{self.sequence}",
            type=drift_type,
            description=description,
            magnitude=magnitude,
            old_value=old_value,
            new_value=new_value,
            affected_patterns=affected,
            detected_at=now,
        )
        self._alerts.append(alert)
        return alert

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def all_alerts(self) -> list[DriftAlert]:
        """Every retained alert, oldest first."""
        return list(self._alerts)

    def significant_alerts(self) -> list[DriftAlert]:
        return [
            a
            for a in self._alerts
            if a.magnitude >= SIGNIFICANT_MAGNITUDE and not a.acknowledged
        ]

    def recent_alerts(self, count: int = 10) -> list[DriftAlert]:
        """The *count* newest alerts, newest first."""
        if count <= 0:
            return []
        return list(self._alerts)[-count:][::-1]

    def acknowledge(self, alert_id: str) -> bool:
        """Mark *alert_id* acknowledged; returns ``False`` if it is unknown."""
        for alert in self._alerts:
            if alert.id == alert_id:
                alert.acknowledged = True
                return True
        return False

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "alerts": [a.to_dict() for a in self._alerts],
            "previous_signature": (
                self.previous_signature.to_dict() if self.previous_signature else None
            ),
            "previous_rating_style": (
                self.previous_rating_style.to_dict()
                if self.previous_rating_style
                else None
            ),
            "previous_pattern_ids": sorted(self.previous_pattern_ids),
            "sequence": self.sequence,
        }

    @classmethod
    def load(cls, data: Any) -> DriftDetector:
        """Rebuild a detector from :meth:`to_dict` output.

        Raises:
            MalformedStateError: If *data* is structurally invalid.
        """
        if not isinstance(data, dict):
            raise MalformedStateError("drift snapshot", "expected a mapping")
        with malformed("drift snapshot"):
            signature = data.get("previous_signature")
            style = data.get("previous_rating_style")
            return cls(
                alerts=[DriftAlert.from_dict(a) for a in data.get("alerts", [])],
                previous_signature=(
                    ListeningSignature.from_dict(signature) if signature else None
                ),
                previous_rating_style=RatingStyle.from_dict(style) if style else None,
                previous_pattern_ids=[str(p) for p in data.get("previous_pattern_ids", [])],
                sequence=int(data.get("sequence", 0)),
            )

"""Taste engine: orchestrates rating ingestion, analysis and prediction.

The engine keeps no user state of its own between calls.  Every operation
reads what it needs from the :class:`~taste_engine.store.EventStore`,
rebuilds the derived structures, and writes them back.  Work for a single
user is serialised with a per-user lock; different users proceed in
parallel.
"""

from __future__ import annotations

import logging
import threading
import uuid
import weakref
from datetime import datetime
from typing import Any, Iterable

from taste_engine.consolidation import ConsolidationEngine, consolidate_tastes
from taste_engine.drift import DriftDetector
from taste_engine.exceptions import MalformedStateError, PredictionNotFoundError
from taste_engine.features import FeatureProviderClient
from taste_engine.graph import CognitiveGraph
from taste_engine.models import (
    ConsolidatedTaste,
    DriftAlert,
    FeatureVector,
    PatternState,
    Prediction,
    PredictionHistoryEntry,
    PredictionOutcome,
    PreferenceModel,
    RatingEvent,
    malformed,
)
from taste_engine.patterns import PatternLearner
from taste_engine.phrases import decipher_message, streak_message
from taste_engine.prediction import (
    apply_outcome,
    classify_outcome,
    feature_seed_for,
    predict as predict_rating,
)
from taste_engine.preference import compute_preference_model, decipher_for
from taste_engine.store import MAX_READ_LIMIT, EventStore
from taste_engine.wire import ensure_utc, from_iso, to_iso

logger = logging.getLogger(__name__)


def _require_user(user_id: str) -> None:
    if not user_id:
        raise ValueError("user_id must be non-empty")


class UserAnalysis:
    """Derived per-user state persisted between recomputes.

    Each part is parsed independently so one corrupt part does not discard
    the others.
    """

    def __init__(
        self,
        patterns: PatternLearner | None = None,
        consolidation: ConsolidationEngine | None = None,
        drift: DriftDetector | None = None,
        tastes: Iterable[ConsolidatedTaste] = (),
        graph_stats: dict[str, Any] | None = None,
        computed_at: datetime | None = None,
    ) -> None:
        self.patterns = patterns or PatternLearner()
        self.consolidation = consolidation or ConsolidationEngine()
        self.drift = drift or DriftDetector()
        self.tastes = list(tastes)
        self.graph_stats = graph_stats or {}
        self.computed_at = computed_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "patterns": self.patterns.to_dict(),
            "episodes": self.consolidation.to_dict(),
            "drift": self.drift.to_dict(),
            "tastes": [t.to_dict() for t in self.tastes],
            "graph_stats": self.graph_stats,
            "computed_at": to_iso(self.computed_at),
        }

    @classmethod
    def load(cls, user_id: str, data: Any) -> UserAnalysis:
        """Parse stored analysis; any corrupt part is logged and starts empty."""
        analysis = cls()
        if not data:
            return analysis
        if not isinstance(data, dict):
            logger.warning(
                "Discarding malformed analysis for user %s: expected a mapping, got %s",
                user_id,
                type(data).__name__,
            )
            return analysis

        def part(name: str, parse: Any) -> Any:
            if name not in data:
                return None
            try:
                return parse(data[name])
            except MalformedStateError as exc:
                logger.warning(
                    "Discarding malformed %s for user %s: %s", name, user_id, exc
                )
                return None

        analysis.patterns = part("patterns", PatternLearner.load) or analysis.patterns
        analysis.consolidation = (
            part("episodes", ConsolidationEngine.load) or analysis.consolidation
        )
        analysis.drift = part("drift", DriftDetector.load) or analysis.drift
        analysis.tastes = part("tastes", _load_tastes) or []
        analysis.graph_stats = part("graph_stats", _load_graph_stats) or {}
        analysis.computed_at = part("computed_at", _load_time)
        return analysis


def _load_tastes(data: Any) -> list[ConsolidatedTaste]:
    if not isinstance(data, list):
        raise MalformedStateError("consolidated tastes", "expected a list")
    return [ConsolidatedTaste.from_dict(item) for item in data]


def _load_graph_stats(data: Any) -> dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise MalformedStateError("graph stats", "expected a mapping")
    return dict(data)


def _load_time(value: Any) -> datetime | None:
    with malformed("analysis timestamp"):
        return from_iso(value)


class TasteEngine:
    """Caller-facing operations of the taste engine.

    Args:
        store: Durable event store.
        features: Cached audio-feature provider client.
        recompute_every: Run a full recompute on every N-th rating.
        history_limit: Number of most recent events analysed (at most 500).
    """

    def __init__(
        self,
        store: EventStore,
        features: FeatureProviderClient,
        recompute_every: int = 5,
        history_limit: int = MAX_READ_LIMIT,
    ) -> None:
        if recompute_every <= 0:
            raise ValueError("recompute_every must be positive")
        self._store = store
        self._features = features
        self._recompute_every = recompute_every
        self._history_limit = min(history_limit, MAX_READ_LIMIT)
        # Entries vanish once no caller holds the lock.
        self._locks: weakref.WeakValueDictionary[str, threading.RLock] = (
            weakref.WeakValueDictionary()
        )
        self._locks_guard = threading.Lock()

    def _user_lock(self, user_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[user_id] = lock
            return lock

    def _load_model(self, user_id: str) -> PreferenceModel | None:
        """Stored model, or ``None`` when it is missing or corrupt."""
        try:
            return self._store.load_preference_model(user_id)
        except MalformedStateError as exc:
            logger.warning(
                "Discarding malformed preference model for user %s: %s", user_id, exc
            )
            return None

    # ------------------------------------------------------------------
    # Ratings
    # ------------------------------------------------------------------

    def record_rating(self, event: RatingEvent, now: datetime) -> RatingEvent:
        """Append a rating, fetching its features when the caller sent none.

        A provider failure leaves the event without features.  Every
        ``recompute_every``-th rating triggers :meth:`recompute`.

        Returns:
            The event as stored.

        Raises:
            ValueError: If the user id is empty.
        """
        _require_user(event.user_id)
        if event.feature_vector is None:
            event = event.with_features(self._features.get_feature_vector(event.item_id))

        with self._user_lock(event.user_id):
            self._store.append_event(event)
            count = self._store.count_events(event.user_id)
            logger.debug(
                "Recorded rating %.1f for user=%s item=%s (features=%s).",
                event.rating,
                event.user_id,
                event.item_id,
                event.feature_vector is not None,
            )
            if count % self._recompute_every == 0:
                self.recompute(event.user_id, now)
        return event

    def recompute(self, user_id: str, now: datetime) -> dict[str, Any]:
        """Rebuild every derived structure for *user_id* from the event log.

        Pipeline: preference model, patterns, episodes and tastes, graph
        importance, drift.  Counters are never touched here.

        Returns:
            A JSON-safe summary of the run.
        """
        _require_user(user_id)
        now = ensure_utc(now)
        with self._user_lock(user_id):
            events = self._store.read_events(user_id, self._history_limit)
            prior = self._load_model(user_id)
            model = self._store.save_preference_model(
                compute_preference_model(user_id, events, now, prior)
            )

            analysis = UserAnalysis.load(user_id, self._store.load_analysis(user_id))
            analysis.patterns.learn(events, now)
            analysis.consolidation.extract_episodes(events)
            analysis.tastes = consolidate_tastes(events, now)

            graph = CognitiveGraph()
            analysis.patterns.write_to_graph(graph)
            analysis.consolidation.write_to_graph(
                graph, [p.id for p in analysis.patterns.patterns()]
            )
            analysis.patterns.compute_importance(graph, now)
            analysis.graph_stats = graph.stats()

            new_alerts = analysis.drift.detect(analysis.patterns.patterns(), events, now)
            analysis.computed_at = now
            self._store.save_analysis(user_id, analysis.to_dict())

        summary = {
            "user_id": user_id,
            "events_analysed": len(events),
            "patterns": len(analysis.patterns),
            "active_patterns": sorted(analysis.patterns.active_pattern_ids()),
            "episodes": analysis.consolidation.episode_stats(),
            "tastes": len(analysis.tastes),
            "new_alerts": [a.id for a in new_alerts],
            "decipher_progress": model.decipher_progress,
            "computed_at": to_iso(now),
        }
        logger.info(
            "Recomputed user=%s: %d events, %d pattern(s), %d episode(s), %d new alert(s).",
            user_id,
            len(events),
            len(analysis.patterns),
            summary["episodes"]["total_episodes"],
            len(new_alerts),
        )
        return summary

    # ------------------------------------------------------------------
    # Predictions
    # ------------------------------------------------------------------

    def predict(
        self,
        user_id: str,
        now: datetime,
        feature_vector: FeatureVector | None = None,
        item_id: str | None = None,
    ) -> Prediction:
        """Predict *user_id*'s rating for an item and remember the prediction.

        Features are looked up by *item_id* when not supplied.
        """
        _require_user(user_id)
        if feature_vector is None and item_id:
            feature_vector = self._features.get_feature_vector(item_id)

        model = self._load_model(user_id)
        history = self._store.read_events(user_id, self._history_limit)
        prediction = predict_rating(
            prediction_id=uuid.uuid4().hex,
            user_id=user_id,
            model=model,
            fv=feature_vector,
            history=history,
            now=now,
            item_id=item_id,
        )
        self._store.put_pending_prediction(prediction)
        return prediction

    def record_outcome(
        self,
        user_id: str,
        prediction_id: str,
        actual_rating: float,
        actual_descriptors: Iterable[str],
        now: datetime,
    ) -> PredictionOutcome:
        """Compare a pending prediction with the realised rating.

        Raises:
            ValueError: If the user id is empty or the rating is outside [0, 10].
            PredictionNotFoundError: If the prediction is unknown or already
                consumed.
        """
        _require_user(user_id)
        if not 0 <= actual_rating <= 10:
            raise ValueError(f"Rating must be between 0 and 10, got {actual_rating!r}")
        actual = sorted(set(actual_descriptors))

        with self._user_lock(user_id):
            pending = self._store.pop_pending_prediction(user_id, prediction_id)
            if pending is None:
                raise PredictionNotFoundError(user_id, prediction_id)

            check = classify_outcome(pending.predicted_rating, actual_rating, pending.confidence)
            progress_before: list[float] = []

            def update(model: PreferenceModel) -> PreferenceModel:
                progress_before.append(model.decipher_progress)
                model.counters = apply_outcome(model.counters, check)
                model.decipher_progress = decipher_for(model)
                return model

            stored = self._store.update_counters(user_id, update)
            matched = len(set(pending.suggested_descriptors) & set(actual))
            self._store.append_prediction_history(
                PredictionHistoryEntry(
                    user_id=user_id,
                    prediction_id=prediction_id,
                    item_id=pending.item_id,
                    predicted_rating=pending.predicted_rating,
                    predicted_descriptors=tuple(pending.suggested_descriptors),
                    confidence=pending.confidence,
                    actual_rating=actual_rating,
                    actual_descriptors=tuple(actual),
                    match_quality=check.match_quality,
                    descriptor_match_count=matched,
                    was_surprise=check.is_surprise,
                    feature_vector=pending.feature_vector,
                    reasoning=tuple(pending.reasoning),
                    rated_at=ensure_utc(now),
                )
            )

        counters = stored.counters
        before = progress_before[-1] if progress_before else 0.0
        after = stored.decipher_progress
        milestone = decipher_message(after)
        seed = feature_seed_for(pending.feature_vector, pending.item_id)
        logger.debug(
            "Outcome for user=%s prediction=%s: %s (diff %.2f).",
            user_id,
            prediction_id,
            check.match_quality.value,
            check.difference,
        )
        return PredictionOutcome(
            prediction_id=prediction_id,
            predicted_rating=pending.predicted_rating,
            actual_rating=actual_rating,
            difference=check.difference,
            match_quality=check.match_quality,
            is_match=check.is_match,
            is_surprise=check.is_surprise,
            is_perfect=check.is_perfect,
            descriptor_match_count=matched,
            current_streak=counters.current_streak,
            longest_streak=counters.longest_streak,
            decipher_progress=after,
            streak_message=(
                streak_message(counters.current_streak, seed) if check.is_correct else None
            ),
            decipher_message=milestone if milestone != decipher_message(before) else None,
        )

    def get_prediction_history(
        self, user_id: str, limit: int = MAX_READ_LIMIT
    ) -> list[dict[str, Any]]:
        _require_user(user_id)
        return self._store.read_prediction_history(user_id, limit)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def _analysis(self, user_id: str) -> UserAnalysis:
        _require_user(user_id)
        return UserAnalysis.load(user_id, self._store.load_analysis(user_id))

    def get_patterns(self, user_id: str) -> list[PatternState]:
        """Known patterns, most important first."""
        return self._analysis(user_id).patterns.sorted_by_importance()

    def get_drift_alerts(
        self, user_id: str, significant_only: bool = False
    ) -> list[DriftAlert]:
        """Retained drift alerts, newest first."""
        drift = self._analysis(user_id).drift
        alerts = drift.significant_alerts() if significant_only else drift.all_alerts()
        return alerts[::-1]

    def acknowledge_drift_alert(self, user_id: str, alert_id: str) -> bool:
        """Dismiss an alert; returns ``False`` if it is unknown."""
        _require_user(user_id)
        with self._user_lock(user_id):
            analysis = self._analysis(user_id)
            if not analysis.drift.acknowledge(alert_id):
                return False
            self._store.save_analysis(user_id, analysis.to_dict())
        return True

    def get_consolidated_tastes(self, user_id: str) -> list[ConsolidatedTaste]:
        return self._analysis(user_id).tastes

    def get_episodes(self, user_id: str, count: int = 10) -> list[dict[str, Any]]:
        """The *count* newest episodes as dicts, newest first."""
        episodes = self._analysis(user_id).consolidation.recent_episodes(count)
        return [ep.to_dict() for ep in episodes]

    def get_preference_model(self, user_id: str) -> PreferenceModel | None:
        _require_user(user_id)
        return self._load_model(user_id)

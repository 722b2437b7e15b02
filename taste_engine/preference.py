"""Acoustic fingerprint learning.

Builds a :class:`~taste_engine.models.PreferenceModel` from the most recent
window of a user's rating history.  Only events that carry a feature vector
contribute to the ranges, correlations and descriptor map; the prediction
counters are copied from the prior model untouched.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Sequence

from taste_engine import stats
from taste_engine.exceptions import InsufficientDataError
from taste_engine.models import (
    CORRELATION_FEATURES,
    NORMALIZED_FEATURES,
    FeatureCorrelations,
    FeatureRange,
    PredictionCounters,
    PreferenceModel,
    RatingEvent,
    default_feature_range,
    default_tempo_range,
)
from taste_engine.wire import ensure_utc

logger = logging.getLogger(__name__)

MIN_FEATURE_EVENTS = 5
MIN_QUALIFYING_EVENTS = 3
LIKED_THRESHOLD = 6.0
MIN_DESCRIPTOR_USES = 3
DESCRIPTOR_MAP_FEATURES = ("energy", "valence", "danceability")


def learn_feature_range(
    ratings: Sequence[float], values: Sequence[float], default: FeatureRange
) -> FeatureRange:
    """Learn the preferred range of one feature.

    Items rated 6 or more qualify, weighted by ``rating - 5``.  The sweet spot
    is their weighted mean and the range spans the 10th to 90th percentile of
    their values.  The range weight is ``min(1, 2 * |pearson|)`` over all
    points.  Fewer than five points, or fewer than three qualifying items,
    return *default* unchanged.
    """
    if len(ratings) < MIN_FEATURE_EVENTS:
        return replace(default)
    liked = [(v, r - 5) for r, v in zip(ratings, values) if r >= LIKED_THRESHOLD]
    if len(liked) < MIN_QUALIFYING_EVENTS:
        return replace(default)

    liked_values = [v for v, _ in liked]
    sweet_spot = stats.weighted_mean(liked_values, [w for _, w in liked])
    low, high = stats.percentile_bounds(liked_values)
    correlation = abs(stats.pearson(ratings, values))
    return FeatureRange(
        min=low,
        max=high,
        sweet_spot=default.sweet_spot if sweet_spot is None else sweet_spot,
        weight=min(1.0, correlation * 2),
    )


def learn_descriptor_map(events: Sequence[RatingEvent]) -> dict[str, dict[str, float]]:
    """Mean energy/valence/danceability per descriptor used three or more times."""
    sums: dict[str, list[float]] = {}
    counts: dict[str, int] = {}
    for event in events:
        fv = event.feature_vector
        if fv is None:
            continue
        for tag in sorted(event.descriptor_tags):
            totals = sums.setdefault(tag, [0.0] * len(DESCRIPTOR_MAP_FEATURES))
            for i, feature in enumerate(DESCRIPTOR_MAP_FEATURES):
                totals[i] += fv.value(feature)
            counts[tag] = counts.get(tag, 0) + 1
    return {
        tag: {f: sums[tag][i] / counts[tag] for i, f in enumerate(DESCRIPTOR_MAP_FEATURES)}
        for tag in sorted(sums)
        if counts[tag] >= MIN_DESCRIPTOR_USES
    }


def compute_vibe_consistency(events: Sequence[RatingEvent]) -> float:
    """``min(1, uses / (3 * unique))`` over descriptor usage; 0 with none."""
    uses = [tag for e in events for tag in e.descriptor_tags]
    unique = len(set(uses))
    if unique == 0:
        return 0.0
    return min(1.0, len(uses) / (unique * 3))


def compute_decipher_progress(
    accuracy: float,
    total_ratings: int,
    vibe_consistency: float,
    correlation_strength: float,
) -> float:
    """Composite 0-100 score of how well the model understands the user."""
    score = (
        40 * accuracy
        + 20 * min(1.0, total_ratings / 100)
        + 20 * vibe_consistency
        + 20 * correlation_strength
    )
    return stats.clamp(score, 0.0, 100.0)


def decipher_for(model: PreferenceModel) -> float:
    """Recompute :attr:`PreferenceModel.decipher_progress` from its own fields."""
    return compute_decipher_progress(
        model.counters.prediction_accuracy,
        model.total_ratings,
        model.vibe_consistency,
        model.correlations.mean_abs(),
    )


def compute_preference_model(
    user_id: str,
    events: Sequence[RatingEvent],
    now: datetime,
    prior: PreferenceModel | None = None,
    strict: bool = False,
) -> PreferenceModel:
    """Learn a fresh preference model from *events*.

    Args:
        user_id: Owner of the model.
        events: The recent history window (at most 500 events).
        now: Timestamp recorded as ``computed_at``.
        prior: The previously stored model; its counters are carried over.
        strict: Raise instead of falling back to the default ranges.

    Returns:
        A new model.  With fewer than five feature-bearing events the ranges
        and correlations are the documented defaults.

    Raises:
        InsufficientDataError: If *strict* and fewer than five events carry
            features.
    """
    counters = (
        replace(prior.counters) if prior is not None else PredictionCounters()
    )
    with_features = [e for e in events if e.feature_vector is not None]
    if strict and len(with_features) < MIN_FEATURE_EVENTS:
        raise InsufficientDataError(
            "preference model", MIN_FEATURE_EVENTS, len(with_features)
        )
    ratings = [e.rating for e in events]

    model = PreferenceModel(
        user_id=user_id,
        total_ratings=len(events),
        mean_rating=stats.mean(ratings) if ratings else None,
        computed_at=ensure_utc(now),
        counters=counters,
    )

    if len(with_features) >= MIN_FEATURE_EVENTS:
        feature_ratings = [e.rating for e in with_features]
        columns = {
            f: [e.feature_vector.value(f) for e in with_features]
            for f in CORRELATION_FEATURES
        }
        model.correlations = FeatureCorrelations(
            **{f: stats.pearson(feature_ratings, columns[f]) for f in CORRELATION_FEATURES}
        )
        for feature in NORMALIZED_FEATURES:
            setattr(
                model,
                feature,
                learn_feature_range(feature_ratings, columns[feature], default_feature_range()),
            )
        model.tempo = learn_feature_range(
            feature_ratings, columns["tempo"], default_tempo_range()
        )
        model.descriptor_feature_map = learn_descriptor_map(with_features) or None
    else:
        logger.debug(
            "User %s has %d feature-bearing rating(s); using default ranges.",
            user_id,
            len(with_features),
        )

    model.vibe_consistency = compute_vibe_consistency(with_features)
    model.decipher_progress = decipher_for(model)
    return model

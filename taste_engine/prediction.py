"""Rating prediction and post-hoc outcome classification.

A prediction blends three estimators:

* **feature similarity**: how close the item sits to each learned sweet
  spot, weighted by how much that feature drives the user's ratings;
* **correlation regression**: a linear nudge away from 5.5 along each
  rating/feature correlation;
* **similar-item average**: the similarity-weighted rating of the user's
  nearest previously rated items.

The realised rating is later classified against the prediction, and that
single classification drives both streaks and long-run accuracy.
"""

from __future__ import annotations

import logging
import math
import zlib
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Sequence

from taste_engine import phrases, stats
from taste_engine.models import (
    RANGE_FEATURES,
    TEMPO_SCALE,
    FeatureCorrelations,
    FeatureVector,
    MatchQuality,
    Prediction,
    PredictionCounters,
    PreferenceModel,
    RatingEvent,
)
from taste_engine.wire import ensure_utc

logger = logging.getLogger(__name__)

NEUTRAL_RATING = 5.5
FIRST_TIME_RATING = 6.5
FIRST_TIME_RANGE = (4.0, 9.0)
MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 0.95
SIMILAR_HISTORY = 50
SIMILAR_TOP_K = 10
MIN_SIMILAR_ITEMS = 3
MAX_DESCRIPTOR_SUGGESTIONS = 5
MAX_REASONS = 3

# Expected sub-ranges per descriptor, checked in table order.
VIBE_AUDIO_BASELINE: tuple[tuple[str, dict[str, tuple[float, float]]], ...] = (
    # Arousal
    ("explosive", {"energy": (0.85, 1.0), "danceability": (0.5, 1.0)}),
    ("driving", {"energy": (0.7, 1.0), "danceability": (0.6, 1.0)}),
    ("simmering", {"energy": (0.4, 0.7)}),
    ("subdued", {"energy": (0.0, 0.4)}),
    # Valence
    ("euphoric", {"energy": (0.7, 1.0), "valence": (0.75, 1.0), "danceability": (0.65, 1.0)}),
    ("triumphant", {"energy": (0.6, 1.0), "valence": (0.7, 1.0)}),
    ("melancholic", {"energy": (0.2, 0.5), "valence": (0.1, 0.4)}),
    ("dark", {"valence": (0.0, 0.3), "energy": (0.3, 0.8)}),
    ("anxious", {"valence": (0.2, 0.5), "energy": (0.5, 0.8)}),
    # Texture
    ("lush", {"acousticness": (0.3, 0.7)}),
    ("sparse", {"acousticness": (0.4, 1.0), "energy": (0.0, 0.5)}),
    ("gritty", {"acousticness": (0.0, 0.4), "energy": (0.5, 1.0)}),
    ("crystalline", {"acousticness": (0.2, 0.6)}),
    # Temporal
    ("hypnotic", {"danceability": (0.65, 1.0), "energy": (0.4, 0.75)}),
    ("chaotic", {"energy": (0.7, 1.0)}),
    ("groovy", {"danceability": (0.7, 1.0)}),
    ("floating", {"energy": (0.0, 0.4), "acousticness": (0.3, 1.0)}),
    # Scale
    ("epic", {"energy": (0.6, 1.0)}),
    ("intimate", {"energy": (0.0, 0.45), "acousticness": (0.4, 1.0)}),
    ("visceral", {"energy": (0.65, 1.0)}),
    ("ethereal", {"acousticness": (0.3, 0.8), "energy": (0.2, 0.6)}),
    # Authenticity
    ("raw", {"acousticness": (0.0, 0.4), "energy": (0.5, 1.0)}),
    ("polished", {"valence": (0.4, 0.8), "danceability": (0.45, 0.85)}),
    ("soulful", {"valence": (0.3, 0.7), "acousticness": (0.2, 0.7)}),
    # Narrative
    ("cinematic", {"energy": (0.4, 0.8)}),
    ("abstract", {"energy": (0.3, 0.7)}),
    ("confessional", {"acousticness": (0.3, 0.8), "energy": (0.2, 0.6)}),
    # Novelty
    ("avant_garde", {"energy": (0.3, 0.9)}),
    ("nostalgic", {"valence": (0.3, 0.7)}),
    ("futuristic", {"energy": (0.5, 0.9), "acousticness": (0.0, 0.4)}),
    ("timeless", {}),
)


def round1(value: float) -> float:
    """Round half-up to one decimal place."""
    return math.floor(value * 10 + 0.5) / 10


# ---------------------------------------------------------------------------
# Estimators
# ---------------------------------------------------------------------------


def feature_similarity(fv: FeatureVector, model: PreferenceModel) -> float:
    """Weighted closeness of *fv* to the model's sweet spots, in [0, 1].

    Returns 0.5 when every range weight is zero.
    """
    total_score = 0.0
    total_weight = 0.0
    for feature in RANGE_FEATURES:
        rng = model.feature_range(feature)
        scale = TEMPO_SCALE if feature == "tempo" else 1.0
        width = (rng.max - rng.min) / scale or 1.0
        distance = abs(fv.scaled(feature) - rng.sweet_spot / scale)
        total_score += max(0.0, 1.0 - distance / width) * rng.weight
        total_weight += rng.weight
    if total_weight <= 0:
        return 0.5
    return total_score / total_weight


def correlation_prediction(fv: FeatureVector, correlations: FeatureCorrelations) -> float:
    """``5.5 + Σ (value - 0.5) * corr * 2`` clamped to [0, 10]."""
    rating = NEUTRAL_RATING
    for feature in RANGE_FEATURES:
        rating += (fv.scaled(feature) - 0.5) * correlations.get(feature) * 2
    return stats.clamp(rating, 0.0, 10.0)


def feature_distance(a: FeatureVector, b: FeatureVector) -> float:
    """Euclidean distance over the five range features (tempo scaled by /200)."""
    return math.sqrt(sum((a.scaled(f) - b.scaled(f)) ** 2 for f in RANGE_FEATURES))


def similar_item_average(
    fv: FeatureVector, history: Sequence[RatingEvent]
) -> float | None:
    """Similarity-weighted mean rating of the ten nearest rated items.

    Only the latest fifty feature-bearing events of *history* are considered;
    ``None`` when fewer than three are available.
    """
    rated = [e for e in history if e.feature_vector is not None][-SIMILAR_HISTORY:]
    if len(rated) < MIN_SIMILAR_ITEMS:
        return None
    scored = [
        (1.0 / (1.0 + 5.0 * feature_distance(fv, e.feature_vector)), e.rating)
        for e in rated
    ]
    scored.sort(key=lambda pair: -pair[0])
    top = scored[:SIMILAR_TOP_K]
    return stats.weighted_mean([r for _, r in top], [s for s, _ in top])


def compute_confidence(
    total_predictions: int,
    accuracy: float,
    correlation_strength: float,
    has_features: bool,
) -> float:
    """Confidence in [0.1, 0.95]; non-decreasing in every numeric argument."""
    volume = min(0.25, total_predictions / 100 * 0.25)
    data = 0.2 if has_features else 0.05
    total = volume + accuracy * 0.35 + data + correlation_strength * 0.2
    return stats.clamp(total, MIN_CONFIDENCE, MAX_CONFIDENCE)


def rating_range(predicted: float, confidence: float) -> tuple[float, float]:
    half_width = 1.0 + (1.0 - confidence) * 3.0
    return (
        max(0.0, round1(predicted - half_width)),
        min(10.0, round1(predicted + half_width)),
    )


def suggest_descriptors(fv: FeatureVector) -> list[str]:
    """Top five descriptors whose sub-ranges *fv* mostly satisfies."""
    scored: list[tuple[str, float]] = []
    for name, ranges in VIBE_AUDIO_BASELINE:
        if not ranges:
            continue
        hits = sum(1 for f, (lo, hi) in ranges.items() if lo <= fv.value(f) <= hi)
        scored.append((name, hits / len(ranges)))
    scored.sort(key=lambda pair: -pair[1])
    return [name for name, score in scored if score >= 0.5][:MAX_DESCRIPTOR_SUGGESTIONS]


def generate_reasoning(
    fv: FeatureVector, model: PreferenceModel, similarity: float, seed: int
) -> list[str]:
    """Up to three explanation phrases keyed on feature extremity and correlation."""
    corr = model.correlations
    reasons: list[str] = []

    def add(category: str) -> None:
        reasons.append(phrases.phrase(category, seed))

    energy, ec = fv.energy, corr.energy
    if energy > 0.8 and ec > 0.3:
        add("energy_high_liked")
    elif energy < 0.3 and ec < -0.2:
        add("energy_low_liked")
    elif energy > 0.7 and ec < -0.2:
        add("energy_high_disliked")
    elif energy < 0.3 and ec > 0.3:
        add("energy_low_disliked")

    valence, vc = fv.valence, corr.valence
    if valence > 0.75 and vc > 0.25:
        add("valence_high_liked")
    elif valence < 0.3 and vc < -0.2:
        add("valence_low_liked")
    elif valence > 0.7 and vc < -0.3:
        add("valence_high_disliked")
    elif valence < 0.3 and vc > 0.3:
        add("valence_low_disliked")
    elif 0.4 < valence < 0.6 and phrases.chance(seed, 1, 0.3):
        add("valence_neutral")

    if fv.danceability > 0.75 and corr.danceability > 0.3:
        add("dance_high_liked")
    elif fv.danceability < 0.4 and corr.danceability < -0.2:
        add("dance_low_liked")

    if fv.acousticness > 0.65 and corr.acousticness > 0.25:
        add("acoustic_high_liked")
    elif fv.acousticness < 0.25 and corr.acousticness < -0.2:
        add("acoustic_low_liked")

    if fv.tempo > 140 and model.tempo.sweet_spot > 130:
        add("tempo_fast")
    elif fv.tempo < 90 and model.tempo.sweet_spot < 100:
        add("tempo_slow")

    if similarity > 0.75:
        add("similar")
    elif similarity < 0.25:
        add("dissimilar")

    if not reasons:
        add("generic")
    if len(reasons) == 1 and phrases.chance(seed, 2, 0.4):
        add("secondary")
    return reasons[:MAX_REASONS]


def _with_disclaimer(
    reasons: list[str], confidence: float, total_predictions: int, seed: int
) -> list[str]:
    if confidence < 0.3 and total_predictions < 10:
        return [phrases.phrase("learning", seed)] + reasons[: MAX_REASONS - 1]
    if confidence < 0.4:
        return [phrases.phrase("guess", seed)] + reasons[: MAX_REASONS - 1]
    return reasons


# ---------------------------------------------------------------------------
# Prediction
# ---------------------------------------------------------------------------


def predict(
    prediction_id: str,
    user_id: str,
    model: PreferenceModel | None,
    fv: FeatureVector | None,
    history: Sequence[RatingEvent],
    now: datetime,
    item_id: str | None = None,
) -> Prediction:
    """Predict the user's rating for one item.

    Args:
        prediction_id: Handle to attach to the prediction.
        user_id: The user.
        model: The stored preference model, or ``None`` for a new user.
        fv: Item features, or ``None`` when the provider had none.
        history: The user's recent rating events, oldest first.
        now: Creation timestamp.
        item_id: The item, if known.
    """
    now = ensure_utc(now)
    seed = feature_seed_for(fv, item_id)

    if model is None:
        low, high = FIRST_TIME_RANGE
        return Prediction(
            prediction_id=prediction_id,
            user_id=user_id,
            item_id=item_id,
            predicted_rating=FIRST_TIME_RATING,
            range_min=low,
            range_max=high,
            suggested_descriptors=suggest_descriptors(fv) if fv is not None else [],
            confidence=MIN_CONFIDENCE,
            reasoning=[phrases.phrase("first_time", seed)],
            created_at=now,
            feature_vector=fv,
        )

    counters = model.counters
    confidence = compute_confidence(
        counters.total_predictions,
        counters.prediction_accuracy,
        model.correlations.mean_abs(),
        fv is not None,
    )

    if fv is None:
        raw = model.mean_rating if model.mean_rating is not None else FIRST_TIME_RATING
        suggestions: list[str] = []
        reasons = [phrases.phrase("no_features", seed), phrases.phrase("generic", seed)]
    else:
        similarity = feature_similarity(fv, model)
        regression = correlation_prediction(fv, model.correlations)
        neighbours = similar_item_average(fv, history)
        if neighbours is not None:
            raw = similarity * 10 * 0.25 + regression * 0.35 + neighbours * 0.40
        else:
            raw = similarity * 10 * 0.40 + regression * 0.60
        suggestions = suggest_descriptors(fv)
        reasons = generate_reasoning(fv, model, similarity, seed)
        logger.debug(
            "user=%s similarity=%.3f regression=%.2f neighbours=%s",
            user_id,
            similarity,
            regression,
            "n/a" if neighbours is None else f"{neighbours:.2f}",
        )

    raw = stats.clamp(raw, 0.0, 10.0)
    low, high = rating_range(raw, confidence)
    return Prediction(
        prediction_id=prediction_id,
        user_id=user_id,
        item_id=item_id,
        predicted_rating=round1(raw),
        range_min=low,
        range_max=high,
        suggested_descriptors=suggestions,
        confidence=confidence,
        reasoning=_with_disclaimer(reasons, confidence, counters.total_predictions, seed),
        created_at=now,
        feature_vector=fv,
    )


def feature_seed_for(fv: FeatureVector | None, item_id: str | None) -> int:
    """Phrase seed: from the features when known, else from the item id."""
    if fv is not None:
        return phrases.feature_seed(fv)
    if item_id:
        return zlib.crc32(item_id.encode("utf-8"))
    return 0


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OutcomeCheck:
    """Classification of a realised rating against its prediction."""

    difference: float
    match_quality: MatchQuality
    is_match: bool
    is_surprise: bool
    is_perfect: bool

    @property
    def is_correct(self) -> bool:
        """Match-or-better: the one rule used for streaks and accuracy."""
        return self.match_quality in (
            MatchQuality.PERFECT,
            MatchQuality.CLOSE,
            MatchQuality.MATCH,
        )


def classify_outcome(predicted: float, actual: float, confidence: float) -> OutcomeCheck:
    """Classify ``|predicted - actual|`` with confidence-adaptive thresholds.

    Priority order: perfect (≤ 0.5), close (≤ 1.0), match (≤ the match
    threshold), surprise (> the surprise threshold), otherwise miss.
    """
    diff = abs(predicted - actual)
    match_threshold = 1.0 + (1.0 - confidence) * 1.0
    surprise_threshold = 2.0 + (1.0 - confidence) * 0.5
    is_perfect = diff <= 0.5
    is_match = diff <= match_threshold
    is_surprise = diff > surprise_threshold

    if is_perfect:
        quality = MatchQuality.PERFECT
    elif diff <= 1.0:
        quality = MatchQuality.CLOSE
    elif is_match:
        quality = MatchQuality.MATCH
    elif is_surprise:
        quality = MatchQuality.SURPRISE
    else:
        quality = MatchQuality.MISS
    return OutcomeCheck(
        difference=diff,
        match_quality=quality,
        is_match=is_match,
        is_surprise=quality == MatchQuality.SURPRISE,
        is_perfect=is_perfect,
    )


def apply_outcome(counters: PredictionCounters, check: OutcomeCheck) -> PredictionCounters:
    """Return the counters after folding in one realised prediction."""
    updated = replace(counters)
    updated.total_predictions += 1
    if check.is_correct:
        updated.correct_predictions += 1
        updated.current_streak += 1
    else:
        updated.current_streak = 0
    updated.longest_streak = max(updated.longest_streak, updated.current_streak)
    if check.is_surprise:
        updated.surprise_count += 1
    updated.prediction_accuracy = updated.correct_predictions / updated.total_predictions
    return updated

